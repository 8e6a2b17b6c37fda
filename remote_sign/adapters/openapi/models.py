"""
Data models for OpenAPI.com eSignature integration
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..base.qes_provider import config_from_section


DEFAULT_OAUTH_URL = "https://console.openapi.com/oauth/token"
DEFAULT_SCOPE = "POST:esignature/EU-QES_otp POST:esignature/EU-SES POST:esignature/verify"


class CertificateType(str, Enum):
    """Signing product, which is also the endpoint path"""
    QES_OTP = "EU-QES_otp"
    QES_AUTOMATIC = "EU-QES_automatic"
    SES = "EU-SES"


class AuthMethod(str, Enum):
    TOKEN = "TOKEN"
    API_KEY = "API_KEY"
    OAUTH2 = "OAUTH2"
    NONE = "NONE"


@dataclass
class OpenApiConfig:
    """Configuration for the OpenAPI.com provider"""

    base_url: str = ""
    timeout: float = 30.0
    certificate_type: CertificateType = CertificateType.SES

    # Bearer sources, in order of precedence
    token: Optional[str] = None
    api_key: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    oauth_url: str = DEFAULT_OAUTH_URL
    scope: str = DEFAULT_SCOPE

    def __post_init__(self):
        self.certificate_type = CertificateType(self.certificate_type)

    @property
    def auth_method(self) -> AuthMethod:
        if self.token:
            return AuthMethod.TOKEN
        if self.api_key:
            return AuthMethod.API_KEY
        if self.client_id and self.client_secret:
            return AuthMethod.OAUTH2
        return AuthMethod.NONE

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> "OpenApiConfig":
        return config_from_section(cls, section)


@dataclass
class OpenApiSignResponse:
    """Signature request outcome"""

    id: Optional[str]
    state: Optional[str]
    success: bool
    message: Optional[str] = None
    signed_payload: Optional[str] = None
    input_documents: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return not self.success or self.state == "ERROR"

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "OpenApiSignResponse":
        # Some answers wrap the request in a data field
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        document = body.get("document") or {}
        signed = document.get("signedDocument") or {}
        return cls(
            id=body.get("id"),
            state=body.get("state"),
            success=bool(data.get("success", body.get("success", False))),
            message=data.get("message") or body.get("message"),
            signed_payload=signed.get("payload"),
            input_documents=document.get("inputDocuments") or [],
        )
