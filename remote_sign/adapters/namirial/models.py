"""
Data models for Namirial remote signing integration
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..base.qes_provider import config_from_section, parse_seconds


@dataclass
class NamirialConfig:
    """Configuration for the Namirial provider"""

    base_url: str = ""
    timeout: float = 30.0

    api_key: Optional[str] = None

    # Default OTP device when the credentials do not name one
    device: Optional[str] = None

    # On-premise installation, used instead of base_url when enabled
    on_premise_base_url: Optional[str] = None
    use_on_premise: bool = False

    # PKCS#12 or PEM client certificate for mutual TLS (SaaS only)
    client_cert_path: Optional[str] = None
    client_cert_password: Optional[str] = None

    # Explicit proxy; no_proxy forces direct connections, ignoring HTTPS_PROXY
    proxy_url: Optional[str] = None
    no_proxy: bool = False

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> "NamirialConfig":
        return config_from_section(cls, section)


@dataclass
class NamirialEndpointInfo:
    """Endpoint currently in use"""

    on_premise: bool
    base_url: str
    has_saas: bool
    has_on_premise: bool


@dataclass
class NamirialLoginResponse:
    """session/login response"""

    session_id: str
    expires_in: Optional[int] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "NamirialLoginResponse":
        return cls(
            session_id=data.get("sessionId", ""),
            expires_in=parse_seconds(data.get("expiresIn")),
        )
