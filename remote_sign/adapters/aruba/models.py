"""
Data models for Aruba Remote Signing (CSC API) integration
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..base.qes_provider import config_from_section, parse_seconds


@dataclass
class ArubaConfig:
    """Configuration for the Aruba provider"""

    base_url: str = ""
    timeout: float = 30.0

    # Optional static API key, sent as X-API-Key
    api_key: Optional[str] = None

    # Signatures requested per OTP (extended session)
    max_signatures: int = 1000
    description: str = "Remote batch signing"

    # signHash algorithm, SHA256withRSA by default
    sign_algorithm_oid: str = "1.2.840.113549.1.1.11"

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> "ArubaConfig":
        return config_from_section(cls, section)


@dataclass
class ArubaAuthResponse:
    """credentials/authorize response"""

    sad: str
    expires_in: int
    num_signatures: Optional[int] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ArubaAuthResponse":
        return cls(
            sad=data.get("SAD", ""),
            expires_in=parse_seconds(data.get("expiresIn"), 0),
            num_signatures=data.get("numSignatures"),
        )
