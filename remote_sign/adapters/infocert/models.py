"""
Data models for InfoCert GoSign integration
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..base.qes_provider import config_from_section, parse_seconds


@dataclass
class InfoCertConfig:
    """Configuration for the InfoCert provider"""

    base_url: str = ""
    timeout: float = 30.0

    # OAuth2 client registered with InfoCert
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: str = "sign"

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> "InfoCertConfig":
        return config_from_section(cls, section)


@dataclass
class InfoCertTokenResponse:
    """OAuth2 token endpoint response"""

    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "InfoCertTokenResponse":
        return cls(
            access_token=data.get("access_token", ""),
            expires_in=parse_seconds(data.get("expires_in"), 0),
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
        )
