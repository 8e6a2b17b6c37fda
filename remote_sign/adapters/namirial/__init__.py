"""
Namirial Remote Signing Provider

Login returns a short-lived session id that can be extended while alive.
OTP-less logins open automatic-signing sessions.
"""

from .provider import NamirialRemoteSignProvider
from .models import NamirialConfig, NamirialEndpointInfo, NamirialLoginResponse

__all__ = [
    "NamirialRemoteSignProvider",
    "NamirialConfig",
    "NamirialEndpointInfo",
    "NamirialLoginResponse",
]
