"""
InfoCert GoSign Remote Signing Provider

OAuth2 password grant (PIN + OTP) with refresh-token session renewal.
"""

from .provider import InfoCertRemoteSignProvider
from .models import InfoCertConfig, InfoCertTokenResponse

__all__ = ["InfoCertRemoteSignProvider", "InfoCertConfig", "InfoCertTokenResponse"]
