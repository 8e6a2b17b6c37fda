"""
Aruba Remote Signing Provider

Aruba ARSS exposes the Cloud Signature Consortium API:

Features:
- PIN + OTP authorization returning a SAD token
- Extended sessions (many signatures per OTP) with an explicit quota
- Hash signing (CAdES/PAdES detached hashes)
"""

from .provider import ArubaRemoteSignProvider
from .models import ArubaConfig, ArubaAuthResponse

__all__ = [
    "ArubaRemoteSignProvider",
    "ArubaConfig",
    "ArubaAuthResponse",
]
