"""
OpenAPI.com eSignature Remote Signing Provider

Certificate credentials are replayed on every signature request from a
locally held session.
"""

from .provider import OpenApiRemoteSignProvider
from .models import AuthMethod, CertificateType, OpenApiConfig, OpenApiSignResponse

__all__ = [
    "OpenApiRemoteSignProvider",
    "OpenApiConfig",
    "OpenApiSignResponse",
    "AuthMethod",
    "CertificateType",
]
