"""
LAZIOcrea FirmaWeb Remote Signing Provider

REST gateway over Namirial SWS with OAuth2 client credentials. Sessions last
three minutes and cannot be renewed.
"""

from .provider import LAZIOcreaRemoteSignProvider
from .models import LAZIOcreaConfig, LAZIOcreaEnvelope, ENVIRONMENT_URLS

__all__ = [
    "LAZIOcreaRemoteSignProvider",
    "LAZIOcreaConfig",
    "LAZIOcreaEnvelope",
    "ENVIRONMENT_URLS",
]
