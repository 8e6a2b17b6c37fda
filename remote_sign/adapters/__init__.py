"""
Remote signing provider adapters.

REMOTE_SIGN_PROVIDERS maps each configuration section name to the adapter
class and its typed configuration.
"""

from .aruba import ArubaRemoteSignProvider, ArubaConfig
from .infocert import InfoCertRemoteSignProvider, InfoCertConfig
from .namirial import NamirialRemoteSignProvider, NamirialConfig
from .laziocrea import LAZIOcreaRemoteSignProvider, LAZIOcreaConfig
from .openapi import OpenApiRemoteSignProvider, OpenApiConfig

REMOTE_SIGN_PROVIDERS = {
    "aruba": (ArubaRemoteSignProvider, ArubaConfig),
    "infocert": (InfoCertRemoteSignProvider, InfoCertConfig),
    "namirial": (NamirialRemoteSignProvider, NamirialConfig),
    "laziocrea": (LAZIOcreaRemoteSignProvider, LAZIOcreaConfig),
    "openapi": (OpenApiRemoteSignProvider, OpenApiConfig),
}

__all__ = [
    "REMOTE_SIGN_PROVIDERS",
    "ArubaRemoteSignProvider",
    "InfoCertRemoteSignProvider",
    "NamirialRemoteSignProvider",
    "LAZIOcreaRemoteSignProvider",
    "OpenApiRemoteSignProvider",
]
