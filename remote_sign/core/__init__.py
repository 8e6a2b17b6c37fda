"""
Registry, session lifecycle and configuration for remote signing.
"""

from .config import RemoteSignConfig, ProviderSection, load_config
from .registry import ProviderRegistry, RegisteredProviderInfo, build_registry
from .session_manager import ActiveSession, SessionEvent, SessionManager, session_key
from .context import RemoteSignContext

__all__ = [
    "RemoteSignConfig",
    "ProviderSection",
    "load_config",
    "ProviderRegistry",
    "RegisteredProviderInfo",
    "build_registry",
    "ActiveSession",
    "SessionEvent",
    "SessionManager",
    "session_key",
    "RemoteSignContext",
]
