"""
Provider registry

Holds one adapter instance per provider id and resolves lookups for the
session manager and the API layer.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..adapters import REMOTE_SIGN_PROVIDERS
from ..adapters.base.qes_provider import (
    ErrorKind, RemoteSignError, RemoteSignProvider, make_error,
)
from .config import RemoteSignConfig

logger = logging.getLogger(__name__)


@dataclass
class RegisteredProviderInfo:
    """Public description of a registered provider"""
    id: str
    name: str
    enabled: bool
    configured: bool
    supports_extended_session: bool
    supports_batch_signing: bool


class ProviderRegistry:
    """Registry of remote signing providers keyed by upper-cased provider id"""

    def __init__(self, default_provider: Optional[str] = None,
                 session_timeout_minutes: int = 45):
        self.default_provider = default_provider.upper() if default_provider else None
        self.session_timeout_minutes = session_timeout_minutes
        self._providers: Dict[str, RemoteSignProvider] = {}
        self._enabled: Dict[str, bool] = {}

    def register(self, provider: RemoteSignProvider, enabled: bool = True) -> None:
        provider_id = (provider.provider_id or "").upper()
        if not provider_id:
            raise ValueError("Provider must declare a provider_id")
        if provider_id in self._providers:
            logger.warning("Replacing registered provider %s", provider_id)
        self._providers[provider_id] = provider
        self._enabled[provider_id] = enabled
        logger.info("Registered remote signing provider %s (%s)", provider_id, provider.provider_name)

    def unregister(self, provider_id: str) -> bool:
        key = provider_id.upper()
        self._enabled.pop(key, None)
        removed = self._providers.pop(key, None) is not None
        if removed:
            logger.info("Unregistered remote signing provider %s", key)
        return removed

    def has(self, provider_id: str) -> bool:
        return provider_id.upper() in self._providers

    def ids(self) -> List[str]:
        return list(self._providers)

    def get(self, provider_id: str) -> RemoteSignProvider:
        """
        Resolve a provider by id.

        Raises:
            ProviderLookupError: PROVIDER_NOT_FOUND for unknown ids,
                PROVIDER_NOT_CONFIGURED when the provider's settings are incomplete
        """
        key = (provider_id or "").upper()
        provider = self._providers.get(key)
        if provider is None:
            available = ", ".join(self._providers) or "none"
            raise make_error(ErrorKind.PROVIDER_NOT_FOUND,
                             f"Provider {key or provider_id!r} not found. Available: {available}",
                             key or "UNKNOWN")
        if not provider.is_configured():
            raise make_error(ErrorKind.PROVIDER_NOT_CONFIGURED,
                             f"Provider {key} is not configured correctly", key)
        return provider

    def get_default(self) -> RemoteSignProvider:
        if not self.default_provider:
            raise make_error(ErrorKind.NO_DEFAULT_PROVIDER, "No default provider configured")
        return self.get(self.default_provider)

    def _info(self, provider_id: str, provider: RemoteSignProvider) -> RegisteredProviderInfo:
        configured = provider.is_configured()
        return RegisteredProviderInfo(
            id=provider_id,
            name=provider.provider_name,
            enabled=self._enabled.get(provider_id, True) and configured,
            configured=configured,
            supports_extended_session=provider.supports_extended_session,
            supports_batch_signing=provider.supports_batch_signing,
        )

    def list_available(self) -> List[RegisteredProviderInfo]:
        return [self._info(provider_id, provider) for provider_id, provider in self._providers.items()]

    def list_enabled(self) -> List[RegisteredProviderInfo]:
        return [info for info in self.list_available() if info.enabled]

    async def test_all_connections(self) -> Dict[str, bool]:
        """Test the connection of every registered provider concurrently."""
        provider_ids = list(self._providers)
        outcomes = await asyncio.gather(
            *(self._providers[provider_id].test_connection() for provider_id in provider_ids),
            return_exceptions=True,
        )

        results = {}
        for provider_id, outcome in zip(provider_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Connection test for %s raised: %s", provider_id, outcome)
                results[provider_id] = False
            else:
                results[provider_id] = bool(outcome)
        return results

    def stats(self) -> Dict[str, Any]:
        available = self.list_available()
        return {
            "registered": len(available),
            "configured": sum(1 for info in available if info.configured),
            "enabled": sum(1 for info in available if info.enabled),
            "default_provider": self.default_provider,
        }

    def clear(self) -> None:
        self._providers.clear()
        self._enabled.clear()


def _declares_endpoint(name: str, provider: RemoteSignProvider, settings: Dict[str, Any]) -> bool:
    if name == "laziocrea":
        # Gateway URLs default from the environment
        return bool(settings.get("client_id") and settings.get("client_secret"))
    if name in ("namirial", "openapi"):
        return provider.is_configured()
    return bool(settings.get("base_url"))


def build_registry(config: RemoteSignConfig,
                   transport: Optional[httpx.AsyncBaseTransport] = None) -> ProviderRegistry:
    """
    Instantiate the adapters named in the configuration.

    Disabled sections and sections without an endpoint are skipped, as are
    providers whose construction fails.
    """
    registry = ProviderRegistry(default_provider=config.default_provider,
                                session_timeout_minutes=config.session_timeout_minutes)

    for name, section in config.provider_sections().items():
        if not section.enabled:
            logger.info("Provider %s disabled in configuration", name)
            continue

        provider_class, config_class = REMOTE_SIGN_PROVIDERS[name]
        settings = section.settings(default_timeout=config.request_timeout_seconds)
        try:
            provider = provider_class(config_class.from_section(settings), transport=transport)
        except (TypeError, ValueError, RemoteSignError) as e:
            logger.error("Unable to initialize provider %s: %s", name, e)
            continue

        if not _declares_endpoint(name, provider, settings):
            logger.warning("Provider %s has no endpoint configured, skipping", name)
            continue

        registry.register(provider)

    logger.info("Remote signing providers registered: %s", ", ".join(registry.ids()) or "none")
    return registry
