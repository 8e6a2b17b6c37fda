"""
Remote signing context

Owns the provider registry and the session manager for the lifetime of the
process. It is built once at startup and handed to whoever needs it.
"""

import logging
from typing import Optional

import httpx

from .config import RemoteSignConfig, load_config
from .registry import ProviderRegistry, build_registry
from .session_manager import SessionManager

logger = logging.getLogger(__name__)


class RemoteSignContext:
    """Registry plus session manager, started and shut down together"""

    def __init__(self, config: RemoteSignConfig,
                 registry: Optional[ProviderRegistry] = None,
                 manager: Optional[SessionManager] = None):
        self.config = config
        self.registry = registry if registry is not None else build_registry(config)
        self.manager = manager if manager is not None else SessionManager(
            self.registry, cleanup_interval_seconds=config.cleanup_interval_seconds)

    @classmethod
    def from_config(cls, config: Optional[RemoteSignConfig] = None,
                    transport: Optional[httpx.AsyncBaseTransport] = None) -> "RemoteSignContext":
        config = config or load_config()
        return cls(config, registry=build_registry(config, transport=transport))

    async def start(self) -> None:
        self.manager.start()
        logger.info("Remote signing started with providers: %s",
                    ", ".join(self.registry.ids()) or "none")

    async def shutdown(self) -> None:
        await self.manager.shutdown()
        logger.info("Remote signing shut down")

    async def __aenter__(self) -> "RemoteSignContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
