"""
Remote QES Signing Broker - Main FastAPI Application

Entry point of the HTTP service: builds the app, owns the remote signing
context for the lifetime of the process and closes every open session on
shutdown.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import router as remote_sign_router
from .core.context import RemoteSignContext

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(context: Optional[RemoteSignContext] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        context: Prebuilt context; loaded from the settings file at startup if omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        remote_sign = context if context is not None else RemoteSignContext.from_config()
        app.state.remote_sign = remote_sign
        logger.info("Starting remote signing broker %s", __version__)
        await remote_sign.start()
        try:
            yield
        finally:
            logger.info("Shutting down remote signing broker")
            await remote_sign.shutdown()

    app = FastAPI(
        title="Remote QES Signing Broker",
        description="Uniform session and signing API over remote qualified signature providers.",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    origins = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        remote_sign: RemoteSignContext = app.state.remote_sign
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "providers": remote_sign.registry.ids(),
            "sessions": remote_sign.manager.stats(),
        }

    app.include_router(remote_sign_router)
    return app


def main() -> None:
    configure_logging()
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
