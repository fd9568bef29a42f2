"""Gigchat Messaging Backend Application.

This is the main entry point for the messaging and presence service of the
Gigchat marketplace. Clients and freelancers exchange direct messages,
optionally scoped to a job, with live delivery, receipts, typing
indicators and presence.

Modules:
    - messaging.store: DuckDB-backed durable message store
    - messaging.registry: Live session registry
    - messaging.rooms: Conversation rooms and fan-out
    - messaging.presence: Online/offline and typing indicators
    - messaging.delivery: Delivery state machine and push retries
    - messaging.reconciliation: Client-side merge of history and live events
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import AppSettings, get_config
from app.messaging.directory import UserDirectory
from app.messaging.router import router as messaging_router
from app.messaging.service import MessagingService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[AppSettings] = None,
    directory: Optional[UserDirectory] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to use instead of gigchat.settings.yaml.
        directory: User directory to validate recipients against.

    Returns:
        The configured FastAPI app.
    """
    config = settings or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in gigchat.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        service = MessagingService.from_settings(config, directory=directory)
        app.state.messaging = service
        service.start()
        logger.info(
            f"Messaging ready on http://{config.server.host}:{config.server.port} "
            f"(store={config.store.db_path})"
        )

        yield  # Application runs here

        # Shutdown
        await service.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Gigchat Messaging API",
        description="Direct messaging and presence for the Gigchat marketplace",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(messaging_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
