"""Relay Backend Application.

Entry point for the marketplace's real-time conversation relay. Workers and
hirers hold a WebSocket open to the relay; messages, typing indicators and
read markers are fanned out to the connections subscribed to each
conversation.

Modules:
    - chat: WebSocket relay (connection registry, rooms, fan-out)
    - messages: DuckDB message history and its HTTP API

Run with:
    uvicorn relay.main:app --port 9002
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay import __version__
from relay.chat.router import router as chat_router
from relay.config import get_config
from relay.messages.router import router as messages_router
from relay.messages.service import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn logs every handshake on its own access logger
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    if config.storage.enabled:
        MessageStore.get_instance(config.storage.db_path)
        logger.info("Message storage enabled: db=%s", config.storage.db_path)
    else:
        logger.info("Message storage disabled; relay delivers live events only")

    yield  # Application runs here

    # Shutdown
    MessageStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Relay API",
    description="Real-time conversation relay for workers and hirers",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(messages_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
