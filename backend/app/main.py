"""Chat Backend Application.

This is the main entry point for the real-time chat backend service.

Modules:
    - chat: Presence registry, room directory, message log, fanout router
      and the WebSocket/HTTP routes on top of them
    - identity: User registration and friend graph collaborator
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.chat.dependencies import get_chat_core
from app.chat.errors import ChatError
from app.chat.router import router as chat_router
from app.config import get_config
from app.identity.router import router as users_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request and per-frame third-party loggers.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    get_chat_core()
    logger.info(f"Chat backend running on http://{config.server.host}:{config.server.port}")

    yield  # Application runs here

    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chat Backend API",
    description="Real-time rooms, presence and message fanout",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(users_router)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map chat core errors to JSON error responses."""
    return JSONResponse(
        {"success": False, "error": exc.to_payload()},
        status_code=exc.status_code,
    )


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with live connection and room counts.
    """
    core = get_chat_core()
    return {
        "status": "ok",
        "connections": core.presence.online_count(),
        "rooms": len(core.rooms),
    }
