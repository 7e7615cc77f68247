"""Courier Backend Application.

This is the main entry point for the Courier message delivery service.
Courier delivers chat messages to connected clients in a strict per-chat
order, persists every message before it is pushed, and lets reconnecting
clients catch up on what they missed.

Modules:
    - delivery: Sequencer, fan-out, connection registry, catch-up, acks and
      the WebSocket endpoint
    - users: User registration and lookup
    - chats: Chat creation, chat list, message send/read and read state
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from courier.chats.router import router as chats_router
from courier.config import get_config
from courier.delivery.errors import (
    ChatNotFound,
    DeliveryError,
    NotAParticipant,
    PersistenceError,
    Unauthorized,
    UserNotFound,
    ValidationError,
)
from courier.delivery.router import router as delivery_router
from courier.delivery.service import get_delivery_service, set_delivery_service
from courier.delivery.store import DurableStore
from courier.users.router import router as users_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request noise from the server and HTTP client.
for _noisy in ("httpx", "httpcore", "uvicorn.access"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# DeliveryError subclass -> HTTP status
ERROR_STATUS = {
    ChatNotFound: 404,
    UserNotFound: 404,
    NotAParticipant: 403,
    ValidationError: 400,
    Unauthorized: 401,
    PersistenceError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in courier.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    service = get_delivery_service()
    reaper = asyncio.create_task(service.run_reaper())
    logger.info(
        f"Delivery service ready on http://{config.server.host}:{config.server.port} "
        f"(heartbeat timeout {config.delivery.heartbeat_timeout_seconds}s)"
    )

    yield  # Application runs here

    # Shutdown
    reaper.cancel()
    try:
        await reaper
    except asyncio.CancelledError:
        pass
    await service.shutdown()
    set_delivery_service(None)
    DurableStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Courier API",
    description="Ordered, durable, real-time message delivery for chats",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeliveryError)
async def delivery_error_handler(
    request: Union[Request, WebSocket], exc: DeliveryError
) -> Optional[JSONResponse]:
    """Map delivery errors onto ``{"error": ...}`` bodies.

    Also reached by errors escaping ``/ws``; the endpoint has already closed
    that socket, so they are only logged.
    """
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    method = request.scope.get("method", "WEBSOCKET")
    if status_code >= 500 or isinstance(request, WebSocket):
        logger.error("[API] %s %s failed: %s", method, request.url.path, exc.message)
    if isinstance(request, WebSocket):
        return None
    return JSONResponse({"error": exc.message, "code": exc.code}, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        {"error": f"{location}: {message}" if location else message, "code": ValidationError.code},
        status_code=400,
    )


# Register all routers
app.include_router(delivery_router)
app.include_router(users_router)
app.include_router(chats_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
