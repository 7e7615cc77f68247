"""Message delivery core.

Sequencing, fan-out, connection tracking, catch-up and ack watermarks for
chat messages, plus the WebSocket endpoint that exposes them.
"""
from .errors import (
    ChatNotFound,
    ConnectionLost,
    DeliveryError,
    InvalidTransition,
    NotAParticipant,
    PersistenceError,
    Unauthorized,
    UserNotFound,
    ValidationError,
)
from .schemas import (
    AckWatermark,
    CatchUpPage,
    Chat,
    ChatSummary,
    ConnectionState,
    Message,
    PresenceState,
    User,
)
from .service import DeliveryService, get_delivery_service, set_delivery_service

__all__ = [
    "AckWatermark",
    "CatchUpPage",
    "Chat",
    "ChatNotFound",
    "ChatSummary",
    "ConnectionLost",
    "ConnectionState",
    "DeliveryError",
    "DeliveryService",
    "InvalidTransition",
    "Message",
    "NotAParticipant",
    "PersistenceError",
    "PresenceState",
    "Unauthorized",
    "User",
    "UserNotFound",
    "ValidationError",
    "get_delivery_service",
    "set_delivery_service",
]
