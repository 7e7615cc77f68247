"""Pydantic models shared by the delivery core and its transport adapters.

Wire field names are camelCase (``chatId``, ``senderId``) so models can be
dumped straight into JSON frames. Timestamps are seconds since the epoch.
"""
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

# Content bounds after trimming
MIN_CONTENT_LENGTH = 1
MAX_CONTENT_LENGTH = 5000


class PresenceState(str, Enum):
    """Whether a user currently holds at least one live connection."""
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectionState(str, Enum):
    """Lifecycle of a live connection.

    Attributes:
        CONNECTING: Handshake done, catch-up in progress; live pushes are buffered.
        ACTIVE: Receiving live pushes.
        IDLE: Heartbeat missed; about to be closed.
        DRAINING: Server shutdown requested; queued frames are being flushed.
        CLOSED: Terminal.
    """
    CONNECTING = "connecting"
    ACTIVE = "active"
    IDLE = "idle"
    DRAINING = "draining"
    CLOSED = "closed"


class User(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="User ID")
    displayName: str = Field(..., min_length=1, max_length=100, description="Display name")
    presenceState: PresenceState = Field(default=PresenceState.OFFLINE)
    lastSeenAt: Optional[float] = Field(default=None, description="When the last connection closed")
    createdAt: float = Field(default_factory=time.time)


class Message(BaseModel):
    """A sequenced, persisted chat message. Immutable once stored.

    ``sender`` is joined in on read (and attached on send) so clients can
    render the author without a second lookup; it is not part of the log.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique message ID")
    chatId: str = Field(..., description="Chat this message belongs to")
    senderId: str = Field(..., description="User ID of the sender")
    seq: int = Field(..., ge=1, description="Per-chat sequence number")
    content: str = Field(..., description="Trimmed message text")
    createdAt: float = Field(default_factory=time.time)
    clientMessageId: Optional[str] = Field(default=None, description="Client idempotency key")
    sender: Optional[User] = Field(default=None, description="Sender profile")


class Chat(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: Optional[str] = None
    isGroup: bool = False
    participantIds: List[str] = Field(default_factory=list)
    lastSeq: int = Field(default=0, ge=0)
    createdAt: float = Field(default_factory=time.time)
    updatedAt: float = Field(default_factory=time.time)


class ChatSummary(Chat):
    """Chat list entry: the chat plus what a chat list needs to render it."""
    participants: List[User] = Field(default_factory=list)
    otherUser: Optional[User] = None
    lastMessage: Optional[Message] = None


class CatchUpPage(BaseModel):
    """One bounded slice of a chat's log.

    ``truncated`` means more messages remain after ``cursor``; the client
    re-requests with ``fromSeq=cursor`` to continue.
    """
    chatId: str
    fromSeq: int
    messages: List[Message] = Field(default_factory=list)
    truncated: bool = False
    cursor: Optional[int] = None
    lastSeq: int = 0


class AckWatermark(BaseModel):
    userId: str
    chatId: str
    seq: int = Field(default=0, ge=0)
