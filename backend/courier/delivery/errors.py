"""Exception taxonomy for the message delivery core.

Every error raised across the core boundary derives from ``DeliveryError``
and carries a stable ``code`` used by the HTTP and WebSocket adapters.

    ChatNotFound      unknown chat id, fatal to the operation
    UserNotFound      unknown user id
    NotAParticipant   sender/reader is not a member of the chat
    ValidationError   bad input, rejected before anything is sequenced
    Unauthorized      missing or unknown caller identity
    PersistenceError  durable append failed after bounded retries
    ConnectionLost    a live connection went away (internal only)
    InvalidTransition illegal connection state change

A truncated catch-up page is not an error; see ``CatchUpPage.truncated``.
"""


class DeliveryError(Exception):
    """Base class for delivery core errors."""

    code = "delivery_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ChatNotFound(DeliveryError):
    code = "chat_not_found"

    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat not found: {chat_id}")
        self.chat_id = chat_id


class UserNotFound(DeliveryError):
    code = "user_not_found"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class NotAParticipant(DeliveryError):
    code = "not_a_participant"

    def __init__(self, user_id: str, chat_id: str) -> None:
        super().__init__(f"User {user_id} is not a participant of chat {chat_id}")
        self.user_id = user_id
        self.chat_id = chat_id


class ValidationError(DeliveryError):
    code = "validation_error"


class Unauthorized(DeliveryError):
    """No usable identity was supplied by the outer layer."""

    code = "unauthorized"


class PersistenceError(DeliveryError):
    code = "persistence_error"


class ConnectionLost(DeliveryError):
    code = "connection_lost"


class InvalidTransition(DeliveryError):
    code = "invalid_transition"


class StoreError(Exception):
    """Raised by the durable store when a write could not be applied.

    Not part of the public taxonomy: the Sequencer retries these and turns
    exhaustion into ``PersistenceError``.
    """


class SequenceConflict(StoreError):
    """The chat's ``last_seq`` moved underneath an append."""
