"""Per-chat sequence assignment: the single source of ordering truth.

Each chat has its own mutual-exclusion region. Inside it the Sequencer reads
``last_seq``, stamps ``last_seq + 1`` on the message, persists it atomically
with the counter bump and, still inside the region, hands the message to the
fan-out callback. Chats never wait on each other.

A rejected message (bad content, unknown chat, non-participant, or an append
that failed every retry) never consumes a sequence number.
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

from .errors import (
    ChatNotFound,
    NotAParticipant,
    PersistenceError,
    SequenceConflict,
    StoreError,
    ValidationError,
)
from .schemas import MAX_CONTENT_LENGTH, MIN_CONTENT_LENGTH, Message, User
from .store import DurableStore

logger = logging.getLogger(__name__)

DedupKey = Tuple[str, str]


def normalize_content(content: Optional[str]) -> str:
    """Trim message text and enforce its length bounds.

    Raises:
        ValidationError: Empty after trimming, or longer than 5000 characters.
    """
    if content is None or not isinstance(content, str):
        raise ValidationError("Message content is required")
    text = content.strip()
    if len(text) < MIN_CONTENT_LENGTH:
        raise ValidationError("Message content is required")
    if len(text) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Message too long (max {MAX_CONTENT_LENGTH} characters)")
    return text


class Sequencer:
    """Assigns contiguous per-chat sequence numbers and persists messages.

    Args:
        store: Durable store holding ``last_seq`` and the message log.
        max_attempts: Append attempts before giving up with PersistenceError.
        backoff_seconds: Base delay; attempt ``n`` waits ``backoff * 2**(n-1)``.
        dedup_cache_size: Remembered client message ids per chat.
        sleep: Injectable sleep for tests.
    """

    def __init__(
        self,
        store: DurableStore,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        dedup_cache_size: int = 10000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._dedup_cache_size = dedup_cache_size
        self._sleep = sleep

        # chat_id -> lock guarding that chat's counter
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        # chat_id -> LRU of (sender_id, client_message_id) -> Message
        self._recent: Dict[str, "OrderedDict[DedupKey, Message]"] = {}

    def _lock_for(self, chat_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(chat_id)
            if lock is None:
                lock = self._locks[chat_id] = threading.Lock()
            return lock

    def next_seq(self, chat_id: str) -> int:
        """Return the next sequence number for a chat.

        Only meaningful inside the chat's region (see ``append``).

        Raises:
            ChatNotFound: The chat does not exist.
        """
        last = self._store.last_seq(chat_id)
        if last is None:
            raise ChatNotFound(chat_id)
        return last + 1

    def append(
        self,
        chat_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
        sender: Optional[User] = None,
        on_sequenced: Optional[Callable[[Message], None]] = None,
    ) -> Message:
        """Validate, sequence and persist one message.

        Args:
            chat_id: Target chat.
            sender_id: Authenticated sender; must be a participant.
            content: Raw message text (trimmed here).
            client_message_id: Optional idempotency key; a resend with the same
                key returns the original message without a new seq.
            sender: The sender's profile, attached to the returned and pushed
                message (not stored with it).
            on_sequenced: Called with the persisted message inside the chat's
                region, so successive calls observe increasing seq.

        Returns:
            The persisted message.

        Raises:
            ValidationError, ChatNotFound, NotAParticipant, PersistenceError
        """
        text = normalize_content(content)
        if self._store.last_seq(chat_id) is None:
            raise ChatNotFound(chat_id)
        if not self._store.is_participant(chat_id, sender_id):
            raise NotAParticipant(sender_id, chat_id)

        with self._lock_for(chat_id):
            if client_message_id:
                existing = self._recall(chat_id, sender_id, client_message_id)
                if existing is not None:
                    logger.debug(
                        "[Sequencer] Duplicate send %s in chat %s -> seq %d",
                        client_message_id, chat_id, existing.seq,
                    )
                    return existing

            message = Message(
                chatId=chat_id,
                senderId=sender_id,
                seq=self.next_seq(chat_id),
                content=text,
                clientMessageId=client_message_id,
                sender=sender,
            )
            message = self._persist(chat_id, message)
            if client_message_id:
                self._remember(message)

            if on_sequenced is not None:
                try:
                    on_sequenced(message)
                except Exception:
                    # Already durable; live delivery failures are caught up later
                    logger.exception(
                        "[Sequencer] Fan-out failed for chat %s seq %d", chat_id, message.seq
                    )
            return message

    def _persist(self, chat_id: str, message: Message) -> Message:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._store.append_message(chat_id, message.seq, message)
                logger.debug("[Sequencer] Chat %s seq %d persisted", chat_id, message.seq)
                return message
            except SequenceConflict as exc:
                # Another writer advanced the counter: restamp and retry
                last_error = exc
                message = message.model_copy(update={"seq": self.next_seq(chat_id)})
            except StoreError as exc:
                last_error = exc

            if attempt < self._max_attempts:
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "[Sequencer] Append to chat %s failed (attempt %d/%d), retrying in %.3fs: %s",
                    chat_id, attempt, self._max_attempts, delay, last_error,
                )
                self._sleep(delay)

        logger.error(
            "[Sequencer] Append to chat %s failed after %d attempts: %s",
            chat_id, self._max_attempts, last_error,
        )
        raise PersistenceError(
            f"Could not persist message to chat {chat_id} after {self._max_attempts} attempts"
        )

    # =========================================================================
    # Resend deduplication
    # =========================================================================

    def _recall(self, chat_id: str, sender_id: str, client_message_id: str) -> Optional[Message]:
        cache = self._recent.get(chat_id)
        key = (sender_id, client_message_id)
        if cache is not None and key in cache:
            cache.move_to_end(key)
            return cache[key]
        return self._store.find_by_client_message_id(chat_id, sender_id, client_message_id)

    def _remember(self, message: Message) -> None:
        if self._dedup_cache_size <= 0:
            return
        cache = self._recent.setdefault(message.chatId, OrderedDict())
        cache[(message.senderId, message.clientMessageId)] = message
        while len(cache) > self._dedup_cache_size:
            cache.popitem(last=False)
