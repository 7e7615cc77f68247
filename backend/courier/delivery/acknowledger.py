"""Per (user, chat) delivery watermarks.

A watermark only ever moves forward: acking a lower seq than the stored one
is a no-op, so acks arriving out of order from several devices of the same
user converge on the highest one.
"""
import logging
import threading
from typing import List

from .errors import ChatNotFound, NotAParticipant, ValidationError
from .store import DurableStore

logger = logging.getLogger(__name__)


class DeliveryAcknowledger:
    """Records and reads ack watermarks."""

    def __init__(self, store: DurableStore) -> None:
        self._store = store
        self._lock = threading.Lock()

    def ack(self, user_id: str, chat_id: str, seq: int) -> int:
        """Record that ``user_id`` holds ``chat_id`` up to ``seq``.

        Returns:
            The stored watermark (unchanged when ``seq`` is lower).

        Raises:
            ChatNotFound: Unknown chat.
            NotAParticipant: The user is not in the chat.
            ValidationError: ``seq`` is negative or beyond the chat's lastSeq.
        """
        last_seq = self._store.last_seq(chat_id)
        if last_seq is None:
            raise ChatNotFound(chat_id)
        if not self._store.is_participant(chat_id, user_id):
            raise NotAParticipant(user_id, chat_id)
        if seq < 0:
            raise ValidationError("seq must be >= 0")
        if seq > last_seq:
            raise ValidationError(f"seq {seq} is beyond the last message ({last_seq})")

        with self._lock:
            stored = self._store.raise_watermark(user_id, chat_id, seq)
        if stored > seq:
            logger.debug(
                "[Ack] Ignored stale ack user=%s chat=%s seq=%d (watermark %d)",
                user_id, chat_id, seq, stored,
            )
        return stored

    def watermark(self, user_id: str, chat_id: str) -> int:
        """Highest acknowledged seq, 0 when the user never acked."""
        return self._store.get_watermark(user_id, chat_id)

    def seen_by(self, chat_id: str, seq: int) -> List[str]:
        """Participants whose watermark reached ``seq`` (group "seen by")."""
        if self._store.last_seq(chat_id) is None:
            raise ChatNotFound(chat_id)
        participants = self._store.chat_participants(chat_id)
        marks = self._store.watermarks_for_chat(chat_id)
        return sorted(u for u in participants if marks.get(u, 0) >= seq)
