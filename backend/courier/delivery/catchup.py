"""Bounded, ordered replay of the messages a client missed.

``catch_up`` is a pure range read over the durable log: the same request
with no new messages in between returns the same page. Pages are capped;
a capped page is flagged ``truncated`` and carries the seq of its last
message as the continuation cursor.
"""
import logging
from typing import Optional

from .errors import ChatNotFound, NotAParticipant, ValidationError
from .schemas import CatchUpPage
from .store import DurableStore

logger = logging.getLogger(__name__)

# Default and maximum number of messages per catch-up page
DEFAULT_CATCH_UP_LIMIT = 500
MAX_CATCH_UP_LIMIT = 500


class CatchUpResolver:
    """Computes the gap between a client position and ``Chat.lastSeq``.

    Args:
        store: Durable store with the message log and watermarks.
        default_limit: Page size when the caller does not ask for one.
        max_limit: Hard cap on any page.
    """

    def __init__(
        self,
        store: DurableStore,
        default_limit: int = DEFAULT_CATCH_UP_LIMIT,
        max_limit: int = MAX_CATCH_UP_LIMIT,
    ) -> None:
        self._store = store
        self.default_limit = default_limit
        self.max_limit = max_limit

    def catch_up(
        self,
        user_id: str,
        chat_id: str,
        from_seq_exclusive: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> CatchUpPage:
        """Return messages with ``seq > from_seq_exclusive`` in ascending order.

        Args:
            user_id: Reader; must be a participant of the chat.
            chat_id: Chat to replay.
            from_seq_exclusive: Last seq the client holds. None resumes from
                the reader's stored ack watermark.
            limit: Page size, clamped to the configured maximum.

        Returns:
            A CatchUpPage; ``truncated`` with ``cursor`` when more remain.

        Raises:
            ChatNotFound, NotAParticipant, ValidationError
        """
        last_seq = self._store.last_seq(chat_id)
        if last_seq is None:
            raise ChatNotFound(chat_id)
        if not self._store.is_participant(chat_id, user_id):
            raise NotAParticipant(user_id, chat_id)

        if from_seq_exclusive is None:
            from_seq_exclusive = self._store.get_watermark(user_id, chat_id)
        if from_seq_exclusive < 0:
            raise ValidationError("fromSeq must be >= 0")
        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        limit = min(limit, self.max_limit)

        if from_seq_exclusive >= last_seq:
            return CatchUpPage(chatId=chat_id, fromSeq=from_seq_exclusive, lastSeq=last_seq)

        # Bounded by the last_seq snapshot so a page never runs past it
        messages = [
            m for m in self._store.read_range(chat_id, from_seq_exclusive, limit)
            if m.seq <= last_seq
        ]
        truncated = bool(messages) and messages[-1].seq < last_seq
        page = CatchUpPage(
            chatId=chat_id,
            fromSeq=from_seq_exclusive,
            messages=messages,
            truncated=truncated,
            cursor=messages[-1].seq if truncated else None,
            lastSeq=last_seq,
        )
        logger.debug(
            "[CatchUp] user=%s chat=%s from=%d -> %d message(s), truncated=%s",
            user_id, chat_id, from_seq_exclusive, len(messages), truncated,
        )
        return page
