"""Fan-out of sequenced messages to the live connections of a chat.

``publish`` is called by the Sequencer inside the chat's region, so for a
given chat it is never called concurrently and always with increasing seq.
Only connections subscribed to the chat receive the push. Enqueueing is non-blocking; a connection that cannot take the push is
closed and unregistered on the spot and the remaining connections are
still served. Connections that miss a push recover through catch-up.
"""
import logging

from .connection import CLOSE_GOING_AWAY
from .registry import ConnectionRegistry
from .schemas import Message
from .store import DurableStore

logger = logging.getLogger(__name__)


class FanoutRouter:
    """Pushes each published message to every participant's live connections."""

    def __init__(self, store: DurableStore, registry: ConnectionRegistry) -> None:
        self._store = store
        self._registry = registry

    def publish(self, chat_id: str, message: Message) -> int:
        """Enqueue ``message`` on every live connection of every participant.

        Args:
            chat_id: Chat the message was sequenced in.
            message: The persisted message.

        Returns:
            Number of connections the message was queued (or buffered) on.
        """
        delivered = 0
        for user_id in sorted(self._store.chat_participants(chat_id)):
            for handle in self._registry.connections_for(user_id):
                if not handle.is_subscribed(chat_id):
                    # Not yet past the handshake's membership read; catch-up covers it
                    continue
                try:
                    if handle.push_message(message):
                        delivered += 1
                except Exception as e:
                    logger.info(
                        "[Fanout] Dropping push of chat %s seq %d to %s: %s",
                        chat_id, message.seq, handle.connection_id, e,
                    )
                    handle.abort(CLOSE_GOING_AWAY)
                    self._registry.unregister(handle.connection_id)

        logger.debug(
            "[Fanout] Chat %s seq %d queued on %d connection(s)", chat_id, message.seq, delivered
        )
        return delivered
