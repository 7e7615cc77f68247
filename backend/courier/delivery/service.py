"""DeliveryService: composition root of the message delivery core.

Wires the Sequencer, Fan-out Router, Connection Registry, Catch-up Resolver
and Delivery Acknowledger over one DurableStore, and implements what spans
them: the connection lifecycle (handshake, catch-up, activation, close),
presence, idle reaping and graceful shutdown. It also carries the plain
user/chat operations the HTTP layer needs.

A module-level singleton is created lazily from config; ``main`` starts its
reaper loop and drains it on shutdown.
"""
import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Dict, List, Optional

from courier.config import AppConfig, get_config

from .acknowledger import DeliveryAcknowledger
from .catchup import CatchUpResolver
from .connection import CLOSE_NORMAL, ConnectionHandle, Frame
from .errors import ChatNotFound, NotAParticipant, UserNotFound, ValidationError
from .fanout import FanoutRouter
from .registry import ConnectionRegistry
from .schemas import CatchUpPage, Chat, ChatSummary, Message, PresenceState, User
from .sequencer import Sequencer
from .store import DurableStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_service: Optional["DeliveryService"] = None


def get_delivery_service() -> "DeliveryService":
    """Return the global DeliveryService, creating it from config on first use."""
    global _service
    if _service is None:
        _service = DeliveryService.from_config(get_config())
    return _service


def set_delivery_service(service: Optional["DeliveryService"]) -> None:
    """Set (or clear) the global DeliveryService instance."""
    global _service
    _service = service


def catch_up_frame(page: CatchUpPage) -> Frame:
    return {"type": "catch_up", **page.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class DeliveryService:
    """Facade over the delivery components.

    Args:
        store: Durable store shared by every component.
        config: Application config (defaults when omitted).
        clock: Monotonic clock for heartbeats.
        sleep: Sleep used between append retries.
    """

    def __init__(
        self,
        store: DurableStore,
        config: Optional[AppConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or AppConfig()
        delivery = self.config.delivery
        persistence = self.config.persistence

        self.store = store
        self._clock = clock
        self.registry = ConnectionRegistry(clock=clock)
        self.sequencer = Sequencer(
            store,
            max_attempts=persistence.append_max_attempts,
            backoff_seconds=persistence.append_backoff_seconds,
            dedup_cache_size=delivery.dedup_cache_size,
            sleep=sleep,
        )
        self.fanout = FanoutRouter(store, self.registry)
        self.catchup = CatchUpResolver(
            store,
            default_limit=delivery.catch_up_default_limit,
            max_limit=delivery.catch_up_max_limit,
        )
        self.acknowledger = DeliveryAcknowledger(store)

        # Serializes presence writes so the last write reflects the registry
        self._presence_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: AppConfig) -> "DeliveryService":
        return cls(DurableStore.get_instance(config.database.path), config=config)

    # =========================================================================
    # Users
    # =========================================================================

    def create_user(self, display_name: str, user_id: Optional[str] = None) -> User:
        name = (display_name or "").strip()
        if not name:
            raise ValidationError("displayName is required")
        if user_id is not None and self.store.get_user(user_id) is not None:
            raise ValidationError(f"User already exists: {user_id}")
        user = self.store.create_user(name, user_id=user_id)
        logger.info("[Delivery] Created user %s (%s)", user.id, user.displayName)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def list_users(self, exclude_user_id: Optional[str] = None) -> List[User]:
        return self.store.list_users(exclude_user_id=exclude_user_id)

    # =========================================================================
    # Chats
    # =========================================================================

    def create_chat(
        self,
        creator_id: str,
        participant_ids: List[str],
        is_group: bool = False,
        name: Optional[str] = None,
    ) -> Chat:
        """Create a chat containing the creator and ``participant_ids``.

        Raises:
            UserNotFound: The creator does not exist.
            ValidationError: Fewer than 2 participants, unknown participants,
                or a one-to-one chat with other than 2 participants.
        """
        self.get_user(creator_id)
        ids: List[str] = []
        for user_id in [creator_id, *participant_ids]:
            if user_id not in ids:
                ids.append(user_id)

        if len(ids) < 2:
            raise ValidationError("A chat needs at least 2 distinct participants")
        unknown = set(ids) - self.store.existing_user_ids(ids)
        if unknown:
            raise ValidationError(f"Unknown users: {', '.join(sorted(unknown))}")
        if not is_group and len(ids) != 2:
            raise ValidationError("A one-to-one chat has exactly 2 participants")

        chat = Chat(name=(name or "").strip() or None, isGroup=is_group, participantIds=ids)
        # Live connections subscribe before the chat exists, so no first push is missed
        for user_id in ids:
            for handle in self.registry.connections_for(user_id):
                handle.subscribe([chat.id])
        chat = self.store.create_chat(chat)
        logger.info(
            "[Delivery] Created %s chat %s with %d participants",
            "group" if is_group else "direct", chat.id, len(ids),
        )
        return chat

    def get_chat(self, user_id: str, chat_id: str) -> Chat:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            raise ChatNotFound(chat_id)
        if user_id not in chat.participantIds:
            raise NotAParticipant(user_id, chat_id)
        return chat

    def list_chats(self, user_id: str) -> List[ChatSummary]:
        """The user's chats with participants, other user and last message."""
        rows = self.store.chats_with_last_message(user_id)
        participants = self.store.participants_for_chats([chat.id for chat, _ in rows])
        summaries = []
        for chat, last_message in rows:
            members = participants.get(chat.id, [])
            other = None
            if not chat.isGroup:
                other = next((u for u in members if u.id != user_id), None)
            summaries.append(
                ChatSummary(
                    **chat.model_dump(exclude={"participantIds"}),
                    participantIds=[u.id for u in members],
                    participants=members,
                    otherUser=other,
                    lastMessage=last_message,
                )
            )
        return summaries

    # =========================================================================
    # Messages, catch-up, acks
    # =========================================================================

    def send_message(
        self,
        chat_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> Message:
        """Sequence, persist and fan out one message, carrying its sender."""
        return self.sequencer.append(
            chat_id,
            sender_id,
            content,
            client_message_id=client_message_id,
            sender=self.store.get_user(sender_id),
            on_sequenced=lambda message: self.fanout.publish(chat_id, message),
        )

    def catch_up(
        self,
        user_id: str,
        chat_id: str,
        from_seq_exclusive: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> CatchUpPage:
        return self.catchup.catch_up(user_id, chat_id, from_seq_exclusive, limit)

    def ack(self, user_id: str, chat_id: str, seq: int) -> int:
        return self.acknowledger.ack(user_id, chat_id, seq)

    def watermark(self, user_id: str, chat_id: str) -> int:
        self.get_chat(user_id, chat_id)
        return self.acknowledger.watermark(user_id, chat_id)

    def seen_by(self, user_id: str, chat_id: str, seq: int) -> List[str]:
        self.get_chat(user_id, chat_id)
        return self.acknowledger.seen_by(chat_id, seq)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def new_connection(
        self,
        user_id: str,
        send: Callable[[Frame], Awaitable[None]],
        close_transport: Optional[Callable[[int], Awaitable[None]]] = None,
        connection_id: Optional[str] = None,
    ) -> ConnectionHandle:
        """Build a CONNECTING handle for an authenticated user.

        Raises:
            UserNotFound: The identity does not match a known user.
        """
        self.get_user(user_id)
        return ConnectionHandle(
            user_id,
            send,
            connection_id=connection_id,
            queue_size=self.config.delivery.outbound_queue_size,
            overflow_policy=self.config.delivery.overflow_policy,
            close_transport=close_transport,
            on_closed=self._on_connection_closed,
            clock=self._clock,
        )

    def open_connection(
        self, handle: ConnectionHandle, last_seen: Optional[Dict[str, int]] = None
    ) -> List[CatchUpPage]:
        """Register a handle, queue catch-up for each chat and activate it.

        Args:
            handle: A CONNECTING handle from ``new_connection``.
            last_seen: Client-reported last seq per chat; chats not listed
                resume from the stored ack watermark.

        Returns:
            The non-empty catch-up pages that were queued. The handshake
            stops early, without error, if the connection closes meanwhile
            (queue overflow, reaper, ``close_connection``).
        """
        last_seen = last_seen or {}
        user_id = handle.user_id
        handle.enqueue({
            "type": "connected",
            "userId": user_id,
            "connectionId": handle.connection_id,
            "heartbeatTimeout": self.config.delivery.heartbeat_timeout_seconds,
        })

        # Registered before catch-up so no push published meanwhile is lost
        self.registry.register(user_id, handle)
        if handle.is_closed:
            # Closed before registration, so its close found nothing to remove
            self.registry.unregister(handle.connection_id)
            self._sync_presence(user_id)
            return []
        self._sync_presence(user_id)

        chat_ids = self.store.chat_ids_for_user(user_id)
        handle.subscribe(chat_ids)

        pages = []
        for chat_id in chat_ids:
            if handle.is_closed:
                break
            page = self.catchup.catch_up(user_id, chat_id, last_seen.get(chat_id))
            if page.messages:
                handle.mark_caught_up(chat_id, page.messages[-1].seq)
                handle.enqueue(catch_up_frame(page))
                pages.append(page)
            else:
                handle.mark_caught_up(chat_id, min(page.fromSeq, page.lastSeq))

        handle.enqueue({"type": "synced", "chats": len(chat_ids)})
        released = handle.activate()
        if handle.is_closed:
            logger.info(
                "[Delivery] Connection %s of user %s closed during handshake",
                handle.connection_id, user_id,
            )
            return pages
        logger.info(
            "[Delivery] Connection %s for user %s active: %d catch-up page(s), %d buffered push(es)",
            handle.connection_id, user_id, len(pages), released,
        )
        return pages

    async def disconnect(self, handle: ConnectionHandle, code: int = CLOSE_NORMAL) -> None:
        """Close a connection; only its own pending sends are cancelled."""
        await handle.close(code)
        # A handle closed before registration never triggered cleanup
        self.registry.unregister(handle.connection_id)

    def close_connection(self, connection_id: str, code: int = CLOSE_NORMAL) -> bool:
        """Close one live connection from any thread.

        Returns:
            False if no such connection is registered.
        """
        handle = self.registry.get(connection_id)
        if handle is None:
            return False
        handle.abort(code)
        return True

    def touch(self, connection_id: str) -> bool:
        return self.registry.touch(connection_id)

    def _on_connection_closed(self, handle: ConnectionHandle) -> None:
        removed, was_last = self.registry.unregister(handle.connection_id)
        if removed is not None and was_last:
            self._sync_presence(handle.user_id)

    def _sync_presence(self, user_id: str) -> None:
        """Write the presence the registry shows for ``user_id`` right now."""
        with self._presence_lock:
            online = self.registry.is_online(user_id)
            user = self.store.get_user(user_id)
            if user is None:
                return
            if online and user.presenceState != PresenceState.ONLINE:
                self.store.set_presence(user_id, PresenceState.ONLINE)
            elif not online and user.presenceState != PresenceState.OFFLINE:
                self.store.set_presence(user_id, PresenceState.OFFLINE, last_seen_at=time.time())

    def reap_idle(self, now: Optional[float] = None) -> int:
        """Close connections whose heartbeat is older than the timeout.

        Returns:
            Number of connections closed.
        """
        timeout = self.config.delivery.heartbeat_timeout_seconds
        reaped = 0
        for handle in self.registry.expired(timeout, now=now):
            if handle.expire():
                reaped += 1
                logger.info(
                    "[Delivery] Reaped idle connection %s of user %s",
                    handle.connection_id, handle.user_id,
                )
        return reaped

    async def run_reaper(self) -> None:
        """Periodically reap idle connections until cancelled."""
        interval = self.config.delivery.reap_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.reap_idle()
            except Exception as exc:
                logger.error("[Delivery] Idle reaper pass failed: %s", exc)

    async def shutdown(self) -> None:
        """Drain every live connection (flush queued frames, then close)."""
        handles = self.registry.all_connections()
        if not handles:
            return
        logger.info("[Delivery] Draining %d connection(s)", len(handles))
        timeout = self.config.delivery.drain_timeout_seconds
        await asyncio.gather(
            *[handle.drain(timeout) for handle in handles],
            return_exceptions=True,
        )
