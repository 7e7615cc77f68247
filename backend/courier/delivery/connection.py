"""A single live client connection and its outbound pipeline.

Each connection owns a bounded outbound queue drained by a dedicated sender
task on the connection's event loop. Publishers never wait for the socket:
``push_message``/``enqueue`` append to the queue and wake the sender, using
``call_soon_threadsafe`` when called from another thread.

State machine:
    CONNECTING -> ACTIVE -> (IDLE | DRAINING) -> CLOSED
    CONNECTING -> CLOSED, ACTIVE -> CLOSED (connection lost)

While CONNECTING, live pushes are buffered; ``activate`` releases them after
catch-up, dropping any seq the catch-up already covered. CLOSED is terminal.
"""
import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .errors import ConnectionLost, InvalidTransition
from .schemas import ConnectionState, Message

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013

OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_DISCONNECT = "disconnect"

_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.CONNECTING: {ConnectionState.ACTIVE, ConnectionState.CLOSED},
    ConnectionState.ACTIVE: {
        ConnectionState.IDLE,
        ConnectionState.DRAINING,
        ConnectionState.CLOSED,
    },
    ConnectionState.IDLE: {ConnectionState.CLOSED},
    ConnectionState.DRAINING: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}

Frame = Dict[str, Any]


def message_frame(message: Message) -> Frame:
    return {"type": "message", **message.model_dump(mode="json")}


class ConnectionHandle:
    """Live connection of one user device.

    Args:
        user_id: Authenticated owner of the connection.
        send: Coroutine function writing one JSON frame to the transport.
        connection_id: Optional explicit id (a UUID is generated otherwise).
        queue_size: Maximum queued outbound frames.
        overflow_policy: ``drop_oldest`` or ``disconnect`` when the queue is full.
        close_transport: Optional coroutine function closing the transport with a code.
        on_closed: Called exactly once when the connection reaches CLOSED.
        clock: Monotonic clock used for heartbeat bookkeeping.
    """

    def __init__(
        self,
        user_id: str,
        send: Callable[[Frame], Awaitable[None]],
        connection_id: Optional[str] = None,
        queue_size: int = 256,
        overflow_policy: str = OVERFLOW_DROP_OLDEST,
        close_transport: Optional[Callable[[int], Awaitable[None]]] = None,
        on_closed: Optional[Callable[["ConnectionHandle"], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user_id = user_id
        self.connection_id = connection_id or str(uuid.uuid4())
        self.queue_size = queue_size
        self.overflow_policy = overflow_policy
        self.on_closed = on_closed

        self.state = ConnectionState.CONNECTING
        self.last_pushed_seq: Dict[str, int] = {}
        self.last_seen = clock()
        self.dropped_frames = 0

        self._send = send
        self._close_transport = close_transport
        self._clock = clock
        self._close_code = CLOSE_NORMAL

        self._lock = threading.Lock()
        self._outbound: Deque[Frame] = deque()
        self._pending: List[Message] = []
        self._subscribed: Set[str] = set()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._sender_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"ConnectionHandle({self.connection_id!r}, user={self.user_id!r}, state={self.state.value})"

    # =========================================================================
    # State machine
    # =========================================================================

    def transition(self, new_state: ConnectionState) -> None:
        """Move to ``new_state`` or raise InvalidTransition."""
        with self._lock:
            self._transition_locked(new_state)
        if new_state == ConnectionState.CLOSED:
            self._notify_closed()

    def _transition_locked(self, new_state: ConnectionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Connection {self.connection_id}: {self.state.value} -> {new_state.value}"
            )
        logger.debug(
            "[Connection] %s %s -> %s", self.connection_id, self.state.value, new_state.value
        )
        self.state = new_state
        if new_state == ConnectionState.CLOSED:
            # Pending sends of this connection are cancelled, nothing else
            self._outbound.clear()
            self._pending.clear()

    def _close_locked(self, code: int) -> bool:
        """Move to CLOSED unless already there; returns True if it moved."""
        if self.state == ConnectionState.CLOSED:
            return False
        self._close_code = code
        self._transition_locked(ConnectionState.CLOSED)
        return True

    def _notify_closed(self) -> None:
        if self.on_closed is not None:
            self.on_closed(self)

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def touch(self, now: Optional[float] = None) -> None:
        """Record inbound activity (heartbeat)."""
        self.last_seen = self._clock() if now is None else now

    # =========================================================================
    # Subscriptions
    # =========================================================================

    @property
    def subscribed_chat_ids(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._subscribed)

    def subscribe(self, chat_ids: Iterable[str]) -> None:
        """Receive live pushes for ``chat_ids`` (the owner's chat memberships)."""
        with self._lock:
            self._subscribed.update(chat_ids)

    def is_subscribed(self, chat_id: str) -> bool:
        with self._lock:
            return chat_id in self._subscribed

    # =========================================================================
    # Outbound queue
    # =========================================================================

    def enqueue(self, frame: Frame) -> bool:
        """Queue an arbitrary frame (replies, catch-up pages).

        Returns:
            True if queued, False if the connection no longer accepts frames.
        """
        with self._lock:
            if self.state in (ConnectionState.CLOSED, ConnectionState.DRAINING, ConnectionState.IDLE):
                return False
            accepted, closed = self._offer_locked(frame)
        self._after_offer(closed)
        return accepted

    def push_message(self, message: Message) -> bool:
        """Queue a live message push, keeping per-chat seq strictly increasing.

        Returns:
            True if the message was queued (or buffered while CONNECTING).
        """
        with self._lock:
            if self.state == ConnectionState.CONNECTING:
                if len(self._pending) >= self.queue_size:
                    self._pending.pop(0)
                    self.dropped_frames += 1
                self._pending.append(message)
                return True
            if self.state != ConnectionState.ACTIVE:
                return False
            if message.seq <= self.last_pushed_seq.get(message.chatId, 0):
                return False
            self.last_pushed_seq[message.chatId] = message.seq
            accepted, closed = self._offer_locked(message_frame(message))
        self._after_offer(closed)
        return accepted

    def mark_caught_up(self, chat_id: str, seq: int) -> None:
        """Record that the client already holds ``chat_id`` up to ``seq``."""
        with self._lock:
            if seq > self.last_pushed_seq.get(chat_id, 0):
                self.last_pushed_seq[chat_id] = seq

    def activate(self) -> int:
        """CONNECTING -> ACTIVE, releasing buffered pushes not covered by catch-up.

        A connection already closed during the handshake (queue overflow,
        reaper, explicit close) stays closed.

        Returns:
            Number of buffered pushes released.
        """
        released = 0
        closed = False
        with self._lock:
            if self.state == ConnectionState.CLOSED:
                return 0
            self._transition_locked(ConnectionState.ACTIVE)
            pending, self._pending = self._pending, []
            for message in pending:
                if message.seq <= self.last_pushed_seq.get(message.chatId, 0):
                    continue
                self.last_pushed_seq[message.chatId] = message.seq
                accepted, closed = self._offer_locked(message_frame(message))
                if closed:
                    break
                released += accepted
        self._after_offer(closed)
        return released

    def _offer_locked(self, frame: Frame) -> Tuple[bool, bool]:
        """Append under the lock, applying the overflow policy.

        Returns:
            (accepted, closed_by_overflow)
        """
        if len(self._outbound) >= self.queue_size:
            if self.overflow_policy == OVERFLOW_DISCONNECT:
                logger.warning(
                    "[Connection] %s outbound queue full (%d), disconnecting",
                    self.connection_id, self.queue_size,
                )
                self._close_locked(CLOSE_TRY_AGAIN_LATER)
                return False, True
            self._outbound.popleft()
            self.dropped_frames += 1
            logger.warning(
                "[Connection] %s outbound queue full (%d), dropped oldest frame",
                self.connection_id, self.queue_size,
            )
        self._outbound.append(frame)
        return True, False

    def _after_offer(self, closed: bool) -> None:
        if closed:
            self._notify_closed()
        self._wake()

    def pending_frames(self) -> List[Frame]:
        """Snapshot of queued, not yet sent frames."""
        with self._lock:
            return list(self._outbound)

    def _wake(self) -> None:
        loop, event = self._loop, self._wakeup
        if loop is None or event is None:
            return  # sender not started; frames wait in the queue
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            event.set()
            return
        try:
            loop.call_soon_threadsafe(event.set)
        except RuntimeError as exc:
            # The connection's event loop is gone
            self.abort(CLOSE_GOING_AWAY)
            raise ConnectionLost(f"Connection {self.connection_id} loop closed") from exc

    # =========================================================================
    # Sender task
    # =========================================================================

    def start(self) -> None:
        """Start the sender task on the running event loop."""
        wakeup = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        self._wakeup = wakeup
        self._sender_task = asyncio.create_task(self._run_sender(wakeup))
        wakeup.set()

    async def _run_sender(self, wakeup: asyncio.Event) -> None:
        while True:
            await wakeup.wait()
            wakeup.clear()
            if not await self._flush():
                await self._close_transport_quietly()
                return
            with self._lock:
                state = self.state
                empty = not self._outbound
            if state == ConnectionState.CLOSED:
                await self._close_transport_quietly()
                return
            if state == ConnectionState.DRAINING and empty:
                return

    async def _flush(self) -> bool:
        """Send queued frames in order. Returns False if the transport failed."""
        while True:
            with self._lock:
                if self.state == ConnectionState.CLOSED or not self._outbound:
                    return True
                frame = self._outbound.popleft()
            try:
                await self._send(frame)
            except Exception as e:
                logger.debug(f"Failed to send to connection {self.connection_id}: {e}")
                self.abort(CLOSE_GOING_AWAY)
                return False

    async def _close_transport_quietly(self) -> None:
        if self._close_transport is None:
            return
        try:
            await self._close_transport(self._close_code)
        except Exception as e:
            logger.debug(f"Failed to close connection {self.connection_id}: {e}")

    # =========================================================================
    # Shutdown paths
    # =========================================================================

    def abort(self, code: int = CLOSE_GOING_AWAY) -> bool:
        """Close from any thread without waiting; the sender closes the transport.

        Returns:
            True if this call closed the connection.
        """
        with self._lock:
            moved = self._close_locked(code)
        if moved:
            self._notify_closed()
            loop, event = self._loop, self._wakeup
            if loop is not None and event is not None and not loop.is_closed():
                try:
                    loop.call_soon_threadsafe(event.set)
                except RuntimeError:
                    pass  # loop stopped between the check and the call
        return moved

    def expire(self) -> bool:
        """Heartbeat missed: ACTIVE -> IDLE -> CLOSED."""
        with self._lock:
            if self.state == ConnectionState.ACTIVE:
                self._transition_locked(ConnectionState.IDLE)
        return self.abort(CLOSE_GOING_AWAY)

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        """Close on the connection's loop: cancel pending sends, close the transport."""
        with self._lock:
            moved = self._close_locked(code)
        if moved:
            self._notify_closed()
        task = self._sender_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if moved:
            await self._close_transport_quietly()

    async def drain(self, timeout: float) -> None:
        """Graceful shutdown: flush queued frames (bounded by ``timeout``), then close."""
        with self._lock:
            if self.state == ConnectionState.ACTIVE:
                self._transition_locked(ConnectionState.DRAINING)
        if self.state == ConnectionState.DRAINING and self._sender_task is not None:
            self._wake()
            try:
                await asyncio.wait_for(asyncio.shield(self._sender_task), timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "[Connection] %s drain timed out with %d frames queued",
                    self.connection_id, len(self._outbound),
                )
        await self.close(CLOSE_GOING_AWAY)
