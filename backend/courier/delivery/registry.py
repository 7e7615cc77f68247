"""Registry of live connections, keyed by user and by connection id.

The registry is the sole owner of the live-handle mapping. One user may
hold several connections at once (one per device). All mutations happen
under one lock; reads return immutable snapshots so callers can iterate
without holding it.
"""
import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from .connection import ConnectionHandle
from .schemas import ConnectionState

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks live ConnectionHandles per user.

    Args:
        clock: Monotonic clock; must match the clock the handles use.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()

        # connection_id -> handle
        self._by_id: Dict[str, ConnectionHandle] = {}

        # user_id -> set of connection ids
        self._by_user: Dict[str, Set[str]] = {}

    def register(self, user_id: str, handle: ConnectionHandle) -> ConnectionHandle:
        """Add a handle for ``user_id`` and return it.

        The caller builds the handle (``DeliveryService.new_connection``)
        because it carries the transport callables; the registry takes its
        ``connection_id`` as the key instead of minting one.

        Raises:
            ValueError: The handle belongs to another user or its id is taken.
        """
        if handle.user_id != user_id:
            raise ValueError(
                f"Connection {handle.connection_id} belongs to {handle.user_id}, not {user_id}"
            )
        with self._lock:
            if handle.connection_id in self._by_id:
                raise ValueError(f"Connection already registered: {handle.connection_id}")
            self._by_id[handle.connection_id] = handle
            self._by_user.setdefault(user_id, set()).add(handle.connection_id)
            count = len(self._by_user[user_id])
        handle.touch()
        logger.info(
            "[Registry] Registered %s for user %s (%d live connection(s))",
            handle.connection_id, user_id, count,
        )
        return handle

    def unregister(self, connection_id: str) -> Tuple[Optional[ConnectionHandle], bool]:
        """Remove a connection.

        Returns:
            Tuple of (handle, was_last):
            - handle: The removed handle, or None if it was not registered.
            - was_last: True if the user has no live connection left.
        """
        with self._lock:
            handle = self._by_id.pop(connection_id, None)
            if handle is None:
                return (None, False)
            user_connections = self._by_user.get(handle.user_id, set())
            user_connections.discard(connection_id)
            was_last = not user_connections
            if was_last:
                self._by_user.pop(handle.user_id, None)
        logger.info(
            "[Registry] Unregistered %s for user %s (last=%s)",
            connection_id, handle.user_id, was_last,
        )
        return (handle, was_last)

    def get(self, connection_id: str) -> Optional[ConnectionHandle]:
        with self._lock:
            return self._by_id.get(connection_id)

    def connections_for(self, user_id: str) -> FrozenSet[ConnectionHandle]:
        """Snapshot of the user's live connections."""
        with self._lock:
            return frozenset(self._by_id[cid] for cid in self._by_user.get(user_id, ()))

    def all_connections(self) -> List[ConnectionHandle]:
        with self._lock:
            return list(self._by_id.values())

    def touch(self, connection_id: str, now: Optional[float] = None) -> bool:
        """Refresh a connection's heartbeat. Returns False if unknown."""
        handle = self.get(connection_id)
        if handle is None:
            return False
        handle.touch(self._clock() if now is None else now)
        return True

    def expired(self, timeout_seconds: float, now: Optional[float] = None) -> List[ConnectionHandle]:
        """Connections silent for longer than ``timeout_seconds``."""
        now = self._clock() if now is None else now
        return [
            handle for handle in self.all_connections()
            if handle.state != ConnectionState.CLOSED and now - handle.last_seen > timeout_seconds
        ]

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return bool(self._by_user.get(user_id))

    def user_count(self) -> int:
        with self._lock:
            return len(self._by_user)

    def connection_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is None:
                return len(self._by_id)
            return len(self._by_user.get(user_id, ()))
