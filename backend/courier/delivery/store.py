"""DuckDB-backed durable store for users, chats, the message log and acks.

The store is the single persistence collaborator of the delivery core.
It owns the relational schema and exposes narrow operations; it never
decides ordering itself (that is the Sequencer's job) but it does refuse
an append whose ``seq`` is not exactly ``last_seq + 1``.

Database Schema:
    users:             id, display_name, presence, last_seen_at, created_at
    chats:             id, name, is_group, last_seq, created_at, updated_at
    chat_participants: (chat_id, user_id) primary key, joined_at
    messages:          (chat_id, seq) primary key, id, sender_id, content,
                       created_at, client_message_id
    ack_watermarks:    (user_id, chat_id) primary key, seq, updated_at

Thread Safety:
    A DuckDB connection is NOT thread-safe. Each thread gets its own cursor
    (``connection.cursor()``), which DuckDB documents as the supported way to
    share one database between threads. Writes that must be atomic run in an
    explicit transaction on that cursor.

Usage:
    store = DurableStore.get_instance("courier.duckdb")
    store.append_message(chat_id, seq, message)
    messages = store.read_range(chat_id, from_seq_exclusive=0, limit=500)
"""
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Set, Tuple

import duckdb

from .errors import SequenceConflict, StoreError
from .schemas import Chat, Message, PresenceState, User

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id           VARCHAR PRIMARY KEY,
        display_name VARCHAR NOT NULL,
        presence     VARCHAR NOT NULL DEFAULT 'offline',
        last_seen_at DOUBLE,
        created_at   DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id         VARCHAR PRIMARY KEY,
        name       VARCHAR,
        is_group   BOOLEAN NOT NULL DEFAULT FALSE,
        last_seq   BIGINT NOT NULL DEFAULT 0,
        created_at DOUBLE NOT NULL,
        updated_at DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_participants (
        chat_id   VARCHAR NOT NULL,
        user_id   VARCHAR NOT NULL,
        joined_at DOUBLE NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        chat_id           VARCHAR NOT NULL,
        seq               BIGINT NOT NULL,
        id                VARCHAR NOT NULL,
        sender_id         VARCHAR NOT NULL,
        content           VARCHAR NOT NULL,
        created_at        DOUBLE NOT NULL,
        client_message_id VARCHAR,
        PRIMARY KEY (chat_id, seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ack_watermarks (
        user_id    VARCHAR NOT NULL,
        chat_id    VARCHAR NOT NULL,
        seq        BIGINT NOT NULL,
        updated_at DOUBLE NOT NULL,
        PRIMARY KEY (user_id, chat_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_participants_user ON chat_participants(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_client ON messages(chat_id, sender_id, client_message_id)",
)

_USER_COLUMNS = "id, display_name, presence, last_seen_at, created_at"
_MESSAGE_COLUMNS = "id, chat_id, sender_id, seq, content, created_at, client_message_id"


def _prefixed(alias: str, columns: str) -> str:
    return ", ".join(f"{alias}.{col.strip()}" for col in columns.split(","))


# Message reads join the sender: messages m LEFT JOIN users u
_MESSAGE_SELECT = f"{_prefixed('m', _MESSAGE_COLUMNS)}, {_prefixed('u', _USER_COLUMNS)}"


def _row_to_user(row: Tuple) -> User:
    return User(
        id=row[0],
        displayName=row[1],
        presenceState=PresenceState(row[2]),
        lastSeenAt=row[3],
        createdAt=row[4],
    )


def _row_to_message(row: Tuple) -> Message:
    """Build a Message from ``_MESSAGE_SELECT`` (or bare ``_MESSAGE_COLUMNS``) values."""
    sender = _row_to_user(row[7:12]) if len(row) > 7 and row[7] is not None else None
    return Message(
        id=row[0],
        chatId=row[1],
        senderId=row[2],
        seq=row[3],
        content=row[4],
        createdAt=row[5],
        clientMessageId=row[6],
        sender=sender,
    )


def _placeholders(values: Iterable) -> str:
    return ", ".join("?" for _ in values)


class DurableStore:
    """Singleton-style persistence service over one DuckDB database.

    Attributes:
        _instance: Process-wide instance returned by ``get_instance``.
        _db_path: Path to the DuckDB file (``:memory:`` for tests).
    """

    _instance: Optional["DurableStore"] = None
    _db_path: str = "courier.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database, create the schema and repair ``last_seq``.

        Args:
            db_path: Path to the DuckDB file. Defaults to "courier.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._local = threading.local()
        self._cursors: List[duckdb.DuckDBPyConnection] = []
        self._cursors_lock = threading.Lock()
        self._initialize_db()
        repaired = self.recover_sequences()
        logger.info("[DurableStore] Initialized with db=%s (repaired %d chats)", self._db_path, repaired)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "DurableStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton instance (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    # -----------------------------------------------------------------------
    # Connection handling
    # -----------------------------------------------------------------------

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        """Return this thread's cursor, creating it on first use."""
        cursor = getattr(self._local, "cursor", None)
        if cursor is None:
            with self._cursors_lock:
                cursor = self._get_connection().cursor()
                self._cursors.append(cursor)
            self._local.cursor = cursor
        return cursor

    def _initialize_db(self) -> None:
        cursor = self._cursor()
        for statement in _SCHEMA:
            cursor.execute(statement)

    def close(self) -> None:
        """Close every cursor and the root connection."""
        with self._cursors_lock:
            for cursor in self._cursors:
                cursor.close()
            self._cursors = []
            if self._connection is not None:
                self._connection.close()
                self._connection = None
        self._local = threading.local()

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def create_user(self, display_name: str, user_id: Optional[str] = None) -> User:
        user = User(displayName=display_name) if user_id is None else User(id=user_id, displayName=display_name)
        self._cursor().execute(
            f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            [user.id, user.displayName, user.presenceState.value, user.lastSeenAt, user.createdAt],
        )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._cursor().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id]
        ).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self, exclude_user_id: Optional[str] = None) -> List[User]:
        rows = self._cursor().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id IS DISTINCT FROM ? ORDER BY display_name, id",
            [exclude_user_id],
        ).fetchall()
        return [_row_to_user(r) for r in rows]

    def existing_user_ids(self, user_ids: Iterable[str]) -> Set[str]:
        ids = list(user_ids)
        if not ids:
            return set()
        rows = self._cursor().execute(
            f"SELECT id FROM users WHERE id IN ({_placeholders(ids)})", ids
        ).fetchall()
        return {r[0] for r in rows}

    def set_presence(
        self, user_id: str, presence: PresenceState, last_seen_at: Optional[float] = None
    ) -> None:
        if last_seen_at is None:
            self._cursor().execute(
                "UPDATE users SET presence = ? WHERE id = ?", [presence.value, user_id]
            )
        else:
            self._cursor().execute(
                "UPDATE users SET presence = ?, last_seen_at = ? WHERE id = ?",
                [presence.value, last_seen_at, user_id],
            )

    # -----------------------------------------------------------------------
    # Chats
    # -----------------------------------------------------------------------

    def create_chat(self, chat: Chat) -> Chat:
        """Insert a chat and its participants in one transaction."""
        cursor = self._cursor()
        cursor.begin()
        try:
            cursor.execute(
                """
                INSERT INTO chats (id, name, is_group, last_seq, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                [chat.id, chat.name, chat.isGroup, chat.createdAt, chat.updatedAt],
            )
            for user_id in chat.participantIds:
                cursor.execute(
                    "INSERT INTO chat_participants (chat_id, user_id, joined_at) VALUES (?, ?, ?)",
                    [chat.id, user_id, chat.createdAt],
                )
            cursor.commit()
        except duckdb.Error as exc:
            cursor.rollback()
            raise StoreError(f"Could not create chat {chat.id}: {exc}") from exc
        return chat

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        cursor = self._cursor()
        row = cursor.execute(
            "SELECT id, name, is_group, last_seq, created_at, updated_at FROM chats WHERE id = ?",
            [chat_id],
        ).fetchone()
        if row is None:
            return None
        participants = cursor.execute(
            "SELECT user_id FROM chat_participants WHERE chat_id = ? ORDER BY joined_at, user_id",
            [chat_id],
        ).fetchall()
        return Chat(
            id=row[0],
            name=row[1],
            isGroup=row[2],
            lastSeq=row[3],
            createdAt=row[4],
            updatedAt=row[5],
            participantIds=[p[0] for p in participants],
        )

    def last_seq(self, chat_id: str) -> Optional[int]:
        """Return the chat's ``last_seq``, or None when the chat does not exist."""
        row = self._cursor().execute(
            "SELECT last_seq FROM chats WHERE id = ?", [chat_id]
        ).fetchone()
        return row[0] if row else None

    def chat_participants(self, chat_id: str) -> Set[str]:
        rows = self._cursor().execute(
            "SELECT user_id FROM chat_participants WHERE chat_id = ?", [chat_id]
        ).fetchall()
        return {r[0] for r in rows}

    def is_participant(self, chat_id: str, user_id: str) -> bool:
        row = self._cursor().execute(
            "SELECT 1 FROM chat_participants WHERE chat_id = ? AND user_id = ?",
            [chat_id, user_id],
        ).fetchone()
        return row is not None

    def chat_ids_for_user(self, user_id: str) -> List[str]:
        rows = self._cursor().execute(
            """
            SELECT p.chat_id FROM chat_participants p
            JOIN chats c ON c.id = p.chat_id
            WHERE p.user_id = ?
            ORDER BY c.updated_at DESC, c.id
            """,
            [user_id],
        ).fetchall()
        return [r[0] for r in rows]

    def chats_with_last_message(self, user_id: str) -> List[Tuple[Chat, Optional[Message]]]:
        """List the user's chats, newest activity first, with their last message.

        The last message is found through the ``last_seq`` pointer and the
        ``(chat_id, seq)`` primary key, one indexed lookup per chat. The
        returned chats carry no ``participantIds``; see ``participants_for_chats``.
        """
        rows = self._cursor().execute(
            f"""
            SELECT c.id, c.name, c.is_group, c.last_seq, c.created_at, c.updated_at,
                   {_MESSAGE_SELECT}
            FROM chat_participants p
            JOIN chats c ON c.id = p.chat_id
            LEFT JOIN messages m ON m.chat_id = c.id AND m.seq = c.last_seq
            LEFT JOIN users u ON u.id = m.sender_id
            WHERE p.user_id = ?
            ORDER BY c.updated_at DESC, c.id
            """,
            [user_id],
        ).fetchall()

        result = []
        for row in rows:
            chat = Chat(
                id=row[0],
                name=row[1],
                isGroup=row[2],
                lastSeq=row[3],
                createdAt=row[4],
                updatedAt=row[5],
            )
            last_message = _row_to_message(row[6:]) if row[6] is not None else None
            result.append((chat, last_message))
        return result

    def participants_for_chats(self, chat_ids: List[str]) -> Dict[str, List[User]]:
        if not chat_ids:
            return {}
        rows = self._cursor().execute(
            f"""
            SELECT p.chat_id, {_prefixed('u', _USER_COLUMNS)}
            FROM chat_participants p
            JOIN users u ON u.id = p.user_id
            WHERE p.chat_id IN ({_placeholders(chat_ids)})
            ORDER BY p.joined_at, u.id
            """,
            chat_ids,
        ).fetchall()
        by_chat: Dict[str, List[User]] = {}
        for row in rows:
            by_chat.setdefault(row[0], []).append(_row_to_user(row[1:]))
        return by_chat

    # -----------------------------------------------------------------------
    # Message log
    # -----------------------------------------------------------------------

    def append_message(self, chat_id: str, seq: int, message: Message) -> Message:
        """Persist a message and bump the chat's ``last_seq`` atomically.

        Raises:
            SequenceConflict: ``seq`` is not ``last_seq + 1`` (or the chat vanished).
            StoreError: The database rejected the write.
        """
        cursor = self._cursor()
        cursor.begin()
        try:
            bumped = cursor.execute(
                """
                UPDATE chats SET last_seq = ?, updated_at = ?
                WHERE id = ? AND last_seq = ?
                RETURNING last_seq
                """,
                [seq, message.createdAt, chat_id, seq - 1],
            ).fetchone()
            if bumped is None:
                raise SequenceConflict(f"Chat {chat_id} is not at seq {seq - 1}")
            cursor.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    message.id,
                    chat_id,
                    message.senderId,
                    seq,
                    message.content,
                    message.createdAt,
                    message.clientMessageId,
                ],
            )
            cursor.commit()
        except SequenceConflict:
            cursor.rollback()
            raise
        except duckdb.Error as exc:
            cursor.rollback()
            raise StoreError(f"Append to chat {chat_id} at seq {seq} failed: {exc}") from exc
        return message

    def read_range(self, chat_id: str, from_seq_exclusive: int, limit: int) -> List[Message]:
        """Return up to ``limit`` messages with ``seq > from_seq_exclusive``, ascending."""
        rows = self._cursor().execute(
            f"""
            SELECT {_MESSAGE_SELECT}
            FROM messages m LEFT JOIN users u ON u.id = m.sender_id
            WHERE m.chat_id = ? AND m.seq > ?
            ORDER BY m.seq ASC
            LIMIT ?
            """,
            [chat_id, from_seq_exclusive, limit],
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def find_by_client_message_id(
        self, chat_id: str, sender_id: str, client_message_id: str
    ) -> Optional[Message]:
        row = self._cursor().execute(
            f"""
            SELECT {_MESSAGE_SELECT}
            FROM messages m LEFT JOIN users u ON u.id = m.sender_id
            WHERE m.chat_id = ? AND m.sender_id = ? AND m.client_message_id = ?
            ORDER BY m.seq ASC
            LIMIT 1
            """,
            [chat_id, sender_id, client_message_id],
        ).fetchone()
        return _row_to_message(row) if row else None

    def recover_sequences(self) -> int:
        """Recompute ``last_seq`` from ``max(seq)`` where they disagree.

        Returns:
            Number of chats whose counter was repaired.
        """
        cursor = self._cursor()
        stale = cursor.execute(
            """
            SELECT c.id, m.max_seq FROM chats c
            JOIN (SELECT chat_id, MAX(seq) AS max_seq FROM messages GROUP BY chat_id) m
              ON m.chat_id = c.id
            WHERE c.last_seq <> m.max_seq
            """
        ).fetchall()
        for chat_id, max_seq in stale:
            logger.warning("[DurableStore] Repairing last_seq of chat %s to %d", chat_id, max_seq)
            cursor.execute("UPDATE chats SET last_seq = ? WHERE id = ?", [max_seq, chat_id])
        return len(stale)

    # -----------------------------------------------------------------------
    # Ack watermarks
    # -----------------------------------------------------------------------

    def get_watermark(self, user_id: str, chat_id: str) -> int:
        row = self._cursor().execute(
            "SELECT seq FROM ack_watermarks WHERE user_id = ? AND chat_id = ?",
            [user_id, chat_id],
        ).fetchone()
        return row[0] if row else 0

    def raise_watermark(self, user_id: str, chat_id: str, seq: int) -> int:
        """Store ``max(current, seq)`` and return the stored value."""
        cursor = self._cursor()
        now = time.time()
        cursor.execute(
            """
            INSERT INTO ack_watermarks (user_id, chat_id, seq, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            [user_id, chat_id, seq, now],
        )
        # Only ever moves forward, even with concurrent writers
        cursor.execute(
            """
            UPDATE ack_watermarks SET seq = ?, updated_at = ?
            WHERE user_id = ? AND chat_id = ? AND seq < ?
            """,
            [seq, now, user_id, chat_id, seq],
        )
        return self.get_watermark(user_id, chat_id)

    def watermarks_for_chat(self, chat_id: str) -> Dict[str, int]:
        rows = self._cursor().execute(
            "SELECT user_id, seq FROM ack_watermarks WHERE chat_id = ?", [chat_id]
        ).fetchall()
        return {r[0]: r[1] for r in rows}
