"""Tests for the DuckDB durable store."""
import os
import tempfile

import pytest

from courier.delivery.errors import SequenceConflict
from courier.delivery.schemas import Chat, Message, PresenceState
from courier.delivery.store import DurableStore


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    # DuckDB creates the file itself; only reserve a name
    db_path = tempfile.mktemp(suffix=".duckdb")

    yield db_path

    DurableStore.reset_instance()
    for path in (db_path, db_path + ".wal"):
        if os.path.exists(path):
            os.remove(path)


def _chat(store, *user_ids, is_group=False):
    for user_id in user_ids:
        if store.get_user(user_id) is None:
            store.create_user(user_id.capitalize(), user_id=user_id)
    return store.create_chat(Chat(isGroup=is_group, participantIds=list(user_ids)))


def _message(chat_id, seq, sender="alice", content="hi", client_message_id=None):
    return Message(
        chatId=chat_id,
        senderId=sender,
        seq=seq,
        content=content,
        clientMessageId=client_message_id,
    )


class TestUsers:
    def test_create_and_get_user(self, store):
        user = store.create_user("Alice", user_id="alice")

        fetched = store.get_user("alice")
        assert fetched == user
        assert fetched.presenceState == PresenceState.OFFLINE
        assert fetched.lastSeenAt is None

    def test_unknown_user_is_none(self, store):
        assert store.get_user("nobody") is None

    def test_list_users_excludes_caller(self, store):
        for name in ("alice", "bob", "carol"):
            store.create_user(name.capitalize(), user_id=name)

        assert [u.id for u in store.list_users(exclude_user_id="bob")] == ["alice", "carol"]
        assert len(store.list_users()) == 3

    def test_existing_user_ids(self, store):
        store.create_user("Alice", user_id="alice")
        assert store.existing_user_ids(["alice", "ghost"]) == {"alice"}
        assert store.existing_user_ids([]) == set()

    def test_set_presence(self, store):
        store.create_user("Alice", user_id="alice")

        store.set_presence("alice", PresenceState.ONLINE)
        assert store.get_user("alice").presenceState == PresenceState.ONLINE

        store.set_presence("alice", PresenceState.OFFLINE, last_seen_at=1234.5)
        user = store.get_user("alice")
        assert user.presenceState == PresenceState.OFFLINE
        assert user.lastSeenAt == 1234.5


class TestChats:
    def test_create_chat_with_participants(self, store):
        chat = _chat(store, "alice", "bob")

        fetched = store.get_chat(chat.id)
        assert fetched.participantIds == ["alice", "bob"]
        assert fetched.lastSeq == 0
        assert store.chat_participants(chat.id) == {"alice", "bob"}
        assert store.is_participant(chat.id, "alice")
        assert not store.is_participant(chat.id, "carol")

    def test_last_seq_of_unknown_chat_is_none(self, store):
        assert store.last_seq("missing") is None
        assert store.get_chat("missing") is None

    def test_chat_ids_for_user_newest_first(self, store):
        older = _chat(store, "alice", "bob")
        newer = _chat(store, "alice", "carol")
        message = _message(older.id, 1).model_copy(update={"createdAt": newer.createdAt + 10})
        store.append_message(older.id, 1, message)

        # Activity moves a chat to the front
        assert store.chat_ids_for_user("alice")[0] == older.id
        assert set(store.chat_ids_for_user("alice")) == {older.id, newer.id}
        assert store.chat_ids_for_user("carol") == [newer.id]

    def test_chats_with_last_message(self, store):
        busy = _chat(store, "alice", "bob")
        quiet = _chat(store, "alice", "carol")
        store.append_message(busy.id, 1, _message(busy.id, 1, content="first"))
        store.append_message(busy.id, 2, _message(busy.id, 2, content="second", sender="bob"))

        rows = dict((chat.id, last) for chat, last in store.chats_with_last_message("alice"))
        assert rows[busy.id].content == "second"
        assert rows[busy.id].seq == 2
        assert rows[quiet.id] is None

    def test_participants_for_chats(self, store):
        chat = _chat(store, "alice", "bob", "carol", is_group=True)

        members = store.participants_for_chats([chat.id])[chat.id]
        assert sorted(u.id for u in members) == ["alice", "bob", "carol"]
        assert store.participants_for_chats([]) == {}


class TestMessageLog:
    def test_append_bumps_last_seq(self, store):
        chat = _chat(store, "alice", "bob")

        store.append_message(chat.id, 1, _message(chat.id, 1))
        store.append_message(chat.id, 2, _message(chat.id, 2))

        assert store.last_seq(chat.id) == 2

    def test_append_with_gap_is_a_conflict(self, store):
        chat = _chat(store, "alice", "bob")

        with pytest.raises(SequenceConflict):
            store.append_message(chat.id, 2, _message(chat.id, 2))

        assert store.last_seq(chat.id) == 0
        assert store.read_range(chat.id, 0, 10) == []

    def test_append_duplicate_seq_is_a_conflict(self, store):
        chat = _chat(store, "alice", "bob")
        store.append_message(chat.id, 1, _message(chat.id, 1, content="kept"))

        with pytest.raises(SequenceConflict):
            store.append_message(chat.id, 1, _message(chat.id, 1, content="lost"))

        assert [m.content for m in store.read_range(chat.id, 0, 10)] == ["kept"]

    def test_read_range_is_ascending_and_bounded(self, store):
        chat = _chat(store, "alice", "bob")
        for seq in range(1, 8):
            store.append_message(chat.id, seq, _message(chat.id, seq, content=f"m{seq}"))

        page = store.read_range(chat.id, 2, 3)
        assert [m.seq for m in page] == [3, 4, 5]
        assert store.read_range(chat.id, 7, 10) == []

    def test_reads_join_the_sender(self, store):
        chat = _chat(store, "alice", "bob")
        store.append_message(chat.id, 1, _message(chat.id, 1, client_message_id="c-1"))

        [message] = store.read_range(chat.id, 0, 10)
        assert message.sender.id == "alice"
        assert message.sender.displayName == "Alice"
        assert store.find_by_client_message_id(chat.id, "alice", "c-1").sender.id == "alice"
        [(_, last_message)] = store.chats_with_last_message("bob")
        assert last_message.sender.displayName == "Alice"

    def test_find_by_client_message_id(self, store):
        chat = _chat(store, "alice", "bob")
        store.append_message(chat.id, 1, _message(chat.id, 1, client_message_id="c-1"))

        assert store.find_by_client_message_id(chat.id, "alice", "c-1").seq == 1
        assert store.find_by_client_message_id(chat.id, "bob", "c-1") is None

    def test_recover_sequences_repairs_stale_counter(self, temp_db):
        store = DurableStore(temp_db)
        chat = _chat(store, "alice", "bob")
        for seq in (1, 2, 3):
            store.append_message(chat.id, seq, _message(chat.id, seq))
        # Simulate a counter that fell behind the log
        store._cursor().execute("UPDATE chats SET last_seq = 1 WHERE id = ?", [chat.id])
        store.close()

        reopened = DurableStore(temp_db)
        try:
            assert reopened.last_seq(chat.id) == 3
            assert [m.seq for m in reopened.read_range(chat.id, 0, 10)] == [1, 2, 3]
        finally:
            reopened.close()

    def test_messages_survive_reopen(self, temp_db):
        store = DurableStore.get_instance(temp_db)
        chat = _chat(store, "alice", "bob")
        store.append_message(chat.id, 1, _message(chat.id, 1, content="durable"))
        DurableStore.reset_instance()

        store = DurableStore.get_instance(temp_db)
        assert store.read_range(chat.id, 0, 10)[0].content == "durable"
        assert store.get_chat(chat.id).lastSeq == 1


class TestWatermarks:
    def test_default_watermark_is_zero(self, store):
        chat = _chat(store, "alice", "bob")
        assert store.get_watermark("alice", chat.id) == 0

    def test_raise_watermark_never_lowers(self, store):
        chat = _chat(store, "alice", "bob")

        assert store.raise_watermark("alice", chat.id, 5) == 5
        assert store.raise_watermark("alice", chat.id, 3) == 5
        assert store.raise_watermark("alice", chat.id, 7) == 7

    def test_watermarks_for_chat(self, store):
        chat = _chat(store, "alice", "bob")
        store.raise_watermark("alice", chat.id, 4)
        store.raise_watermark("bob", chat.id, 2)

        assert store.watermarks_for_chat(chat.id) == {"alice": 4, "bob": 2}
