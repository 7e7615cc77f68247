"""Tests for per-chat sequencing, validation, retries and resend dedup."""
import threading
from unittest.mock import MagicMock

import pytest

from courier.delivery.errors import (
    ChatNotFound,
    NotAParticipant,
    PersistenceError,
    SequenceConflict,
    StoreError,
    ValidationError,
)
from courier.delivery.schemas import Chat
from courier.delivery.sequencer import Sequencer, normalize_content


@pytest.fixture
def chat(store):
    for name in ("alice", "bob", "carol"):
        store.create_user(name.capitalize(), user_id=name)
    return store.create_chat(Chat(participantIds=["alice", "bob"]))


@pytest.fixture
def sequencer(store):
    return Sequencer(store, sleep=lambda _: None)


class TestContent:
    def test_content_is_trimmed(self):
        assert normalize_content("  hi there \n") == "hi there"

    @pytest.mark.parametrize("content", ["", "   ", "\n\t", None])
    def test_empty_content_rejected(self, content):
        with pytest.raises(ValidationError):
            normalize_content(content)

    def test_5000_characters_accepted(self, sequencer, chat):
        message = sequencer.append(chat.id, "alice", "x" * 5000)
        assert len(message.content) == 5000

    def test_5001_characters_rejected(self, sequencer, chat, store):
        with pytest.raises(ValidationError):
            sequencer.append(chat.id, "alice", "x" * 5001)
        assert store.last_seq(chat.id) == 0

    def test_length_counted_after_trimming(self, sequencer, chat):
        message = sequencer.append(chat.id, "alice", "  " + "x" * 5000 + "  ")
        assert len(message.content) == 5000


class TestSequencing:
    def test_seqs_are_contiguous_from_one(self, sequencer, chat, store):
        seqs = [sequencer.append(chat.id, "alice", f"m{i}").seq for i in range(5)]

        assert seqs == [1, 2, 3, 4, 5]
        assert store.last_seq(chat.id) == 5

    def test_chats_are_sequenced_independently(self, sequencer, chat, store):
        other = store.create_chat(Chat(participantIds=["alice", "carol"]))

        assert sequencer.append(chat.id, "alice", "a").seq == 1
        assert sequencer.append(other.id, "alice", "b").seq == 1
        assert sequencer.append(chat.id, "bob", "c").seq == 2

    def test_next_seq(self, sequencer, chat):
        assert sequencer.next_seq(chat.id) == 1
        sequencer.append(chat.id, "alice", "hi")
        assert sequencer.next_seq(chat.id) == 2

    def test_concurrent_senders_get_unique_contiguous_seqs(self, sequencer, chat, store):
        per_thread = 20
        results = []
        results_lock = threading.Lock()

        def send(sender):
            for i in range(per_thread):
                message = sequencer.append(chat.id, sender, f"{sender}-{i}")
                with results_lock:
                    results.append(message.seq)

        threads = [threading.Thread(target=send, args=(s,)) for s in ("alice", "bob") * 3]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        total = per_thread * len(threads)
        assert sorted(results) == list(range(1, total + 1))
        assert store.last_seq(chat.id) == total
        assert [m.seq for m in store.read_range(chat.id, 0, total)] == list(range(1, total + 1))

    def test_on_sequenced_sees_increasing_seqs(self, sequencer, chat):
        seen = []
        threads = [
            threading.Thread(
                target=lambda: [
                    sequencer.append(chat.id, "alice", "x", on_sequenced=lambda m: seen.append(m.seq))
                    for _ in range(10)
                ]
            )
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert seen == list(range(1, 41))

    def test_on_sequenced_failure_does_not_fail_the_send(self, sequencer, chat, store):
        def broken(_message):
            raise RuntimeError("push failed")

        message = sequencer.append(chat.id, "alice", "hi", on_sequenced=broken)

        assert message.seq == 1
        assert store.last_seq(chat.id) == 1


class TestRejections:
    def test_unknown_chat(self, sequencer):
        with pytest.raises(ChatNotFound):
            sequencer.append("missing", "alice", "hi")

    def test_non_participant_leaves_last_seq_unchanged(self, sequencer, chat, store):
        sequencer.append(chat.id, "alice", "hi")

        with pytest.raises(NotAParticipant):
            sequencer.append(chat.id, "carol", "let me in")

        assert store.last_seq(chat.id) == 1
        assert sequencer.append(chat.id, "bob", "next").seq == 2


class TestRetries:
    def test_transient_store_error_is_retried(self, store, chat):
        sleeps = []
        sequencer = Sequencer(store, max_attempts=3, backoff_seconds=0.1, sleep=sleeps.append)
        real_append = store.append_message
        calls = {"n": 0}

        def flaky(chat_id, seq, message):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StoreError("disk hiccup")
            return real_append(chat_id, seq, message)

        store.append_message = flaky
        message = sequencer.append(chat.id, "alice", "hi")

        assert message.seq == 1
        assert sleeps == [0.1]
        assert store.last_seq(chat.id) == 1

    def test_exhausted_retries_raise_persistence_error(self, chat):
        store = MagicMock()
        store.last_seq.return_value = 0
        store.is_participant.return_value = True
        store.append_message.side_effect = StoreError("disk full")
        sleeps = []
        sequencer = Sequencer(store, max_attempts=3, backoff_seconds=0.05, sleep=sleeps.append)
        pushed = []

        with pytest.raises(PersistenceError):
            sequencer.append(chat.id, "alice", "hi", on_sequenced=pushed.append)

        assert store.append_message.call_count == 3
        assert sleeps == [0.05, 0.1]
        assert pushed == []

    def test_failed_append_consumes_no_seq(self, store, chat):
        sequencer = Sequencer(store, max_attempts=2, sleep=lambda _: None)
        real_append = store.append_message
        store.append_message = MagicMock(side_effect=StoreError("locked"))

        with pytest.raises(PersistenceError):
            sequencer.append(chat.id, "alice", "lost")

        store.append_message = real_append
        assert store.last_seq(chat.id) == 0
        assert sequencer.append(chat.id, "alice", "kept").seq == 1

    def test_sequence_conflict_restamps_seq(self, store, chat):
        sequencer = Sequencer(store, sleep=lambda _: None)
        real_append = store.append_message
        attempted = []

        def racing(chat_id, seq, message):
            attempted.append(seq)
            if len(attempted) == 1:
                # Another process appended first
                real_append(chat_id, seq, message.model_copy(update={"id": "other"}))
                raise SequenceConflict("moved")
            return real_append(chat_id, seq, message)

        store.append_message = racing
        message = sequencer.append(chat.id, "alice", "hi")

        assert attempted == [1, 2]
        assert message.seq == 2


class TestResendDedup:
    def test_same_client_message_id_returns_original(self, sequencer, chat, store):
        first = sequencer.append(chat.id, "alice", "hi", client_message_id="c-1")
        again = sequencer.append(chat.id, "alice", "hi", client_message_id="c-1")

        assert again.id == first.id
        assert again.seq == first.seq == 1
        assert store.last_seq(chat.id) == 1

    def test_resend_is_not_fanned_out_again(self, sequencer, chat):
        pushed = []
        sequencer.append(chat.id, "alice", "hi", client_message_id="c-1", on_sequenced=pushed.append)
        sequencer.append(chat.id, "alice", "hi", client_message_id="c-1", on_sequenced=pushed.append)

        assert [m.seq for m in pushed] == [1]

    def test_dedup_survives_cache_eviction(self, store, chat):
        sequencer = Sequencer(store, dedup_cache_size=1, sleep=lambda _: None)
        first = sequencer.append(chat.id, "alice", "one", client_message_id="c-1")
        sequencer.append(chat.id, "alice", "two", client_message_id="c-2")

        # Evicted from memory, still found in the store
        assert sequencer.append(chat.id, "alice", "one", client_message_id="c-1").id == first.id

    def test_client_message_id_is_per_sender(self, sequencer, chat):
        a = sequencer.append(chat.id, "alice", "hi", client_message_id="same")
        b = sequencer.append(chat.id, "bob", "hi", client_message_id="same")

        assert (a.seq, b.seq) == (1, 2)
