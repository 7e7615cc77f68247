"""Tests for delivery watermarks."""
import pytest

from courier.delivery.acknowledger import DeliveryAcknowledger
from courier.delivery.errors import ChatNotFound, NotAParticipant, ValidationError
from courier.delivery.schemas import Chat
from courier.delivery.sequencer import Sequencer


@pytest.fixture
def chat(store):
    for name in ("alice", "bob", "carol", "dave"):
        store.create_user(name.capitalize(), user_id=name)
    chat = store.create_chat(Chat(isGroup=True, participantIds=["alice", "bob", "carol"]))
    sequencer = Sequencer(store, sleep=lambda _: None)
    for i in range(10):
        sequencer.append(chat.id, "alice", f"m{i}")
    return chat


@pytest.fixture
def acknowledger(store):
    return DeliveryAcknowledger(store)


def test_watermark_starts_at_zero(acknowledger, chat):
    assert acknowledger.watermark("bob", chat.id) == 0


def test_ack_is_monotonic(acknowledger, chat):
    assert acknowledger.ack("bob", chat.id, 5) == 5
    assert acknowledger.ack("bob", chat.id, 3) == 5
    assert acknowledger.watermark("bob", chat.id) == 5


def test_devices_converge_on_highest_ack(acknowledger, chat):
    # Two devices of the same user acking out of order
    for seq in (2, 7, 4, 6):
        acknowledger.ack("bob", chat.id, seq)

    assert acknowledger.watermark("bob", chat.id) == 7


def test_ack_zero_is_allowed(acknowledger, chat):
    assert acknowledger.ack("bob", chat.id, 0) == 0


def test_ack_beyond_last_seq_rejected(acknowledger, chat):
    with pytest.raises(ValidationError):
        acknowledger.ack("bob", chat.id, 11)
    assert acknowledger.watermark("bob", chat.id) == 0


def test_negative_ack_rejected(acknowledger, chat):
    with pytest.raises(ValidationError):
        acknowledger.ack("bob", chat.id, -1)


def test_ack_unknown_chat(acknowledger, chat):
    with pytest.raises(ChatNotFound):
        acknowledger.ack("bob", "missing", 1)


def test_ack_by_non_participant(acknowledger, chat):
    with pytest.raises(NotAParticipant):
        acknowledger.ack("dave", chat.id, 1)


def test_seen_by(acknowledger, chat):
    acknowledger.ack("alice", chat.id, 10)
    acknowledger.ack("bob", chat.id, 6)

    assert acknowledger.seen_by(chat.id, 6) == ["alice", "bob"]
    assert acknowledger.seen_by(chat.id, 8) == ["alice"]
    assert acknowledger.seen_by(chat.id, 1) == ["alice", "bob"]


def test_seen_by_unknown_chat(acknowledger):
    with pytest.raises(ChatNotFound):
        acknowledger.seen_by("missing", 1)
