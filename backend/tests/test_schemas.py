"""Tests for message schemas, conversation keys and status transitions."""
from datetime import datetime

import pytest
from pydantic import ValidationError

from app.messaging.schemas import ConversationKey, DeliveryStatus, Message, can_transition


def _message(**overrides):
    fields = dict(
        id=1,
        senderId=1,
        recipientId=2,
        content="hello",
        createdAt=datetime(2026, 1, 1, 12, 0, 0),
        deliveryStatus=DeliveryStatus.SENT,
    )
    fields.update(overrides)
    return Message(**fields)


class TestCanTransition:
    """Tests for the delivery status state machine."""

    @pytest.mark.parametrize("current,requested", [
        (DeliveryStatus.SENDING, DeliveryStatus.SENT),
        (DeliveryStatus.SENT, DeliveryStatus.DELIVERED),
        (DeliveryStatus.DELIVERED, DeliveryStatus.READ),
        (DeliveryStatus.SENT, DeliveryStatus.READ),
        (DeliveryStatus.SENDING, DeliveryStatus.FAILED),
        (DeliveryStatus.SENT, DeliveryStatus.FAILED),
    ])
    def test_forward_moves_allowed(self, current, requested):
        assert can_transition(current, requested)

    @pytest.mark.parametrize("current,requested", [
        (DeliveryStatus.READ, DeliveryStatus.DELIVERED),
        (DeliveryStatus.DELIVERED, DeliveryStatus.SENT),
        (DeliveryStatus.SENT, DeliveryStatus.SENDING),
        (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED),
        (DeliveryStatus.READ, DeliveryStatus.FAILED),
        (DeliveryStatus.FAILED, DeliveryStatus.DELIVERED),
    ])
    def test_backward_moves_rejected(self, current, requested):
        assert not can_transition(current, requested)

    def test_same_status_allowed(self):
        """Staying put lets other fields (retryCount) change."""
        assert can_transition(DeliveryStatus.SENT, DeliveryStatus.SENT)

    def test_failed_to_sending_only_on_resend(self):
        assert not can_transition(DeliveryStatus.FAILED, DeliveryStatus.SENDING)
        assert can_transition(DeliveryStatus.FAILED, DeliveryStatus.SENDING, resend=True)
        assert not can_transition(DeliveryStatus.FAILED, DeliveryStatus.SENT, resend=True)

    def test_accepts_raw_strings(self):
        assert can_transition("sent", "read")


class TestConversationKey:
    """Tests for ConversationKey."""

    def test_order_independent(self):
        assert ConversationKey.for_pair(7, 3) == ConversationKey.for_pair(3, 7)

    def test_job_threads_are_distinct(self):
        general = ConversationKey.for_pair(1, 2)
        job = ConversationKey.for_pair(1, 2, job_id=5)
        assert general != job
        assert str(general) == "1:2"
        assert str(job) == "1:2:job:5"

    def test_parse(self):
        assert ConversationKey.parse("2:9:job:4") == ConversationKey(2, 9, 4)
        assert ConversationKey.parse("9:2") == ConversationKey(2, 9)

    @pytest.mark.parametrize("raw", ["", "1", "a:b", "1:2:job", "1:2:x:3"])
    def test_parse_rejects_garbage(self, raw):
        with pytest.raises(ValueError):
            ConversationKey.parse(raw)

    def test_other_and_involves(self):
        key = ConversationKey.for_pair(4, 8)
        assert key.involves(4) and key.involves(8)
        assert not key.involves(5)
        assert key.other(4) == 8
        assert key.other(8) == 4
        with pytest.raises(ValueError):
            key.other(5)


class TestMessage:
    """Tests for the Message model."""

    def test_conversation_key(self):
        message = _message(senderId=9, recipientId=3, jobId=12)
        assert message.conversation_key == ConversationKey(3, 9, 12)

    def test_read_requires_read_at(self):
        with pytest.raises(ValidationError):
            _message(isRead=True)

    def test_deleted_requires_deleted_at(self):
        with pytest.raises(ValidationError):
            _message(isDeleted=True)

    def test_edited_requires_edited_at(self):
        with pytest.raises(ValidationError):
            _message(isEdited=True)

    def test_retry_count_not_negative(self):
        with pytest.raises(ValidationError):
            _message(retryCount=-1)

    def test_sort_key_breaks_ties_by_id(self):
        first = _message(id=3)
        second = _message(id=4)
        assert sorted([second, first], key=lambda m: m.sort_key()) == [first, second]
