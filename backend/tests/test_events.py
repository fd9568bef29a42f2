"""Tests for the live channel frame and event codec."""
from datetime import datetime

import pytest

from app.messaging.errors import ValidationError
from app.messaging.events import (
    AuthenticateFrame,
    HeartbeatFrame,
    MessageReadFrame,
    MessageStatusEvent,
    RoomJoinFrame,
    TypingStartFrame,
    decode_event,
    decode_frame,
    encode_event,
)
from app.messaging.schemas import ConversationKey, DeliveryStatus


class TestDecodeFrame:
    """Tests for client frame decoding."""

    def test_authenticate(self):
        frame = decode_frame({"type": "authenticate", "userId": 5})
        assert isinstance(frame, AuthenticateFrame)
        assert frame.userId == 5

    def test_heartbeat(self):
        assert isinstance(decode_frame({"type": "heartbeat"}), HeartbeatFrame)

    def test_conversation_frames(self):
        frame = decode_frame({"type": "room:join", "recipientId": 3, "jobId": 8})
        assert isinstance(frame, RoomJoinFrame)
        assert frame.key_for(9) == ConversationKey(3, 9, 8)

        typing = decode_frame({"type": "typing:start", "recipientId": 3})
        assert isinstance(typing, TypingStartFrame)
        assert typing.key_for(1) == ConversationKey(1, 3)

    def test_message_read(self):
        frame = decode_frame({"type": "message:read", "messageId": 12})
        assert isinstance(frame, MessageReadFrame)

    @pytest.mark.parametrize("data", [
        {"type": "shout"},
        {"userId": 1},
        {"type": "authenticate"},
        {"type": "authenticate", "userId": 0},
        {"type": "room:join"},
        {"type": "message:read", "messageId": "abc"},
        "not a dict",
    ])
    def test_invalid_frames(self, data):
        with pytest.raises(ValidationError) as exc_info:
            decode_frame(data)
        assert exc_info.value.status_code == 400


class TestEvents:
    """Tests for server event encoding."""

    def test_status_event_wire_shape(self):
        payload = encode_event(MessageStatusEvent(
            conversationKey="1:2",
            messageId=4,
            status=DeliveryStatus.READ,
            readAt=datetime(2026, 1, 1, 8, 30),
        ))
        assert payload == {
            "type": "message:status",
            "conversationKey": "1:2",
            "messageId": 4,
            "status": "read",
            "retryCount": 0,
            "resendCount": 0,
            "readAt": "2026-01-01T08:30:00",
        }
        decoded = decode_event(payload)
        assert isinstance(decoded, MessageStatusEvent)
        assert decoded.status == DeliveryStatus.READ

    def test_unknown_event(self):
        with pytest.raises(ValidationError):
            decode_event({"type": "mystery"})
