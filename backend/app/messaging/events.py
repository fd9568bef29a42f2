"""Live channel protocol: typed client frames and server events.

Both directions are pydantic discriminated unions keyed on ``type``. Raw
JSON is decoded and validated here, at the transport boundary, so nothing
past the WebSocket endpoint ever sees an untyped dict.

Client -> server frames:
    - authenticate: First frame on every connection
    - heartbeat: Liveness ping
    - room:join / room:leave: Open or close a conversation thread
    - typing:start / typing:stop: Typing indicator
    - message:read: Read receipt for one message

Server -> client events:
    - connected, heartbeat:ack, error: Connection control
    - message:new, message:status, message:updated: Message delivery
    - typing:start, typing:stop: Room-scoped typing indicator
    - presence:online, presence:offline: Counterpart presence
"""
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .schemas import ConversationKey, DeliveryStatus, Message


# =============================================================================
# Client -> server
# =============================================================================


class AuthenticateFrame(BaseModel):
    type: Literal["authenticate"] = "authenticate"
    userId: int = Field(..., gt=0)


class HeartbeatFrame(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"


class _ConversationFrame(BaseModel):
    """Frame that addresses a conversation with the other participant."""
    recipientId: int = Field(..., gt=0)
    jobId: Optional[int] = None

    def key_for(self, user_id: int) -> ConversationKey:
        return ConversationKey.for_pair(user_id, self.recipientId, self.jobId)


class RoomJoinFrame(_ConversationFrame):
    type: Literal["room:join"] = "room:join"


class RoomLeaveFrame(_ConversationFrame):
    type: Literal["room:leave"] = "room:leave"


class TypingStartFrame(_ConversationFrame):
    type: Literal["typing:start"] = "typing:start"


class TypingStopFrame(_ConversationFrame):
    type: Literal["typing:stop"] = "typing:stop"


class MessageReadFrame(BaseModel):
    type: Literal["message:read"] = "message:read"
    messageId: int = Field(..., gt=0)


ClientFrame = Annotated[
    Union[
        AuthenticateFrame,
        HeartbeatFrame,
        RoomJoinFrame,
        RoomLeaveFrame,
        TypingStartFrame,
        TypingStopFrame,
        MessageReadFrame,
    ],
    Field(discriminator="type"),
]

_client_frame_adapter = TypeAdapter(ClientFrame)


# =============================================================================
# Server -> client
# =============================================================================


class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"
    userId: int
    sessionId: str


class HeartbeatAckEvent(BaseModel):
    type: Literal["heartbeat:ack"] = "heartbeat:ack"
    serverTime: datetime


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


class MessageNewEvent(BaseModel):
    type: Literal["message:new"] = "message:new"
    conversationKey: str
    message: Message


class MessageStatusEvent(BaseModel):
    """Status-only push (delivery confirmation, read receipt, failure)."""
    type: Literal["message:status"] = "message:status"
    conversationKey: str
    messageId: int
    status: DeliveryStatus
    retryCount: int = 0
    resendCount: int = 0
    readAt: Optional[datetime] = None


class MessageUpdatedEvent(BaseModel):
    """Edit or soft-delete of an existing message."""
    type: Literal["message:updated"] = "message:updated"
    conversationKey: str
    message: Message


class TypingStartEvent(BaseModel):
    type: Literal["typing:start"] = "typing:start"
    conversationKey: str
    userId: int


class TypingStopEvent(BaseModel):
    type: Literal["typing:stop"] = "typing:stop"
    conversationKey: str
    userId: int


class PresenceOnlineEvent(BaseModel):
    type: Literal["presence:online"] = "presence:online"
    userId: int


class PresenceOfflineEvent(BaseModel):
    type: Literal["presence:offline"] = "presence:offline"
    userId: int


ServerEvent = Annotated[
    Union[
        ConnectedEvent,
        HeartbeatAckEvent,
        ErrorEvent,
        MessageNewEvent,
        MessageStatusEvent,
        MessageUpdatedEvent,
        TypingStartEvent,
        TypingStopEvent,
        PresenceOnlineEvent,
        PresenceOfflineEvent,
    ],
    Field(discriminator="type"),
]

_server_event_adapter = TypeAdapter(ServerEvent)


# =============================================================================
# Codec
# =============================================================================


def decode_frame(data: Any) -> ClientFrame:
    """Validate a raw client frame.

    Raises:
        ValidationError: If the frame is not a known, well-formed frame.
    """
    try:
        return _client_frame_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid frame: {_first_error(e)}") from e


def decode_event(data: Any) -> ServerEvent:
    """Validate a raw server event (used by clients reconciling state).

    Raises:
        ValidationError: If the payload is not a known server event.
    """
    try:
        return _server_event_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid event: {_first_error(e)}") from e


def encode_event(event: BaseModel) -> Dict[str, Any]:
    """Serialize an event to a JSON-ready dict."""
    return event.model_dump(mode="json")


def _first_error(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "frame"
    return f"{location}: {first.get('msg', 'invalid')}"
