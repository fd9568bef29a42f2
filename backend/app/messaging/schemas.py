"""Pydantic schemas for the messaging core.

This module defines the durable Message record, the request bodies accepted
by the HTTP layer, the conversation key used to address rooms, and the
delivery status state machine shared by the server and the client-side
reconciliation layer.

Field names are camelCase because these models are serialized straight onto
the wire (HTTP responses and WebSocket events).
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class DeliveryStatus(str, Enum):
    """Where a message is in its delivery lifecycle.

    Attributes:
        SENDING: Accepted, being written to the store.
        SENT: Persisted. Waiting in the offline queue or being pushed.
        DELIVERED: At least one of the recipient's live sessions accepted it.
        READ: The recipient explicitly marked it read.
        FAILED: Live push retries were exhausted. Manual resend only.
    """
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class MessageType(str, Enum):
    """Type of message.

    Attributes:
        TEXT: Plain text message.
        FILE: Text plus attachment metadata (bytes are stored elsewhere).
    """
    TEXT = "text"
    FILE = "file"


_FORWARD_CHAIN = [
    DeliveryStatus.SENDING,
    DeliveryStatus.SENT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.READ,
]


def can_transition(
    current: DeliveryStatus, requested: DeliveryStatus, *, resend: bool = False
) -> bool:
    """Check whether a message may move from ``current`` to ``requested``.

    Statuses only move forward along sending -> sent -> delivered -> read
    (skipping steps is fine). ``failed`` is reachable from sending or sent and
    may only go back to sending through a manual resend. Staying on the same
    status is allowed so other fields can be updated.

    Args:
        current: Status currently stored.
        requested: Status being written.
        resend: True only for an explicit manual resend.

    Returns:
        True if the transition is allowed.
    """
    current = DeliveryStatus(current)
    requested = DeliveryStatus(requested)
    if current == requested:
        return True
    if requested == DeliveryStatus.FAILED:
        return current in (DeliveryStatus.SENDING, DeliveryStatus.SENT)
    if current == DeliveryStatus.FAILED:
        return resend and requested == DeliveryStatus.SENDING
    return _FORWARD_CHAIN.index(requested) > _FORWARD_CHAIN.index(current)


@dataclass(frozen=True)
class ConversationKey:
    """Deterministic address of a conversation: participant pair + job.

    The lower user id always comes first so both participants compute the
    same key. A key without a job id names the pair's general thread; each
    job gets its own thread.
    """
    low: int
    high: int
    job_id: Optional[int] = None

    @classmethod
    def for_pair(
        cls, user_a: int, user_b: int, job_id: Optional[int] = None
    ) -> "ConversationKey":
        return cls(min(user_a, user_b), max(user_a, user_b), job_id)

    @classmethod
    def parse(cls, raw: str) -> "ConversationKey":
        """Parse the string form produced by ``str(key)``."""
        parts = raw.split(":")
        try:
            if len(parts) == 2:
                return cls.for_pair(int(parts[0]), int(parts[1]))
            if len(parts) == 4 and parts[2] == "job":
                return cls.for_pair(int(parts[0]), int(parts[1]), int(parts[3]))
        except ValueError:
            pass
        raise ValueError(f"Invalid conversation key: {raw!r}")

    def involves(self, user_id: int) -> bool:
        return user_id in (self.low, self.high)

    def other(self, user_id: int) -> int:
        """Return the participant that is not ``user_id``."""
        if not self.involves(user_id):
            raise ValueError(f"User {user_id} is not part of {self}")
        return self.high if user_id == self.low else self.low

    def __str__(self) -> str:
        if self.job_id is None:
            return f"{self.low}:{self.high}"
        return f"{self.low}:{self.high}:job:{self.job_id}"


class Message(BaseModel):
    """Durable chat message as stored and sent over the wire.

    Attributes:
        id: Store-assigned id, immutable.
        senderId: User who wrote the message.
        recipientId: User the message is addressed to.
        jobId: Optional job the conversation is about.
        content: Message text.
        messageType: text or file.
        createdAt: Assigned at persistence time, never changes (UTC).
        editedAt: Last edit time, if edited.
        isEdited: Whether the content was changed after sending.
        isRead: Whether the recipient marked it read.
        readAt: When it was read.
        isDeleted: Soft-delete flag (rows are never hard-deleted).
        deletedAt: When it was soft-deleted.
        deliveryStatus: Current DeliveryStatus.
        retryCount: Number of failed live push attempts.
        resendCount: Number of manual resends (each one starts a new
            delivery lifecycle).
        attachmentUrl: Attachment location (file messages only).
        attachmentName: Attachment file name (file messages only).
        attachmentSize: Attachment size in bytes (file messages only).
    """
    id: int = Field(..., description="Store-assigned message ID")
    senderId: int = Field(..., description="Sender user ID")
    recipientId: int = Field(..., description="Recipient user ID")
    jobId: Optional[int] = Field(default=None, description="Job context")
    content: str = Field(..., description="Message text")
    messageType: MessageType = Field(default=MessageType.TEXT)
    createdAt: datetime = Field(..., description="Persistence timestamp (UTC)")
    editedAt: Optional[datetime] = None
    isEdited: bool = False
    isRead: bool = False
    readAt: Optional[datetime] = None
    isDeleted: bool = False
    deletedAt: Optional[datetime] = None
    deliveryStatus: DeliveryStatus = DeliveryStatus.SENDING
    retryCount: int = Field(default=0, ge=0)
    resendCount: int = Field(default=0, ge=0)
    attachmentUrl: Optional[str] = None
    attachmentName: Optional[str] = None
    attachmentSize: Optional[int] = None

    @model_validator(mode="after")
    def _flags_have_timestamps(self) -> "Message":
        if self.isRead and self.readAt is None:
            raise ValueError("isRead requires readAt")
        if self.isDeleted and self.deletedAt is None:
            raise ValueError("isDeleted requires deletedAt")
        if self.isEdited and self.editedAt is None:
            raise ValueError("isEdited requires editedAt")
        return self

    @property
    def conversation_key(self) -> ConversationKey:
        return ConversationKey.for_pair(self.senderId, self.recipientId, self.jobId)

    def sort_key(self):
        """Render order: createdAt ascending, id breaks ties."""
        return (self.createdAt, self.id)


class MessageCreate(BaseModel):
    """Fields the store needs to create a message row.

    Optional here so the store itself can reject missing required fields
    with a ValidationError rather than a pydantic error.
    """
    senderId: Optional[int] = None
    recipientId: Optional[int] = None
    jobId: Optional[int] = None
    content: Optional[str] = None
    messageType: MessageType = MessageType.TEXT
    attachmentUrl: Optional[str] = None
    attachmentName: Optional[str] = None
    attachmentSize: Optional[int] = None


class SubmitMessageRequest(BaseModel):
    """Request body for POST /messages."""
    recipientId: int = Field(..., description="Recipient user ID")
    content: str = Field(..., description="Message text")
    jobId: Optional[int] = Field(default=None, description="Job context")
    messageType: MessageType = Field(default=MessageType.TEXT)
    attachmentUrl: Optional[str] = None
    attachmentName: Optional[str] = None
    attachmentSize: Optional[int] = Field(default=None, ge=0)


class EditMessageRequest(BaseModel):
    """Request body for PATCH /messages/{id}."""
    content: str = Field(..., description="Replacement text")


class HistoryPage(BaseModel):
    """One page of conversation history, oldest first.

    Attributes:
        messages: Messages in (createdAt, id) order.
        nextCursor: Cursor for the next page in the same direction (pass as
            ``after`` when paging forward, as ``before`` when paging back).
        hasMore: Whether another page exists in the requested direction.
    """
    messages: List[Message] = Field(default_factory=list)
    nextCursor: Optional[int] = None
    hasMore: bool = False
