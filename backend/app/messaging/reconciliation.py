"""Client-side view of a conversation.

A client sees the same message through several channels: the history
fetch, live ``message:new`` pushes, status-only pushes and its own pending
submissions. This module folds all of them into one ordered, de-duplicated
list keyed by server message id, which is what a chat UI renders.

Merge rules:
    - Ordering is always (createdAt, id); arrival order never matters
    - The same id seen twice is merged field by field: the most advanced
      delivery status (a late ``sent`` copy never overwrites ``read``), the
      latest edit, and sticky read and deleted flags
    - Only a copy from a later resend moves a message off ``failed``
    - Soft-deleted messages are hidden unless asked for

Usage:
    view = ConversationView(owner_id=1, key=ConversationKey.for_pair(1, 2))
    view.apply_history(page.messages)
    view.apply_event(decode_event(payload))
    for entry in view.entries():
        render(entry)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import count
from typing import Dict, Iterable, List, Optional, Union

from .events import MessageNewEvent, MessageStatusEvent, MessageUpdatedEvent
from .schemas import ConversationKey, DeliveryStatus, Message, can_transition

logger = logging.getLogger(__name__)


class DisplayState(str, Enum):
    """What the UI shows next to a message."""
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def can_resend(self) -> bool:
        return self is DisplayState.FAILED


def _status_source(current: Message, incoming: Message) -> Message:
    """Pick the copy whose delivery status is the most recent.

    A higher resendCount is a later delivery lifecycle and always wins, so a
    stale history page cannot move a message off ``failed`` on its own.
    Within one lifecycle statuses only move forward.
    """
    if incoming.resendCount != current.resendCount:
        return incoming if incoming.resendCount > current.resendCount else current
    if incoming.deliveryStatus == current.deliveryStatus:
        return incoming if incoming.retryCount > current.retryCount else current
    if can_transition(current.deliveryStatus, incoming.deliveryStatus):
        return incoming
    return current


def _edit_stamp(message: Message) -> datetime:
    return message.editedAt or message.createdAt


def _merge_pair(current: Message, incoming: Message) -> Message:
    """Combine two copies of the same message field by field.

    Status comes from the most recent lifecycle, content from the latest
    edit, and the read and deleted flags are sticky once seen.
    """
    status_source = _status_source(current, incoming)
    edit_source = incoming if _edit_stamp(incoming) > _edit_stamp(current) else current
    read_source = current if current.isRead else incoming
    delete_source = current if current.isDeleted else incoming
    return status_source.model_copy(update={
        "content": edit_source.content,
        "isEdited": edit_source.isEdited,
        "editedAt": edit_source.editedAt,
        "isRead": read_source.isRead,
        "readAt": read_source.readAt,
        "isDeleted": delete_source.isDeleted,
        "deletedAt": delete_source.deletedAt,
    })


def merge_messages(*batches: Iterable[Message], include_deleted: bool = False) -> List[Message]:
    """Merge message batches from any channel into render order.

    Args:
        *batches: History pages, live pushes, cached copies...
        include_deleted: Keep soft-deleted messages in the result.

    Returns:
        De-duplicated messages sorted by (createdAt, id).
    """
    by_id: Dict[int, Message] = {}
    for batch in batches:
        for message in batch:
            existing = by_id.get(message.id)
            by_id[message.id] = message if existing is None else _merge_pair(existing, message)
    merged = sorted(by_id.values(), key=lambda m: m.sort_key())
    if include_deleted:
        return merged
    return [m for m in merged if not m.isDeleted]


@dataclass
class PendingMessage:
    """A submission the server has not confirmed yet.

    Pending entries have no server id; ``local_id`` is client-assigned.
    """
    local_id: int
    sender_id: int
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc).replace(tzinfo=None))
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


Entry = Union[Message, PendingMessage]


class ConversationView:
    """Reconciled message list for one conversation, from one user's side.

    Attributes:
        owner_id: The user this view belongs to.
        key: The conversation shown.
    """

    def __init__(self, owner_id: int, key: ConversationKey) -> None:
        if not key.involves(owner_id):
            raise ValueError(f"User {owner_id} is not part of {key}")
        self.owner_id = owner_id
        self.key = key
        self._messages: Dict[int, Message] = {}
        self._pending: Dict[int, PendingMessage] = {}
        self._local_ids = count(1)

    # =========================================================================
    # Server data
    # =========================================================================

    def apply_history(self, messages: Iterable[Message]) -> None:
        """Fold a history page into the view."""
        for message in messages:
            self._apply_message(message)

    def apply_event(self, event) -> bool:
        """Fold a live server event into the view.

        Events for other conversations and unrelated event types are ignored.

        Returns:
            True if the view changed.
        """
        if isinstance(event, (MessageNewEvent, MessageUpdatedEvent)):
            if event.conversationKey != str(self.key):
                return False
            return self._apply_message(event.message)

        if isinstance(event, MessageStatusEvent):
            if event.conversationKey != str(self.key):
                return False
            current = self._messages.get(event.messageId)
            if current is None:
                # Status for a message we have not loaded yet; history fills it in
                return False
            update = {
                "deliveryStatus": event.status,
                "retryCount": event.retryCount,
                "resendCount": event.resendCount,
            }
            if event.status == DeliveryStatus.READ and event.readAt is not None:
                update.update({"isRead": True, "readAt": event.readAt})
            return self._apply_message(current.model_copy(update=update))

        return False

    def _apply_message(self, message: Message) -> bool:
        if message.conversation_key != self.key:
            logger.debug(f"[Reconcile] Ignoring message {message.id} from {message.conversation_key}")
            return False
        existing = self._messages.get(message.id)
        merged = message if existing is None else _merge_pair(existing, message)
        if merged == existing:
            return False
        self._messages[message.id] = merged
        return True

    # =========================================================================
    # Local submissions
    # =========================================================================

    def add_pending(self, content: str) -> PendingMessage:
        """Show a message the owner is sending, before the server answers."""
        pending = PendingMessage(local_id=next(self._local_ids), sender_id=self.owner_id, content=content)
        self._pending[pending.local_id] = pending
        return pending

    def confirm_pending(self, local_id: int, message: Message) -> None:
        """Replace a pending entry with the persisted server copy."""
        self._pending.pop(local_id, None)
        self._apply_message(message)

    def fail_pending(self, local_id: int, error: str) -> Optional[PendingMessage]:
        """Record that a pending submission never reached the store.

        The entry stays in ``sending`` and becomes resendable; nothing was
        persisted, so the whole submit has to be retried.
        """
        pending = self._pending.get(local_id)
        if pending is not None:
            pending.error = error
        return pending

    # =========================================================================
    # Rendering
    # =========================================================================

    def messages(self, include_deleted: bool = False) -> List[Message]:
        return merge_messages(self._messages.values(), include_deleted=include_deleted)

    def entries(self, include_deleted: bool = False) -> List[Entry]:
        """Server messages in (createdAt, id) order, then pending ones."""
        pending = sorted(self._pending.values(), key=lambda p: p.local_id)
        return [*self.messages(include_deleted=include_deleted), *pending]

    def get(self, message_id: int) -> Optional[Message]:
        return self._messages.get(message_id)

    def unread_count(self) -> int:
        return sum(
            1 for m in self._messages.values()
            if m.recipientId == self.owner_id and not m.isRead and not m.isDeleted
        )

    @staticmethod
    def display_state(entry: Entry) -> DisplayState:
        if isinstance(entry, PendingMessage):
            return DisplayState.SENDING
        return DisplayState(entry.deliveryStatus.value)

    @staticmethod
    def can_resend(entry: Entry) -> bool:
        """Whether the UI should offer a resend action for this entry."""
        if isinstance(entry, PendingMessage):
            return entry.failed
        return DisplayState(entry.deliveryStatus.value).can_resend
