"""Delivery engine: submit, persist, push, retry, receipts.

The engine owns the delivery status state machine:

    sending -> sent -> delivered -> read
       |        |
       +--------+--> failed --(manual resend)--> sending

Flow for one message:
    1. Validate the request (nothing is persisted on failure)
    2. Persist with status ``sending``; the store assigns id and createdAt
    3. Move to ``sent``: the message is now durable and waits in the
       offline queue (the store) until someone reads it
    4. If the recipient has live sessions, push ``message:new`` to all of
       them. At least one accepted write means ``delivered``. A failed
       attempt increments retryCount and is retried with bounded
       exponential backoff; exhausting the attempts means ``failed``.
    5. If the recipient has no live sessions the message simply stays
       ``sent`` and is picked up from history when they next open the
       thread.

Delivery runs as a background task per message so submit() returns as soon
as the message is durable. Each task holds a CancellationToken; the token
is cancelled when the recipient's last session goes away, or when the
message is read on another path, so no retry outlives its purpose.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel

from .directory import UserDirectory
from .errors import (
    DeliveryError,
    ForbiddenError,
    InvalidTransitionError,
    MessagingError,
    PersistenceError,
    ValidationError,
)
from .events import MessageNewEvent, MessageStatusEvent, MessageUpdatedEvent
from .presence import PresenceTracker
from .registry import ConnectionRegistry, push
from .scheduler import CancellationToken, RetryPolicy
from .schemas import DeliveryStatus, Message, MessageCreate, MessageType, SubmitMessageRequest
from .store import MessageStore

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 4000


class DeliveryOutcome(str, Enum):
    """How a delivery task ended.

    Attributes:
        DELIVERED: A live session accepted the message.
        QUEUED: Recipient offline, message stays ``sent`` in the store.
        CANCELLED: Stopped early (recipient left, read elsewhere, shutdown).
        EXHAUSTED: Every attempt failed, message marked ``failed``.
    """
    DELIVERED = "delivered"
    QUEUED = "queued"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


@dataclass
class _InFlight:
    message_id: int
    recipient_id: int
    token: CancellationToken
    task: "asyncio.Task[DeliveryOutcome]"


class DeliveryEngine:
    """Runs the message lifecycle from submit to read receipt."""

    def __init__(
        self,
        store: MessageStore,
        registry: ConnectionRegistry,
        directory: UserDirectory,
        policy: Optional[RetryPolicy] = None,
        presence: Optional[PresenceTracker] = None,
        max_content_length: int = MAX_CONTENT_LENGTH,
    ) -> None:
        self.store = store
        self.registry = registry
        self.directory = directory
        self.policy = policy or RetryPolicy()
        self.presence = presence
        self.max_content_length = max_content_length

        # message_id -> running delivery
        self._inflight: Dict[int, _InFlight] = {}

    # =========================================================================
    # Public API
    # =========================================================================

    async def submit(self, sender_id: int, request: SubmitMessageRequest) -> Message:
        """Validate, persist and start delivering a message.

        Returns as soon as the message is durable (status ``sent``); the
        live push continues in the background.

        Args:
            sender_id: Authenticated sender.
            request: Submitted message.

        Returns:
            The persisted Message with its server id and createdAt.

        Raises:
            ValidationError: Empty or oversized content, self-send, unknown
                recipient, or inconsistent attachment fields.
            PersistenceError: The store could not create the row.
        """
        await self._validate(sender_id, request)

        message = await self.store.create_message(MessageCreate(
            senderId=sender_id,
            recipientId=request.recipientId,
            jobId=request.jobId,
            content=request.content,
            messageType=request.messageType,
            attachmentUrl=request.attachmentUrl,
            attachmentName=request.attachmentName,
            attachmentSize=request.attachmentSize,
        ))
        message = await self._mark_sent(message)
        logger.info(
            f"[Delivery] Message {message.id} persisted: {sender_id} -> {message.recipientId} "
            f"({message.conversation_key})"
        )

        if self.presence is not None:
            await self.presence.stop_typing(sender_id, message.conversation_key)

        self._schedule(message)
        return message

    async def resend(self, sender_id: int, message_id: int) -> Message:
        """Manually resend a ``failed`` message.

        The message goes back to ``sending`` with retryCount reset, then to
        ``sent``, and a fresh delivery task starts.

        Raises:
            NotFoundError: Unknown message id.
            ForbiddenError: The caller is not the sender.
            InvalidTransitionError: The message is not ``failed``.
        """
        message = await self.store.get_message(message_id)
        if message.senderId != sender_id:
            raise ForbiddenError("Only the sender can resend a message")
        if message.deliveryStatus != DeliveryStatus.FAILED:
            raise InvalidTransitionError(
                message_id, message.deliveryStatus.value, DeliveryStatus.SENDING.value
            )

        # Raises InvalidTransitionError if a concurrent resend claimed it first
        message = await self.store.update_message_status(
            message_id, DeliveryStatus.SENDING,
            resend=True, retryCount=0, resendCount=message.resendCount + 1,
        )
        message = await self._mark_sent(message)
        logger.info(f"[Delivery] Message {message_id} resent by user {sender_id}")

        await self._push_status(message)
        self._schedule(message)
        return message

    async def mark_read(self, reader_id: int, message_id: int) -> Message:
        """Mark a message read and send the read receipt to the sender.

        Idempotent: reading an already-read message changes nothing and
        sends no second receipt.

        Raises:
            NotFoundError: Unknown message id.
            ForbiddenError: The caller is not the recipient.
            InvalidTransitionError: The message is ``failed``.
        """
        message = await self.store.get_message(message_id)
        if message.recipientId != reader_id:
            raise ForbiddenError("Only the recipient can mark a message read")
        if message.isRead:
            return message

        message = await self.store.mark_read(message_id)
        self._cancel(message_id)
        logger.info(f"[Delivery] Message {message_id} read by user {reader_id}")
        await self._push_status(message)
        return message

    async def edit(self, user_id: int, message_id: int, content: str) -> Message:
        """Replace a message's content (sender only) and notify both sides.

        Raises:
            ValidationError: Empty or oversized content, or message deleted.
            ForbiddenError: The caller is not the sender.
        """
        self._check_content(content)
        message = await self.store.get_message(message_id)
        if message.senderId != user_id:
            raise ForbiddenError("Only the sender can edit a message")
        if message.isDeleted:
            raise ValidationError(f"Message {message_id} has been deleted")

        message = await self.store.edit_message(message_id, content)
        logger.info(f"[Delivery] Message {message_id} edited by user {user_id}")
        await self._push_update(message)
        return message

    async def delete(self, user_id: int, message_id: int) -> Message:
        """Soft-delete a message (sender only) and notify both sides.

        Deleting twice is a no-op that returns the already-deleted message.
        """
        message = await self.store.get_message(message_id)
        if message.senderId != user_id:
            raise ForbiddenError("Only the sender can delete a message")
        if message.isDeleted:
            return message

        message = await self.store.soft_delete_message(message_id)
        self._cancel(message_id)
        logger.info(f"[Delivery] Message {message_id} deleted by user {user_id}")
        await self._push_update(message)
        return message

    def cancel_for_recipient(self, user_id: int) -> int:
        """Cancel every pending retry addressed to ``user_id``.

        Called when the recipient's last live session goes away. The
        affected messages stay ``sent``.

        Returns:
            Number of deliveries cancelled.
        """
        cancelled = 0
        for inflight in list(self._inflight.values()):
            if inflight.recipient_id == user_id and not inflight.token.cancelled:
                inflight.token.cancel()
                cancelled += 1
        if cancelled:
            logger.info(f"[Delivery] Cancelled {cancelled} pending deliveries to user {user_id}")
        return cancelled

    @property
    def pending_count(self) -> int:
        return len(self._inflight)

    async def drain(self) -> None:
        """Wait until every running delivery task has finished."""
        while self._inflight:
            await asyncio.gather(
                *[inflight.task for inflight in list(self._inflight.values())],
                return_exceptions=True,
            )

    async def shutdown(self) -> None:
        """Cancel all pending deliveries and wait for the tasks to stop."""
        for inflight in list(self._inflight.values()):
            inflight.token.cancel()
        await self.drain()

    # =========================================================================
    # Validation
    # =========================================================================

    def _check_content(self, content: str) -> None:
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")
        if len(content) > self.max_content_length:
            raise ValidationError(
                f"Message content exceeds {self.max_content_length} characters"
            )

    async def _validate(self, sender_id: int, request: SubmitMessageRequest) -> None:
        self._check_content(request.content)
        if request.recipientId == sender_id:
            raise ValidationError("Cannot send a message to yourself")
        if request.recipientId <= 0 or not await self.directory.user_exists(request.recipientId):
            raise ValidationError(f"Unknown recipient: {request.recipientId}")

        has_attachment = any(
            value is not None
            for value in (request.attachmentUrl, request.attachmentName, request.attachmentSize)
        )
        if request.messageType == MessageType.FILE:
            if not request.attachmentUrl or not request.attachmentName:
                raise ValidationError("File messages need attachmentUrl and attachmentName")
        elif has_attachment:
            raise ValidationError("Attachment fields require messageType 'file'")

    # =========================================================================
    # Delivery tasks
    # =========================================================================

    async def _mark_sent(self, message: Message) -> Message:
        """Move a freshly persisted message to ``sent``.

        The row already exists, so a failed status write must not make the
        caller resubmit (that would duplicate the message). The ``sending``
        copy is returned and delivery still runs; a successful push moves
        it straight to ``delivered``.
        """
        try:
            return await self.store.update_message_status(message.id, DeliveryStatus.SENT)
        except PersistenceError as e:
            logger.error(
                f"[Delivery] Message {message.id} persisted but could not be marked sent: "
                f"{e.message}"
            )
            return message

    def _schedule(self, message: Message) -> None:
        previous = self._inflight.get(message.id)
        if previous is not None:
            previous.token.cancel()
        token = CancellationToken()
        task = asyncio.create_task(self._deliver(message, token))
        self._inflight[message.id] = _InFlight(
            message_id=message.id,
            recipient_id=message.recipientId,
            token=token,
            task=task,
        )
        task.add_done_callback(lambda _t, mid=message.id: self._finish(mid, _t))

    def _finish(self, message_id: int, task: asyncio.Task) -> None:
        inflight = self._inflight.get(message_id)
        if inflight is not None and inflight.task is task:
            del self._inflight[message_id]

    def _cancel(self, message_id: int) -> None:
        inflight = self._inflight.get(message_id)
        if inflight is not None:
            inflight.token.cancel()

    async def _deliver(self, message: Message, token: CancellationToken) -> DeliveryOutcome:
        try:
            outcome, message = await self._push_with_retry(message, token)
            if outcome == DeliveryOutcome.DELIVERED:
                message = await self._advance(message, DeliveryStatus.DELIVERED)
                await self._push_status(message)
            elif outcome == DeliveryOutcome.EXHAUSTED:
                message = await self._advance(message, DeliveryStatus.FAILED)
                logger.warning(
                    f"[Delivery] Message {message.id} failed after "
                    f"{message.retryCount} attempt(s)"
                )
                await self._push_status(message)
            else:
                logger.info(f"[Delivery] Message {message.id} {outcome.value}, stays sent")
            return outcome
        except MessagingError as e:
            # Message is already durable; it stays at its last persisted status.
            logger.error(f"[Delivery] Delivery of message {message.id} aborted: {e.message}")
            return DeliveryOutcome.CANCELLED

    async def _push_with_retry(
        self, message: Message, token: CancellationToken
    ) -> Tuple[DeliveryOutcome, Message]:
        """Push ``message:new`` to the recipient, retrying failed attempts.

        Returns:
            The outcome and the latest copy of the message.
        """
        event = MessageNewEvent(conversationKey=str(message.conversation_key), message=message)
        attempt = 0
        while True:
            if token.cancelled:
                return DeliveryOutcome.CANCELLED, message

            sessions = self.registry.sessions_for(message.recipientId)
            if not sessions:
                if attempt == 0:
                    return DeliveryOutcome.QUEUED, message
                return DeliveryOutcome.CANCELLED, message

            attempt += 1
            try:
                await self._push_attempt(sessions, event)
                return DeliveryOutcome.DELIVERED, message
            except DeliveryError as e:
                logger.warning(
                    f"[Delivery] Attempt {attempt}/{self.policy.max_attempts} for message "
                    f"{message.id} failed: {e.message}"
                )

            try:
                message = await self.store.update_message_status(
                    message.id, DeliveryStatus.SENT, retryCount=message.retryCount + 1
                )
            except InvalidTransitionError:
                # Read through another path while we were pushing
                return DeliveryOutcome.CANCELLED, await self.store.get_message(message.id)

            # Recipient left during the attempt: stay sent rather than fail
            if token.cancelled:
                return DeliveryOutcome.CANCELLED, message
            if self.policy.exhausted(attempt):
                return DeliveryOutcome.EXHAUSTED, message
            if not await token.sleep(self.policy.delay_for(attempt)):
                return DeliveryOutcome.CANCELLED, message

    async def _push_attempt(self, sessions, event: BaseModel) -> int:
        accepted = await push(sessions, event)
        if accepted == 0:
            raise DeliveryError(
                f"None of {len(sessions)} session(s) accepted the message",
                session_id=",".join(conn.session_id for conn in sessions),
            )
        return accepted

    async def _advance(self, message: Message, status: DeliveryStatus) -> Message:
        try:
            return await self.store.update_message_status(message.id, status)
        except InvalidTransitionError as e:
            logger.debug(f"[Delivery] Skipping status update: {e.message}")
            return await self.store.get_message(message.id)

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _push_status(self, message: Message) -> int:
        """Tell the sender's sessions about a status change."""
        event = MessageStatusEvent(
            conversationKey=str(message.conversation_key),
            messageId=message.id,
            status=message.deliveryStatus,
            retryCount=message.retryCount,
            resendCount=message.resendCount,
            readAt=message.readAt,
        )
        return await push(self.registry.sessions_for(message.senderId), event)

    async def _push_update(self, message: Message) -> int:
        """Send an edited or deleted message to both participants."""
        event = MessageUpdatedEvent(conversationKey=str(message.conversation_key), message=message)
        sessions = (
            self.registry.sessions_for(message.senderId)
            + self.registry.sessions_for(message.recipientId)
        )
        return await push(sessions, event)
