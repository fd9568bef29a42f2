"""Tests for the delivery engine: lifecycle, retries, receipts."""
import asyncio

import pytest

from app.config import DeliverySettings
from app.messaging.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from app.messaging.reconciliation import merge_messages
from app.messaging.schemas import (
    ConversationKey,
    DeliveryStatus,
    Message,
    MessageType,
    SubmitMessageRequest,
)
from app.messaging.service import MessagingService
from app.messaging.store import MessageStore


def _request(recipient=2, content="hello", **extra):
    return SubmitMessageRequest(recipientId=recipient, content=content, **extra)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestSubmit:
    """Tests for submit validation and persistence."""

    @pytest.mark.asyncio
    async def test_returns_sent_message(self, service):
        message = await service.submit(1, _request())
        assert message.id > 0
        assert message.deliveryStatus == DeliveryStatus.SENT
        assert message.senderId == 1 and message.recipientId == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_", [
        _request(content=""),
        _request(content="   "),
        _request(content="x" * 4001),
        _request(recipient=1),
        _request(recipient=99),
        _request(messageType=MessageType.FILE),
        _request(attachmentUrl="https://files.example/a.png"),
    ])
    async def test_invalid_requests_never_persisted(self, service, request_):
        with pytest.raises(ValidationError):
            await service.submit(1, request_)
        assert (await service.store.count_unread(2)) == 0
        assert (await service.store.count_unread(1)) == 0

    @pytest.mark.asyncio
    async def test_file_message(self, service):
        message = await service.submit(1, _request(
            messageType=MessageType.FILE,
            attachmentUrl="https://files.example/brief.pdf",
            attachmentName="brief.pdf",
            attachmentSize=1024,
        ))
        assert message.messageType == MessageType.FILE
        assert message.attachmentName == "brief.pdf"

    @pytest.mark.asyncio
    async def test_max_length_accepted(self, service):
        message = await service.submit(1, _request(content="x" * 4000))
        assert len(message.content) == 4000

    @pytest.mark.asyncio
    async def test_persistence_error_is_fatal(self, service, connect):
        _, recipient = await connect(service, 2)
        service.store.close()
        with pytest.raises(PersistenceError):
            await service.submit(1, _request())
        await service.delivery.drain()
        assert recipient.events("message:new") == []

    @pytest.mark.asyncio
    async def test_submit_stops_sender_typing(self, service):
        key = ConversationKey.for_pair(1, 2)
        await service.presence.start_typing(1, key)
        await service.submit(1, _request())
        assert not service.presence.is_typing(1, key)


class TestDeliveryFlow:
    """End-to-end delivery scenarios."""

    @pytest.mark.asyncio
    async def test_offline_recipient_then_read(self, service, connect):
        """Offline recipient: message waits as sent, read receipt reaches the sender."""
        _, sender = await connect(service, 1)

        message = await service.submit(1, _request(content="are you free?"))
        await service.delivery.drain()
        assert (await service.store.get_message(message.id)).deliveryStatus == DeliveryStatus.SENT

        _, recipient = await connect(service, 2)
        page = await service.history(2, 1)
        assert [m.id for m in page.messages] == [message.id]
        assert page.messages[0].deliveryStatus == DeliveryStatus.SENT

        read = await service.mark_read(2, message.id)
        assert read.isRead and read.readAt is not None
        assert read.deliveryStatus == DeliveryStatus.READ

        receipts = sender.events("message:status")
        assert receipts[-1]["messageId"] == message.id
        assert receipts[-1]["status"] == "read"
        assert receipts[-1]["readAt"] is not None
        assert recipient.events("message:status") == []

    @pytest.mark.asyncio
    async def test_online_recipient_gets_delivered(self, service, connect):
        _, sender = await connect(service, 1)
        _, recipient = await connect(service, 2)

        message = await service.submit(1, _request())
        await service.delivery.drain()

        pushed = recipient.events("message:new")
        assert len(pushed) == 1
        assert pushed[0]["message"]["id"] == message.id
        assert pushed[0]["conversationKey"] == "1:2"
        assert (await service.store.get_message(message.id)).deliveryStatus == DeliveryStatus.DELIVERED
        assert sender.events("message:status")[-1]["status"] == "delivered"

    @pytest.mark.asyncio
    async def test_all_sessions_receive(self, service, connect):
        _, tab_one = await connect(service, 2)
        _, tab_two = await connect(service, 2)
        await service.submit(1, _request())
        await service.delivery.drain()
        assert len(tab_one.events("message:new")) == 1
        assert len(tab_two.events("message:new")) == 1

    @pytest.mark.asyncio
    async def test_one_good_session_is_enough(self, service, connect):
        await connect(service, 2, fail=True)
        await connect(service, 2)
        message = await service.submit(1, _request())
        await service.delivery.drain()
        stored = await service.store.get_message(message.id)
        assert stored.deliveryStatus == DeliveryStatus.DELIVERED
        assert stored.retryCount == 0

    @pytest.mark.asyncio
    async def test_ten_concurrent_sends(self, service, connect):
        _, recipient = await connect(service, 2)

        sent = await asyncio.gather(*[
            service.submit(1, _request(content=f"msg {i}")) for i in range(10)
        ])
        await service.delivery.drain()

        ids = [m.id for m in sent]
        assert len(set(ids)) == 10

        pushed = [Message(**e["message"]) for e in recipient.events("message:new")]
        assert len(pushed) == 10

        page = await service.history(1, 2)
        assert len(page.messages) == 10
        assert {m.id for m in page.messages} == set(ids)
        assert all(m.deliveryStatus == DeliveryStatus.DELIVERED for m in page.messages)
        stamps = [m.createdAt for m in page.messages]
        assert stamps == sorted(stamps) and len(set(stamps)) == 10

        # Whatever order the pushes arrived in, the client renders history order
        assert [m.id for m in merge_messages(pushed)] == [m.id for m in page.messages]

    @pytest.mark.asyncio
    async def test_retries_exhausted_then_resend(self, service, connect):
        _, sender = await connect(service, 1)
        _, recipient = await connect(service, 2, fail=True)

        message = await service.submit(1, _request())
        await service.delivery.drain()

        failed = await service.store.get_message(message.id)
        assert failed.deliveryStatus == DeliveryStatus.FAILED
        assert failed.retryCount == 3
        status = sender.events("message:status")[-1]
        assert status["status"] == "failed"
        assert status["retryCount"] == 3

        recipient.fail = False
        resent = await service.resend(1, message.id)
        assert resent.deliveryStatus == DeliveryStatus.SENT
        assert resent.retryCount == 0

        await service.delivery.drain()
        delivered = await service.store.get_message(message.id)
        assert delivered.deliveryStatus == DeliveryStatus.DELIVERED
        assert len(recipient.events("message:new")) == 1
        assert sender.events("message:status")[-1]["status"] == "delivered"

    @pytest.mark.asyncio
    async def test_retry_cancelled_when_recipient_leaves(self, settings, directory, connect):
        slow = settings.model_copy(update={
            "delivery": DeliverySettings(max_attempts=3, base_delay_seconds=5.0, max_delay_seconds=5.0)
        })
        service = MessagingService(MessageStore(db_path=":memory:"), slow, directory=directory)
        try:
            connection, _ = await connect(service, 2, fail=True)
            message = await service.submit(1, _request())

            async def first_attempt_failed():
                return (await service.store.get_message(message.id)).retryCount == 1

            await _wait_for(first_attempt_failed)
            await service.disconnect(connection.session_id)
            await asyncio.wait_for(service.delivery.drain(), timeout=1.0)

            stored = await service.store.get_message(message.id)
            assert stored.deliveryStatus == DeliveryStatus.SENT
            assert stored.retryCount == 1
            assert service.delivery.pending_count == 0
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_resends_deliver_once(self, service, connect):
        _, recipient = await connect(service, 2, fail=True)
        message = await service.submit(1, _request())
        await service.delivery.drain()
        assert (await service.store.get_message(message.id)).deliveryStatus == DeliveryStatus.FAILED

        recipient.fail = False
        results = await asyncio.gather(
            service.resend(1, message.id),
            service.resend(1, message.id),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Message) for r in results) == 1
        assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1

        await service.delivery.drain()
        stored = await service.store.get_message(message.id)
        assert stored.deliveryStatus == DeliveryStatus.DELIVERED
        assert stored.resendCount == 1
        assert len(recipient.events("message:new")) == 1

    @pytest.mark.asyncio
    async def test_recipient_leaves_during_last_attempt(self, settings, directory):
        """A disconnect while the final push is in flight leaves the message sent."""
        single = settings.model_copy(update={
            "delivery": DeliverySettings(max_attempts=1, base_delay_seconds=0.01, max_delay_seconds=0.01)
        })
        service = MessagingService(MessageStore(db_path=":memory:"), single, directory=directory)

        class SlowFailingTransport:
            async def send_json(self, data):
                await asyncio.sleep(0.2)
                raise ConnectionError("socket closed")

            async def close(self, code: int = 1000):
                pass

        try:
            connection = await service.connect(2, SlowFailingTransport())
            message = await service.submit(1, _request())
            await asyncio.sleep(0.05)
            await service.disconnect(connection.session_id)
            await asyncio.wait_for(service.delivery.drain(), timeout=1.0)

            stored = await service.store.get_message(message.id)
            assert stored.deliveryStatus == DeliveryStatus.SENT
            assert stored.retryCount == 1
        finally:
            await service.shutdown()

    @pytest.mark.asyncio
    async def test_status_write_failure_keeps_persisted_message(self, service, connect, monkeypatch):
        _, recipient = await connect(service, 2)
        original = service.store.update_message_status
        failures = []

        async def flaky(message_id, status, **kwargs):
            if not failures:
                failures.append(status)
                raise PersistenceError("disk full")
            return await original(message_id, status, **kwargs)

        monkeypatch.setattr(service.store, "update_message_status", flaky)

        message = await service.submit(1, _request())
        assert failures == [DeliveryStatus.SENT]
        assert message.id > 0
        assert message.deliveryStatus == DeliveryStatus.SENDING

        await service.delivery.drain()
        stored = await service.store.get_message(message.id)
        assert stored.deliveryStatus == DeliveryStatus.DELIVERED
        assert len(recipient.events("message:new")) == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending(self, settings, directory, connect):
        slow = settings.model_copy(update={
            "delivery": DeliverySettings(max_attempts=3, base_delay_seconds=5.0, max_delay_seconds=5.0)
        })
        service = MessagingService(MessageStore(db_path=":memory:"), slow, directory=directory)
        await connect(service, 2, fail=True)
        await service.submit(1, _request())
        await asyncio.sleep(0.05)
        await asyncio.wait_for(service.shutdown(), timeout=1.0)
        assert service.delivery.pending_count == 0


class TestReadAndResendRules:
    """Tests for who may do what to a message."""

    @pytest.mark.asyncio
    async def test_only_recipient_marks_read(self, service):
        message = await service.submit(1, _request())
        with pytest.raises(ForbiddenError):
            await service.mark_read(1, message.id)

    @pytest.mark.asyncio
    async def test_mark_read_idempotent(self, service, connect):
        _, sender = await connect(service, 1)
        message = await service.submit(1, _request())
        await service.delivery.drain()

        first = await service.mark_read(2, message.id)
        second = await service.mark_read(2, message.id)
        assert first.readAt == second.readAt
        assert [e["status"] for e in sender.events("message:status")].count("read") == 1

    @pytest.mark.asyncio
    async def test_mark_read_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.mark_read(2, 404)

    @pytest.mark.asyncio
    async def test_mark_read_failed_rejected(self, service, connect):
        await connect(service, 2, fail=True)
        message = await service.submit(1, _request())
        await service.delivery.drain()
        with pytest.raises(InvalidTransitionError):
            await service.mark_read(2, message.id)

    @pytest.mark.asyncio
    async def test_resend_requires_failed(self, service):
        message = await service.submit(1, _request())
        with pytest.raises(InvalidTransitionError):
            await service.resend(1, message.id)

    @pytest.mark.asyncio
    async def test_only_sender_resends(self, service, connect):
        await connect(service, 2, fail=True)
        message = await service.submit(1, _request())
        await service.delivery.drain()
        with pytest.raises(ForbiddenError):
            await service.resend(2, message.id)


class TestEditAndDelete:
    """Tests for edits and soft deletes."""

    @pytest.mark.asyncio
    async def test_edit_pushes_to_both(self, service, connect):
        _, sender = await connect(service, 1)
        _, recipient = await connect(service, 2)
        message = await service.submit(1, _request(content="draft"))
        await service.delivery.drain()

        edited = await service.edit(1, message.id, "final")
        assert edited.isEdited and edited.content == "final"
        for transport in (sender, recipient):
            update = transport.events("message:updated")[-1]
            assert update["message"]["content"] == "final"

    @pytest.mark.asyncio
    async def test_edit_rules(self, service):
        message = await service.submit(1, _request())
        with pytest.raises(ForbiddenError):
            await service.edit(2, message.id, "hijack")
        with pytest.raises(ValidationError):
            await service.edit(1, message.id, "")
        await service.delete(1, message.id)
        with pytest.raises(ValidationError):
            await service.edit(1, message.id, "too late")

    @pytest.mark.asyncio
    async def test_delete_hides_from_history(self, service, connect):
        _, recipient = await connect(service, 2)
        keep = await service.submit(1, _request(content="keep"))
        drop = await service.submit(1, _request(content="drop"))
        await service.delivery.drain()

        deleted = await service.delete(1, drop.id)
        assert deleted.isDeleted
        assert recipient.events("message:updated")[-1]["message"]["isDeleted"] is True
        assert [m.id for m in (await service.history(2, 1)).messages] == [keep.id]

        with pytest.raises(ForbiddenError):
            await service.delete(2, keep.id)
