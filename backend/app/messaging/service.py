"""Messaging service: wires the core components together.

One MessagingService lives on ``app.state.messaging`` for the lifetime of
the application. It owns the connection registry, room router, presence
tracker and delivery engine, and exposes the operations the HTTP and
WebSocket endpoints call.

Lifecycle:
    service = MessagingService.from_settings(settings)
    service.start()        # heartbeat sweeper
    ...
    await service.shutdown()
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from starlette.requests import HTTPConnection

from app.config import AppSettings
from .delivery import DeliveryEngine
from .directory import OpenDirectory, UserDirectory
from .errors import ValidationError
from .events import (
    AuthenticateFrame,
    ClientFrame,
    HeartbeatAckEvent,
    HeartbeatFrame,
    MessageReadFrame,
    PresenceOfflineEvent,
    PresenceOnlineEvent,
    RoomJoinFrame,
    RoomLeaveFrame,
    TypingStartFrame,
    TypingStopFrame,
)
from .presence import PresenceTracker
from .registry import Connection, ConnectionRegistry, Transport
from .rooms import RoomRouter
from .scheduler import RetryPolicy
from .schemas import ConversationKey, HistoryPage, Message, SubmitMessageRequest
from .store import MessageStore

logger = logging.getLogger(__name__)


class MessagingService:
    """Facade over store, registry, rooms, presence and delivery."""

    def __init__(
        self,
        store: MessageStore,
        settings: AppSettings,
        directory: Optional[UserDirectory] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.directory = directory or OpenDirectory()

        messaging = settings.messaging
        delivery = settings.delivery

        self.registry = ConnectionRegistry(grace_seconds=messaging.disconnect_grace_seconds)
        self.rooms = RoomRouter(self.registry)
        self.presence = PresenceTracker(
            self.registry, self.rooms, typing_timeout=messaging.typing_timeout_seconds
        )
        self.delivery = DeliveryEngine(
            store,
            self.registry,
            self.directory,
            policy=RetryPolicy(
                max_attempts=delivery.max_attempts,
                base_delay=delivery.base_delay_seconds,
                max_delay=delivery.max_delay_seconds,
            ),
            presence=self.presence,
            max_content_length=messaging.max_content_length,
        )
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls, settings: AppSettings, directory: Optional[UserDirectory] = None
    ) -> "MessagingService":
        store = MessageStore(
            db_path=settings.store.db_path,
            default_page_size=settings.store.default_page_size,
            max_page_size=settings.store.max_page_size,
        )
        return cls(store, settings, directory=directory)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the heartbeat sweeper."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.info("[Messaging] Heartbeat sweeper started")

    async def shutdown(self) -> None:
        """Stop background work and close the store."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.delivery.shutdown()
        self.presence.close()
        self.registry.close()
        self.store.close()
        logger.info("[Messaging] Service shut down")

    # =========================================================================
    # Live connections
    # =========================================================================

    async def connect(self, user_id: int, transport: Transport) -> Connection:
        """Register a freshly authenticated live session."""
        session_id = uuid.uuid4().hex
        self.registry.register(user_id, session_id, transport)
        return self.registry.get(session_id)

    async def disconnect(self, session_id: str) -> Optional[Connection]:
        """Tear down a session. Safe to call more than once.

        When it was the user's last session, pending retries to the user are
        cancelled and their typing indicators stop right away; the offline
        broadcast waits for the grace period.
        """
        self.rooms.leave_all(session_id)
        connection = self.registry.deregister(session_id)
        if connection is None:
            return None
        if not self.registry.sessions_for(connection.user_id):
            self.delivery.cancel_for_recipient(connection.user_id)
            await self.presence.stop_all_typing(connection.user_id)
        return connection

    async def handle_frame(self, connection: Connection, frame: ClientFrame):
        """Dispatch one decoded client frame.

        Returns:
            An event to send back to this session, or None.

        Raises:
            MessagingError: The frame was rejected; the caller reports it as
                an error event and keeps the connection open.
        """
        user_id = connection.user_id
        self.registry.touch(connection.session_id)

        if isinstance(frame, HeartbeatFrame):
            return HeartbeatAckEvent(serverTime=datetime.now(timezone.utc))

        if isinstance(frame, AuthenticateFrame):
            raise ValidationError("Connection is already authenticated")

        if isinstance(frame, RoomJoinFrame):
            key = self._key_for(user_id, frame)
            self.rooms.join(connection.session_id, key)
            other = key.other(user_id)
            if self.presence.is_online(other):
                return PresenceOnlineEvent(userId=other)
            return PresenceOfflineEvent(userId=other)

        if isinstance(frame, RoomLeaveFrame):
            key = self._key_for(user_id, frame)
            self.rooms.leave(connection.session_id, key)
            await self.presence.stop_typing(user_id, key)
            return None

        if isinstance(frame, TypingStartFrame):
            await self.presence.start_typing(user_id, self._key_for(user_id, frame))
            return None

        if isinstance(frame, TypingStopFrame):
            await self.presence.stop_typing(user_id, self._key_for(user_id, frame))
            return None

        if isinstance(frame, MessageReadFrame):
            await self.delivery.mark_read(user_id, frame.messageId)
            return None

        raise ValidationError(f"Unsupported frame: {getattr(frame, 'type', frame)}")

    @staticmethod
    def _key_for(user_id: int, frame) -> ConversationKey:
        if frame.recipientId == user_id:
            raise ValidationError("Cannot open a conversation with yourself")
        return frame.key_for(user_id)

    async def sweep_stale(self) -> int:
        """Close and remove sessions that stopped sending heartbeats."""
        stale = self.registry.stale_sessions(self.settings.messaging.heartbeat_timeout_seconds)
        for connection in stale:
            logger.info(
                f"[Messaging] Session {connection.session_id} of user {connection.user_id} "
                f"missed heartbeats, closing"
            )
            await self.disconnect(connection.session_id)
            try:
                await connection.transport.close(code=1001)
            except Exception as e:
                logger.debug(f"[Messaging] Close failed for {connection.session_id}: {e}")
        return len(stale)

    async def _sweep_loop(self) -> None:
        interval = self.settings.messaging.heartbeat_sweep_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_stale()
            except Exception as e:
                logger.error(f"[Messaging] Heartbeat sweep failed: {e}")

    # =========================================================================
    # Message operations
    # =========================================================================

    async def submit(self, sender_id: int, request: SubmitMessageRequest) -> Message:
        return await self.delivery.submit(sender_id, request)

    async def history(
        self,
        user_id: int,
        other_id: int,
        job_id: Optional[int] = None,
        after: Optional[int] = None,
        before: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> HistoryPage:
        if other_id == user_id:
            raise ValidationError("Cannot open a conversation with yourself")
        return await self.store.get_conversation_history(
            user_id, other_id, job_id, after=after, before=before, limit=limit
        )

    async def mark_read(self, user_id: int, message_id: int) -> Message:
        return await self.delivery.mark_read(user_id, message_id)

    async def resend(self, user_id: int, message_id: int) -> Message:
        return await self.delivery.resend(user_id, message_id)

    async def edit(self, user_id: int, message_id: int, content: str) -> Message:
        return await self.delivery.edit(user_id, message_id, content)

    async def delete(self, user_id: int, message_id: int) -> Message:
        return await self.delivery.delete(user_id, message_id)

    async def unread_count(self, user_id: int) -> int:
        return await self.store.count_unread(user_id)

    def is_online(self, user_id: int) -> bool:
        return self.presence.is_online(user_id)


def get_messaging_service(connection: HTTPConnection) -> MessagingService:
    """FastAPI dependency: the service created in the app lifespan."""
    return connection.app.state.messaging
