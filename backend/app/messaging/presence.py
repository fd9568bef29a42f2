"""Presence tracker: online/offline broadcasts and typing indicators.

Online state itself lives in the ConnectionRegistry; this module turns its
transitions into presence events for the counterparts watching a thread,
and keeps the per-room typing indicators with automatic expiry.

Presence is best-effort. Any failure to publish is logged as a
PresenceError and dropped; it never fails the caller.
"""
import asyncio
import logging
from typing import Awaitable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from .errors import PresenceError, ValidationError
from .events import PresenceOfflineEvent, PresenceOnlineEvent, TypingStartEvent, TypingStopEvent
from .registry import ConnectionRegistry
from .rooms import RoomRouter
from .scheduler import Timer
from .schemas import ConversationKey

logger = logging.getLogger(__name__)

TypingSlot = Tuple[int, ConversationKey]


class PresenceTracker:
    """Publishes presence changes and typing indicators to rooms.

    Attributes:
        typing_timeout: Seconds without a new typing:start before the
            indicator is stopped automatically.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomRouter,
        typing_timeout: float = 2.0,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.typing_timeout = typing_timeout

        # (user_id, key) -> debounce timer; presence in the dict means "typing"
        self._typing: Dict[TypingSlot, Timer] = {}
        self._tasks: Set[asyncio.Task] = set()

        registry.add_listener(on_online=self._on_online, on_offline=self._on_offline)

    # =========================================================================
    # Typing
    # =========================================================================

    async def start_typing(self, user_id: int, key: ConversationKey) -> None:
        """Mark a user as typing in a conversation.

        Only the first call of a burst broadcasts typing:start; later calls
        just push the expiry out again.

        Raises:
            ValidationError: If the user is not a participant of ``key``.
        """
        if not key.involves(user_id):
            raise ValidationError(f"User {user_id} is not part of conversation {key}")

        slot = (user_id, key)
        timer = self._typing.get(slot)
        if timer is not None:
            timer.reset()
            return

        timer = Timer(self.typing_timeout, lambda: self._expire(slot))
        self._typing[slot] = timer
        timer.start()
        await self._publish(
            key, TypingStartEvent(conversationKey=str(key), userId=user_id), exclude_user=user_id
        )

    async def stop_typing(self, user_id: int, key: ConversationKey) -> bool:
        """Stop a typing indicator. No-op if the user is not typing.

        Returns:
            True if a typing:stop was published.
        """
        timer = self._typing.pop((user_id, key), None)
        if timer is None:
            return False
        timer.cancel()
        await self._publish(
            key, TypingStopEvent(conversationKey=str(key), userId=user_id), exclude_user=user_id
        )
        return True

    async def stop_all_typing(self, user_id: int) -> int:
        """Stop every typing indicator the user has open."""
        slots = [slot for slot in self._typing if slot[0] == user_id]
        for _, key in slots:
            await self.stop_typing(user_id, key)
        return len(slots)

    def is_typing(self, user_id: int, key: ConversationKey) -> bool:
        return (user_id, key) in self._typing

    def typing_users(self, key: ConversationKey) -> List[int]:
        return sorted(user_id for user_id, slot_key in self._typing if slot_key == key)

    def _expire(self, slot: TypingSlot) -> None:
        if self._typing.pop(slot, None) is None:
            return
        user_id, key = slot
        logger.debug(f"[Presence] Typing expired for user {user_id} in {key}")
        self._spawn(self._publish(
            key, TypingStopEvent(conversationKey=str(key), userId=user_id), exclude_user=user_id
        ))

    # =========================================================================
    # Online / offline
    # =========================================================================

    def is_online(self, user_id: int) -> bool:
        return self.registry.is_online(user_id)

    def _on_online(self, user_id: int) -> None:
        self._spawn(self._publish_presence(user_id, PresenceOnlineEvent(userId=user_id)))

    def _on_offline(self, user_id: int) -> None:
        for slot in [slot for slot in self._typing if slot[0] == user_id]:
            self._typing.pop(slot).cancel()
            self._spawn(self._publish(
                slot[1], TypingStopEvent(conversationKey=str(slot[1]), userId=user_id),
                exclude_user=user_id,
            ))
        self._spawn(self._publish_presence(user_id, PresenceOfflineEvent(userId=user_id)))

    # =========================================================================
    # Publishing
    # =========================================================================

    async def _publish(
        self, key: ConversationKey, event: BaseModel, exclude_user: Optional[int] = None
    ) -> None:
        try:
            await self.rooms.broadcast(key, event, exclude_user=exclude_user)
        except Exception as e:
            error = PresenceError(f"Failed to publish {getattr(event, 'type', event)} to {key}: {e}")
            logger.warning(f"[Presence] {error.message}")

    async def _publish_presence(self, user_id: int, event: BaseModel) -> None:
        try:
            sent = await self.rooms.broadcast_to_watchers(user_id, event)
            logger.debug(f"[Presence] {event.type} for user {user_id} sent to {sent} session(s)")
        except Exception as e:
            error = PresenceError(f"Failed to publish presence for user {user_id}: {e}")
            logger.warning(f"[Presence] {error.message}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight presence broadcasts (tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel typing timers and pending broadcasts."""
        for timer in self._typing.values():
            timer.cancel()
        self._typing.clear()
        for task in list(self._tasks):
            task.cancel()
