"""Room router: live sessions grouped by conversation key.

A session joins the room of every thread the user has open. Rooms only
scope room-level events (typing indicators, counterpart presence); message
delivery goes to all of a recipient's sessions regardless of which thread
they are looking at.
"""
import logging
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from .registry import Connection, ConnectionRegistry, push
from .schemas import ConversationKey

logger = logging.getLogger(__name__)


class RoomRouter:
    """Tracks room membership per session and fans events out to rooms."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

        # key -> session ids currently joined
        self._members: Dict[ConversationKey, Set[str]] = {}

        # session id -> keys joined (kept after deregister so leave_all works)
        self._session_rooms: Dict[str, Set[ConversationKey]] = {}

    def join(self, session_id: str, key: ConversationKey) -> bool:
        """Add a session to a room.

        Returns:
            False if the session is unknown (no-op), True otherwise.
        """
        connection = self.registry.get(session_id)
        if connection is None:
            return False
        self._members.setdefault(key, set()).add(session_id)
        self._session_rooms.setdefault(session_id, set()).add(key)
        logger.debug(f"[Rooms] Session {session_id} joined {key}")
        return True

    def leave(self, session_id: str, key: ConversationKey) -> None:
        members = self._members.get(key)
        if members is not None:
            members.discard(session_id)
            if not members:
                del self._members[key]
        rooms = self._session_rooms.get(session_id)
        if rooms is not None:
            rooms.discard(key)
            if not rooms:
                del self._session_rooms[session_id]

    def leave_all(self, session_id: str) -> Set[ConversationKey]:
        """Remove a session from every room it joined.

        Returns:
            The keys the session was removed from.
        """
        keys = set(self._session_rooms.get(session_id, ()))
        for key in keys:
            self.leave(session_id, key)
        return keys

    def members(self, key: ConversationKey) -> List[Connection]:
        """Live sessions joined to a room."""
        connections = []
        for session_id in self._members.get(key, ()):
            connection = self.registry.get(session_id)
            if connection is not None:
                connections.append(connection)
        return connections

    def rooms_involving(self, user_id: int) -> List[ConversationKey]:
        return [key for key in self._members if key.involves(user_id)]

    def room_count(self) -> int:
        return len(self._members)

    async def broadcast(
        self,
        key: ConversationKey,
        event: BaseModel,
        exclude_user: Optional[int] = None,
    ) -> int:
        """Push an event to every session joined to ``key``.

        Args:
            key: Room to broadcast to.
            event: Server event to send.
            exclude_user: Skip this user's own sessions (e.g. the typist).

        Returns:
            Number of sessions that accepted the event.
        """
        targets = [
            conn for conn in self.members(key)
            if exclude_user is None or conn.user_id != exclude_user
        ]
        return await push(targets, event)

    async def broadcast_to_watchers(self, user_id: int, event: BaseModel) -> int:
        """Push to every other session that has a thread with ``user_id`` open.

        Used for presence: counterparts learn when the user comes and goes.
        """
        targets: Dict[str, Connection] = {}
        for key in self.rooms_involving(user_id):
            for conn in self.members(key):
                if conn.user_id != user_id:
                    targets[conn.session_id] = conn
        return await push(targets.values(), event)
