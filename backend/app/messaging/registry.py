"""Connection registry: which live sessions each user has open.

A user may have several sessions at once (tabs, devices). The registry is
process-wide, in-memory state rebuilt from scratch on restart when clients
re-register; it is never persisted.

Key features:
    - Idempotent register/deregister keyed by server-assigned session id
    - Offline grace period so a page refresh does not flap presence
    - Heartbeat timestamps and stale-session detection
    - Online/offline listeners (the presence tracker subscribes)
    - Concurrent fan-out helper shared by rooms and the delivery engine

Thread Safety:
    Designed for a single event loop. Mutations never await, so they are
    effectively atomic with respect to other coroutines.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

from pydantic import BaseModel

from .events import encode_event
from .scheduler import Timer

logger = logging.getLogger(__name__)

UserListener = Callable[[int], None]


class Transport(Protocol):
    """What the registry needs from a live connection (a WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(eq=False)
class Connection:
    """One authenticated live session.

    Attributes:
        user_id: Authenticated user.
        session_id: Server-assigned session identifier.
        transport: Where pushed events are written.
        last_heartbeat: Monotonic time of the last frame from the client.
    """
    user_id: int
    session_id: str
    transport: Transport
    last_heartbeat: float = field(default_factory=time.monotonic)

    async def send(self, event: BaseModel) -> None:
        await self.transport.send_json(encode_event(event))


async def _safe_send(connection: Connection, payload: Dict[str, Any]) -> bool:
    """Send a payload to one session with error handling.

    Returns:
        True if successful, False if the write failed.
    """
    try:
        await connection.transport.send_json(payload)
        return True
    except Exception as e:
        logger.debug(f"[Registry] Failed to send to session {connection.session_id}: {e}")
        return False


async def push(connections: Iterable[Connection], event: BaseModel) -> int:
    """Push an event to several sessions concurrently.

    Uses asyncio.gather() so one slow socket does not hold up the others.
    Failed writes are logged and counted, never raised.

    Returns:
        Number of sessions that accepted the event.
    """
    connections = list(connections)
    if not connections:
        return 0
    payload = encode_event(event)
    results = await asyncio.gather(
        *[_safe_send(conn, payload) for conn in connections],
        return_exceptions=True
    )
    return sum(1 for result in results if result is True)


class ConnectionRegistry:
    """Maps user ids to their live sessions.

    Attributes:
        grace_seconds: How long a user with no sessions still counts as online.
    """

    def __init__(self, grace_seconds: float = 5.0) -> None:
        self.grace_seconds = grace_seconds

        # session_id -> Connection
        self._connections: Dict[str, Connection] = {}

        # user_id -> set of session ids
        self._by_user: Dict[int, Set[str]] = {}

        # user_id -> pending offline timer (grace period running)
        self._offline_timers: Dict[int, Timer] = {}

        self._online_listeners: List[UserListener] = []
        self._offline_listeners: List[UserListener] = []

    def add_listener(
        self,
        on_online: Optional[UserListener] = None,
        on_offline: Optional[UserListener] = None,
    ) -> None:
        """Subscribe to online/offline transitions."""
        if on_online is not None:
            self._online_listeners.append(on_online)
        if on_offline is not None:
            self._offline_listeners.append(on_offline)

    def register(self, user_id: int, session_id: str, transport: Transport) -> bool:
        """Add a live session for a user.

        Idempotent per session id. Registering inside the user's grace period
        cancels the pending offline transition, so no offline/online pair is
        published for a quick reconnect.

        Args:
            user_id: Authenticated user.
            session_id: Unique session identifier.
            transport: Connection to push events through.

        Returns:
            True if the user just came online.
        """
        existing = self._connections.get(session_id)
        if existing is not None:
            if existing.user_id != user_id:
                logger.warning(
                    f"[Registry] Session {session_id} already belongs to user "
                    f"{existing.user_id}, ignoring register for {user_id}"
                )
            return False

        had_sessions = bool(self._by_user.get(user_id))
        self._connections[session_id] = Connection(
            user_id=user_id, session_id=session_id, transport=transport
        )
        self._by_user.setdefault(user_id, set()).add(session_id)

        pending_offline = self._offline_timers.pop(user_id, None)
        if pending_offline is not None:
            pending_offline.cancel()
            logger.info(f"[Registry] User {user_id} reconnected within grace period")
            return False

        if had_sessions:
            return False

        logger.info(f"[Registry] User {user_id} is ONLINE (session {session_id})")
        self._notify(self._online_listeners, user_id)
        return True

    def deregister(self, session_id: str) -> Optional[Connection]:
        """Remove a session. Unknown session ids are a no-op.

        When the user's last session goes away the offline transition is
        delayed by the grace period.

        Returns:
            The removed Connection, or None if the session was unknown.
        """
        connection = self._connections.pop(session_id, None)
        if connection is None:
            return None

        user_id = connection.user_id
        sessions = self._by_user.get(user_id)
        if sessions is not None:
            sessions.discard(session_id)
            if not sessions:
                del self._by_user[user_id]
                self._schedule_offline(user_id)

        logger.info(f"[Registry] Session {session_id} of user {user_id} removed")
        return connection

    def _schedule_offline(self, user_id: int) -> None:
        if self.grace_seconds <= 0:
            self._go_offline(user_id)
            return
        timer = Timer(self.grace_seconds, lambda: self._go_offline(user_id))
        self._offline_timers[user_id] = timer
        timer.start()

    def _go_offline(self, user_id: int) -> None:
        self._offline_timers.pop(user_id, None)
        if self._by_user.get(user_id):
            return
        logger.info(f"[Registry] User {user_id} is OFFLINE")
        self._notify(self._offline_listeners, user_id)

    def _notify(self, listeners: List[UserListener], user_id: int) -> None:
        for listener in listeners:
            try:
                listener(user_id)
            except Exception as e:
                logger.error(f"[Registry] Listener failed for user {user_id}: {e}")

    def get(self, session_id: str) -> Optional[Connection]:
        return self._connections.get(session_id)

    def sessions_for(self, user_id: int) -> List[Connection]:
        """Get the user's current live sessions (possibly empty)."""
        return [self._connections[sid] for sid in self._by_user.get(user_id, ())]

    def is_online(self, user_id: int) -> bool:
        """True while the user has a session or is inside the grace period."""
        return bool(self._by_user.get(user_id)) or user_id in self._offline_timers

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # =========================================================================
    # Liveness
    # =========================================================================

    def touch(self, session_id: str) -> None:
        """Record a heartbeat for a session."""
        connection = self._connections.get(session_id)
        if connection is not None:
            connection.last_heartbeat = time.monotonic()

    def stale_sessions(self, timeout: float, now: Optional[float] = None) -> List[Connection]:
        """Sessions whose last heartbeat is older than ``timeout`` seconds."""
        now = time.monotonic() if now is None else now
        return [
            conn for conn in self._connections.values()
            if now - conn.last_heartbeat > timeout
        ]

    def close(self) -> None:
        """Cancel pending offline timers (process shutdown)."""
        for timer in self._offline_timers.values():
            timer.cancel()
        self._offline_timers.clear()
