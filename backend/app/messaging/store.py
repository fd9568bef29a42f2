"""DuckDB-based message store.

This module is the durability boundary of the messaging core: once
create_message() returns, the message cannot be lost even if every live
delivery attempt fails. Rows are created and updated, never hard-deleted.

Database Schema:
    messages table:
        - id: Auto-incrementing primary key (messages_seq)
        - sender_id / recipient_id: Participants
        - job_id: Optional job context (separate conversation thread)
        - content, message_type: Text and text/file marker
        - created_at: Assigned inside the write lock (UTC, strictly increasing)
        - edited_at / is_edited: Edit tracking
        - is_read / read_at: Read receipt
        - is_deleted / deleted_at: Soft delete
        - delivery_status, retry_count: Delivery state machine
        - resend_count: Manual resends so far (orders delivery lifecycles)
        - attachment_url / attachment_name / attachment_size: File metadata

Thread Safety:
    The DuckDB connection is NOT thread-safe. Every statement runs in a
    worker thread (asyncio.to_thread) while holding a single lock, so the
    async API may be called concurrently from many coroutines. Because
    created_at is taken under the same lock as the insert, persistence
    completion order and created_at order are the same thing.

Usage:
    store = MessageStore(db_path=":memory:")
    message = await store.create_message(MessageCreate(...))
    page = await store.get_conversation_history(1, 2)
"""
import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import duckdb

from .errors import InvalidTransitionError, NotFoundError, PersistenceError, ValidationError
from .schemas import DeliveryStatus, HistoryPage, Message, MessageCreate, can_transition

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

_COLUMNS = (
    "id, sender_id, recipient_id, job_id, content, message_type, created_at, "
    "edited_at, is_edited, is_read, read_at, is_deleted, deleted_at, "
    "delivery_status, retry_count, attachment_url, attachment_name, attachment_size, "
    "resend_count"
)

# camelCase Message field -> column, for fields update_message_status may touch
_EXTRA_FIELDS = {
    "retryCount": "retry_count",
    "resendCount": "resend_count",
    "isRead": "is_read",
    "readAt": "read_at",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MessageStore:
    """Persistent message table backed by DuckDB.

    Attributes:
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    def __init__(
        self,
        db_path: str = "messages.duckdb",
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file.
            default_page_size: History page size when none is requested.
            max_page_size: Hard cap on requested page sizes.
        """
        self._db_path = db_path
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self._lock = threading.Lock()
        self._last_created_at: Optional[datetime] = None
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[MessageStore] Initialized with db=%s", self._db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the sequence, table and index (idempotent)."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
                sender_id BIGINT NOT NULL,
                recipient_id BIGINT NOT NULL,
                job_id BIGINT,
                content VARCHAR NOT NULL,
                message_type VARCHAR NOT NULL DEFAULT 'text',
                created_at TIMESTAMP NOT NULL,
                edited_at TIMESTAMP,
                is_edited BOOLEAN NOT NULL DEFAULT FALSE,
                is_read BOOLEAN NOT NULL DEFAULT FALSE,
                read_at TIMESTAMP,
                is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                deleted_at TIMESTAMP,
                delivery_status VARCHAR NOT NULL DEFAULT 'sending',
                retry_count INTEGER NOT NULL DEFAULT 0,
                attachment_url VARCHAR,
                attachment_name VARCHAR,
                attachment_size BIGINT,
                resend_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_pair "
            "ON messages(sender_id, recipient_id)"
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # -----------------------------------------------------------------------
    # Async API
    # -----------------------------------------------------------------------

    async def create_message(self, fields: MessageCreate) -> Message:
        """Persist a new message with status ``sending``.

        Raises:
            ValidationError: If senderId, recipientId or content is missing.
            PersistenceError: If the write fails.
        """
        return await self._run(self._create_message, fields)

    async def get_message(self, message_id: int) -> Message:
        """Fetch one message by id, deleted or not.

        Raises:
            NotFoundError: If the id is unknown.
        """
        return await self._run(self._get_message, message_id)

    async def update_message_status(
        self, message_id: int, status: DeliveryStatus, *, resend: bool = False, **extra: Any
    ) -> Message:
        """Move a message to ``status`` and update any extra fields.

        Args:
            message_id: The message to update.
            status: The new delivery status.
            resend: Allow failed -> sending (manual resend only).
            **extra: camelCase fields to set alongside (retryCount, resendCount,
                isRead, readAt).

        Raises:
            NotFoundError: If the id is unknown.
            InvalidTransitionError: If the status would move backwards, or a
                resend finds the message no longer ``failed``.
        """
        return await self._run(self._update_status, message_id, status, resend, extra)

    async def mark_read(self, message_id: int) -> Message:
        """Set isRead/readAt and move the status to ``read``.

        Already-read messages are returned unchanged.
        """
        return await self._run(self._mark_read, message_id)

    async def edit_message(self, message_id: int, content: str) -> Message:
        return await self._run(self._edit_message, message_id, content)

    async def soft_delete_message(self, message_id: int) -> Message:
        return await self._run(self._soft_delete, message_id)

    async def count_unread(self, user_id: int) -> int:
        """Number of non-deleted messages addressed to ``user_id`` not yet read."""
        return await self._run(self._count_unread, user_id)

    async def get_conversation_history(
        self,
        user_a: int,
        user_b: int,
        job_id: Optional[int] = None,
        *,
        after: Optional[int] = None,
        before: Optional[int] = None,
        limit: Optional[int] = None,
        include_deleted: bool = False,
    ) -> HistoryPage:
        """Get one page of a conversation, oldest first.

        With ``after`` the page starts right after that message id (forward
        iteration). With ``before`` it holds the most recent messages older
        than that id (lazy loading upwards). With neither it holds the most
        recent messages.

        Args:
            user_a: One participant.
            user_b: The other participant.
            job_id: Job thread, or None for the pair's general thread.
            after: Message id cursor for forward paging.
            before: Message id cursor for backward paging.
            limit: Page size (capped at max_page_size).
            include_deleted: Include soft-deleted messages.

        Returns:
            HistoryPage ordered by (createdAt, id).
        """
        return await self._run(
            self._history, user_a, user_b, job_id, after, before, limit, include_deleted
        )

    async def iter_conversation_history(
        self,
        user_a: int,
        user_b: int,
        job_id: Optional[int] = None,
        *,
        page_size: Optional[int] = None,
        include_deleted: bool = False,
    ) -> AsyncIterator[Message]:
        """Iterate over a whole conversation from the beginning, page by page.

        The iteration is finite and restartable: calling it again starts over
        and sees every message persisted in the meantime.
        """
        cursor = 0
        while True:
            page = await self.get_conversation_history(
                user_a, user_b, job_id,
                after=cursor, limit=page_size, include_deleted=include_deleted,
            )
            for message in page.messages:
                yield message
            if not page.hasMore or page.nextCursor is None:
                return
            cursor = page.nextCursor

    async def _run(self, func, *args):
        return await asyncio.to_thread(self._locked, func, *args)

    def _locked(self, func, *args):
        with self._lock:
            try:
                return func(*args)
            except duckdb.Error as e:
                logger.error(f"[MessageStore] {func.__name__} failed: {e}")
                raise PersistenceError(str(e)) from e

    # -----------------------------------------------------------------------
    # Synchronous implementations (called with the lock held)
    # -----------------------------------------------------------------------

    def _next_created_at(self) -> datetime:
        now = _utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    def _create_message(self, fields: MessageCreate) -> Message:
        missing = [
            name for name in ("senderId", "recipientId", "content")
            if getattr(fields, name) in (None, "")
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        row = self._get_connection().execute(
            f"""
            INSERT INTO messages (
                sender_id, recipient_id, job_id, content, message_type, created_at,
                delivery_status, attachment_url, attachment_name, attachment_size
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING {_COLUMNS}
            """,
            [
                fields.senderId,
                fields.recipientId,
                fields.jobId,
                fields.content,
                fields.messageType.value,
                self._next_created_at(),
                DeliveryStatus.SENDING.value,
                fields.attachmentUrl,
                fields.attachmentName,
                fields.attachmentSize,
            ],
        ).fetchone()
        return self._row_to_message(row)

    def _get_message(self, message_id: int) -> Message:
        row = self._get_connection().execute(
            f"SELECT {_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        if row is None:
            raise NotFoundError(message_id)
        return self._row_to_message(row)

    def _update_status(
        self, message_id: int, status: DeliveryStatus, resend: bool, extra: Dict[str, Any]
    ) -> Message:
        current = self._get_message(message_id)
        status = DeliveryStatus(status)
        # A resend only claims a message that is still failed; checked under
        # the lock so concurrent resends of one message cannot both win.
        resend_lost = resend and current.deliveryStatus != DeliveryStatus.FAILED
        if resend_lost or not can_transition(current.deliveryStatus, status, resend=resend):
            raise InvalidTransitionError(
                message_id, current.deliveryStatus.value, status.value
            )

        unknown = set(extra) - set(_EXTRA_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        assignments = ["delivery_status = ?"]
        values: List[Any] = [status.value]
        for field, value in extra.items():
            assignments.append(f"{_EXTRA_FIELDS[field]} = ?")
            values.append(value)
        values.append(message_id)

        self._get_connection().execute(
            f"UPDATE messages SET {', '.join(assignments)} WHERE id = ?", values
        )
        return self._get_message(message_id)

    def _mark_read(self, message_id: int) -> Message:
        current = self._get_message(message_id)
        if current.isRead:
            return current
        return self._update_status(
            message_id, DeliveryStatus.READ, False,
            {"isRead": True, "readAt": _utcnow()},
        )

    def _edit_message(self, message_id: int, content: str) -> Message:
        self._get_message(message_id)
        self._get_connection().execute(
            "UPDATE messages SET content = ?, is_edited = TRUE, edited_at = ? WHERE id = ?",
            [content, _utcnow(), message_id],
        )
        return self._get_message(message_id)

    def _soft_delete(self, message_id: int) -> Message:
        current = self._get_message(message_id)
        if current.isDeleted:
            return current
        self._get_connection().execute(
            "UPDATE messages SET is_deleted = TRUE, deleted_at = ? WHERE id = ?",
            [_utcnow(), message_id],
        )
        return self._get_message(message_id)

    def _count_unread(self, user_id: int) -> int:
        row = self._get_connection().execute(
            """
            SELECT COUNT(*) FROM messages
            WHERE recipient_id = ? AND is_read = FALSE AND is_deleted = FALSE
            """,
            [user_id],
        ).fetchone()
        return int(row[0])

    def _history(
        self,
        user_a: int,
        user_b: int,
        job_id: Optional[int],
        after: Optional[int],
        before: Optional[int],
        limit: Optional[int],
        include_deleted: bool,
    ) -> HistoryPage:
        limit = min(limit or self.default_page_size, self.max_page_size)

        clauses = [
            "((sender_id = ? AND recipient_id = ?) OR (sender_id = ? AND recipient_id = ?))"
        ]
        params: List[Any] = [user_a, user_b, user_b, user_a]
        if job_id is None:
            clauses.append("job_id IS NULL")
        else:
            clauses.append("job_id = ?")
            params.append(job_id)
        if not include_deleted:
            clauses.append("is_deleted = FALSE")

        conn = self._get_connection()
        where = " AND ".join(clauses)

        if after is not None:
            cursor_sql, cursor_params = "", []
            if after:
                cursor_ts = self._cursor_created_at(after)
                cursor_sql = "AND (created_at > ? OR (created_at = ? AND id > ?))"
                cursor_params = [cursor_ts, cursor_ts, after]
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE {where} {cursor_sql}
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                params + cursor_params + [limit + 1],
            ).fetchall()
            has_more = len(rows) > limit
            messages = [self._row_to_message(row) for row in rows[:limit]]
            next_cursor = messages[-1].id if messages else after
        else:
            cursor_sql, cursor_params = "", []
            if before is not None:
                cursor_ts = self._cursor_created_at(before)
                cursor_sql = "AND (created_at < ? OR (created_at = ? AND id < ?))"
                cursor_params = [cursor_ts, cursor_ts, before]
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE {where} {cursor_sql}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                params + cursor_params + [limit + 1],
            ).fetchall()
            has_more = len(rows) > limit
            messages = [self._row_to_message(row) for row in reversed(rows[:limit])]
            next_cursor = messages[0].id if messages else before

        return HistoryPage(messages=messages, nextCursor=next_cursor, hasMore=has_more)

    def _cursor_created_at(self, message_id: int) -> datetime:
        row = self._get_connection().execute(
            "SELECT created_at FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        if row is None:
            raise NotFoundError(message_id)
        return row[0]

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row[0],
            senderId=row[1],
            recipientId=row[2],
            jobId=row[3],
            content=row[4],
            messageType=row[5],
            createdAt=row[6],
            editedAt=row[7],
            isEdited=row[8],
            isRead=row[9],
            readAt=row[10],
            isDeleted=row[11],
            deletedAt=row[12],
            deliveryStatus=row[13],
            retryCount=row[14],
            attachmentUrl=row[15],
            attachmentName=row[16],
            attachmentSize=row[17],
            resendCount=row[18],
        )
