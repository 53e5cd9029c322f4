"""
MessageStore - Deduplicated raw messages and per-thread summaries.

Raw messages are unique per (user_id, platform, platform_message_id);
re-delivering a message is a no-op at the storage layer. Content is
immutable; read state changes, and contact link and thread key are
rewritten when an identity is unified after its messages arrived or a
chat reply reveals that an earlier message was a thread root.

Thread summaries hold one row per (user_id, thread_key) and are replaced
in place each time a thread is re-summarized.
"""
import sqlite3
import json
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from omnicrm.services.platforms import Direction, MessageMetadata, GenericMetadata, metadata_from_dict
from omnicrm.utils.datetime_utils import make_aware, to_utc_iso, utc_now
from omnicrm.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return make_aware(datetime.fromisoformat(value)) if value else None


@dataclass
class StoredMessage:
    """A message as persisted, with its resolved contact and thread key."""

    user_id: str
    platform: str
    platform_message_id: str
    timestamp: datetime
    thread_key: str
    direction: Direction = Direction.INBOUND
    content: str = ""
    contact_id: Optional[str] = None
    counterpart_id: Optional[str] = None  # native id of the other party
    thread_root: Optional[str] = None     # native thread id this message would root
    sender_id: Optional[str] = None
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    metadata: MessageMetadata = field(default_factory=GenericMetadata)
    is_read: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform,
            "platform_message_id": self.platform_message_id,
            "timestamp": self.timestamp.isoformat(),
            "thread_key": self.thread_key,
            "direction": self.direction.value,
            "content": self.content,
            "contact_id": self.contact_id,
            "counterpart_id": self.counterpart_id,
            "sender_id": self.sender_id,
            "sender_email": self.sender_email,
            "sender_name": self.sender_name,
            "metadata": self.metadata.to_dict(),
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredMessage":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            platform=row["platform"],
            platform_message_id=row["platform_message_id"],
            timestamp=_parse_dt(row["timestamp"]),
            thread_key=row["thread_key"],
            direction=Direction(row["direction"]),
            content=row["content"] or "",
            contact_id=row["contact_id"],
            counterpart_id=row["counterpart_id"],
            thread_root=row["thread_root"],
            sender_id=row["sender_id"],
            sender_email=row["sender_email"],
            sender_name=row["sender_name"],
            metadata=metadata_from_dict(json.loads(row["metadata"]) if row["metadata"] else None),
            is_read=bool(row["is_read"]),
            created_at=_parse_dt(row["created_at"]),
        )


@dataclass
class ThreadSummary:
    """Latest AI analysis of one conversation thread."""

    user_id: str
    thread_key: str
    contact_id: Optional[str] = None
    platform: Optional[str] = None

    summary: str = ""
    key_topics: list[str] = field(default_factory=list)
    current_status: str = "ongoing"
    urgency: str = "low"
    action_items: list[str] = field(default_factory=list)
    unresponded_count: int = 0

    # State of the thread at summarization time
    total_message_count: int = 0
    summarized_message_count: int = 0
    last_message_at: Optional[datetime] = None

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "thread_key": self.thread_key,
            "contact_id": self.contact_id,
            "platform": self.platform,
            "summary": self.summary,
            "key_topics": list(self.key_topics),
            "current_status": self.current_status,
            "urgency": self.urgency,
            "action_items": list(self.action_items),
            "unresponded_count": self.unresponded_count,
            "total_message_count": self.total_message_count,
            "summarized_message_count": self.summarized_message_count,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ThreadSummary":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            thread_key=row["thread_key"],
            contact_id=row["contact_id"],
            platform=row["platform"],
            summary=row["summary"] or "",
            key_topics=json.loads(row["key_topics"]) if row["key_topics"] else [],
            current_status=row["current_status"] or "ongoing",
            urgency=row["urgency"] or "low",
            action_items=json.loads(row["action_items"]) if row["action_items"] else [],
            unresponded_count=row["unresponded_count"] or 0,
            total_message_count=row["total_message_count"] or 0,
            summarized_message_count=row["summarized_message_count"] or 0,
            last_message_at=_parse_dt(row["last_message_at"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )


class MessageStore:
    """
    SQLite-backed storage for raw messages and thread summaries.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the message store.

        Args:
            db_path: Path to SQLite database (default from settings)
        """
        self.db_path = db_path or get_crm_db_path()
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS raw_messages (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    platform_message_id TEXT NOT NULL,
                    contact_id TEXT,
                    counterpart_id TEXT,
                    thread_root TEXT,
                    thread_key TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    content TEXT,
                    timestamp TIMESTAMP NOT NULL,
                    sender_id TEXT,
                    sender_email TEXT,
                    sender_name TEXT,
                    metadata TEXT,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE(user_id, platform, platform_message_id)
                )
            """)

            # Thread views read one thread in order
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_raw_messages_thread
                ON raw_messages(user_id, thread_key, timestamp)
            """)

            # Migration: databases created before identity relinking
            cursor = conn.execute("PRAGMA table_info(raw_messages)")
            columns = {row[1] for row in cursor.fetchall()}
            if "counterpart_id" not in columns:
                conn.execute("ALTER TABLE raw_messages ADD COLUMN counterpart_id TEXT")
                logger.info("Added counterpart_id column to raw_messages table")
            if "thread_root" not in columns:
                conn.execute("ALTER TABLE raw_messages ADD COLUMN thread_root TEXT")
                logger.info("Added thread_root column to raw_messages table")

            # Relinking finds earlier messages by counterpart and by thread root
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_raw_messages_counterpart
                ON raw_messages(user_id, platform, counterpart_id)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_raw_messages_thread_root
                ON raw_messages(user_id, platform, thread_root)
            """)

            # Sync watermarks and per-platform counts
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_raw_messages_platform
                ON raw_messages(user_id, platform, timestamp DESC)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS thread_summaries (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    thread_key TEXT NOT NULL,
                    contact_id TEXT,
                    platform TEXT,
                    summary TEXT,
                    key_topics TEXT,
                    current_status TEXT,
                    urgency TEXT,
                    action_items TEXT,
                    unresponded_count INTEGER DEFAULT 0,
                    total_message_count INTEGER DEFAULT 0,
                    summarized_message_count INTEGER DEFAULT 0,
                    last_message_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    UNIQUE(user_id, thread_key)
                )
            """)

            conn.commit()
            logger.debug(f"Initialized message database at {self.db_path}")
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    # -------------------------------------------------------------------------
    # Raw messages
    # -------------------------------------------------------------------------

    def insert_message(self, message: StoredMessage) -> bool:
        """
        Store a message unless it is already stored.

        Returns:
            True if a new row was written, False if it was a duplicate
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO raw_messages
                (id, user_id, platform, platform_message_id, contact_id, counterpart_id, thread_root,
                 thread_key, direction, content, timestamp, sender_id, sender_email, sender_name,
                 metadata, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                message.id,
                message.user_id,
                message.platform,
                message.platform_message_id,
                message.contact_id,
                message.counterpart_id,
                message.thread_root,
                message.thread_key,
                message.direction.value,
                message.content,
                to_utc_iso(message.timestamp),
                message.sender_id,
                message.sender_email,
                message.sender_name,
                json.dumps(message.metadata.to_dict()),
                1 if message.is_read else 0,
                to_utc_iso(message.created_at),
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get_message(self, user_id: str, platform: str, platform_message_id: str) -> Optional[StoredMessage]:
        conn = self._get_connection()
        try:
            row = conn.execute("""
                SELECT * FROM raw_messages
                WHERE user_id = ? AND platform = ? AND platform_message_id = ?
            """, (user_id, platform, platform_message_id)).fetchone()
            return StoredMessage.from_row(row) if row else None
        finally:
            conn.close()

    def get_thread_messages(self, user_id: str, thread_key: str) -> list[StoredMessage]:
        """All messages of one thread, oldest first."""
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM raw_messages
                WHERE user_id = ? AND thread_key = ?
                ORDER BY timestamp ASC, platform_message_id ASC
            """, (user_id, thread_key)).fetchall()
            return [StoredMessage.from_row(r) for r in rows]
        finally:
            conn.close()

    def list_messages(
        self,
        user_id: str,
        platform: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> list[StoredMessage]:
        conn = self._get_connection()
        try:
            query = "SELECT * FROM raw_messages WHERE user_id = ?"
            params: list = [user_id]
            if platform:
                query += " AND platform = ?"
                params.append(platform)
            if contact_id:
                query += " AND contact_id = ?"
                params.append(contact_id)
            query += " ORDER BY timestamp ASC, platform_message_id ASC"
            rows = conn.execute(query, params).fetchall()
            return [StoredMessage.from_row(r) for r in rows]
        finally:
            conn.close()

    def count_messages(self, user_id: str, platform: Optional[str] = None) -> int:
        conn = self._get_connection()
        try:
            if platform:
                row = conn.execute(
                    "SELECT COUNT(*) FROM raw_messages WHERE user_id = ? AND platform = ?",
                    (user_id, platform),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM raw_messages WHERE user_id = ?", (user_id,)
                ).fetchone()
            return row[0]
        finally:
            conn.close()

    def latest_message_at(self, user_id: str, platform: str) -> Optional[datetime]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT MAX(timestamp) FROM raw_messages WHERE user_id = ? AND platform = ?",
                (user_id, platform),
            ).fetchone()
            return _parse_dt(row[0])
        finally:
            conn.close()

    def mark_read(self, user_id: str, message_ids: list[str], is_read: bool = True) -> int:
        """
        Update read state by stored message id.

        Returns:
            Number of messages updated
        """
        if not message_ids:
            return 0
        conn = self._get_connection()
        try:
            placeholders = ",".join("?" for _ in message_ids)
            cursor = conn.execute(
                f"UPDATE raw_messages SET is_read = ? WHERE user_id = ? AND id IN ({placeholders})",
                [1 if is_read else 0, user_id, *message_ids],
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def thread_exists(self, user_id: str, thread_key: str) -> bool:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM raw_messages WHERE user_id = ? AND thread_key = ? LIMIT 1",
                (user_id, thread_key),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def list_counterpart_messages(
        self,
        user_id: str,
        platform: str,
        counterpart_id: str,
    ) -> list[StoredMessage]:
        """Every message exchanged with one native counterpart on a platform."""
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM raw_messages
                WHERE user_id = ? AND platform = ? AND counterpart_id = ?
                ORDER BY timestamp ASC, platform_message_id ASC
            """, (user_id, platform, counterpart_id)).fetchall()
            return [StoredMessage.from_row(r) for r in rows]
        finally:
            conn.close()

    def relink_messages(self, user_id: str, links: list[tuple[str, Optional[str], str]]) -> int:
        """
        Rewrite contact link and thread key for stored messages.

        Args:
            links: (stored message id, contact_id, thread_key) per message

        Returns:
            Number of messages changed
        """
        if not links:
            return 0
        conn = self._get_connection()
        try:
            changed = 0
            for message_id, contact_id, thread_key in links:
                cursor = conn.execute("""
                    UPDATE raw_messages SET contact_id = ?, thread_key = ?
                    WHERE user_id = ? AND id = ?
                      AND (contact_id IS NOT ? OR thread_key != ?)
                """, (contact_id, thread_key, user_id, message_id, contact_id, thread_key))
                changed += cursor.rowcount
            conn.commit()
            return changed
        finally:
            conn.close()

    def adopt_thread_root(self, user_id: str, platform: str, thread_root: str, thread_key: str) -> list[str]:
        """
        Move messages that turned out to root a native thread into it.

        Returns:
            Thread keys the moved messages were filed under before
        """
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT DISTINCT thread_key FROM raw_messages
                WHERE user_id = ? AND platform = ? AND thread_root = ? AND thread_key != ?
            """, (user_id, platform, thread_root, thread_key)).fetchall()
            previous = [r["thread_key"] for r in rows]
            if previous:
                conn.execute("""
                    UPDATE raw_messages SET thread_key = ?
                    WHERE user_id = ? AND platform = ? AND thread_root = ? AND thread_key != ?
                """, (thread_key, user_id, platform, thread_root, thread_key))
                conn.commit()
            return previous
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Thread summaries
    # -------------------------------------------------------------------------

    def upsert_thread_summary(self, summary: ThreadSummary) -> ThreadSummary:
        """Insert or replace the single summary row for (user_id, thread_key)."""
        summary.updated_at = utc_now()
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO thread_summaries
                (id, user_id, thread_key, contact_id, platform, summary, key_topics,
                 current_status, urgency, action_items, unresponded_count,
                 total_message_count, summarized_message_count, last_message_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, thread_key) DO UPDATE SET
                    contact_id = excluded.contact_id,
                    platform = excluded.platform,
                    summary = excluded.summary,
                    key_topics = excluded.key_topics,
                    current_status = excluded.current_status,
                    urgency = excluded.urgency,
                    action_items = excluded.action_items,
                    unresponded_count = excluded.unresponded_count,
                    total_message_count = excluded.total_message_count,
                    summarized_message_count = excluded.summarized_message_count,
                    last_message_at = excluded.last_message_at,
                    updated_at = excluded.updated_at
            """, (
                summary.id,
                summary.user_id,
                summary.thread_key,
                summary.contact_id,
                summary.platform,
                summary.summary,
                json.dumps(summary.key_topics),
                summary.current_status,
                summary.urgency,
                json.dumps(summary.action_items),
                summary.unresponded_count,
                summary.total_message_count,
                summary.summarized_message_count,
                to_utc_iso(summary.last_message_at),
                to_utc_iso(summary.created_at),
                to_utc_iso(summary.updated_at),
            ))
            conn.commit()
        finally:
            conn.close()
        return self.get_thread_summary(summary.user_id, summary.thread_key)

    def get_thread_summary(self, user_id: str, thread_key: str) -> Optional[ThreadSummary]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM thread_summaries WHERE user_id = ? AND thread_key = ?",
                (user_id, thread_key),
            ).fetchone()
            return ThreadSummary.from_row(row) if row else None
        finally:
            conn.close()

    def drop_orphaned_summaries(self, user_id: str, thread_keys: list[str]) -> int:
        """Delete summaries of the given threads that no longer hold any message."""
        if not thread_keys:
            return 0
        conn = self._get_connection()
        try:
            placeholders = ",".join("?" for _ in thread_keys)
            cursor = conn.execute(f"""
                DELETE FROM thread_summaries
                WHERE user_id = ? AND thread_key IN ({placeholders})
                  AND NOT EXISTS (
                      SELECT 1 FROM raw_messages m
                      WHERE m.user_id = thread_summaries.user_id
                        AND m.thread_key = thread_summaries.thread_key
                  )
            """, [user_id, *thread_keys])
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def list_thread_summaries(self, user_id: str) -> list[ThreadSummary]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM thread_summaries
                WHERE user_id = ?
                ORDER BY last_message_at DESC, thread_key
            """, (user_id,)).fetchall()
            return [ThreadSummary.from_row(r) for r in rows]
        finally:
            conn.close()
