"""
Sync State Tracking.

Keeps one row per (user, platform) with the fetch watermark, the cached
aggregate counts shown in the UI, and the single-flight flag that stops two
syncs of the same platform from running at once. The flag carries a lease
so a crashed worker cannot hold it forever, and an owner token so a worker
whose lease ran out cannot release the flag a newer worker has taken.

Every attempt is also appended to a sync_runs audit table.
"""
import sqlite3
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from omnicrm.utils.datetime_utils import make_aware, to_utc_iso, utc_now
from omnicrm.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return make_aware(datetime.fromisoformat(value)) if value else None


@dataclass
class SyncState:
    """Sync bookkeeping for one platform of one user."""
    user_id: str
    platform: str
    last_sync_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    currently_syncing: bool = False
    lease_expires_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    sync_started_at: Optional[datetime] = None
    initial_sync_complete: bool = False
    contact_count: int = 0
    message_count: int = 0
    total_messages_processed: int = 0
    last_status: Optional[SyncStatus] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def lock_held(self, now: Optional[datetime] = None) -> bool:
        """True if a sync holds the flag and its lease has not expired."""
        now = now or utc_now()
        if not self.currently_syncing:
            return False
        return self.lease_expires_at is None or self.lease_expires_at > now

    @property
    def state(self) -> SyncStatus:
        return SyncStatus.SYNCING if self.lock_held() else SyncStatus.IDLE

    def is_stale(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        if self.last_sync_at is None:
            return True
        return (now or utc_now()) - self.last_sync_at >= max_age

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("last_sync_at", "last_message_at", "lease_expires_at",
                    "sync_started_at", "created_at", "updated_at"):
            value = getattr(self, key)
            data[key] = value.isoformat() if value else None
        data["last_status"] = self.last_status.value if self.last_status else None
        data["state"] = self.state.value
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncState":
        return cls(
            user_id=row["user_id"],
            platform=row["platform"],
            last_sync_at=_parse_dt(row["last_sync_at"]),
            last_message_at=_parse_dt(row["last_message_at"]),
            currently_syncing=bool(row["currently_syncing"]),
            lease_expires_at=_parse_dt(row["lease_expires_at"]),
            lease_owner=row["lease_owner"],
            sync_started_at=_parse_dt(row["sync_started_at"]),
            initial_sync_complete=bool(row["initial_sync_complete"]),
            contact_count=row["contact_count"] or 0,
            message_count=row["message_count"] or 0,
            total_messages_processed=row["total_messages_processed"] or 0,
            last_status=SyncStatus(row["last_status"]) if row["last_status"] else None,
            last_error=row["last_error"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )


class SyncStateStore:
    """SQLite-backed sync state and run history."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_crm_db_path()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize sync state schema."""
        conn = self._get_connection()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    user_id TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    last_sync_at TEXT,
                    last_message_at TEXT,
                    currently_syncing INTEGER NOT NULL DEFAULT 0,
                    lease_expires_at TEXT,
                    lease_owner TEXT,
                    sync_started_at TEXT,
                    initial_sync_complete INTEGER NOT NULL DEFAULT 0,
                    contact_count INTEGER DEFAULT 0,
                    message_count INTEGER DEFAULT 0,
                    total_messages_processed INTEGER DEFAULT 0,
                    last_status TEXT,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, platform)
                );

                CREATE TABLE IF NOT EXISTS sync_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    trigger_source TEXT DEFAULT 'manual',
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    contacts_processed INTEGER DEFAULT 0,
                    messages_stored INTEGER DEFAULT 0,
                    errors INTEGER DEFAULT 0,
                    error_message TEXT,
                    duration_seconds REAL
                );

                CREATE INDEX IF NOT EXISTS idx_sync_runs_user_platform
                ON sync_runs(user_id, platform, started_at DESC);
            """)

            # Migration: databases created before lease tokens
            cursor = conn.execute("PRAGMA table_info(sync_state)")
            columns = {row[1] for row in cursor.fetchall()}
            if "lease_owner" not in columns:
                conn.execute("ALTER TABLE sync_state ADD COLUMN lease_owner TEXT")
                logger.info("Added lease_owner column to sync_state table")

            conn.commit()
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def ensure_state(self, user_id: str, platform: str):
        """Create the state row on first contact with a platform."""
        now = to_utc_iso(utc_now())
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT OR IGNORE INTO sync_state (user_id, platform, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (user_id, platform, now, now))
            conn.commit()
        finally:
            conn.close()

    def get_state(self, user_id: str, platform: str) -> Optional[SyncState]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM sync_state WHERE user_id = ? AND platform = ?",
                (user_id, platform),
            ).fetchone()
            return SyncState.from_row(row) if row else None
        finally:
            conn.close()

    def list_states(self, user_id: str) -> list[SyncState]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM sync_state WHERE user_id = ? ORDER BY platform", (user_id,)
            ).fetchall()
            return [SyncState.from_row(r) for r in rows]
        finally:
            conn.close()

    def try_acquire(
        self,
        user_id: str,
        platform: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Atomically take the single-flight flag.

        Succeeds if nobody holds the flag or the holder's lease expired.

        Returns:
            Lease token identifying this holder, or None if another sync
            holds the flag
        """
        self.ensure_state(user_id, platform)
        now = now or utc_now()
        now_iso = to_utc_iso(now)
        token = str(uuid.uuid4())

        conn = self._get_connection()
        try:
            previous = conn.execute(
                "SELECT currently_syncing FROM sync_state WHERE user_id = ? AND platform = ?",
                (user_id, platform),
            ).fetchone()
            cursor = conn.execute("""
                UPDATE sync_state SET
                    currently_syncing = 1,
                    lease_expires_at = ?,
                    lease_owner = ?,
                    sync_started_at = ?,
                    updated_at = ?
                WHERE user_id = ? AND platform = ?
                  AND (currently_syncing = 0 OR lease_expires_at IS NULL OR lease_expires_at <= ?)
            """, (
                to_utc_iso(now + timedelta(seconds=lease_seconds)),
                token,
                now_iso,
                now_iso,
                user_id,
                platform,
                now_iso,
            ))
            conn.commit()
            acquired = cursor.rowcount == 1
        finally:
            conn.close()

        if not acquired:
            return None
        if previous and previous["currently_syncing"]:
            logger.warning(f"Reclaimed expired sync lease for {user_id}/{platform}")
        return token

    def renew(
        self,
        user_id: str,
        platform: str,
        lease_token: str,
        lease_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Push the lease expiry forward for a long-running sync.

        Returns:
            False if the lease was lost to another worker
        """
        now = now or utc_now()
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                UPDATE sync_state SET lease_expires_at = ?, updated_at = ?
                WHERE user_id = ? AND platform = ? AND currently_syncing = 1 AND lease_owner = ?
            """, (
                to_utc_iso(now + timedelta(seconds=lease_seconds)),
                to_utc_iso(now),
                user_id,
                platform,
                lease_token,
            ))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def complete(
        self,
        user_id: str,
        platform: str,
        status: SyncStatus,
        contact_count: int,
        message_count: int,
        last_message_at: Optional[datetime] = None,
        messages_processed: int = 0,
        error: Optional[str] = None,
        lease_token: Optional[str] = None,
    ) -> bool:
        """
        Record the attempt's outcome and release the flag if we still own it.

        Aggregates and last_sync_at are written whatever the status. The
        message watermark only moves forward. The flag is only cleared when
        ``lease_token`` matches the current owner, so a worker whose lease
        was reclaimed leaves the newer holder's flag alone.

        Returns:
            True if this call released the flag
        """
        now_iso = to_utc_iso(utc_now())
        watermark = to_utc_iso(last_message_at)
        conn = self._get_connection()
        try:
            conn.execute("""
                UPDATE sync_state SET
                    last_sync_at = ?,
                    last_message_at = CASE
                        WHEN ? IS NOT NULL AND (last_message_at IS NULL OR ? > last_message_at) THEN ?
                        ELSE last_message_at
                    END,
                    initial_sync_complete = CASE WHEN ? = 'completed' THEN 1 ELSE initial_sync_complete END,
                    contact_count = ?,
                    message_count = ?,
                    total_messages_processed = total_messages_processed + ?,
                    last_status = ?,
                    last_error = ?,
                    updated_at = ?
                WHERE user_id = ? AND platform = ?
            """, (
                now_iso,
                watermark, watermark, watermark,
                status.value,
                contact_count,
                message_count,
                messages_processed,
                status.value,
                error,
                now_iso,
                user_id,
                platform,
            ))
            released = False
            if lease_token is not None:
                cursor = conn.execute("""
                    UPDATE sync_state SET currently_syncing = 0, lease_expires_at = NULL, lease_owner = NULL
                    WHERE user_id = ? AND platform = ? AND lease_owner = ?
                """, (user_id, platform, lease_token))
                released = cursor.rowcount == 1
            conn.commit()
        finally:
            conn.close()

        if lease_token is not None and not released:
            logger.warning(f"Sync lease for {user_id}/{platform} was reclaimed before completion, flag left as is")
        return released

    def reset(self, user_id: str, platform: str):
        """
        Forget watermarks so the next sync starts from scratch.

        The row itself is kept; cached counts stay until the next sync
        replaces them.
        """
        conn = self._get_connection()
        try:
            conn.execute("""
                UPDATE sync_state SET
                    last_sync_at = NULL,
                    last_message_at = NULL,
                    initial_sync_complete = 0,
                    total_messages_processed = 0,
                    currently_syncing = 0,
                    lease_expires_at = NULL,
                    lease_owner = NULL,
                    last_error = NULL,
                    updated_at = ?
                WHERE user_id = ? AND platform = ?
            """, (to_utc_iso(utc_now()), user_id, platform))
            conn.commit()
        finally:
            conn.close()
        logger.info(f"Reset sync state for {user_id}/{platform}")

    # -------------------------------------------------------------------------
    # Run history
    # -------------------------------------------------------------------------

    def record_run_start(self, user_id: str, platform: str, trigger: str = "manual") -> int:
        """
        Record the start of a sync attempt.

        Returns:
            Run ID for updating completion status
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                INSERT INTO sync_runs (user_id, platform, trigger_source, status, started_at)
                VALUES (?, ?, ?, ?, ?)
            """, (user_id, platform, trigger, SyncStatus.SYNCING.value, to_utc_iso(utc_now())))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def record_run_complete(
        self,
        run_id: int,
        status: SyncStatus,
        contacts_processed: int = 0,
        messages_stored: int = 0,
        errors: int = 0,
        error_message: Optional[str] = None,
    ):
        """Record completion of a sync attempt."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT started_at FROM sync_runs WHERE id = ?", (run_id,)
            ).fetchone()

            duration = None
            if row:
                started = _parse_dt(row["started_at"])
                duration = (utc_now() - started).total_seconds()

            conn.execute("""
                UPDATE sync_runs SET
                    status = ?,
                    completed_at = ?,
                    contacts_processed = ?,
                    messages_stored = ?,
                    errors = ?,
                    error_message = ?,
                    duration_seconds = ?
                WHERE id = ?
            """, (
                status.value,
                to_utc_iso(utc_now()),
                contacts_processed,
                messages_stored,
                errors,
                error_message,
                duration,
                run_id,
            ))
            conn.commit()
        finally:
            conn.close()

    def record_skipped_run(self, user_id: str, platform: str, trigger: str, reason: str):
        conn = self._get_connection()
        try:
            now = to_utc_iso(utc_now())
            conn.execute("""
                INSERT INTO sync_runs
                (user_id, platform, trigger_source, status, started_at, completed_at,
                 error_message, duration_seconds)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """, (user_id, platform, trigger, SyncStatus.SKIPPED.value, now, now, reason))
            conn.commit()
        finally:
            conn.close()

    def get_recent_runs(self, user_id: str, platform: Optional[str] = None, limit: int = 20) -> list[dict]:
        conn = self._get_connection()
        try:
            if platform:
                rows = conn.execute("""
                    SELECT * FROM sync_runs WHERE user_id = ? AND platform = ?
                    ORDER BY id DESC LIMIT ?
                """, (user_id, platform, limit)).fetchall()
            else:
                rows = conn.execute("""
                    SELECT * FROM sync_runs WHERE user_id = ?
                    ORDER BY id DESC LIMIT ?
                """, (user_id, limit)).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()
