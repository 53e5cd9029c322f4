"""
Contact Review Queue.

Holds matches that landed in the needs-review band during unification.
Those contacts were created as new people; each queue item pairs the new
contact with one existing candidate and waits for the user to decide:

- approve -> the new identity moves onto the candidate (status merged)
- reject  -> the two stay separate people (status skipped)

Approving one candidate for an identity skips the identity's other
pending candidates.
"""
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from omnicrm.utils.datetime_utils import make_aware, to_utc_iso, utc_now
from omnicrm.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


class ReviewStatus(str, Enum):
    PENDING = "pending"
    MERGED = "merged"    # approved, identity moved onto the candidate
    SKIPPED = "skipped"  # rejected, or superseded by another decision


class ReviewItemNotFoundError(LookupError):
    """No review item with this id for this user."""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return make_aware(datetime.fromisoformat(value)) if value else None


@dataclass
class PendingMatch:
    """A possible match awaiting the user's decision."""

    user_id: str
    platform: str
    platform_native_id: str
    new_contact_id: str
    candidate_contact_id: str
    score: float
    new_contact_name: str = ""
    candidate_name: str = ""
    matched_fields: list[str] = field(default_factory=list)

    status: ReviewStatus = ReviewStatus.PENDING
    reviewed_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform,
            "platform_native_id": self.platform_native_id,
            "new_contact_id": self.new_contact_id,
            "new_contact_name": self.new_contact_name,
            "candidate_contact_id": self.candidate_contact_id,
            "candidate_name": self.candidate_name,
            "score": self.score,
            "matched_fields": list(self.matched_fields),
            "status": self.status.value,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PendingMatch":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            platform=row["platform"],
            platform_native_id=row["platform_native_id"],
            new_contact_id=row["new_contact_id"],
            new_contact_name=row["new_contact_name"] or "",
            candidate_contact_id=row["candidate_contact_id"],
            candidate_name=row["candidate_name"] or "",
            score=row["score"],
            matched_fields=json.loads(row["matched_fields"]) if row["matched_fields"] else [],
            status=ReviewStatus(row["status"]),
            reviewed_at=_parse_dt(row["reviewed_at"]),
            created_at=_parse_dt(row["created_at"]),
        )


class ReviewQueueStore:
    """SQLite-backed queue of contact matches awaiting review."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or get_crm_db_path()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Create the review queue table if it doesn't exist."""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS contact_review_queue (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    platform_native_id TEXT NOT NULL,
                    new_contact_id TEXT NOT NULL,
                    new_contact_name TEXT,
                    candidate_contact_id TEXT NOT NULL,
                    candidate_name TEXT,
                    score REAL NOT NULL,
                    matched_fields TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    reviewed_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE(user_id, platform, platform_native_id, candidate_contact_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_contact_review_queue_status
                ON contact_review_queue(user_id, status, score DESC)
            """)
            conn.commit()
        finally:
            conn.close()

    def add_pending(self, match: PendingMatch) -> PendingMatch:
        """
        Queue a match. A pair already queued (in any status) is not queued
        again, so a rejected pair stays rejected.
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO contact_review_queue
                (id, user_id, platform, platform_native_id, new_contact_id, new_contact_name,
                 candidate_contact_id, candidate_name, score, matched_fields, status,
                 reviewed_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                match.id,
                match.user_id,
                match.platform,
                match.platform_native_id,
                match.new_contact_id,
                match.new_contact_name,
                match.candidate_contact_id,
                match.candidate_name,
                match.score,
                json.dumps(match.matched_fields),
                match.status.value,
                to_utc_iso(match.reviewed_at),
                to_utc_iso(match.created_at),
            ))
            conn.commit()
            if cursor.rowcount == 0:
                row = conn.execute("""
                    SELECT * FROM contact_review_queue
                    WHERE user_id = ? AND platform = ? AND platform_native_id = ? AND candidate_contact_id = ?
                """, (match.user_id, match.platform, match.platform_native_id,
                      match.candidate_contact_id)).fetchone()
                return PendingMatch.from_row(row)
        finally:
            conn.close()

        logger.info(
            f"Queued review: {match.platform}:{match.platform_native_id} may be "
            f"{match.candidate_name or match.candidate_contact_id} (score={match.score})"
        )
        return match

    def get_by_id(self, user_id: str, item_id: str) -> PendingMatch:
        """
        Raises:
            ReviewItemNotFoundError: no such item for this user
        """
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM contact_review_queue WHERE id = ? AND user_id = ?", (item_id, user_id)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise ReviewItemNotFoundError(f"Review item {item_id} not found")
        return PendingMatch.from_row(row)

    def get_pending(self, user_id: str, limit: int = 50, offset: int = 0) -> list[PendingMatch]:
        """Pending items, most confident first."""
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM contact_review_queue
                WHERE user_id = ? AND status = 'pending'
                ORDER BY score DESC, created_at ASC, id
                LIMIT ? OFFSET ?
            """, (user_id, limit, offset)).fetchall()
            return [PendingMatch.from_row(r) for r in rows]
        finally:
            conn.close()

    def count_pending(self, user_id: str) -> int:
        conn = self._get_connection()
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM contact_review_queue WHERE user_id = ? AND status = 'pending'",
                (user_id,),
            ).fetchone()[0]
        finally:
            conn.close()

    def mark_reviewed(self, user_id: str, item_id: str, status: ReviewStatus) -> PendingMatch:
        """
        Record a decision on a pending item.

        Raises:
            ValueError: ``status`` is pending, or the item was already decided
            ReviewItemNotFoundError: no such item for this user
        """
        if status == ReviewStatus.PENDING:
            raise ValueError("A review decision must be merged or skipped")

        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                UPDATE contact_review_queue SET status = ?, reviewed_at = ?
                WHERE id = ? AND user_id = ? AND status = 'pending'
            """, (status.value, to_utc_iso(utc_now()), item_id, user_id))
            conn.commit()
            updated = cursor.rowcount == 1
        finally:
            conn.close()

        item = self.get_by_id(user_id, item_id)
        if not updated:
            raise ValueError(f"Review item {item_id} was already {item.status.value}")
        logger.info(f"Marked review item {item_id[:8]} as {status.value}")
        return item

    def skip_remaining(self, user_id: str, platform: str, platform_native_id: str) -> int:
        """Skip every still-pending item for one identity."""
        return self._skip("platform = ? AND platform_native_id = ?", user_id, (platform, platform_native_id))

    def skip_for_contact(self, user_id: str, contact_id: str) -> int:
        """Skip pending items involving a contact that no longer exists."""
        return self._skip("(new_contact_id = ? OR candidate_contact_id = ?)", user_id, (contact_id, contact_id))

    def _skip(self, condition: str, user_id: str, params: tuple) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(f"""
                UPDATE contact_review_queue SET status = 'skipped', reviewed_at = ?
                WHERE user_id = ? AND status = 'pending' AND {condition}
            """, (to_utc_iso(utc_now()), user_id, *params))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
