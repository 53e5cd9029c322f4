"""
ContactStore - Unified contacts and the platform identities linked to them.

Part of the two-tier contact model:
- PlatformIdentity: one observed (platform, native id) per user, as the
  platform reported it
- UnifiedContact: the merged person record every identity points at

The identity table carries a UNIQUE(user_id, platform, platform_native_id)
constraint. Two workers racing to create the same identity cannot both
win; the loser gets a DataConflictError naming the contact that won.
"""
import sqlite3
import json
import uuid
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional

from omnicrm.services.platforms import OwnerIdentity
from omnicrm.services.resilience import DataConflictError, retry_sync
from omnicrm.utils.datetime_utils import make_aware, to_utc_iso, utc_now
from omnicrm.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return make_aware(datetime.fromisoformat(value)) if value else None


@dataclass
class UnifiedContact:
    """A person, merged across every platform the user has seen them on."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ""
    full_name: str = ""

    # Canonical fields are filled by the first identity that supplies them
    email: Optional[str] = None
    phone: Optional[str] = None
    photo_url: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UnifiedContact":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            full_name=row["full_name"] or "",
            email=row["email"],
            phone=row["phone"],
            photo_url=row["photo_url"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )


@dataclass
class PlatformIdentity:
    """One (platform, native id) observation, linked to exactly one contact."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ""
    contact_id: str = ""
    platform: str = ""
    platform_native_id: str = ""

    # Raw observed values
    observed_name: Optional[str] = None
    observed_email: Optional[str] = None
    observed_phone: Optional[str] = None
    handle: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PlatformIdentity":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            contact_id=row["contact_id"],
            platform=row["platform"],
            platform_native_id=row["platform_native_id"],
            observed_name=row["observed_name"],
            observed_email=row["observed_email"],
            observed_phone=row["observed_phone"],
            handle=row["handle"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=_parse_dt(row["created_at"]),
        )


class ContactStore:
    """
    SQLite-backed storage for unified contacts, platform identities and the
    owner's own identities.

    Every method opens its own connection so the store can be shared
    between threads.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the contact store.

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
                CREATE TABLE IF NOT EXISTS unified_contacts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    full_name TEXT NOT NULL DEFAULT '',
                    email TEXT,
                    phone TEXT,
                    photo_url TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_unified_contacts_user
                ON unified_contacts(user_id, created_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS platform_identities (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    contact_id TEXT NOT NULL REFERENCES unified_contacts(id),
                    platform TEXT NOT NULL,
                    platform_native_id TEXT NOT NULL,
                    observed_name TEXT,
                    observed_email TEXT,
                    observed_phone TEXT,
                    handle TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE(user_id, platform, platform_native_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_platform_identities_contact
                ON platform_identities(contact_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS owner_identities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    native_id TEXT NOT NULL DEFAULT '',
                    email TEXT NOT NULL DEFAULT '',
                    display_name TEXT,
                    UNIQUE(user_id, platform, native_id, email)
                )
            """)

            conn.commit()
            logger.debug(f"Initialized contact database at {self.db_path}")
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @retry_sync()
    def create_contact_with_identity(
        self,
        contact: UnifiedContact,
        identity: PlatformIdentity,
    ) -> UnifiedContact:
        """
        Insert a new contact and its first identity in one transaction.

        Raises:
            DataConflictError: the identity already exists; ``existing_id``
                is the contact it belongs to. Nothing is written.
        """
        identity.contact_id = contact.id
        identity.user_id = contact.user_id

        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("""
                INSERT INTO unified_contacts
                (id, user_id, full_name, email, phone, photo_url, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                contact.id,
                contact.user_id,
                contact.full_name,
                contact.email,
                contact.phone,
                contact.photo_url,
                to_utc_iso(contact.created_at),
                to_utc_iso(contact.updated_at),
            ))
            self._insert_identity(conn, identity)
            conn.commit()
            logger.info(
                f"Created contact {contact.id} from {identity.platform}:{identity.platform_native_id}"
            )
            return contact
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise self._conflict(conn, identity, e)
        finally:
            conn.close()

    @retry_sync()
    def attach_identity(
        self,
        contact_id: str,
        identity: PlatformIdentity,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        photo_url: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> UnifiedContact:
        """
        Link a new identity to an existing contact and backfill its empty
        canonical fields, atomically.

        Canonical fields that already hold a value are never overwritten.

        Raises:
            DataConflictError: the identity already exists
            ValueError: the contact does not exist for this user
        """
        identity.contact_id = contact_id

        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                UPDATE unified_contacts SET
                    email = COALESCE(email, ?),
                    phone = COALESCE(phone, ?),
                    photo_url = COALESCE(photo_url, ?),
                    full_name = CASE WHEN full_name = '' THEN COALESCE(?, '') ELSE full_name END,
                    updated_at = ?
                WHERE id = ? AND user_id = ?
            """, (
                email,
                phone,
                photo_url,
                full_name,
                to_utc_iso(utc_now()),
                contact_id,
                identity.user_id,
            ))
            if cursor.rowcount == 0:
                conn.rollback()
                raise ValueError(f"Contact {contact_id} not found for user {identity.user_id}")

            self._insert_identity(conn, identity)
            conn.commit()

            row = conn.execute(
                "SELECT * FROM unified_contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            logger.info(
                f"Attached {identity.platform}:{identity.platform_native_id} to contact {contact_id}"
            )
            return UnifiedContact.from_row(row)
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise self._conflict(conn, identity, e)
        finally:
            conn.close()

    @retry_sync()
    def reassign_identity(
        self,
        user_id: str,
        platform: str,
        platform_native_id: str,
        from_contact_id: str,
        to_contact_id: str,
    ) -> tuple[UnifiedContact, bool]:
        """
        Move an identity onto another contact, as when a reviewed match is
        approved.

        The target's empty canonical fields are backfilled from the source
        contact. A source contact left without identities is removed.

        Returns:
            (updated target contact, whether the source contact was removed)

        Raises:
            ValueError: the identity is not linked to ``from_contact_id``,
                or the target contact does not exist for this user
        """
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            identity = conn.execute("""
                SELECT contact_id FROM platform_identities
                WHERE user_id = ? AND platform = ? AND platform_native_id = ?
            """, (user_id, platform, platform_native_id)).fetchone()
            if identity is None or identity["contact_id"] != from_contact_id:
                conn.rollback()
                raise ValueError(
                    f"Identity {platform}:{platform_native_id} is not linked to contact {from_contact_id}"
                )

            source = conn.execute(
                "SELECT * FROM unified_contacts WHERE id = ? AND user_id = ?", (from_contact_id, user_id)
            ).fetchone()
            cursor = conn.execute("""
                UPDATE unified_contacts SET
                    email = COALESCE(email, ?),
                    phone = COALESCE(phone, ?),
                    photo_url = COALESCE(photo_url, ?),
                    full_name = CASE WHEN full_name = '' THEN COALESCE(?, '') ELSE full_name END,
                    updated_at = ?
                WHERE id = ? AND user_id = ?
            """, (
                source["email"] if source else None,
                source["phone"] if source else None,
                source["photo_url"] if source else None,
                source["full_name"] if source else None,
                to_utc_iso(utc_now()),
                to_contact_id,
                user_id,
            ))
            if cursor.rowcount == 0:
                conn.rollback()
                raise ValueError(f"Contact {to_contact_id} not found for user {user_id}")

            conn.execute("""
                UPDATE platform_identities SET contact_id = ?
                WHERE user_id = ? AND platform = ? AND platform_native_id = ?
            """, (to_contact_id, user_id, platform, platform_native_id))

            remaining = conn.execute(
                "SELECT COUNT(*) FROM platform_identities WHERE contact_id = ?", (from_contact_id,)
            ).fetchone()[0]
            removed = False
            if remaining == 0:
                conn.execute("DELETE FROM unified_contacts WHERE id = ?", (from_contact_id,))
                removed = True

            conn.commit()
            row = conn.execute(
                "SELECT * FROM unified_contacts WHERE id = ?", (to_contact_id,)
            ).fetchone()
        finally:
            conn.close()

        logger.info(
            f"Moved {platform}:{platform_native_id} from {from_contact_id} to {to_contact_id}"
            + (" (source contact removed)" if removed else "")
        )
        return UnifiedContact.from_row(row), removed

    def _insert_identity(self, conn: sqlite3.Connection, identity: PlatformIdentity):
        conn.execute("""
            INSERT INTO platform_identities
            (id, user_id, contact_id, platform, platform_native_id, observed_name,
             observed_email, observed_phone, handle, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            identity.id,
            identity.user_id,
            identity.contact_id,
            identity.platform,
            identity.platform_native_id,
            identity.observed_name,
            identity.observed_email,
            identity.observed_phone,
            identity.handle,
            json.dumps(identity.metadata) if identity.metadata else None,
            to_utc_iso(identity.created_at),
        ))

    def _conflict(
        self,
        conn: sqlite3.Connection,
        identity: PlatformIdentity,
        error: sqlite3.IntegrityError,
    ) -> DataConflictError:
        row = conn.execute("""
            SELECT contact_id FROM platform_identities
            WHERE user_id = ? AND platform = ? AND platform_native_id = ?
        """, (identity.user_id, identity.platform, identity.platform_native_id)).fetchone()
        existing_id = row["contact_id"] if row else None
        logger.debug(
            f"Identity {identity.platform}:{identity.platform_native_id} already linked "
            f"to {existing_id}: {error}"
        )
        return DataConflictError(
            f"Identity {identity.platform}:{identity.platform_native_id} already exists",
            existing_id=existing_id,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_contact(self, contact_id: str) -> Optional[UnifiedContact]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM unified_contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            return UnifiedContact.from_row(row) if row else None
        finally:
            conn.close()

    def get_identity(
        self,
        user_id: str,
        platform: str,
        platform_native_id: str,
    ) -> Optional[PlatformIdentity]:
        """Look up an identity by its natural key."""
        conn = self._get_connection()
        try:
            row = conn.execute("""
                SELECT * FROM platform_identities
                WHERE user_id = ? AND platform = ? AND platform_native_id = ?
            """, (user_id, platform, platform_native_id)).fetchone()
            return PlatformIdentity.from_row(row) if row else None
        finally:
            conn.close()

    def list_contacts(self, user_id: str) -> list[UnifiedContact]:
        """All contacts for a user, oldest first."""
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM unified_contacts
                WHERE user_id = ?
                ORDER BY created_at, id
            """, (user_id,)).fetchall()
            return [UnifiedContact.from_row(r) for r in rows]
        finally:
            conn.close()

    def list_identities(self, user_id: str, platform: Optional[str] = None) -> list[PlatformIdentity]:
        conn = self._get_connection()
        try:
            if platform:
                rows = conn.execute("""
                    SELECT * FROM platform_identities
                    WHERE user_id = ? AND platform = ?
                    ORDER BY created_at, id
                """, (user_id, platform)).fetchall()
            else:
                rows = conn.execute("""
                    SELECT * FROM platform_identities
                    WHERE user_id = ?
                    ORDER BY created_at, id
                """, (user_id,)).fetchall()
            return [PlatformIdentity.from_row(r) for r in rows]
        finally:
            conn.close()

    def get_identities_for_contact(self, contact_id: str) -> list[PlatformIdentity]:
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM platform_identities
                WHERE contact_id = ?
                ORDER BY created_at, id
            """, (contact_id,)).fetchall()
            return [PlatformIdentity.from_row(r) for r in rows]
        finally:
            conn.close()

    def count_contacts(self, user_id: str, platform: Optional[str] = None) -> int:
        """
        Count distinct unified contacts, optionally only those with an
        identity on ``platform``.
        """
        conn = self._get_connection()
        try:
            if platform:
                row = conn.execute("""
                    SELECT COUNT(DISTINCT contact_id) FROM platform_identities
                    WHERE user_id = ? AND platform = ?
                """, (user_id, platform)).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM unified_contacts WHERE user_id = ?", (user_id,)
                ).fetchone()
            return row[0]
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Owner identities
    # -------------------------------------------------------------------------

    def add_owner_identity(
        self,
        user_id: str,
        platform: str,
        native_id: Optional[str] = None,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ):
        """Record one of the user's own identities. Re-adding is a no-op."""
        if not native_id and not email:
            raise ValueError("Owner identity needs a native id or an email")

        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT OR IGNORE INTO owner_identities
                (user_id, platform, native_id, email, display_name)
                VALUES (?, ?, ?, ?, ?)
            """, (
                user_id,
                platform,
                native_id or "",
                (email or "").strip().lower(),
                display_name,
            ))
            conn.commit()
        finally:
            conn.close()

    def get_owner_identity(self, user_id: str) -> OwnerIdentity:
        """All of a user's own identities; empty if none are registered."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM owner_identities WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        finally:
            conn.close()

        owner = OwnerIdentity(user_id=user_id)
        for row in rows:
            owner.add(row["platform"], native_id=row["native_id"] or None, email=row["email"] or None)
            if row["display_name"] and not owner.display_name:
                owner.display_name = row["display_name"]
        return owner
