"""SQLite store for Discord identity to Jellyfin account links."""

import sqlite3
import threading
from typing import List, Optional

from discordauth.core.errors import LinkConflictError
from discordauth.core.logger import setup_logger
from discordauth.core.models import ExternalIdentity, IdentityLink

logger = setup_logger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS identity_links (
    external_id   TEXT PRIMARY KEY,
    account_id    TEXT UNIQUE NOT NULL,
    display_name  TEXT NOT NULL,
    avatar_ref    TEXT,
    email         TEXT,
    created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


class IdentityLinkStore:
    """Thread-safe SQLite link table.

    Keyed by external_id with a unique secondary key on account_id, so the
    mapping stays one-to-one. Links are only ever inserted or updated.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(_CREATE_TABLES_SQL)
                conn.commit()
                # WAL mode must be changed outside an open transaction.
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()
        logger.info(f"Identity link database initialized at {self._db_path}")

    @staticmethod
    def _row_to_link(row: Optional[sqlite3.Row]) -> Optional[IdentityLink]:
        if row is None:
            return None
        return IdentityLink(
            account_id=row["account_id"],
            external_id=row["external_id"],
            last_known=ExternalIdentity(
                external_id=row["external_id"],
                display_name=row["display_name"],
                avatar_ref=row["avatar_ref"],
                email=row["email"],
            ),
            updated_at=row["updated_at"],
        )

    def find_by_external_id(self, external_id: str) -> Optional[IdentityLink]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM identity_links WHERE external_id = ?", (external_id,)
            ).fetchone()
            return self._row_to_link(row)
        finally:
            conn.close()

    def find_by_account_id(self, account_id: str) -> Optional[IdentityLink]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM identity_links WHERE account_id = ?", (account_id,)
            ).fetchone()
            return self._row_to_link(row)
        finally:
            conn.close()

    def upsert(self, link: IdentityLink) -> IdentityLink:
        """Insert or refresh the link for `link.external_id` (last write wins).

        Raises LinkConflictError if the account is linked to another identity.
        """
        identity = link.last_known
        with self._lock:
            conn = self._connect()
            try:
                owner = conn.execute(
                    "SELECT external_id FROM identity_links WHERE account_id = ?",
                    (link.account_id,),
                ).fetchone()
                if owner is not None and owner["external_id"] != link.external_id:
                    raise LinkConflictError(
                        f"Account {link.account_id} is already linked to {owner['external_id']}",
                        external_id=link.external_id,
                        account_id=link.account_id,
                    )

                conn.execute(
                    """INSERT INTO identity_links (
                           external_id, account_id, display_name, avatar_ref, email
                       )
                       VALUES (?, ?, ?, ?, ?)
                       ON CONFLICT(external_id) DO UPDATE SET
                           account_id = excluded.account_id,
                           display_name = excluded.display_name,
                           avatar_ref = excluded.avatar_ref,
                           email = excluded.email,
                           updated_at = CURRENT_TIMESTAMP""",
                    (
                        link.external_id,
                        link.account_id,
                        identity.display_name,
                        identity.avatar_ref,
                        identity.email,
                    ),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM identity_links WHERE external_id = ?", (link.external_id,)
                ).fetchone()
                return self._row_to_link(row)
            finally:
                conn.close()

    def list_links(self) -> List[IdentityLink]:
        """List all links, oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM identity_links ORDER BY created_at, external_id"
            ).fetchall()
            return [self._row_to_link(r) for r in rows]
        finally:
            conn.close()
