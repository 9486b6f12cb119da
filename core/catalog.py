"""
Catalog store for protected items.
Persists ProtectedItem rows and their verification history in SQLite.
The store never touches files on disk.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.database import Database, now_iso
from core.errors import validation_error

logger = logging.getLogger(__name__)

PARITY_DIR_NAME = ".parity"


class ItemMode(str, Enum):
    """What a protected path is."""
    FILE = "file"
    DIRECTORY = "directory"


class ItemStatus(str, Enum):
    """Last known integrity state of a protected item."""
    PROTECTED = "PROTECTED"
    DAMAGED = "DAMAGED"
    MISSING = "MISSING"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass
class ProtectedItem:
    """A file or directory with parity data."""
    path: str
    mode: ItemMode
    redundancy: int
    parity_location: str
    size: int = 0
    par2_size: int = 0
    last_status: ItemStatus = ItemStatus.UNKNOWN
    last_details: Optional[str] = None
    protected_date: str = field(default_factory=now_iso)
    last_verified: Optional[str] = None
    # Extensions selected for a directory; None protects every file
    file_types: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "mode": self.mode.value,
            "redundancy": self.redundancy,
            "size": self.size,
            "par2_size": self.par2_size,
            "parity_location": self.parity_location,
            "last_status": self.last_status.value,
            "last_details": self.last_details,
            "protected_date": self.protected_date,
            "last_verified": self.last_verified,
            "file_types": self.file_types,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProtectedItem":
        return cls(
            path=row["path"],
            mode=ItemMode(row["mode"]),
            redundancy=row["redundancy"],
            size=row["size"],
            par2_size=row["par2_size"],
            parity_location=row["parity_location"],
            last_status=ItemStatus(row["last_status"]),
            last_details=row["last_details"],
            protected_date=row["protected_date"],
            last_verified=row["last_verified"],
            file_types=json.loads(row["file_types"]) if row["file_types"] else None,
        )


@dataclass
class VerificationRecord:
    """One verify or repair outcome for an item."""
    path: str
    verified_at: str
    status: str
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "verified_at": self.verified_at,
            "status": self.status,
            "details": self.details,
        }


def is_valid_parity_location(parity_location: str) -> bool:
    return bool(parity_location) and parity_location.rstrip("/").endswith("/" + PARITY_DIR_NAME)


class CatalogStore:
    """CRUD and aggregates over protected_items and verification_history."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, item: ProtectedItem) -> ProtectedItem:
        """Insert or update an item keyed by path.

        Raises:
            Par2ProtectError: VALIDATION when the parity location does not
                end in ``/.parity``.
        """
        if not is_valid_parity_location(item.parity_location):
            raise validation_error(
                f"Parity location must end in /{PARITY_DIR_NAME}",
                path=item.path,
                parity_location=item.parity_location,
            )

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO protected_items (path, mode, redundancy, size, par2_size, parity_location,
                                             last_status, last_details, protected_date, last_verified, file_types)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET
                    mode = excluded.mode,
                    redundancy = excluded.redundancy,
                    size = excluded.size,
                    par2_size = excluded.par2_size,
                    parity_location = excluded.parity_location,
                    last_status = excluded.last_status,
                    last_details = excluded.last_details,
                    protected_date = excluded.protected_date,
                    last_verified = excluded.last_verified,
                    file_types = excluded.file_types
                """,
                (
                    item.path, item.mode.value, item.redundancy, item.size, item.par2_size,
                    item.parity_location, item.last_status.value, item.last_details,
                    item.protected_date, item.last_verified,
                    json.dumps(item.file_types) if item.file_types else None,
                ),
            )

        self.db.write(_upsert)
        logger.debug(f"Catalog upsert: {item.path} ({item.last_status.value})")
        return item

    def get(self, path: str) -> Optional[ProtectedItem]:
        row = self.db.fetch_one("SELECT * FROM protected_items WHERE path = ?", (path,))
        return ProtectedItem.from_row(row) if row else None

    def remove(self, path: str) -> bool:
        """Delete an item together with its history and file metadata."""
        def _remove(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute("DELETE FROM protected_items WHERE path = ?", (path,))
            conn.execute("DELETE FROM verification_history WHERE path = ?", (path,))
            conn.execute("DELETE FROM file_metadata WHERE item_path = ?", (path,))
            return cursor.rowcount > 0

        removed = self.db.write(_remove)
        if removed:
            logger.debug(f"Catalog entry removed: {path}")
        return removed

    def list(self, status: Optional[ItemStatus] = None, mode: Optional[ItemMode] = None) -> List[ProtectedItem]:
        """List items, optionally filtered by status and mode, ordered by path."""
        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("last_status = ?")
            params.append(ItemStatus(status).value)
        if mode is not None:
            clauses.append("mode = ?")
            params.append(ItemMode(mode).value)
        sql = "SELECT * FROM protected_items"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY path"
        return [ProtectedItem.from_row(row) for row in self.db.fetch_all(sql, tuple(params))]

    def aggregate_stats(self) -> Dict[str, Any]:
        """Totals across the catalog.

        Returns:
            Dict with total_files, total_size, total_par2_size,
            last_verification and counts_by_status (every status present).
        """
        row = self.db.fetch_one(
            """
            SELECT COUNT(*) AS total_files,
                   COALESCE(SUM(size), 0) AS total_size,
                   COALESCE(SUM(par2_size), 0) AS total_par2_size,
                   MAX(last_verified) AS last_verification
            FROM protected_items
            """
        )
        counts = {status.value: 0 for status in ItemStatus}
        for status_row in self.db.fetch_all(
            "SELECT last_status, COUNT(*) AS n FROM protected_items GROUP BY last_status"
        ):
            counts[status_row["last_status"]] = status_row["n"]
        return {
            "total_files": row["total_files"],
            "total_size": row["total_size"],
            "total_par2_size": row["total_par2_size"],
            "last_verification": row["last_verification"],
            "counts_by_status": counts,
        }

    def update_verification(self, path: str, status: ItemStatus, details: Optional[str] = None,
                            verified_at: Optional[str] = None, touch_verified: bool = True) -> bool:
        """Set an item's status and append a history row in one transaction.

        Returns False when the item does not exist.
        """
        status = ItemStatus(status)
        verified_at = verified_at or now_iso()

        def _update(conn: sqlite3.Connection) -> bool:
            if touch_verified:
                cursor = conn.execute(
                    "UPDATE protected_items SET last_status = ?, last_details = ?, last_verified = ? WHERE path = ?",
                    (status.value, details, verified_at, path),
                )
            else:
                cursor = conn.execute(
                    "UPDATE protected_items SET last_status = ?, last_details = ? WHERE path = ?",
                    (status.value, details, path),
                )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "INSERT INTO verification_history (path, verified_at, status, details) VALUES (?, ?, ?, ?)",
                (path, verified_at, status.value, details),
            )
            return True

        updated = self.db.write(_update)
        if not updated:
            logger.warning(f"Cannot record verification for unknown item: {path}")
        return updated

    def history(self, path: str, limit: int = 20) -> List[VerificationRecord]:
        rows = self.db.fetch_all(
            "SELECT path, verified_at, status, details FROM verification_history "
            "WHERE path = ? ORDER BY verified_at DESC, id DESC LIMIT ?",
            (path, limit),
        )
        return [VerificationRecord(r["path"], r["verified_at"], r["status"], r["details"]) for r in rows]

    def paths_sharing(self, parity_location: str) -> List[str]:
        """Paths of every item whose parity lives in the given directory."""
        rows = self.db.fetch_all(
            "SELECT path FROM protected_items WHERE parity_location = ? ORDER BY path",
            (parity_location,),
        )
        return [r["path"] for r in rows]
