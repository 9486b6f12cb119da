"""
File metadata capture and restore.
Ownership, permission bits and mtime are recorded at protect time so they
can be checked during verification and put back after a repair.
"""

import logging
import os
import sqlite3
import stat
from dataclasses import dataclass
from typing import Dict, List

from core.database import Database

logger = logging.getLogger(__name__)

# mtime differences below this are filesystem rounding, not changes
MTIME_TOLERANCE = 1.0


@dataclass
class FileMetadata:
    """Ownership, permission and timestamp of one protected file."""
    file_path: str
    uid: int
    gid: int
    mode: int  # permission bits only
    mtime: float

    @classmethod
    def from_path(cls, file_path: str) -> "FileMetadata":
        st = os.stat(file_path)
        return cls(file_path, st.st_uid, st.st_gid, stat.S_IMODE(st.st_mode), st.st_mtime)

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "uid": self.uid,
            "gid": self.gid,
            "mode": oct(self.mode),
            "mtime": self.mtime,
        }


def capture(files: List[str]) -> List[FileMetadata]:
    """Read metadata for each file; files that vanish are skipped."""
    entries = []
    for file_path in files:
        try:
            entries.append(FileMetadata.from_path(file_path))
        except OSError as e:
            logger.warning(f"Could not read metadata for {file_path}: {e}")
    return entries


def compare(stored: FileMetadata, current: FileMetadata) -> List[str]:
    """Human-readable differences between stored and current metadata."""
    differences = []
    if stored.uid != current.uid:
        differences.append(f"Owner mismatch: current={current.uid}, stored={stored.uid}")
    if stored.gid != current.gid:
        differences.append(f"Group mismatch: current={current.gid}, stored={stored.gid}")
    if stored.mode != current.mode:
        differences.append(f"Permissions mismatch: current={oct(current.mode)}, stored={oct(stored.mode)}")
    if abs(stored.mtime - current.mtime) > MTIME_TOLERANCE:
        differences.append(f"Modification time mismatch: current={current.mtime}, stored={stored.mtime}")
    return differences


class MetadataStore:
    """Persists FileMetadata rows per protected item."""

    def __init__(self, db: Database):
        self.db = db

    def save(self, item_path: str, entries: List[FileMetadata]) -> int:
        """Replace the stored metadata for an item. Returns rows written."""
        def _save(conn: sqlite3.Connection) -> int:
            conn.execute("DELETE FROM file_metadata WHERE item_path = ?", (item_path,))
            conn.executemany(
                "INSERT INTO file_metadata (item_path, file_path, uid, gid, mode, mtime) VALUES (?, ?, ?, ?, ?, ?)",
                [(item_path, e.file_path, e.uid, e.gid, e.mode, e.mtime) for e in entries],
            )
            return len(entries)

        written = self.db.write(_save)
        logger.debug(f"Stored metadata for {written} files of {item_path}")
        return written

    def get(self, item_path: str) -> List[FileMetadata]:
        rows = self.db.fetch_all(
            "SELECT file_path, uid, gid, mode, mtime FROM file_metadata WHERE item_path = ? ORDER BY file_path",
            (item_path,),
        )
        return [FileMetadata(r["file_path"], r["uid"], r["gid"], r["mode"], r["mtime"]) for r in rows]

    def verify(self, item_path: str) -> Dict[str, List[str]]:
        """Differences per file between stored and current metadata.

        Files that no longer exist are reported as missing.
        """
        discrepancies: Dict[str, List[str]] = {}
        for stored in self.get(item_path):
            try:
                current = FileMetadata.from_path(stored.file_path)
            except FileNotFoundError:
                discrepancies[stored.file_path] = ["File missing"]
                continue
            except OSError as e:
                discrepancies[stored.file_path] = [f"Unreadable: {e}"]
                continue
            differences = compare(stored, current)
            if differences:
                discrepancies[stored.file_path] = differences
        return discrepancies

    def restore(self, item_path: str) -> Dict[str, int]:
        """Put stored permissions, mtime and (where permitted) ownership back.

        Returns counts of restored and failed files. chown normally needs
        root; a PermissionError there is logged and the rest still applied.
        """
        restored = 0
        failed = 0
        for stored in self.get(item_path):
            if not os.path.exists(stored.file_path):
                failed += 1
                continue
            try:
                os.chmod(stored.file_path, stored.mode)
                os.utime(stored.file_path, (stored.mtime, stored.mtime))
            except OSError as e:
                logger.warning(f"Could not restore metadata for {stored.file_path}: {e}")
                failed += 1
                continue
            try:
                current = os.stat(stored.file_path)
                if (current.st_uid, current.st_gid) != (stored.uid, stored.gid):
                    os.chown(stored.file_path, stored.uid, stored.gid)
            except PermissionError as e:
                logger.debug(f"Ownership not restored for {stored.file_path}: {e}")
            restored += 1
        logger.info(f"Restored metadata for {restored} files of {item_path} ({failed} failed)")
        return {"restored": restored, "failed": failed}
