"""
Persistent operation queue.
Stores protect/verify/repair/remove operations in SQLite and enforces the
concurrency ceiling at claim time, so every process sharing the database
shares the same limit.
"""

import json
import logging
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from core.database import Database, now_iso
from core.events import EventBus

logger = logging.getLogger(__name__)

OPERATION_ID_RE = re.compile(r'^op_[a-f0-9]+(\.[0-9]+)?$')


class OperationType(str, Enum):
    """Kinds of queued work"""
    PROTECT = "protect"
    VERIFY = "verify"
    REPAIR = "repair"
    REMOVE = "remove"


class OperationStatus(str, Enum):
    """Operation lifecycle states"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


# Claim order: lower runs first
TYPE_PRIORITY = {
    OperationType.REMOVE: 0,
    OperationType.REPAIR: 1,
    OperationType.PROTECT: 2,
    OperationType.VERIFY: 3,
}

ACTIVE_STATUSES = (OperationStatus.PENDING, OperationStatus.PROCESSING)
TERMINAL_STATUSES = (
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
    OperationStatus.SKIPPED,
)

_PRIORITY_SQL = "CASE operation_type " + " ".join(
    f"WHEN '{op_type.value}' THEN {priority}" for op_type, priority in TYPE_PRIORITY.items()
) + " ELSE 99 END"


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex}"


def is_valid_operation_id(operation_id: Any) -> bool:
    return isinstance(operation_id, str) and bool(OPERATION_ID_RE.match(operation_id))


@dataclass
class Operation:
    """A queued unit of work"""
    id: str
    operation_type: OperationType
    status: OperationStatus
    parameters: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    pid: Optional[int] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def path(self) -> Optional[str]:
        return self.parameters.get("path")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "path": self.path,
            "parameters": self.parameters,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
            "pid": self.pid,
            "result": self.result,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Operation":
        return cls(
            id=row["id"],
            operation_type=OperationType(row["operation_type"]),
            status=OperationStatus(row["status"]),
            parameters=json.loads(row["parameters"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            pid=row["pid"],
            result=json.loads(row["result"]) if row["result"] else None,
        )


class OperationQueue:
    """SQLite-backed queue with transactional admission control.

    ``claim_next`` is the only way an operation becomes PROCESSING. It
    counts PROCESSING rows and claims the next PENDING row inside one
    ``BEGIN IMMEDIATE`` transaction, so the ceiling holds across threads
    and processes.
    """

    def __init__(self, db: Database, events: Optional[EventBus] = None,
                 max_concurrent: int = 2, active_retention_hours: int = 24):
        self.db = db
        self.events = events
        self.max_concurrent = max_concurrent
        self.active_retention_hours = active_retention_hours

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def enqueue(self, operation_type: OperationType, parameters: Optional[Dict[str, Any]] = None) -> Operation:
        """Add a PENDING operation and return it."""
        now = now_iso()
        operation = Operation(
            id=new_operation_id(),
            operation_type=OperationType(operation_type),
            status=OperationStatus.PENDING,
            parameters=dict(parameters or {}),
            created_at=now,
            updated_at=now,
        )

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO operation_queue (id, operation_type, path, parameters, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    operation.id, operation.operation_type.value, operation.path,
                    json.dumps(operation.parameters, default=str), operation.status.value,
                    operation.created_at, operation.updated_at,
                ),
            )

        self.db.write(_insert)
        logger.info(f"Queued {operation.operation_type.value} operation {operation.id}"
                    + (f" for {operation.path}" if operation.path else ""))
        self._publish(operation)
        return operation

    def claim_next(self, max_concurrent: Optional[int] = None) -> Optional[Operation]:
        """Claim the next PENDING operation, or None at the ceiling or when idle.

        Pending operations whose path already has a PROCESSING operation
        are passed over until it finishes.
        """
        ceiling = max_concurrent if max_concurrent is not None else self.max_concurrent

        def _claim(conn: sqlite3.Connection) -> Optional[str]:
            processing = conn.execute(
                "SELECT COUNT(*) FROM operation_queue WHERE status = ?",
                (OperationStatus.PROCESSING.value,),
            ).fetchone()[0]
            if processing >= ceiling:
                return None
            row = conn.execute(
                f"""
                SELECT id FROM operation_queue
                WHERE status = ?
                  AND (path IS NULL OR path NOT IN (
                      SELECT path FROM operation_queue WHERE status = ? AND path IS NOT NULL))
                ORDER BY {_PRIORITY_SQL}, created_at, rowid
                LIMIT 1
                """,
                (OperationStatus.PENDING.value, OperationStatus.PROCESSING.value),
            ).fetchone()
            if row is None:
                return None
            now = now_iso()
            conn.execute(
                "UPDATE operation_queue SET status = ?, started_at = ?, updated_at = ? WHERE id = ? AND status = ?",
                (OperationStatus.PROCESSING.value, now, now, row["id"], OperationStatus.PENDING.value),
            )
            return row["id"]

        claimed_id = self.db.write(_claim)
        if claimed_id is None:
            return None
        operation = self.get(claimed_id)
        logger.debug(f"Claimed {operation.operation_type.value} operation {operation.id}")
        self._publish(operation)
        return operation

    def attach_process(self, operation_id: str, pid: Optional[int]) -> bool:
        """Record the pid driving a PROCESSING operation (None clears it)."""
        def _attach(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "UPDATE operation_queue SET pid = ?, updated_at = ? WHERE id = ? AND status = ?",
                (pid, now_iso(), operation_id, OperationStatus.PROCESSING.value),
            ).rowcount

        return self.db.write(_attach) > 0

    def complete(self, operation_id: str, result: Optional[Dict[str, Any]] = None) -> bool:
        return self._finish(operation_id, OperationStatus.COMPLETED, result,
                            allowed_from=(OperationStatus.PROCESSING,))

    def fail(self, operation_id: str, error: str, context: Optional[Dict[str, Any]] = None,
             kind: Optional[str] = None) -> bool:
        result = {"error": error, "context": context or {}}
        if kind:
            result["kind"] = kind
        return self._finish(operation_id, OperationStatus.FAILED, result)

    def cancel(self, operation_id: str, reason: str = "Cancelled by user") -> bool:
        return self._finish(operation_id, OperationStatus.CANCELLED, {"reason": reason})

    def skip(self, operation_id: str, reason: str, result: Optional[Dict[str, Any]] = None) -> bool:
        payload = dict(result or {})
        payload["reason"] = reason
        return self._finish(operation_id, OperationStatus.SKIPPED, payload)

    def _finish(self, operation_id: str, status: OperationStatus, result: Optional[Dict[str, Any]],
                allowed_from=ACTIVE_STATUSES) -> bool:
        """Move an operation to a terminal status.

        Returns False (and logs) when the operation is unknown, already
        terminal, or not in one of the allowed source states.
        """
        allowed = tuple(s.value for s in allowed_from)

        def _update(conn: sqlite3.Connection) -> Optional[str]:
            row = conn.execute("SELECT status FROM operation_queue WHERE id = ?", (operation_id,)).fetchone()
            if row is None:
                return None
            if row["status"] not in allowed:
                return row["status"]
            now = now_iso()
            conn.execute(
                """
                UPDATE operation_queue
                SET status = ?, result = ?, completed_at = ?, updated_at = ?, pid = NULL
                WHERE id = ?
                """,
                (status.value, json.dumps(result, default=str) if result is not None else None,
                 now, now, operation_id),
            )
            return status.value

        outcome = self.db.write(_update)
        if outcome is None:
            logger.warning(f"Cannot mark unknown operation {operation_id} as {status.value}")
            return False
        if outcome != status.value:
            logger.info(f"Operation {operation_id} is {outcome}, ignoring transition to {status.value}")
            return False

        operation = self.get(operation_id)
        if status == OperationStatus.FAILED:
            logger.error(f"Operation {operation_id} failed: {(result or {}).get('error')}")
        else:
            logger.info(f"Operation {operation_id} {status.value}")
        self._publish(operation)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, operation_id: str) -> Optional[Operation]:
        row = self.db.fetch_one("SELECT * FROM operation_queue WHERE id = ?", (operation_id,))
        return Operation.from_row(row) if row else None

    def list_active(self) -> List[Operation]:
        """PENDING and PROCESSING operations plus terminal ones inside the retention window."""
        cutoff = (datetime.now() - timedelta(hours=self.active_retention_hours)).isoformat(timespec="microseconds")
        rows = self.db.fetch_all(
            """
            SELECT * FROM operation_queue
            WHERE status IN (?, ?) OR completed_at >= ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (OperationStatus.PENDING.value, OperationStatus.PROCESSING.value, cutoff),
        )
        return [Operation.from_row(r) for r in rows]

    def list_by_status(self, status: OperationStatus) -> List[Operation]:
        rows = self.db.fetch_all(
            "SELECT * FROM operation_queue WHERE status = ? ORDER BY created_at, rowid",
            (OperationStatus(status).value,),
        )
        return [Operation.from_row(r) for r in rows]

    def list_recent(self, limit: int = 20) -> List[Operation]:
        """Most recently finished operations, newest first."""
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        rows = self.db.fetch_all(
            f"""
            SELECT * FROM operation_queue
            WHERE status IN ({placeholders})
            ORDER BY completed_at DESC, rowid DESC
            LIMIT ?
            """,
            tuple(s.value for s in TERMINAL_STATUSES) + (limit,),
        )
        return [Operation.from_row(r) for r in rows]

    def find_active(self, path: str, operation_type: Optional[OperationType] = None,
                    exclude_id: Optional[str] = None) -> Optional[Operation]:
        """Oldest PENDING or PROCESSING operation for a path, optionally of one type."""
        sql = "SELECT * FROM operation_queue WHERE path = ? AND status IN (?, ?)"
        params: List[Any] = [path, OperationStatus.PENDING.value, OperationStatus.PROCESSING.value]
        if operation_type is not None:
            sql += " AND operation_type = ?"
            params.append(OperationType(operation_type).value)
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        sql += " ORDER BY created_at, rowid LIMIT 1"
        row = self.db.fetch_one(sql, tuple(params))
        return Operation.from_row(row) if row else None

    def count_processing(self) -> int:
        return self.db.scalar(
            "SELECT COUNT(*) FROM operation_queue WHERE status = ?",
            (OperationStatus.PROCESSING.value,),
        )

    def _publish(self, operation: Optional[Operation]) -> None:
        if self.events is None or operation is None:
            return
        self.events.publish(f"operation.{operation.status.value}", operation=operation.to_dict())
