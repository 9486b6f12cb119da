"""Orchestrator service - validates requests, queues operations and runs them on a worker pool"""

import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from core.catalog import CatalogStore, ItemMode, ItemStatus, PARITY_DIR_NAME, ProtectedItem
from core.config import ConfigManager
from core.database import now_iso
from core.errors import ErrorKind, Par2ProtectError, not_found_error, validation_error
from core.events import EventBus
from core.metadata import MetadataStore, capture
from core.operation_queue import (
    Operation,
    OperationQueue,
    OperationStatus,
    OperationType,
    is_valid_operation_id,
)
from core.par2_commands import (
    RepairOutcome,
    VerifyOutcome,
    build_create_command,
    build_repair_command,
    build_verify_command,
    classify_repair,
    classify_verify,
    files_already_exist,
    parse_verify_counts,
)
from core.parity_files import (
    collect_source_files,
    content_signature,
    discard_staging,
    item_par2_files,
    normalize_file_types,
    parity_artifacts_present,
    parity_dir_for,
    parity_name_for,
    parity_size,
    base_path_for,
    promote_staged_parity,
    remove_item_par2_files,
    remove_parity_location,
    staging_dir_for,
)
from core.process_runner import ProcessResult, ProcessRunner
from core.resource_limits import apply_resource_limits, build_resource_limits

logger = logging.getLogger(__name__)

MAX_STORAGE_BACKOFF = 60.0
# Attempts to record FAILED after a storage error in a running operation
STORAGE_FAIL_ATTEMPTS = 3
# Captured par2 output kept on items and operation results
MAX_DETAILS_CHARS = 4000

VERIFY_TO_ITEM_STATUS = {
    VerifyOutcome.VERIFIED: ItemStatus.PROTECTED,
    VerifyOutcome.DAMAGED: ItemStatus.DAMAGED,
    VerifyOutcome.MISSING: ItemStatus.MISSING,
    VerifyOutcome.ERROR: ItemStatus.ERROR,
}


def _tail(text: str, limit: int = MAX_DETAILS_CHARS) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else "..." + text[-limit:]


@dataclass
class OperationOutcome:
    """What a handler produced for a claimed operation"""
    status: OperationStatus
    result: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""


class Orchestrator:
    """Per-operation state machine and worker pool.

    Submissions validate input and enqueue; workers claim operations from
    the queue (which enforces the concurrency ceiling), run par2 through
    the process runner and record outcomes in the catalog.
    """

    def __init__(self, config: ConfigManager, catalog: CatalogStore, queue: OperationQueue,
                 runner: ProcessRunner, metadata: MetadataStore, events: Optional[EventBus] = None):
        self.config = config
        self.catalog = catalog
        self.queue = queue
        self.runner = runner
        self.metadata = metadata
        self.events = events
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._done = threading.Condition()
        self._cancelled = set()

    @property
    def max_workers(self) -> int:
        return self.config.resource_limits.max_concurrent_operations

    @property
    def poll_interval(self) -> float:
        return self.config.queue.poll_interval

    @property
    def is_running(self) -> bool:
        with self._lock:
            return any(t.is_alive() for t in self._threads)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, workers: Optional[int] = None, recover: bool = True) -> None:
        """Run crash recovery, then start the worker threads."""
        with self._lock:
            if any(t.is_alive() for t in self._threads):
                logger.info("Orchestrator already running")
                return
            if recover:
                self.recover()
            self._stop_event.clear()
            count = workers or self.max_workers
            self._threads = [
                threading.Thread(target=self._worker_loop, args=(i,), name=f"par2protect-worker-{i}", daemon=True)
                for i in range(count)
            ]
            for thread in self._threads:
                thread.start()
        logger.info(f"Orchestrator started with {count} workers")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the workers after their current operation."""
        self._stop_event.set()
        self._wake_event.set()
        with self._lock:
            threads, self._threads = self._threads, []
        if not threads:
            return
        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not stop within {timeout}s")
        logger.info("Orchestrator stopped")

    def recover(self) -> Dict[str, int]:
        """Fail orphaned PROCESSING operations and flag items whose parity is gone.

        An operation is orphaned when no live par2 process is correlated
        with it, by the operation marker in its environment or by stored pid.
        """
        live = self.runner.list_processes()
        live_pids = {p.pid for p in live}
        live_operations = {p.operation_id for p in live if p.operation_id}

        orphaned = 0
        for operation in self.queue.list_by_status(OperationStatus.PROCESSING):
            if operation.id in live_operations or (operation.pid and operation.pid in live_pids):
                logger.warning(f"Operation {operation.id} still has a live par2 process (pid {operation.pid})")
                continue
            if self.queue.fail(operation.id, "Operation orphaned by restart",
                               {"pid": operation.pid, "started_at": operation.started_at},
                               kind=ErrorKind.CONSISTENCY.value):
                orphaned += 1

        missing = 0
        for item in self.catalog.list():
            if item.last_status == ItemStatus.MISSING:
                continue
            if not parity_artifacts_present(item.parity_location, parity_name_for(item.path)):
                logger.warning(f"Parity files missing for {item.path} in {item.parity_location}")
                self.catalog.update_verification(item.path, ItemStatus.MISSING,
                                                 "Parity files missing", touch_verified=False)
                missing += 1

        if orphaned or missing:
            logger.info(f"Recovery: {orphaned} orphaned operations failed, {missing} items marked missing")
        return {"orphaned_operations": orphaned, "missing_items": missing}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_path(path: Any) -> str:
        if not path or not isinstance(path, str):
            raise validation_error("Path is required", path=path)
        if not os.path.isabs(path):
            raise validation_error("Path must be absolute", path=path)
        normalized = os.path.normpath(path)
        if PARITY_DIR_NAME in normalized.split(os.sep):
            raise validation_error("Parity directories cannot be protected", path=path)
        if not os.path.exists(normalized):
            raise not_found_error("Path does not exist", path=path)
        if not os.access(normalized, os.R_OK):
            raise validation_error("Path is not readable", path=path)
        return normalized

    def _validate_redundancy(self, redundancy: Any) -> int:
        if redundancy is None:
            return self.config.protection.default_redundancy
        if isinstance(redundancy, bool) or not isinstance(redundancy, int) or not 1 <= redundancy <= 100:
            raise validation_error("Redundancy must be an integer between 1 and 100", redundancy=redundancy)
        return redundancy

    def _is_unchanged(self, item: ProtectedItem, size: int, newest_mtime: float) -> bool:
        if item.size != size:
            return False
        stored = self.metadata.get(item.path)
        if not stored:
            return False
        return abs(max(m.mtime for m in stored) - newest_mtime) < 1.0

    def _is_fresh(self, item: ProtectedItem) -> bool:
        if not item.last_verified:
            return False
        try:
            verified = datetime.fromisoformat(item.last_verified)
        except ValueError:
            return False
        return (datetime.now() - verified).total_seconds() < self.config.verification.interval

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _check_parity_owner(self, path: str, parity_dir: str, name: str) -> None:
        """Refuse a parity set whose name is already taken by another item.

        A directory ``/d/x`` and the file ``/d/x/x`` both map to
        ``/d/x/.parity/x.par2``.
        """
        for other in self.catalog.paths_sharing(parity_dir):
            if other != path and parity_name_for(other) == name:
                raise validation_error(
                    f"Parity set {name}.par2 in {parity_dir} already belongs to {other}",
                    path=path, owner=other, parity_location=parity_dir,
                )

    def submit_protect(self, path: str, redundancy: Optional[int] = None, force: bool = False,
                       file_types: Optional[Iterable[str]] = None) -> Operation:
        """Queue parity creation for a path.

        Returns an existing active PROTECT operation for the path instead
        of queueing a duplicate, and a SKIPPED operation when the item is
        already protected at this redundancy and file selection with
        unchanged content.

        Args:
            file_types: Extensions to protect inside a directory
                (e.g. ["mkv", "mp4"]); None protects every file.
        """
        path = self._validate_path(path)
        redundancy = self._validate_redundancy(redundancy)
        mode = ItemMode.DIRECTORY if os.path.isdir(path) else ItemMode.FILE
        file_types = normalize_file_types(file_types)
        if file_types and mode == ItemMode.FILE:
            raise validation_error("File types only apply to directories", path=path)
        self._check_parity_owner(path, parity_dir_for(path, mode), parity_name_for(path))

        active = self.queue.find_active(path, OperationType.PROTECT)
        if active is not None:
            logger.info(f"Protect already queued for {path}: {active.id}")
            return active

        parameters = {"path": path, "redundancy": redundancy, "force": bool(force), "mode": mode.value,
                      "file_types": file_types}
        existing = self.catalog.get(path)
        if (existing is not None and not force and existing.redundancy == redundancy
                and existing.file_types == file_types):
            size, newest_mtime = content_signature(collect_source_files(path, mode, file_types))
            if self._is_unchanged(existing, size, newest_mtime):
                operation = self.queue.enqueue(OperationType.PROTECT, parameters)
                self.queue.skip(operation.id, "Already protected and unchanged",
                                {"status": existing.last_status.value})
                return self.queue.get(operation.id)

        operation = self.queue.enqueue(OperationType.PROTECT, parameters)
        self._wake_event.set()
        return operation

    def submit_verify(self, target: Union[str, Iterable[str]], force: bool = False,
                      auto_repair: Optional[bool] = None) -> Tuple[List[Operation], List[Dict[str, Any]]]:
        """Queue one VERIFY operation per target.

        Args:
            target: A path, a list of paths, or "all" for every catalog item.
            force: Verify even when the item was verified within the interval.
            auto_repair: Queue a repair when damage is found (default from config).

        Returns:
            (operations, errors) where errors describe targets that could
            not be queued; one bad target never blocks the others.
        """
        if target == "all":
            paths = [item.path for item in self.catalog.list()]
        elif isinstance(target, str):
            paths = [target]
        elif target is None:
            raise validation_error("Verify target is required")
        else:
            paths = list(target)
            if not paths:
                raise validation_error("Verify target list is empty")

        operations: List[Operation] = []
        errors: List[Dict[str, Any]] = []
        for raw_path in paths:
            if not raw_path or not isinstance(raw_path, str) or not os.path.isabs(raw_path):
                errors.append({"path": raw_path, "error": "Path must be absolute",
                               "kind": ErrorKind.VALIDATION.value})
                continue
            path = os.path.normpath(raw_path)
            item = self.catalog.get(path)
            if item is None:
                errors.append({"path": raw_path, "error": "Path is not protected",
                               "kind": ErrorKind.NOT_FOUND.value})
                continue

            active = self.queue.find_active(path, OperationType.VERIFY)
            if active is not None:
                operations.append(active)
                continue

            parameters = {"path": path, "force": bool(force)}
            if auto_repair is not None:
                parameters["auto_repair"] = bool(auto_repair)
            operation = self.queue.enqueue(OperationType.VERIFY, parameters)
            if not force and self._is_fresh(item):
                self.queue.skip(operation.id, "Verified recently",
                                {"status": item.last_status.value, "last_verified": item.last_verified})
                operation = self.queue.get(operation.id)
            operations.append(operation)

        if operations:
            self._wake_event.set()
        return operations, errors

    def submit_repair(self, path: str) -> Operation:
        """Queue a repair for a protected path."""
        if not path or not isinstance(path, str) or not os.path.isabs(path):
            raise validation_error("Path must be absolute", path=path)
        path = os.path.normpath(path)
        if self.catalog.get(path) is None:
            raise not_found_error("Path is not protected", path=path)
        active = self.queue.find_active(path, OperationType.REPAIR)
        if active is not None:
            return active
        operation = self.queue.enqueue(OperationType.REPAIR, {"path": path})
        self._wake_event.set()
        return operation

    def submit_remove(self, path: str) -> Operation:
        """Queue removal of an item's parity data and catalog entry."""
        if not path or not isinstance(path, str) or not os.path.isabs(path):
            raise validation_error("Path must be absolute", path=path)
        path = os.path.normpath(path)
        if self.catalog.get(path) is None:
            raise not_found_error("Path is not protected", path=path)
        active = self.queue.find_active(path, OperationType.REMOVE)
        if active is not None:
            return active
        operation = self.queue.enqueue(OperationType.REMOVE, {"path": path})
        self._wake_event.set()
        return operation

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove_item(self, path: str, operation_id: Optional[str] = None) -> List[str]:
        """Delete one item's parity artifacts, then its catalog row.

        Refuses while another operation for the path is active. When other
        items share the .parity directory only this item's .par2 files are
        deleted, and none when another item records the same parity set.
        Any deletion failure leaves the catalog row in place.

        Returns:
            Filesystem entries removed.
        """
        path = os.path.normpath(path)
        item = self.catalog.get(path)
        if item is None:
            raise not_found_error("Path is not protected", path=path)

        active = self.queue.find_active(path, exclude_id=operation_id)
        if active is not None:
            raise Par2ProtectError(
                ErrorKind.VALIDATION,
                f"Another operation is active for this path ({active.operation_type.value})",
                {"path": path, "operation_id": active.id},
            )

        expected = parity_dir_for(item.path, item.mode)
        name = parity_name_for(path)
        sharing = [p for p in self.catalog.paths_sharing(item.parity_location) if p != path]
        owners = [p for p in sharing if parity_name_for(p) == name]
        if owners:
            # The parity set is also recorded for another item; keep its files
            logger.warning(f"Parity set {name}.par2 is shared with {owners[0]}; removing catalog entry only")
            self.catalog.remove(path)
            return []
        if sharing:
            removed = remove_item_par2_files(item.parity_location, name, expected)
        else:
            removed = remove_parity_location(item.parity_location, expected)

        self.catalog.remove(path)
        logger.info(f"Removed protection for {path}")
        return removed

    def remove_paths(self, paths: Iterable[str]) -> Dict[str, List]:
        """Remove several items; a failure on one does not stop the rest."""
        removed: List[str] = []
        errors: List[Dict[str, Any]] = []
        for path in paths:
            try:
                if not path or not isinstance(path, str) or not os.path.isabs(path):
                    raise validation_error("Path must be absolute", path=path)
                self.remove_item(path)
                removed.append(os.path.normpath(path))
            except Par2ProtectError as e:
                logger.error(f"Failed to remove {path}: {e.message}")
                errors.append({"path": path, "error": e.message, "kind": e.kind.value, "context": e.context})
        return {"removed": removed, "errors": errors}

    # ------------------------------------------------------------------
    # Cancellation and waiting
    # ------------------------------------------------------------------

    def cancel(self, operation_id: str, reason: str = "Cancelled by user") -> int:
        """Cancel an operation and kill its par2 processes.

        Returns:
            Number of live processes that were signalled.

        Raises:
            Par2ProtectError: VALIDATION for a malformed id, NOT_FOUND for
                an unknown one.
        """
        if not is_valid_operation_id(operation_id):
            raise validation_error("Invalid operation id", operation_id=operation_id)
        operation = self.queue.get(operation_id)
        if operation is None:
            raise not_found_error("Operation not found", operation_id=operation_id)

        pids = set()
        own_pid = self.runner.pid_for(operation_id)
        if own_pid:
            pids.add(own_pid)
        for process in self.runner.list_processes():
            if process.operation_id == operation_id or (operation.pid and process.pid == operation.pid):
                pids.add(process.pid)

        with self._lock:
            self._cancelled.add(operation_id)
        # Transition first so the worker sees CANCELLED when its process dies
        self.queue.cancel(operation_id, reason)

        killed = 0
        for pid in sorted(pids):
            if self.runner.cancel(pid):
                killed += 1
        self.runner.cleanup_scratch(operation_id)
        logger.info(f"Cancelled {operation_id}: {killed} processes signalled")
        return killed

    def _was_cancelled(self, operation_id: str) -> bool:
        with self._lock:
            if operation_id in self._cancelled:
                return True
        current = self.queue.get(operation_id)
        return current is not None and current.status == OperationStatus.CANCELLED

    def wait_for(self, operation_ids: Iterable[str], timeout: Optional[float] = None) -> List[Operation]:
        """Block until every operation is terminal or the timeout passes.

        Polls the queue, so operations run by another process are seen too.
        """
        ids = list(operation_ids)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            operations = [op for op in (self.queue.get(i) for i in ids) if op is not None]
            if all(op.is_terminal for op in operations):
                return operations
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return operations
            with self._done:
                self._done.wait(self.poll_interval if remaining is None else min(remaining, self.poll_interval))

    def _notify_done(self) -> None:
        with self._done:
            self._done.notify_all()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _worker_loop(self, index: int) -> None:
        backoff = self.poll_interval
        while not self._stop_event.is_set():
            try:
                worked = self.process_next()
                backoff = self.poll_interval
            except sqlite3.Error as e:
                logger.warning(f"Worker {index} storage error: {e}; retrying in {backoff:.1f}s")
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, MAX_STORAGE_BACKOFF)
                continue
            if not worked:
                self._wake_event.wait(self.poll_interval)
                self._wake_event.clear()

    def process_next(self) -> bool:
        """Claim and run one operation. Returns False when nothing was claimed."""
        operation = self.queue.claim_next(self.max_workers)
        if operation is None:
            return False
        self._execute(operation)
        return True

    def run_until_idle(self, max_operations: Optional[int] = None) -> int:
        """Process operations in the calling thread until the queue is drained."""
        processed = 0
        while max_operations is None or processed < max_operations:
            if not self.process_next():
                break
            processed += 1
        return processed

    def _execute(self, operation: Operation) -> None:
        handlers = {
            OperationType.PROTECT: self._run_protect,
            OperationType.VERIFY: self._run_verify,
            OperationType.REPAIR: self._run_repair,
            OperationType.REMOVE: self._run_remove,
        }
        logger.info(f"Running {operation.operation_type.value} {operation.id} for {operation.path}")
        try:
            outcome = handlers[operation.operation_type](operation)
            if outcome is None or self._was_cancelled(operation.id):
                logger.info(f"Operation {operation.id} was cancelled")
            elif outcome.status == OperationStatus.SKIPPED:
                self.queue.skip(operation.id, outcome.reason, outcome.result)
            else:
                self.queue.complete(operation.id, outcome.result)
        except Par2ProtectError as e:
            if not self._was_cancelled(operation.id):
                self.queue.fail(operation.id, e.message, e.context, kind=e.kind.value)
        except sqlite3.Error as e:
            self._fail_after_storage_error(operation, e)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in operation {operation.id}")
            self.queue.fail(operation.id, f"Unexpected error: {e}", {"type": type(e).__name__},
                            kind=ErrorKind.EXECUTION.value)
        finally:
            with self._lock:
                self._cancelled.discard(operation.id)
            self._notify_done()

    def _fail_after_storage_error(self, operation: Operation, error: sqlite3.Error) -> None:
        """Move a claimed operation to FAILED so it stops holding a worker slot.

        Retries with backoff while the database stays busy; if every
        attempt fails the row stays PROCESSING until recovery runs.
        """
        delay = self.poll_interval
        for attempt in range(1, STORAGE_FAIL_ATTEMPTS + 1):
            try:
                self.queue.fail(operation.id, f"Storage error: {error}", {"path": operation.path},
                                kind=ErrorKind.STORAGE.value)
                return
            except sqlite3.Error as e:
                logger.warning(f"Could not record failure of {operation.id} "
                               f"(attempt {attempt}/{STORAGE_FAIL_ATTEMPTS}): {e}")
                if attempt < STORAGE_FAIL_ATTEMPTS:
                    self._stop_event.wait(delay)
                    delay = min(delay * 2, MAX_STORAGE_BACKOFF)
        logger.error(f"Operation {operation.id} left PROCESSING after storage errors; "
                     f"recovery will fail it on the next start")

    def _run_par2(self, operation: Operation, command: List[str], cwd: str) -> ProcessResult:
        limits = build_resource_limits(self.config.resource_limits,
                                       ionice_binary=self.config.protection.ionice_binary)
        argv = apply_resource_limits(command, limits)
        timeout = self.config.queue.max_execution_time or None
        logger.debug(f"{operation.id}: {' '.join(argv)}")
        result = self.runner.run(
            argv,
            operation_id=operation.id,
            cwd=cwd,
            timeout=timeout,
            on_start=lambda pid: self.queue.attach_process(operation.id, pid),
        )
        if result.timed_out:
            raise Par2ProtectError(
                ErrorKind.TIMEOUT,
                f"par2 exceeded the maximum execution time of {timeout}s",
                {"path": operation.path, "timeout": timeout, "pid": result.pid},
            )
        return result

    def _require_item(self, operation: Operation) -> ProtectedItem:
        item = self.catalog.get(operation.path)
        if item is None:
            raise not_found_error("Path is not protected", path=operation.path)
        return item

    def _run_protect(self, operation: Operation) -> Optional[OperationOutcome]:
        params = operation.parameters
        path = params["path"]
        if not os.path.exists(path):
            raise not_found_error("Path no longer exists", path=path)
        mode = ItemMode(params.get("mode") or (ItemMode.DIRECTORY.value if os.path.isdir(path) else ItemMode.FILE.value))
        redundancy = params.get("redundancy") or self.config.protection.default_redundancy

        file_types = params.get("file_types")
        files = collect_source_files(path, mode, file_types)
        if not files:
            raise validation_error("No files to protect", path=path, file_types=file_types)

        parity_dir = parity_dir_for(path, mode)
        name = parity_name_for(path)
        self._check_parity_owner(path, parity_dir, name)
        # An existing set is replaced only after the new one has been built
        replacing = ((self.catalog.get(path) is not None or params.get("force"))
                     and bool(item_par2_files(parity_dir, name)))
        output_dir = staging_dir_for(parity_dir, operation.id) if replacing else parity_dir
        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise Par2ProtectError(ErrorKind.RESOURCE, f"Cannot create parity directory: {e}",
                                   {"path": path, "parity_location": parity_dir})

        try:
            command = build_create_command(
                os.path.join(output_dir, name + ".par2"),
                base_path_for(path, mode),
                files,
                redundancy,
                par2_binary=self.config.protection.par2_binary,
            )
            result = self._run_par2(operation, command, output_dir)
            if self._was_cancelled(operation.id):
                return None
            if replacing and result.exit_code == 0:
                promote_staged_parity(output_dir, parity_dir, name, expected=parity_dir)
        finally:
            if replacing:
                discard_staging(output_dir)

        if result.exit_code != 0 and files_already_exist(result.output):
            if self.catalog.get(path) is None:
                size, _ = content_signature(files)
                self.catalog.upsert(ProtectedItem(
                    path=path, mode=mode, redundancy=redundancy, parity_location=parity_dir,
                    size=size, par2_size=parity_size(parity_dir, name),
                    last_status=ItemStatus.UNKNOWN, last_details="Existing parity files adopted",
                    file_types=file_types,
                ))
            return OperationOutcome(OperationStatus.SKIPPED,
                                    {"parity_location": parity_dir, "kind": ErrorKind.FILES_EXIST.value},
                                    "PAR2 files already exist")

        if result.exit_code != 0:
            raise Par2ProtectError(
                ErrorKind.EXECUTION,
                result.stderr.strip() or _tail(result.stdout) or f"par2 create exited with {result.exit_code}",
                {"path": path, "exit_code": result.exit_code, "stderr": result.stderr},
            )
        if not parity_artifacts_present(parity_dir, name):
            raise Par2ProtectError(ErrorKind.EXECUTION, "par2 create succeeded but no parity files were found",
                                   {"path": path, "parity_location": parity_dir})

        size, _ = content_signature(files)
        item = ProtectedItem(
            path=path,
            mode=mode,
            redundancy=redundancy,
            parity_location=parity_dir,
            size=size,
            par2_size=parity_size(parity_dir, name),
            last_status=ItemStatus.PROTECTED,
            last_details=f"Protected {len(files)} files at {redundancy}% redundancy",
            protected_date=now_iso(),
            file_types=file_types,
        )
        self.catalog.upsert(item)
        self.metadata.save(path, capture(files))
        return OperationOutcome(OperationStatus.COMPLETED, {
            "status": ItemStatus.PROTECTED.value,
            "files": len(files),
            "size": item.size,
            "par2_size": item.par2_size,
            "parity_location": parity_dir,
            "duration": round(result.duration, 3),
        })

    def _run_verify(self, operation: Operation) -> Optional[OperationOutcome]:
        item = self._require_item(operation)
        name = parity_name_for(item.path)
        if not parity_artifacts_present(item.parity_location, name):
            self.catalog.update_verification(item.path, ItemStatus.MISSING, "Parity files missing")
            return OperationOutcome(OperationStatus.COMPLETED, {
                "status": VerifyOutcome.MISSING.value,
                "details": "Parity files missing",
            })

        command = build_verify_command(
            os.path.join(item.parity_location, name + ".par2"),
            base_path_for(item.path, item.mode),
            par2_binary=self.config.protection.par2_binary,
        )
        result = self._run_par2(operation, command, item.parity_location)
        if self._was_cancelled(operation.id):
            return None

        output = result.output
        outcome = classify_verify(result.exit_code, output)
        counts = parse_verify_counts(output)
        item_status = VERIFY_TO_ITEM_STATUS[outcome]
        summary = f"Found: {counts.found}, Damaged: {counts.damaged}, Missing: {counts.missing}"

        metadata_issues = {}
        if outcome == VerifyOutcome.VERIFIED and self.config.verification.verify_metadata:
            metadata_issues = self.metadata.verify(item.path)
            if metadata_issues:
                summary += f"; metadata differs for {len(metadata_issues)} files"

        details = f"{summary}\n{_tail(output)}" if outcome != VerifyOutcome.VERIFIED else summary
        self.catalog.update_verification(item.path, item_status, details)

        if outcome == VerifyOutcome.ERROR:
            raise Par2ProtectError(
                ErrorKind.EXECUTION,
                result.stderr.strip() or _tail(result.stdout) or f"par2 verify exited with {result.exit_code}",
                {"path": item.path, "exit_code": result.exit_code, "stderr": result.stderr},
            )

        result_data: Dict[str, Any] = {
            "status": outcome.value,
            "counts": counts.to_dict(),
            "exit_code": result.exit_code,
            "duration": round(result.duration, 3),
        }
        if metadata_issues:
            result_data["metadata_issues"] = metadata_issues
        if item.file_types:
            result_data["file_types"] = item.file_types

        auto_repair = operation.parameters.get("auto_repair", self.config.verification.auto_repair)
        if outcome == VerifyOutcome.DAMAGED and auto_repair:
            repair = self.submit_repair(item.path)
            result_data["repair_operation_id"] = repair.id
        return OperationOutcome(OperationStatus.COMPLETED, result_data)

    def _run_repair(self, operation: Operation) -> Optional[OperationOutcome]:
        item = self._require_item(operation)
        name = parity_name_for(item.path)
        if not parity_artifacts_present(item.parity_location, name):
            self.catalog.update_verification(item.path, ItemStatus.MISSING, "Parity files missing")
            raise Par2ProtectError(ErrorKind.NOT_FOUND, "Parity files missing, cannot repair",
                                   {"path": item.path, "parity_location": item.parity_location})

        command = build_repair_command(
            os.path.join(item.parity_location, name + ".par2"),
            base_path_for(item.path, item.mode),
            par2_binary=self.config.protection.par2_binary,
        )
        result = self._run_par2(operation, command, item.parity_location)
        if self._was_cancelled(operation.id):
            return None

        output = result.output
        outcome = classify_repair(result.exit_code, output)
        if outcome == RepairOutcome.REPAIRED:
            restored = self.metadata.restore(item.path)
            self.catalog.update_verification(item.path, ItemStatus.PROTECTED, "Repair complete")
            return OperationOutcome(OperationStatus.COMPLETED, {
                "status": outcome.value,
                "metadata": restored,
                "duration": round(result.duration, 3),
            })
        if outcome in (RepairOutcome.NOT_POSSIBLE, RepairOutcome.NOT_POSSIBLE_MISSING):
            item_status = ItemStatus.MISSING if outcome == RepairOutcome.NOT_POSSIBLE_MISSING else ItemStatus.DAMAGED
            self.catalog.update_verification(item.path, item_status, f"Repair not possible\n{_tail(output)}")
            return OperationOutcome(OperationStatus.COMPLETED, {
                "status": outcome.value,
                "item_status": item_status.value,
                "exit_code": result.exit_code,
            })

        self.catalog.update_verification(item.path, ItemStatus.ERROR, f"Repair failed\n{_tail(output)}")
        raise Par2ProtectError(
            ErrorKind.EXECUTION,
            result.stderr.strip() or _tail(result.stdout) or f"par2 repair exited with {result.exit_code}",
            {"path": item.path, "exit_code": result.exit_code, "stderr": result.stderr},
        )

    def _run_remove(self, operation: Operation) -> OperationOutcome:
        removed = self.remove_item(operation.path, operation_id=operation.id)
        return OperationOutcome(OperationStatus.COMPLETED, {"removed_entries": len(removed)})
