"""Status reporter service - aggregates catalog, queue and process state into one snapshot"""

import logging
import threading
from typing import Any, Dict, List, Optional

from core.catalog import CatalogStore, ItemStatus
from core.config import ConfigManager
from core.operation_queue import Operation, OperationQueue, OperationStatus
from core.process_runner import ProcessRunner, RunningProcess
from core.system_utils import format_bytes, get_system_resources
from services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)


def compute_health(counts_by_status: Dict[str, int], total: int) -> str:
    """Overall health from per-status item counts.

    No items: unknown. Any damaged or error item: error. Any missing:
    warning. Everything protected: good. Anything else: unknown.
    """
    if total == 0:
        return "unknown"
    if counts_by_status.get(ItemStatus.DAMAGED.value, 0) or counts_by_status.get(ItemStatus.ERROR.value, 0):
        return "error"
    if counts_by_status.get(ItemStatus.MISSING.value, 0):
        return "warning"
    if counts_by_status.get(ItemStatus.PROTECTED.value, 0) == total:
        return "good"
    return "unknown"


class StatusReporter:
    """Builds the dashboard snapshot: stats, active operations, recent activity, resources"""

    def __init__(self, config: ConfigManager, catalog: CatalogStore, queue: OperationQueue,
                 runner: ProcessRunner, scheduler: Optional[SchedulerService] = None):
        self.config = config
        self.catalog = catalog
        self.queue = queue
        self.runner = runner
        self.scheduler = scheduler
        self._lock = threading.Lock()
        self._correlation_failures = 0

    @property
    def correlation_failures(self) -> int:
        """Running count of par2 processes that matched no operation"""
        with self._lock:
            return self._correlation_failures

    def stats(self) -> Dict[str, Any]:
        stats = self.catalog.aggregate_stats()
        stats["health"] = compute_health(stats["counts_by_status"], stats["total_files"])
        stats["total_size_display"] = format_bytes(stats["total_size"])
        stats["total_par2_size_display"] = format_bytes(stats["total_par2_size"])
        return stats

    def active_operations(self) -> List[Dict[str, Any]]:
        """PROCESSING and PENDING operations joined with their live processes.

        Processes are matched by the operation id exported in their
        environment first, then by the pid stored on the operation.
        Unmatched processes are listed with process fields only.
        """
        processes = self.runner.list_processes()
        running = self.queue.list_by_status(OperationStatus.PROCESSING)
        pending = self.queue.list_by_status(OperationStatus.PENDING)

        by_id = {op.id: op for op in running}
        by_pid = {op.pid: op for op in running if op.pid}
        matched: Dict[str, RunningProcess] = {}
        uncorrelated: List[RunningProcess] = []

        for process in processes:
            operation: Optional[Operation] = None
            if process.operation_id and process.operation_id in by_id:
                operation = by_id[process.operation_id]
            elif process.pid in by_pid:
                operation = by_pid[process.pid]
            if operation is None or operation.id in matched:
                uncorrelated.append(process)
            else:
                matched[operation.id] = process

        if uncorrelated:
            with self._lock:
                self._correlation_failures += len(uncorrelated)
            logger.warning(f"{len(uncorrelated)} par2 processes could not be matched to an operation: "
                           f"{[p.pid for p in uncorrelated]}")

        entries = []
        for operation in running:
            process = matched.get(operation.id)
            entry = self._operation_entry(operation)
            if process is not None:
                entry["process"] = process.to_dict()
                entry["pid"] = process.pid
            entry["progress"] = self.runner.read_progress(operation.id)
            entries.append(entry)
        for process in uncorrelated:
            entries.append({
                "id": None,
                "operation_type": None,
                "status": "running",
                "path": None,
                "pid": process.pid,
                "process": process.to_dict(),
                "progress": None,
            })
        for operation in pending:
            entries.append(self._operation_entry(operation))
        return entries

    @staticmethod
    def _operation_entry(operation: Operation) -> Dict[str, Any]:
        return {
            "id": operation.id,
            "operation_type": operation.operation_type.value,
            "status": operation.status.value,
            "path": operation.path,
            "pid": operation.pid,
            "created_at": operation.created_at,
            "started_at": operation.started_at,
            "progress": None,
        }

    def recent_activity(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        limit = limit or self.config.queue.recent_activity_limit
        activity = []
        for operation in self.queue.list_recent(limit):
            result = operation.result or {}
            activity.append({
                "id": operation.id,
                "operation_type": operation.operation_type.value,
                "status": operation.status.value,
                "path": operation.path,
                "completed_at": operation.completed_at,
                "result_status": result.get("status"),
                "error": result.get("error"),
            })
        return activity

    def system_resources(self) -> Dict[str, Any]:
        resources = get_system_resources()
        resources["processing_operations"] = self.queue.count_processing()
        resources["max_concurrent_operations"] = self.config.resource_limits.max_concurrent_operations
        resources["correlation_failures"] = self.correlation_failures
        if self.scheduler is not None:
            resources["scheduler"] = self.scheduler.get_status()
        return resources

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stats": self.stats(),
            "active_operations": self.active_operations(),
            "recent_activity": self.recent_activity(),
            "system_resources": self.system_resources(),
        }
