"""Protection service - JSON-shaped facade over the orchestrator and status reporter"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from core.catalog import CatalogStore, ItemStatus
from core.config import ConfigManager
from core.database import Database
from core.errors import ErrorKind, Par2ProtectError
from core.events import EventBus
from core.metadata import MetadataStore
from core.operation_queue import Operation, OperationQueue, OperationStatus
from core.par2_commands import VerifyOutcome
from core.process_runner import ProcessRunner
from models.operations import OperationModel, OperationResponseModel
from models.protection import (
    CancelResponseModel,
    ListResponseModel,
    ProtectRequestModel,
    ProtectResponseModel,
    RemoveRequestModel,
    RemoveResponseModel,
    StatusDataModel,
    StatusResponseModel,
    VerifyRequestModel,
    VerifyResponseModel,
    VerifyStatsModel,
)
from services.orchestrator import Orchestrator
from services.scheduler_service import SchedulerService
from services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)

FAILED_ITEM_STATUSES = (ItemStatus.DAMAGED.value, ItemStatus.MISSING.value, ItemStatus.ERROR.value)
FAILED_VERIFY_OUTCOMES = (VerifyOutcome.DAMAGED.value, VerifyOutcome.MISSING.value, VerifyOutcome.ERROR.value)


def _error_response(error: Exception) -> Dict[str, Any]:
    """Map an exception to the common failure fields"""
    if isinstance(error, Par2ProtectError):
        return {"success": False, **error.to_dict()}
    if isinstance(error, ValidationError):
        messages = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()]
        return {"success": False, "error": "; ".join(messages), "kind": ErrorKind.VALIDATION.value,
                "context": {}}
    if isinstance(error, sqlite3.Error):
        logger.error(f"Storage error: {error}")
        return {"success": False, "error": f"Storage unavailable: {error}", "kind": ErrorKind.STORAGE.value,
                "context": {}}
    raise error


class ProtectionService:
    """External operations: protect, verify, remove, status, cancel, list, operation.

    Every response is a plain dict with a ``success`` flag; failures carry
    ``error``, ``kind`` and ``context``.
    """

    def __init__(self, config: ConfigManager, orchestrator: Orchestrator, reporter: StatusReporter):
        self.config = config
        self.orchestrator = orchestrator
        self.reporter = reporter

    @property
    def catalog(self) -> CatalogStore:
        return self.orchestrator.catalog

    @property
    def queue(self) -> OperationQueue:
        return self.orchestrator.queue

    def protect(self, path: str, redundancy: Optional[int] = None, force: bool = False,
                file_types: Optional[List[str]] = None) -> Dict[str, Any]:
        try:
            request = ProtectRequestModel(path=path, redundancy=redundancy, force=force, file_types=file_types)
            operation = self.orchestrator.submit_protect(request.path, request.redundancy, request.force,
                                                         file_types=request.file_types)
        except (Par2ProtectError, ValidationError, sqlite3.Error) as e:
            return ProtectResponseModel(**_error_response(e)).model_dump()
        return ProtectResponseModel(
            success=True,
            operation_id=operation.id,
            status=operation.status.value,
        ).model_dump()

    def verify(self, target: Union[str, List[str]], force: bool = False, wait: bool = False,
               timeout: Optional[float] = None) -> Dict[str, Any]:
        """Queue verification; with wait=True block until the results are in.

        Stats count verified and failed items only for operations that
        have finished, so without waiting they reflect skipped items.
        """
        try:
            request = VerifyRequestModel(target=target, force=force, wait=wait, timeout=timeout)
            operations, errors = self.orchestrator.submit_verify(request.target, request.force)
            if request.wait and operations:
                operations = self.orchestrator.wait_for([op.id for op in operations], request.timeout)
        except (Par2ProtectError, ValidationError, sqlite3.Error) as e:
            return VerifyResponseModel(**_error_response(e)).model_dump()

        stats = self._verify_stats(operations, errors)
        response = VerifyResponseModel(
            success=bool(operations) or not errors,
            stats=stats,
            tasks=[OperationModel(**op.to_dict()) for op in operations],
        )
        if not operations and errors:
            response.error = "No verification could be queued"
            response.kind = errors[0]["kind"]
        return response.model_dump()

    def _verify_stats(self, operations: List[Operation], errors: List[Dict[str, Any]]) -> VerifyStatsModel:
        verified = 0
        failed = 0
        all_errors = list(errors)
        for operation in operations:
            result = operation.result or {}
            outcome = result.get("status")
            if operation.status == OperationStatus.FAILED:
                failed += 1
                all_errors.append({"path": operation.path, "error": result.get("error", "Verification failed"),
                                   "kind": result.get("kind", ErrorKind.EXECUTION.value),
                                   "context": result.get("context", {})})
            elif operation.status == OperationStatus.COMPLETED:
                if outcome == VerifyOutcome.VERIFIED.value:
                    verified += 1
                elif outcome in FAILED_VERIFY_OUTCOMES:
                    failed += 1
            elif operation.status == OperationStatus.SKIPPED:
                if outcome == ItemStatus.PROTECTED.value:
                    verified += 1
                elif outcome in FAILED_ITEM_STATUSES:
                    failed += 1
        return VerifyStatsModel(
            total_files=len(operations) + len(errors),
            verified_files=verified,
            failed_files=failed,
            errors=all_errors,
        )

    def remove(self, paths: Union[str, List[str]]) -> Dict[str, Any]:
        if isinstance(paths, str):
            paths = [paths]
        try:
            request = RemoveRequestModel(paths=paths)
            outcome = self.orchestrator.remove_paths(request.paths)
        except (Par2ProtectError, ValidationError, sqlite3.Error) as e:
            failure = _error_response(e)
            return RemoveResponseModel(message=failure["error"], **failure).model_dump()

        removed, errors = outcome["removed"], outcome["errors"]
        total = len(removed) + len(errors)
        if errors and removed:
            message = f"Removed {len(removed)} of {total} items"
        elif errors:
            message = f"Failed to remove {len(errors)} items"
        else:
            message = f"Removed {len(removed)} items"
        response = RemoveResponseModel(success=not errors, message=message, removed=removed, errors=errors)
        if errors:
            response.error = message
            response.kind = errors[0]["kind"]
            response.context = {"failed": len(errors), "removed": len(removed)}
        return response.model_dump()

    def status(self) -> Dict[str, Any]:
        try:
            snapshot = self.reporter.snapshot()
        except sqlite3.Error as e:
            return StatusResponseModel(**_error_response(e)).model_dump()
        return StatusResponseModel(success=True, data=StatusDataModel(**snapshot)).model_dump()

    def cancel(self, operation_id: str) -> Dict[str, Any]:
        try:
            killed = self.orchestrator.cancel(operation_id)
            operation = self.queue.get(operation_id)
        except (Par2ProtectError, sqlite3.Error) as e:
            return CancelResponseModel(**_error_response(e)).model_dump()
        return CancelResponseModel(
            success=True,
            killed_processes=killed,
            status=operation.status.value if operation else None,
        ).model_dump()

    def list(self, status: Optional[str] = None) -> Dict[str, Any]:
        try:
            item_status = None
            if status:
                try:
                    item_status = ItemStatus(str(status).upper())
                except ValueError:
                    raise Par2ProtectError(ErrorKind.VALIDATION, f"Unknown status filter: {status}",
                                           {"allowed": [s.value for s in ItemStatus]})
            items = self.catalog.list(status=item_status)
        except (Par2ProtectError, sqlite3.Error) as e:
            return ListResponseModel(**_error_response(e)).model_dump()
        return ListResponseModel(success=True, items=[item.to_dict() for item in items]).model_dump()

    def operation(self, operation_id: str) -> Dict[str, Any]:
        try:
            operation = self.queue.get(operation_id) if isinstance(operation_id, str) else None
            if operation is None:
                raise Par2ProtectError(ErrorKind.NOT_FOUND, "Operation not found", {"operation_id": operation_id})
        except (Par2ProtectError, sqlite3.Error) as e:
            return OperationResponseModel(**_error_response(e)).model_dump()
        return OperationResponseModel(success=True, operation=OperationModel(**operation.to_dict())).model_dump()


@dataclass
class Engine:
    """All wired components for one process"""
    config: ConfigManager
    db: Database
    events: EventBus
    catalog: CatalogStore
    queue: OperationQueue
    runner: ProcessRunner
    metadata: MetadataStore
    orchestrator: Orchestrator
    reporter: StatusReporter
    service: ProtectionService
    scheduler: SchedulerService

    def close(self) -> None:
        self.scheduler.stop()
        self.orchestrator.stop()
        self.db.close()


def build_engine(config: ConfigManager, runner: Optional[ProcessRunner] = None) -> Engine:
    """Wire the stores, runner, orchestrator, facade and scheduler from a loaded config"""
    db = Database.from_config(config.database)
    db.initialize()
    events = EventBus()
    catalog = CatalogStore(db)
    queue = OperationQueue(
        db,
        events=events,
        max_concurrent=config.resource_limits.max_concurrent_operations,
        active_retention_hours=config.queue.active_retention_hours,
    )
    runner = runner or ProcessRunner(temp_dir=config.protection.temp_dir)
    metadata = MetadataStore(db)
    orchestrator = Orchestrator(config, catalog, queue, runner, metadata, events)
    reporter = StatusReporter(config, catalog, queue, runner)
    service = ProtectionService(config, orchestrator, reporter)
    scheduler = SchedulerService(config.schedule, lambda force: service.verify("all", force=force))
    reporter.scheduler = scheduler
    return Engine(config, db, events, catalog, queue, runner, metadata, orchestrator, reporter, service,
                  scheduler)
