"""Engine services"""

from services.orchestrator import Orchestrator, OperationOutcome
from services.status_reporter import StatusReporter, compute_health
from services.scheduler_service import SchedulerService, build_trigger
from services.protection_service import ProtectionService, Engine, build_engine

__all__ = [
    "Orchestrator",
    "OperationOutcome",
    "StatusReporter",
    "compute_health",
    "SchedulerService",
    "build_trigger",
    "ProtectionService",
    "Engine",
    "build_engine",
]
