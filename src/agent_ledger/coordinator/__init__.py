"""Task detection, dispatch and result reconciliation against the ledger."""

from agent_ledger.coordinator.detector import NoticeQueue, TaskDetector
from agent_ledger.coordinator.dispatcher import DispatchCoordinator
from agent_ledger.coordinator.models import (
    AttemptEvent,
    CoordinatorRunSummary,
    ExecutionAttempt,
    ReconcileStatus,
    TaskNotice,
)
from agent_ledger.coordinator.reconciler import ResultReconciler

__all__ = [
    "AttemptEvent",
    "CoordinatorRunSummary",
    "DispatchCoordinator",
    "ExecutionAttempt",
    "NoticeQueue",
    "ReconcileStatus",
    "ResultReconciler",
    "TaskDetector",
    "TaskNotice",
]
