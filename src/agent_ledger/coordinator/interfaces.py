"""Narrow ledger surface the coordinator depends on."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from agent_ledger.ledger.models import (
    ClaimToken,
    LedgerNotification,
    TaskStatus,
    TaskView,
)


class TaskLedger(Protocol):
    """Task transitions and queries; precondition failures return ``None``/``False``."""

    def claim_task(
        self,
        *,
        task_id: int,
        worker_id: str,
        lease_seconds: float,
    ) -> ClaimToken | None: ...

    def commit_success(self, *, claim: ClaimToken, result: str) -> TaskView | None: ...

    def commit_failure(self, *, claim: ClaimToken, reason: str) -> TaskView | None: ...

    def reclaim_expired_task(self, *, task_id: int) -> bool: ...

    def get_task(self, *, task_id: int) -> TaskView: ...

    def list_tasks(
        self,
        *,
        agent_ids: Sequence[str] | None = None,
        status: TaskStatus | None = None,
        worker_id: str | None = None,
        lease_expired_before: datetime | None = None,
        limit: int = 100,
    ) -> list[TaskView]: ...

    def record_execution(self, *, agent_id: str, success: bool, duration_ms: int) -> None: ...


class ChangeFeed(Protocol):
    """Append-only notification channel, tailed by event id."""

    def latest_event_id(self) -> int: ...

    def changes_since(
        self,
        *,
        after_event_id: int,
        agent_ids: Sequence[str] | None = None,
        limit: int = 100,
    ) -> list[LedgerNotification]: ...


class CoordinatorLedger(TaskLedger, ChangeFeed, Protocol):
    """Everything the coordinator process needs from one ledger handle."""
