"""In-process coordinator state: notices, attempts and run counters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_ledger.ledger.models import ClaimToken


class NoticeSource(str, Enum):
    PUSH = "push"
    PULL = "pull"
    RECOVERY = "recovery"


@dataclass(slots=True, frozen=True)
class TaskNotice:
    """A task may have become claimable; delivered at least once."""

    task_id: int
    agent_id: str
    source: NoticeSource


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(slots=True)
class ExecutionAttempt:
    """Local record of one claimed task being worked on by this process."""

    task_id: int
    agent_id: str
    requester: str
    payload: str
    claim: ClaimToken
    started_at: datetime
    lease_deadline: datetime
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    retry_count: int = 0
    recovered: bool = False


class ReconcileStatus(str, Enum):
    """How an attempt's terminal commit ended."""

    COMMITTED = "committed"
    PRECONDITION_FAILED = "precondition_failed"
    ABANDONED = "abandoned"
    SETTLEMENT_REJECTED = "settlement_rejected"


@dataclass(slots=True, frozen=True)
class AttemptEvent:
    """Observer notification about an attempt the coordinator could not finish."""

    kind: str
    task_id: int
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CoordinatorRunSummary:
    """Aggregate coordinator counters for CLI reporting."""

    notices: int = 0
    claimed: int = 0
    claim_lost: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    settlement_rejected: int = 0
    abandoned: int = 0
    reclaimed: int = 0
    recovered: int = 0
    dropped: int = 0
