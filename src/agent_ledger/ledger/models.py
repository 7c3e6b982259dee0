"""Domain models for ledger tasks, vaults and the change feed."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Authoritative task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class EscrowStatus(str, Enum):
    """Where the task reward currently sits."""

    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class RejectionReason(str, Enum):
    """Typed reasons a fund movement was refused by the vault guard."""

    VAULT_INACTIVE = "vault_inactive"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    VAULT_NOT_FOUND = "vault_not_found"


class EntityType(str, Enum):
    TASK = "task"
    VAULT = "vault"
    PLATFORM = "platform"


@dataclass(slots=True)
class TaskView:
    """Readable task snapshot returned by ledger queries and transitions."""

    task_id: int
    agent_id: str
    requester: str
    payload: str
    reward: int
    status: TaskStatus
    escrow_status: EscrowStatus
    fee_charged: int
    amount_paid: int
    result: str | None
    failure_reason: str | None
    worker_id: str | None
    claim_epoch: int
    claimed_at: datetime | None
    lease_expires_at: datetime | None
    reclaim_count: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    def lease_expired(self, now: datetime) -> bool:
        if self.status != TaskStatus.IN_PROGRESS or self.lease_expires_at is None:
            return False
        return self.lease_expires_at <= now


@dataclass(slots=True, frozen=True)
class ClaimToken:
    """Proof of a successful claim; commits must present it.

    ``claim_epoch`` fences commits from a worker whose claim was superseded
    after lease recovery.
    """

    task_id: int
    worker_id: str
    claim_epoch: int
    lease_expires_at: datetime


@dataclass(slots=True)
class VaultStatus:
    """Effective vault state for one asset, with the window lazily rolled."""

    agent_id: str
    asset: str
    balance: int
    daily_limit: int
    daily_spent: int
    remaining: int
    window_started_at: datetime
    resets_at: datetime
    active: bool


@dataclass(slots=True)
class AgentMetrics:
    """Aggregated execution statistics for one agent."""

    agent_id: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    average_execution_ms: float
    last_execution_ms: int
    success_rate: float


@dataclass(slots=True)
class LedgerNotification:
    """One entry of the ledger change feed."""

    event_id: int
    entity_type: EntityType
    entity_id: str
    agent_id: str | None
    event_type: str
    new_status: str | None


@dataclass(slots=True)
class LedgerEventView:
    """Audit trail entry for one entity."""

    event_id: int
    entity_type: EntityType
    entity_id: str
    agent_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
