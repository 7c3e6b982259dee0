"""Authoritative task and vault ledger."""

from agent_ledger.ledger.errors import (
    LedgerError,
    LedgerRejectedError,
    LedgerUnavailableError,
    TaskNotFoundError,
    UnauthorizedError,
    VaultExistsError,
    VaultNotFoundError,
    VaultRejectedError,
)
from agent_ledger.ledger.models import ClaimToken, TaskStatus, TaskView, VaultStatus
from agent_ledger.ledger.repository import LedgerRepository

__all__ = [
    "ClaimToken",
    "LedgerError",
    "LedgerRejectedError",
    "LedgerRepository",
    "LedgerUnavailableError",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskView",
    "UnauthorizedError",
    "VaultExistsError",
    "VaultNotFoundError",
    "VaultRejectedError",
    "VaultStatus",
]
