"""Ledger error taxonomy.

Precondition failures are not errors: guarded transitions report them by
returning ``None``/``False``. Everything raised from here is either transient
(``LedgerUnavailableError``), a missing entity, an authorization failure, a
typed fund-guard rejection, or invalid input.
"""

from __future__ import annotations

from agent_ledger.ledger.models import RejectionReason


class LedgerError(RuntimeError):
    """Base class for ledger failures."""


class LedgerUnavailableError(LedgerError):
    """Transient infrastructure failure talking to the ledger; safe to retry."""


class TaskNotFoundError(LedgerError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class VaultNotFoundError(LedgerError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Vault does not exist: {agent_id}")
        self.agent_id = agent_id


class VaultExistsError(LedgerError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Vault already exists: {agent_id}")
        self.agent_id = agent_id


class UnauthorizedError(LedgerError):
    """Caller is not allowed to perform the requested transition."""


class LedgerRejectedError(LedgerError):
    """Transition refused for a business reason; never retried automatically."""


class VaultRejectedError(LedgerRejectedError):
    """Vault guard refused a fund movement."""

    def __init__(self, agent_id: str, reason: RejectionReason, *, amount: int) -> None:
        super().__init__(f"Vault {agent_id} rejected movement of {amount}: {reason.value}")
        self.agent_id = agent_id
        self.reason = reason
        self.amount = amount


class InvalidAmountError(ValueError):
    """Amount is not a positive integer of base units."""


class AmountOverflowError(ValueError):
    """Amount arithmetic would exceed the representable range."""


class InvalidLimitError(ValueError):
    """Daily limit outside the administratively configured range."""


class InvalidFeeError(ValueError):
    """Platform fee outside the allowed range."""
