"""Rolling-window spend-limit decisions for vault fund movements.

The guard is pure: the ledger reads the vault row, asks the guard for a
decision and applies ``GuardDecision`` inside the same guarded transaction.
There is no background timer; the window only rolls forward as a side effect
of an attempted movement, and a rejected attempt applies nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from agent_ledger.ledger.amounts import checked_add, checked_sub, require_positive
from agent_ledger.ledger.errors import AmountOverflowError
from agent_ledger.ledger.models import RejectionReason

DEFAULT_WINDOW = timedelta(hours=24)


class MovementKind(str, Enum):
    """Direction of funds relative to the guarded vault."""

    DEBIT = "debit"
    SETTLEMENT = "settlement"


@dataclass(slots=True, frozen=True)
class VaultSnapshot:
    """Vault fields the guard needs, as read at the start of the transition."""

    daily_limit: int
    daily_spent: int
    window_reset_at: datetime
    active: bool
    balance: int


@dataclass(slots=True, frozen=True)
class GuardDecision:
    allowed: bool
    reason: RejectionReason | None
    balance: int
    daily_spent: int
    window_reset_at: datetime
    window_rolled: bool


@dataclass(slots=True, frozen=True)
class LimitWindow:
    daily_spent: int
    window_reset_at: datetime
    rolled: bool


def effective_window(
    *,
    daily_spent: int,
    window_reset_at: datetime,
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
) -> LimitWindow:
    """Return the window as it would look after a lazy reset at ``now``."""

    if now >= window_reset_at + window:
        return LimitWindow(daily_spent=0, window_reset_at=now, rolled=True)
    return LimitWindow(daily_spent=daily_spent, window_reset_at=window_reset_at, rolled=False)


def evaluate_movement(
    snapshot: VaultSnapshot,
    *,
    amount: int,
    kind: MovementKind,
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
) -> GuardDecision:
    """Decide whether ``amount`` may move through the vault at ``now``."""

    require_positive(amount)
    rolled = effective_window(
        daily_spent=snapshot.daily_spent,
        window_reset_at=snapshot.window_reset_at,
        now=now,
        window=window,
    )

    if not snapshot.active:
        return _reject(snapshot, rolled, RejectionReason.VAULT_INACTIVE)
    if kind == MovementKind.DEBIT and amount > snapshot.balance:
        return _reject(snapshot, rolled, RejectionReason.INSUFFICIENT_BALANCE)
    try:
        spent_after = checked_add(rolled.daily_spent, amount)
    except AmountOverflowError:
        return _reject(snapshot, rolled, RejectionReason.DAILY_LIMIT_EXCEEDED)
    if spent_after > snapshot.daily_limit:
        return _reject(snapshot, rolled, RejectionReason.DAILY_LIMIT_EXCEEDED)

    if kind == MovementKind.DEBIT:
        balance_after = checked_sub(snapshot.balance, amount)
    else:
        balance_after = checked_add(snapshot.balance, amount)
    return GuardDecision(
        allowed=True,
        reason=None,
        balance=balance_after,
        daily_spent=spent_after,
        window_reset_at=rolled.window_reset_at,
        window_rolled=rolled.rolled,
    )


def validate_limit(daily_limit: int, *, min_limit: int, max_limit: int) -> bool:
    return min_limit <= daily_limit <= max_limit


def _reject(
    snapshot: VaultSnapshot,
    rolled: LimitWindow,
    reason: RejectionReason,
) -> GuardDecision:
    return GuardDecision(
        allowed=False,
        reason=reason,
        balance=snapshot.balance,
        daily_spent=rolled.daily_spent,
        window_reset_at=rolled.window_reset_at,
        window_rolled=rolled.rolled,
    )
