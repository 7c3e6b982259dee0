"""Unsigned fixed-point amounts stored as integer base units."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from agent_ledger.ledger.errors import AmountOverflowError, InvalidAmountError

UNITS_PER_TOKEN = 1_000_000
MAX_AMOUNT = 2**63 - 1


def parse_amount(value: str) -> int:
    """Parse a decimal token string such as ``"0.5"`` into base units."""

    try:
        parsed = Decimal(value.strip())
    except InvalidOperation as error:
        raise InvalidAmountError(f"Invalid amount: {value!r}") from error
    if not parsed.is_finite() or parsed < 0:
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    scaled = parsed * UNITS_PER_TOKEN
    if scaled != scaled.to_integral_value(rounding=ROUND_DOWN):
        raise InvalidAmountError(
            f"Amount {value!r} has more precision than {UNITS_PER_TOKEN} units per token.",
        )
    units = int(scaled)
    if units > MAX_AMOUNT:
        raise AmountOverflowError(f"Amount too large: {value!r}")
    return units


def format_amount(units: int) -> str:
    whole, frac = divmod(units, UNITS_PER_TOKEN)
    if frac == 0:
        return str(whole)
    digits = str(UNITS_PER_TOKEN).count("0")
    return f"{whole}.{frac:0{digits}d}".rstrip("0")


def require_positive(amount: int, *, name: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"{name} must be an integer number of base units.")
    if amount <= 0:
        raise InvalidAmountError(f"{name} must be greater than 0, got {amount}.")
    if amount > MAX_AMOUNT:
        raise AmountOverflowError(f"{name} exceeds maximum amount: {amount}")
    return amount


def checked_add(left: int, right: int) -> int:
    """Add two unsigned amounts, refusing results above ``MAX_AMOUNT``."""

    if left < 0 or right < 0:
        raise InvalidAmountError("Amounts are unsigned.")
    if left > MAX_AMOUNT - right:
        raise AmountOverflowError(f"Amount overflow: {left} + {right}")
    return left + right


def checked_sub(left: int, right: int) -> int:
    if left < 0 or right < 0:
        raise InvalidAmountError("Amounts are unsigned.")
    if right > left:
        raise AmountOverflowError(f"Amount underflow: {left} - {right}")
    return left - right
