"""
Money -- fixed-precision currency arithmetic for the billing ledger.

Responsibility:
    The only sanctioned rounding and percentage functions in the kernel.
    Every service routes each arithmetic step through these so that
    composer, recorder, cancellation and rectification round identically.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Round-half-up to cents (0.005 -> 0.01, -0.005 -> -0.01).
    - Floats are rejected outright; binary fractions never enter the ledger.

Failure modes:
    - TypeError when a float (or other unsupported type) is passed.
    - decimal.InvalidOperation when a string is not numeric (require_amount
      reports it as ValidationError).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Protocol

from billing_kernel.exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


class HasTotal(Protocol):
    total: Decimal


def to_decimal(value: Decimal | int | str) -> Decimal:
    """
    Convert an input amount to Decimal without rounding.

    Raises:
        TypeError: If value is a float or an unsupported type.
    """
    if isinstance(value, bool):
        raise TypeError("Booleans are not monetary amounts")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        return Decimal(value.strip())
    if isinstance(value, float):
        raise TypeError(
            "Float amounts are not accepted; pass Decimal or str "
            f"(got {value!r})"
        )
    raise TypeError(f"Unsupported amount type: {type(value).__name__}")


def round2(value: Decimal | int | str) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def apply_percent(amount: Decimal | int | str, pct: Decimal | int | str) -> Decimal:
    """Return ``round2(amount * pct / 100)``."""
    return round2(to_decimal(amount) * to_decimal(pct) / HUNDRED)


def line_total(
    quantity: Decimal | int | str,
    unit_price: Decimal | int | str,
    discount_percent: Decimal | int | str = ZERO,
) -> Decimal:
    """InvoiceItem total: ``round2(quantity * unit_price * (1 - discount/100))``."""
    factor = (HUNDRED - to_decimal(discount_percent)) / HUNDRED
    return round2(to_decimal(quantity) * to_decimal(unit_price) * factor)


def sum_line_items(items: Iterable[HasTotal]) -> Decimal:
    """Sum already-rounded item totals; the result is rounded once more."""
    return round2(sum((to_decimal(item.total) for item in items), ZERO))


def is_cent_exact(value: Decimal) -> bool:
    """True when value carries no sub-cent remainder."""
    return round2(value) == value


def require_amount(field: str, value, *, allow_zero: bool = False) -> Decimal:
    """
    Parse a caller-supplied amount: non-negative, cent-exact, not a float.

    Raises:
        ValidationError: With the field name and the violated constraint.
    """
    try:
        amount = to_decimal(value)
    except TypeError as exc:
        raise ValidationError(field, str(exc), value) from exc
    except InvalidOperation as exc:
        raise ValidationError(field, "must be a decimal number", value) from exc
    if amount < ZERO or (amount == ZERO and not allow_zero):
        raise ValidationError(
            field, "must be >= 0" if allow_zero else "must be greater than 0", amount
        )
    if not is_cent_exact(amount):
        raise ValidationError(field, "must have at most 2 decimals", amount)
    return amount
