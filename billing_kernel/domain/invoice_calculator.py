"""
InvoiceCalculator -- pure invoice arithmetic.

Responsibility:
    Turns requested line items plus insurance, fractional billing, discount
    and tax parameters into the exact persisted shape of an invoice.  Also
    computes rectification deltas.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Called by InvoiceComposer and RectificationService.

Invariants enforced:
    - sum(line.total) == subtotal, to the cent.
    - total == subtotal - discount_amount + tax_amount, to the cent.
    - Every arithmetic step goes through domain/money.

Persisted shape:
    The full-price items are kept for traceability.  When insurance or a
    partial payment_percent applies, adjustment lines are appended:

        Implant crown                 1 x 1000.00  =  1000.00
        Insurance coverage (Sanitas)  1 x -200.00  =  -200.00
        Deferred balance (50% billed) 1 x -400.00  =  -400.00
                                            subtotal   400.00

    gross_amount keeps 1000.00; subtotal is what this invoice charges.

Failure modes:
    - EmptyItemSetError when no items are given.
    - ValidationError for quantities, prices, percentages or discounts out
      of range (field + constraint).
    - InvalidInsuranceAmountError when insurance exceeds the gross amount.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, Sequence

from billing_kernel.domain.dtos import LineItemSpec
from billing_kernel.domain.money import (
    HUNDRED,
    ZERO,
    apply_percent,
    line_total,
    round2,
    sum_line_items,
    to_decimal,
)
from billing_kernel.exceptions import (
    EmptyItemSetError,
    InvalidInsuranceAmountError,
    ValidationError,
)

ONE = Decimal("1")

INSURANCE_LINE_TYPE = "insurance_adjustment"
DEFERRED_LINE_TYPE = "fractional_adjustment"
RECTIFICATION_LINE_TYPE = "rectification"
# Lines the kernel writes itself; never part of the gross
ADJUSTMENT_LINE_TYPES = frozenset(
    {INSURANCE_LINE_TYPE, DEFERRED_LINE_TYPE, RECTIFICATION_LINE_TYPE}
)


@dataclass(frozen=True)
class ComputedLine:
    sort_order: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal
    total: Decimal
    treatment_type: str | None = None


@dataclass(frozen=True)
class InvoiceComputation:
    """Every amount an Invoice row and its items need."""

    lines: tuple[ComputedLine, ...]
    gross_amount: Decimal
    insurance_amount: Decimal
    after_insurance: Decimal
    payment_percent: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal

    @property
    def is_fractional(self) -> bool:
        return self.payment_percent < HUNDRED

    @property
    def deferred_amount(self) -> Decimal:
        """Portion of after_insurance left for a later invoice."""
        return self.after_insurance - self.subtotal


def _decimal_field(name: str, value) -> Decimal:
    try:
        return to_decimal(value)
    except TypeError as exc:
        raise ValidationError(name, str(exc), value) from exc
    except InvalidOperation as exc:
        raise ValidationError(name, "must be a decimal number", value) from exc


def _percent_label(pct: Decimal) -> str:
    return f"{pct.normalize():f}"


def build_line(
    spec: LineItemSpec,
    sort_order: int,
    *,
    allow_negative_price: bool = False,
) -> ComputedLine:
    """Validate one requested line and compute its total."""
    if not spec.description or not spec.description.strip():
        raise ValidationError("description", "must not be empty", spec.description)

    quantity = _decimal_field("quantity", spec.quantity)
    unit_price = _decimal_field("unit_price", spec.unit_price)
    discount_percent = _decimal_field("discount_percent", spec.discount_percent)

    if quantity <= ZERO:
        raise ValidationError("quantity", "must be greater than 0", quantity)
    if unit_price < ZERO and not allow_negative_price:
        raise ValidationError("unit_price", "must be >= 0", unit_price)
    if unit_price != round2(unit_price):
        raise ValidationError("unit_price", "must have at most 2 decimals", unit_price)
    if discount_percent < ZERO or discount_percent > HUNDRED:
        raise ValidationError("discount_percent", "must be between 0 and 100", discount_percent)

    return ComputedLine(
        sort_order=sort_order,
        description=spec.description.strip(),
        quantity=quantity,
        unit_price=unit_price,
        discount_percent=discount_percent,
        total=line_total(quantity, unit_price, discount_percent),
        treatment_type=spec.treatment_type,
    )


def _adjustment_line(sort_order: int, description: str, amount: Decimal, kind: str) -> ComputedLine:
    return ComputedLine(
        sort_order=sort_order,
        description=description,
        quantity=ONE,
        unit_price=-amount,
        discount_percent=ZERO,
        total=-amount,
        treatment_type=kind,
    )


def _tax_and_total(
    subtotal: Decimal,
    discount_amount: Decimal,
    tax_rate: Decimal,
) -> tuple[Decimal, Decimal]:
    taxable = subtotal - discount_amount
    tax_amount = apply_percent(taxable, tax_rate)
    return tax_amount, round2(taxable + tax_amount)


def compute_invoice(
    items: Sequence[LineItemSpec],
    *,
    insurance_amount=ZERO,
    insurance_name: str | None = None,
    payment_percent=HUNDRED,
    discount_amount=ZERO,
    tax_rate=ZERO,
) -> InvoiceComputation:
    """
    Compute an ordinary (non-rectifying) invoice.

    Steps:
        1. gross = sum of the full line totals
        2. after_insurance = gross - insurance_amount
        3. subtotal = round2(after_insurance * payment_percent / 100)
        4. tax on (subtotal - discount); total = subtotal - discount + tax
    """
    if not items:
        raise EmptyItemSetError()

    insurance = _decimal_field("insurance_amount", insurance_amount)
    pct = _decimal_field("payment_percent", payment_percent)
    discount = _decimal_field("discount_amount", discount_amount)
    rate = _decimal_field("tax_rate", tax_rate)

    if pct < ONE or pct > HUNDRED:
        raise ValidationError("payment_percent", "must be between 1 and 100", pct)
    if rate < ZERO or rate > HUNDRED:
        raise ValidationError("tax_rate", "must be between 0 and 100", rate)
    if insurance != round2(insurance):
        raise ValidationError("insurance_amount", "must have at most 2 decimals", insurance)
    if discount != round2(discount):
        raise ValidationError("discount_amount", "must have at most 2 decimals", discount)

    lines = [build_line(spec, index) for index, spec in enumerate(items)]
    gross = sum_line_items(lines)

    if insurance < ZERO or insurance > gross:
        raise InvalidInsuranceAmountError(insurance, gross)

    after_insurance = gross - insurance
    invoice_amount = apply_percent(after_insurance, pct)

    if insurance > ZERO:
        label = f"Insurance coverage ({insurance_name})" if insurance_name else "Insurance coverage"
        lines.append(_adjustment_line(len(lines), label, insurance, INSURANCE_LINE_TYPE))

    deferred = after_insurance - invoice_amount
    if deferred != ZERO:
        lines.append(
            _adjustment_line(
                len(lines),
                f"Deferred balance ({_percent_label(pct)}% billed)",
                deferred,
                DEFERRED_LINE_TYPE,
            )
        )

    subtotal = sum_line_items(lines)
    # Holds by construction; a mismatch means the adjustment lines are wrong
    assert subtotal == invoice_amount, f"subtotal {subtotal} != invoice amount {invoice_amount}"

    if discount < ZERO or discount > subtotal:
        raise ValidationError("discount_amount", f"must be between 0 and {subtotal}", discount)

    tax_amount, total = _tax_and_total(subtotal, discount, rate)

    return InvoiceComputation(
        lines=tuple(lines),
        gross_amount=gross,
        insurance_amount=insurance,
        after_insurance=after_insurance,
        payment_percent=pct,
        subtotal=subtotal,
        discount_amount=discount,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=total,
    )


def _lines_by_key(lines: Iterable) -> dict[tuple[str, str | None], Decimal]:
    totals: dict[tuple[str, str | None], Decimal] = {}
    for line in lines:
        key = (line.description, line.treatment_type)
        totals[key] = totals.get(key, ZERO) + line.total
    return totals


def compute_rectification_lines(
    current_lines: Iterable,
    corrected: Sequence[LineItemSpec],
    *,
    payment_percent=HUNDRED,
) -> tuple[ComputedLine, ...]:
    """
    Delta lines between the current effective lines and a corrected set.

    Lines are matched on (description, treatment_type).  A changed line
    yields one delta line (negative when the charge shrinks); a removed line
    is fully negated; a new line is charged in full.  Unchanged lines are
    omitted.

    Insurance and total-correction lines carry over as fixed amounts.  The
    deferred balance is recomputed: the corrected items, less the carried
    insurance, are billed at the invoice's payment_percent again, so a
    50%-billed invoice moves by half of an item change.
    """
    pct = _decimal_field("payment_percent", payment_percent)
    corrected_lines = [build_line(spec, index) for index, spec in enumerate(corrected)]
    for line in corrected_lines:
        if line.treatment_type in ADJUSTMENT_LINE_TYPES:
            raise ValidationError(
                "treatment_type", "adjustment lines are derived, not restated", line.treatment_type
            )
    before = _lines_by_key(current_lines)
    after = _lines_by_key(corrected_lines)
    for key, amount in before.items():
        if key[1] in (INSURANCE_LINE_TYPE, RECTIFICATION_LINE_TYPE):
            after[key] = amount

    gross = sum(
        (amount for (_, kind), amount in after.items() if kind not in ADJUSTMENT_LINE_TYPES), ZERO
    )
    insurance = -sum(
        (amount for (_, kind), amount in after.items() if kind == INSURANCE_LINE_TYPE), ZERO
    )
    if insurance > gross:
        raise InvalidInsuranceAmountError(insurance, gross)
    after_insurance = gross - insurance
    deferred = after_insurance - apply_percent(after_insurance, pct)

    deferred_keys = [key for key in before if key[1] == DEFERRED_LINE_TYPE]
    deferred_key = (
        deferred_keys[0]
        if deferred_keys
        else (f"Deferred balance ({_percent_label(pct)}% billed)", DEFERRED_LINE_TYPE)
    )
    if deferred != ZERO or deferred_key in before:
        after[deferred_key] = -deferred

    deltas: list[ComputedLine] = []
    for key in list(before) + [k for k in after if k not in before]:
        diff = after.get(key, ZERO) - before.get(key, ZERO)
        if diff == ZERO:
            continue
        description, treatment_type = key
        deltas.append(
            ComputedLine(
                sort_order=len(deltas),
                description=description,
                quantity=ONE,
                unit_price=diff,
                discount_percent=ZERO,
                total=diff,
                treatment_type=treatment_type,
            )
        )
    return tuple(deltas)


def compute_total_correction_line(
    current_total: Decimal,
    corrected_total,
    reason: str,
) -> tuple[ComputedLine, ...]:
    """Single delta line moving current_total to corrected_total."""
    target = _decimal_field("corrected_total", corrected_total)
    if target != round2(target):
        raise ValidationError("corrected_total", "must have at most 2 decimals", target)
    if target < ZERO:
        raise ValidationError("corrected_total", "must be >= 0", target)
    diff = target - current_total
    if diff == ZERO:
        return ()
    return (
        ComputedLine(
            sort_order=0,
            description=f"Correction: {reason}",
            quantity=ONE,
            unit_price=diff,
            discount_percent=ZERO,
            total=diff,
            treatment_type=RECTIFICATION_LINE_TYPE,
        ),
    )


def compute_rectification(
    lines: Sequence[ComputedLine],
    tax_rate=ZERO,
) -> InvoiceComputation:
    """
    Amounts of a rectifying invoice.

    Item corrections carry the original tax_rate so the delta is taxed like
    the charge it corrects; a corrected_total line is already tax-inclusive
    and is passed with tax_rate 0.  No insurance or discount of its own.
    """
    rate = _decimal_field("tax_rate", tax_rate)
    subtotal = sum_line_items(lines)
    tax_amount, total = _tax_and_total(subtotal, ZERO, rate)
    return InvoiceComputation(
        lines=tuple(lines),
        gross_amount=subtotal,
        insurance_amount=ZERO,
        after_insurance=subtotal,
        payment_percent=HUNDRED,
        subtotal=subtotal,
        discount_amount=ZERO,
        tax_rate=rate,
        tax_amount=tax_amount,
        total=total,
    )
