"""Invoice totals engine.

Pure functions over frozen value objects: no ORM access, no clock, no
I/O. ``services.recalculate_totals`` builds an ``InvoiceFigures`` from an
invoice and writes the ``TotalsResult`` back.

Usage:
    figures = InvoiceFigures(
        items=(LineItemFigures(duration_minutes=60, rate=Decimal('50')),),
        transfer_fee=TransferFeeConfig(mode='percent', value=Decimal('10')),
    )
    compute_totals(figures).total  # Decimal('55.00')
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Tuple

from django_tutoring_billing.money import (
    ZERO,
    minutes_to_hours,
    round_currency,
    to_decimal,
)


FEE_FIXED = 'fixed'
FEE_PERCENT = 'percent'

APPLIES_TO_GUARDIAN = ('guardian', 'both')
APPLIES_TO_TEACHER_ONLY = 'teacher'


@dataclass(frozen=True)
class LineItemFigures:
    """Inputs of one line item. A missing amount is derived from rate and duration."""
    duration_minutes: int = 0
    rate: Decimal = ZERO
    amount: Optional[Decimal] = None
    date: Optional[datetime] = None
    key: Any = None

    def resolved_amount(self, currency: str) -> Decimal:
        if self.amount is not None:
            return round_currency(self.amount, currency)
        return round_currency(
            to_decimal(self.rate) * to_decimal(self.duration_minutes) / 60,
            currency,
        )


@dataclass(frozen=True)
class TransferFeeConfig:
    mode: str = FEE_FIXED
    value: Decimal = ZERO
    waived: bool = False

    @classmethod
    def from_values(cls, mode=None, value=None, waived=False) -> 'TransferFeeConfig':
        """Build a config where absent parts fall back to a zero fixed fee."""
        mode = mode or FEE_FIXED
        if mode not in (FEE_FIXED, FEE_PERCENT):
            mode = FEE_FIXED
        value = to_decimal(value) if value is not None else ZERO
        return cls(mode=mode, value=max(value, ZERO), waived=bool(waived))


@dataclass(frozen=True)
class Coverage:
    waive_transfer_fee: bool = False
    max_hours: Optional[Decimal] = None
    notes: str = ''

    @classmethod
    def from_dict(cls, data) -> 'Coverage':
        """Read the stored JSON shape; unknown or empty values mean no coverage."""
        if not data:
            return cls()
        max_hours = data.get('maxHours')
        if max_hours is not None:
            max_hours = to_decimal(max_hours)
            if max_hours <= 0:
                max_hours = None
        return cls(
            waive_transfer_fee=bool(data.get('waiveTransferFee', False)),
            max_hours=max_hours,
            notes=data.get('notes') or '',
        )

    def to_dict(self) -> dict:
        return {
            'waiveTransferFee': self.waive_transfer_fee,
            'maxHours': str(self.max_hours) if self.max_hours is not None else None,
            'notes': self.notes,
        }


@dataclass(frozen=True)
class AdjustmentFigures:
    amount: Decimal
    applies_to: str = 'guardian'


@dataclass(frozen=True)
class InvoiceFigures:
    items: Tuple[LineItemFigures, ...] = ()
    currency: str = 'USD'
    discount: Decimal = ZERO
    tax: Decimal = ZERO
    tax_rate: Decimal = ZERO
    late_fee: Decimal = ZERO
    transfer_fee: TransferFeeConfig = field(default_factory=TransferFeeConfig)
    coverage: Coverage = field(default_factory=Coverage)
    adjustments: Tuple[AdjustmentFigures, ...] = ()


@dataclass(frozen=True)
class TotalsResult:
    subtotal: Decimal
    tax: Decimal
    transfer_fee_amount: Decimal
    transfer_fee_waived: bool
    transfer_fee_waived_by_coverage: bool
    guardian_adjustments: Decimal
    teacher_adjustments: Decimal
    total: Decimal
    adjusted_total: Decimal
    hours_covered: Decimal
    counted_keys: Tuple[Any, ...] = ()
    clamped: bool = False
    review_note: str = ''


def covered_items(items, coverage: Coverage) -> Tuple[LineItemFigures, ...]:
    """
    Items that count toward the subtotal.

    With a max-hours cap, items are taken in date order until the next
    one would push the cumulative minutes over the cap.
    """
    if coverage.max_hours is None:
        return tuple(items)

    cap_minutes = coverage.max_hours * 60
    ordered = sorted(
        items,
        key=lambda item: (item.date is None, item.date or datetime.min),
    )
    counted = []
    minutes = ZERO
    for item in ordered:
        if minutes + item.duration_minutes > cap_minutes:
            break
        minutes += item.duration_minutes
        counted.append(item)
    return tuple(counted)


def transfer_fee_amount(subtotal: Decimal, config: TransferFeeConfig, coverage: Coverage, currency: str):
    """Return (amount, waived, waived_by_coverage)."""
    if coverage.waive_transfer_fee:
        return ZERO, True, True
    if config.waived:
        return ZERO, True, False
    if config.mode == FEE_PERCENT:
        amount = subtotal * config.value / 100
    else:
        amount = config.value
    return round_currency(amount, currency), False, False


def compute_totals(figures: InvoiceFigures) -> TotalsResult:
    """
    Compute every derived figure of an invoice.

    total = subtotal - discount + tax + late fee + transfer fee
            - guardian-facing adjustments

    A negative total is clamped to zero and flagged for review rather
    than carried as a credit. Calling this twice on the same figures
    yields the same result.
    """
    currency = figures.currency
    counted = covered_items(figures.items, figures.coverage)

    subtotal = round_currency(
        sum((item.resolved_amount(currency) for item in counted), ZERO),
        currency,
    )
    minutes = sum((item.duration_minutes for item in counted), 0)

    tax_rate = to_decimal(figures.tax_rate)
    if tax_rate > 0:
        tax = round_currency(subtotal * tax_rate / 100, currency)
    else:
        tax = round_currency(figures.tax, currency)

    fee, waived, waived_by_coverage = transfer_fee_amount(
        subtotal, figures.transfer_fee, figures.coverage, currency
    )

    guardian_adjustments = sum(
        (to_decimal(adj.amount) for adj in figures.adjustments if adj.applies_to in APPLIES_TO_GUARDIAN),
        ZERO,
    )
    teacher_adjustments = sum(
        (to_decimal(adj.amount) for adj in figures.adjustments if adj.applies_to == APPLIES_TO_TEACHER_ONLY),
        ZERO,
    )

    raw_total = round_currency(
        subtotal
        - to_decimal(figures.discount)
        + tax
        + to_decimal(figures.late_fee)
        + fee
        - guardian_adjustments,
        currency,
    )
    clamped = raw_total < 0
    total = max(raw_total, ZERO)
    adjusted_total = max(round_currency(total - teacher_adjustments, currency), ZERO)

    review_note = ''
    if clamped:
        review_note = f"Computed total {raw_total} was negative; clamped to 0"

    return TotalsResult(
        subtotal=subtotal,
        tax=tax,
        transfer_fee_amount=fee,
        transfer_fee_waived=waived,
        transfer_fee_waived_by_coverage=waived_by_coverage,
        guardian_adjustments=round_currency(guardian_adjustments, currency),
        teacher_adjustments=round_currency(teacher_adjustments, currency),
        total=total,
        adjusted_total=adjusted_total,
        hours_covered=minutes_to_hours(minutes),
        counted_keys=tuple(item.key for item in counted),
        clamped=clamped,
        review_note=review_note,
    )
