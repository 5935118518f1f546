"""Invoice lifecycle services.

Every operation that moves money also moves hours, and both happen in
one ``transaction.atomic`` block. When the hour side fails the block
rolls back, the failure is recorded as a ReconciliationIncident, and
ReconciliationFatal propagates to the caller.

Status flow:
    draft -> sent -> partially_paid -> paid
    paid -> partially_paid -> sent          (refunds)
    draft/sent -> cancelled, deleted        (admin override otherwise)
    overdue is derived, see Invoice.effective_status()
"""

import calendar
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import NamedTuple, Optional

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from django_tutoring_billing import balances, conf, linking
from django_tutoring_billing.audit import (
    ensure_not_blocked,
    escalate_reconciliation_failure,
    log_activity,
)
from django_tutoring_billing.decorators import retry_on_stale_write
from django_tutoring_billing.exceptions import (
    BillingValidationError,
    InvalidRefundAmount,
    InvoiceStateError,
    ReconciliationBlocked,
    ReconciliationFatal,
    StaleWriteConflict,
)
from django_tutoring_billing.exchange_rates import get_rate_for_new_invoice
from django_tutoring_billing.models import (
    DeliveryRecord,
    Invoice,
    InvoiceAdjustment,
    InvoiceLineItem,
    PaymentLog,
    TransferFeeMode,
)
from django_tutoring_billing.money import ZERO, round_hours, to_decimal
from django_tutoring_billing.sequence import next_invoice_number
from django_tutoring_billing.totals import (
    AdjustmentFigures,
    Coverage,
    InvoiceFigures,
    LineItemFigures,
    TransferFeeConfig,
    compute_totals,
)

logger = logging.getLogger(__name__)

Status = Invoice.Status

TOTAL_FIELDS = (
    'subtotal',
    'tax',
    'total',
    'adjusted_total',
    'hours_covered',
    'transfer_fee_amount',
    'transfer_fee_waived',
    'transfer_fee_waived_by_coverage',
    'needs_review',
    'review_note',
)


class TopUpItem(NamedTuple):
    """A prepaid-hours line to put on a new invoice."""
    description: str
    hours: Decimal
    rate: Decimal
    student: Optional[object] = None


class PaymentResult(NamedTuple):
    invoice: Invoice
    payment_log: PaymentLog
    duplicate: bool = False


@dataclass(frozen=True)
class RefundRequest:
    """
    Refund instruction.

    ``mark_refunded`` closes the invoice as refunded when the refund
    leaves nothing paid; otherwise a fully refunded invoice goes back to
    sent.
    """
    amount: Decimal
    refund_hours: Decimal = ZERO
    reason: str = ''
    refund_reference: str = ''
    mark_refunded: bool = False


class RefundResult(NamedTuple):
    success: bool
    invoice: Invoice
    payment_log: PaymentLog


def add_months(value, months: int = 1):
    """Same day and time ``months`` later, clamped to the end of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def billing_month_for(period_start, dates=()):
    """
    (year, month) an invoice is numbered under.

    The month holding most of the billed dates wins, earliest month on a
    tie; without dates the period start decides.
    """
    months = Counter((date.year, date.month) for date in dates if date is not None)
    if not months:
        return period_start.year, period_start.month
    best = max(months.values())
    return min(key for key, count in months.items() if count == best)


def _transfer_fee_value(value) -> Decimal:
    value = to_decimal(value)
    if value < 0:
        raise BillingValidationError("Transfer fee value must not be negative")
    return value


def lock_invoice(invoice_id) -> Invoice:
    """Load an invoice (deleted ones included) with its row locked."""
    return Invoice.all_objects.select_for_update().get(pk=invoice_id)


def save_invoice(invoice, fields):
    """
    Write ``fields`` only if nobody else wrote the invoice since it was read.

    Raises:
        StaleWriteConflict: If the stored version moved on
    """
    invoice.updated_at = timezone.now()
    values = {}
    for name in set(fields) | {'updated_at'}:
        attname = Invoice._meta.get_field(name).attname
        values[attname] = getattr(invoice, attname)
    updated = Invoice.all_objects.filter(pk=invoice.pk, version=invoice.version).update(
        version=F('version') + 1,
        **values,
    )
    if not updated:
        raise StaleWriteConflict(
            f"Invoice {invoice.invoice_number} was modified concurrently",
            invoice_id=invoice.pk,
        )
    invoice.version += 1


def figures_for(invoice) -> InvoiceFigures:
    """Collect the engine inputs from an invoice and its child rows."""
    items = tuple(
        LineItemFigures(
            duration_minutes=item.duration_minutes,
            rate=item.rate,
            amount=item.amount,
            date=item.date,
            key=item.pk,
        )
        for item in invoice.line_items.all()
    )
    adjustments = tuple(
        AdjustmentFigures(amount=adj.amount, applies_to=adj.applies_to)
        for adj in invoice.adjustments.all()
    )
    manually_waived = invoice.transfer_fee_waived and not invoice.transfer_fee_waived_by_coverage
    return InvoiceFigures(
        items=items,
        currency=invoice.currency,
        discount=invoice.discount,
        tax=invoice.tax,
        tax_rate=invoice.tax_rate,
        late_fee=invoice.late_fee,
        transfer_fee=TransferFeeConfig.from_values(
            invoice.transfer_fee_mode,
            invoice.transfer_fee_value,
            waived=manually_waived,
        ),
        coverage=Coverage.from_dict(invoice.coverage),
        adjustments=adjustments,
    )


def recalculate_totals(invoice, save=True):
    """
    Recompute subtotal, fees and totals from the invoice's own inputs.

    Idempotent. Payment logs and ``paid_amount`` are never touched.

    Returns:
        TotalsResult
    """
    result = compute_totals(figures_for(invoice))
    invoice.subtotal = result.subtotal
    invoice.tax = result.tax
    invoice.total = result.total
    invoice.adjusted_total = result.adjusted_total
    invoice.hours_covered = result.hours_covered
    invoice.transfer_fee_amount = result.transfer_fee_amount
    invoice.transfer_fee_waived = result.transfer_fee_waived
    invoice.transfer_fee_waived_by_coverage = result.transfer_fee_waived_by_coverage
    invoice.needs_review = result.clamped
    invoice.review_note = result.review_note
    if result.clamped:
        logger.warning("Invoice %s: %s", invoice.invoice_number, result.review_note)
    if save:
        save_invoice(invoice, TOTAL_FIELDS)
    return result


def derive_status(invoice) -> str:
    """Status implied by what has been paid. Terminal statuses stay put."""
    if invoice.is_terminal:
        return invoice.status
    if invoice.paid_amount > 0 and invoice.paid_amount >= invoice.total:
        return Status.PAID
    if invoice.paid_amount > 0:
        return Status.PARTIALLY_PAID
    if invoice.status in (Status.PAID, Status.PARTIALLY_PAID, Status.OVERDUE):
        return Status.SENT
    return invoice.status


def _settle_status(invoice, actor=None, note=''):
    """Apply derive_status and record the transition. Returns changed field names."""
    previous = invoice.status
    invoice.status = derive_status(invoice)
    if invoice.status == Status.PAID:
        invoice.paid_at = invoice.paid_at or timezone.now()
    else:
        invoice.paid_at = None
    if invoice.status != previous:
        log_activity(
            invoice,
            'status_changed',
            actor=actor,
            note=note,
            diff={'status': {'old': previous, 'new': invoice.status}},
        )
    return ['status', 'paid_at']


def _escalate(exc, operation, guardian_id, invoice_id, details=None):
    escalate_reconciliation_failure(
        exc,
        operation=operation,
        guardian_id=guardian_id,
        invoice_id=invoice_id,
        details=details,
    )


def create_invoice(
    guardian,
    lessons=(),
    *,
    period_start,
    period_end=None,
    top_ups=(),
    actor=None,
    invoice_type=Invoice.InvoiceType.GUARDIAN_INVOICE,
    generation_source=Invoice.GenerationSource.MANUAL,
    generation_reason='',
    due_date=None,
    discount=ZERO,
    discount_reason='',
    tax_rate=ZERO,
    coverage=None,
    transfer_fee=None,
    notes='',
    escalate=True,
) -> Invoice:
    """
    Create a draft invoice for a guardian's lessons and/or hour top-ups.

    Numbering, lesson claims, totals and the hour debit for billed
    lessons happen in one transaction.

    Args:
        guardian: Guardian being billed
        lessons: Lessons to bill; each must be unbilled or held by a dead invoice
        period_start: Start of the billing period
        period_end: End of the billing period (default one month later)
        top_ups: TopUpItem rows for prepaid hours
        transfer_fee: Optional {"mode": ..., "value": ..., "waived": ...}
            overriding the guardian's default fee
        coverage: Optional {"waiveTransferFee": bool, "maxHours": n, "notes": str}
        escalate: Record a ReconciliationIncident on failure; callers running
            inside their own transaction pass False and escalate after rollback

    Returns:
        The new Invoice in draft status

    Raises:
        BillingValidationError: On empty or inconsistent input
        DoubleBillingConflict: If a lesson is billed by another live invoice
        ExchangeRateLockedError: If the billing month's rate is locked
        ReconciliationBlocked: If an unresolved incident blocks the guardian
        ReconciliationFatal: If the hour debit failed
    """
    lessons = list(lessons)
    top_ups = list(top_ups)
    if not lessons and not top_ups:
        raise BillingValidationError("An invoice needs at least one lesson or top-up item")
    period_end = period_end or add_months(period_start, 1)
    if period_end <= period_start:
        raise BillingValidationError("Billing period must end after it starts")
    if coverage is not None and not isinstance(coverage, dict):
        raise BillingValidationError("Coverage must be a mapping")
    if to_decimal(discount) < 0:
        raise BillingValidationError("Discount must not be negative")
    for top_up in top_ups:
        if to_decimal(top_up.hours) <= 0:
            raise BillingValidationError("Top-up hours must be positive")

    try:
        with transaction.atomic():
            invoice = _create_invoice(
                guardian,
                lessons,
                top_ups,
                period_start=period_start,
                period_end=period_end,
                actor=actor,
                invoice_type=invoice_type,
                generation_source=generation_source,
                generation_reason=generation_reason,
                due_date=due_date,
                discount=discount,
                discount_reason=discount_reason,
                tax_rate=tax_rate,
                coverage=coverage,
                transfer_fee=transfer_fee,
                notes=notes,
            )
    except ReconciliationBlocked:
        raise
    except ReconciliationFatal as exc:
        if escalate:
            _escalate(exc, 'create_invoice', guardian.pk, None, {'lessons': [lesson.pk for lesson in lessons]})
        raise

    logger.info(
        "Invoice %s created for guardian %s: total=%s",
        invoice.invoice_number, guardian.pk, invoice.total,
    )
    return invoice


def _create_invoice(guardian, lessons, top_ups, *, period_start, period_end, actor,
                    invoice_type, generation_source, generation_reason, due_date,
                    discount, discount_reason, tax_rate, coverage, transfer_fee, notes):
    ensure_not_blocked(guardian.pk, None, 'create_invoice')
    year, month = billing_month_for(period_start, [lesson.scheduled_at for lesson in lessons])
    now = timezone.now()

    if transfer_fee is None:
        fee_mode = guardian.transfer_fee_mode
        fee_value = guardian.transfer_fee_value
        fee_waived = False
        fee_source = Invoice.TransferFeeSource.GUARDIAN_DEFAULT
    else:
        fee_mode = transfer_fee.get('mode') or TransferFeeMode.FIXED
        fee_value = _transfer_fee_value(transfer_fee.get('value') or 0)
        fee_waived = bool(transfer_fee.get('waived', False))
        fee_source = Invoice.TransferFeeSource.MANUAL
    if fee_mode not in TransferFeeMode.values:
        raise BillingValidationError(f"Unknown transfer fee mode {fee_mode!r}")

    invoice = Invoice.objects.create(
        invoice_number=next_invoice_number(invoice_type, year, month),
        invoice_type=invoice_type,
        generation_source=generation_source,
        generation_reason=generation_reason,
        guardian=guardian,
        billing_period_start=period_start,
        billing_period_end=period_end,
        billing_month=month,
        billing_year=year,
        due_date=due_date or now + timedelta(days=conf.get_due_days()),
        currency=guardian.effective_currency,
        exchange_rate=get_rate_for_new_invoice(month, year),
        discount=to_decimal(discount),
        discount_reason=discount_reason,
        tax_rate=to_decimal(tax_rate),
        coverage=coverage or {},
        transfer_fee_mode=fee_mode,
        transfer_fee_value=fee_value,
        transfer_fee_waived=fee_waived,
        transfer_fee_source=fee_source,
        transfer_fee_applied_at=now,
        notes=notes,
        created_by=actor if getattr(actor, 'is_authenticated', False) else None,
    )

    items = linking.attach_lessons(invoice, lessons, actor=actor)
    for position, top_up in enumerate(top_ups, start=len(items)):
        student = top_up.student
        InvoiceLineItem.objects.create(
            invoice=invoice,
            position=position,
            kind=InvoiceLineItem.Kind.TOP_UP,
            description=top_up.description,
            date=period_start,
            duration_minutes=int(round_hours(top_up.hours) * 60),
            rate=to_decimal(top_up.rate),
            student=student,
            student_name=student.full_name if student is not None else '',
        )

    recalculate_totals(invoice)

    try:
        balances.debit_for_invoice(invoice, actor=actor)
    except Exception as exc:
        raise ReconciliationFatal(
            f"Could not debit hours for {invoice.invoice_number}: {exc}",
            invoice_id=invoice.pk,
            guardian_id=guardian.pk,
            operation='create_invoice',
        ) from exc

    log_activity(
        invoice,
        'created',
        actor=actor,
        note=generation_reason,
        diff={'total': {'old': None, 'new': str(invoice.total)}},
    )
    return invoice


@retry_on_stale_write
def process_payment(
    invoice_id,
    amount,
    method=PaymentLog.Method.MANUAL,
    transaction_id=None,
    actor=None,
    note='',
    processed_at=None,
    meta=None,
) -> PaymentResult:
    """
    Record a payment against an invoice.

    A replay with a transaction id already recorded on the invoice
    returns the original log with ``duplicate=True`` and changes
    nothing. Anything paid beyond the remaining balance is kept as tip.
    ``meta`` (gateway payload, payer details) is stored on the log snapshot.

    Raises:
        BillingValidationError: If amount <= 0 or the method is not a payment method
        InvoiceStateError: If the invoice is cancelled, refunded, deleted or settled
        ReconciliationBlocked: If an unresolved incident blocks the invoice
        ReconciliationFatal: If purchased hours could not be credited
    """
    amount = to_decimal(amount)
    if amount <= 0:
        raise BillingValidationError("Payment amount must be greater than zero")
    if method not in PaymentLog.Method.values or method == PaymentLog.Method.REFUND:
        raise BillingValidationError(f"Invalid payment method {method!r}")
    transaction_id = (transaction_id or '').strip()

    guardian_id = None
    try:
        with transaction.atomic():
            invoice = lock_invoice(invoice_id)
            guardian_id = invoice.guardian_id

            if transaction_id:
                existing = invoice.payment_logs.filter(
                    transaction_id=transaction_id,
                    amount__gt=0,
                ).first()
                if existing is not None:
                    logger.info(
                        "Payment %s already recorded on %s, ignoring replay",
                        transaction_id, invoice.invoice_number,
                    )
                    return PaymentResult(invoice, existing, True)

            ensure_not_blocked(guardian_id, invoice.pk, 'payment')
            if invoice.is_deleted or invoice.is_terminal:
                raise InvoiceStateError(
                    f"Cannot record payment for invoice in status={invoice.status}"
                    + (" (deleted)" if invoice.is_deleted else "")
                )

            amount = invoice.quantize(amount)
            remaining = invoice.remaining_balance
            if remaining <= 0:
                raise InvoiceStateError(f"Invoice {invoice.invoice_number} is already settled")
            applied = min(amount, remaining)
            surplus = amount - applied

            payment_log = PaymentLog.objects.create(
                invoice=invoice,
                amount=applied,
                tip=surplus,
                method=method,
                transaction_id=transaction_id,
                processed_at=processed_at or timezone.now(),
                actor=actor if getattr(actor, 'is_authenticated', False) else None,
                note=note,
                snapshot={
                    'invoiceRemainingBefore': str(remaining),
                    'invoiceRemainingAfter': str(remaining - applied),
                    'meta': meta or {},
                },
            )
            invoice.paid_amount += applied
            invoice.tip += surplus
            fields = ['paid_amount', 'tip'] + _settle_status(invoice, actor, note=f"Payment {transaction_id}".strip())
            save_invoice(invoice, fields)
            log_activity(
                invoice,
                'payment_recorded',
                actor=actor,
                note=note,
                diff={'paidAmount': {'old': str(invoice.paid_amount - applied), 'new': str(invoice.paid_amount)}},
            )

            try:
                balances.credit_purchased_hours(invoice, actor=actor)
            except Exception as exc:
                raise ReconciliationFatal(
                    f"Could not credit purchased hours for {invoice.invoice_number}: {exc}",
                    invoice_id=invoice.pk,
                    guardian_id=guardian_id,
                    operation='payment',
                ) from exc
    except ReconciliationBlocked:
        raise
    except ReconciliationFatal as exc:
        _escalate(exc, 'payment', guardian_id, invoice_id, {'amount': str(amount), 'transactionId': transaction_id})
        raise
    except IntegrityError:
        # A concurrent replay inserted the same transaction id first.
        existing = None
        if transaction_id:
            existing = PaymentLog.objects.filter(
                invoice_id=invoice_id,
                transaction_id=transaction_id,
                amount__gt=0,
            ).first()
        if existing is None:
            raise
        return PaymentResult(Invoice.all_objects.get(pk=invoice_id), existing, True)

    logger.info(
        "Payment of %s recorded on %s (status=%s, tip=%s)",
        payment_log.amount, invoice.invoice_number, invoice.status, surplus,
    )
    return PaymentResult(invoice, payment_log, False)


@retry_on_stale_write
def record_invoice_refund(invoice_id, refund: RefundRequest, actor=None) -> RefundResult:
    """
    Refund money on an invoice and restore the matching hours.

    The negative payment log, the new paid amount and status, and the
    hour credit are one unit: either all of them are recorded or none.

    Raises:
        InvalidRefundAmount: If the amount is not positive, exceeds what was
            paid, or refund_hours exceeds the hours billed on the invoice
        ReconciliationBlocked: If an unresolved incident blocks the invoice
        ReconciliationFatal: If the hour update failed
    """
    amount = to_decimal(refund.amount)
    refund_hours = round_hours(refund.refund_hours or 0)
    if amount <= 0:
        raise InvalidRefundAmount("Refund amount must be greater than zero")
    if refund_hours < 0:
        raise InvalidRefundAmount("Refund hours must not be negative")

    guardian_id = None
    try:
        with transaction.atomic():
            invoice = lock_invoice(invoice_id)
            guardian_id = invoice.guardian_id
            ensure_not_blocked(guardian_id, invoice.pk, 'refund')
            if invoice.is_deleted:
                raise InvoiceStateError(f"Invoice {invoice.invoice_number} is deleted")

            amount = invoice.quantize(amount)
            if amount > invoice.paid_amount:
                raise InvalidRefundAmount(
                    f"Refund {amount} exceeds paid amount {invoice.paid_amount}"
                )
            hours_available = balances.refundable_hours(invoice)
            if refund_hours > hours_available:
                raise InvalidRefundAmount(
                    f"Refund of {refund_hours}h exceeds the {hours_available}h billed on "
                    f"{invoice.invoice_number}"
                )

            remaining_before = invoice.remaining_balance
            payment_log = PaymentLog.objects.create(
                invoice=invoice,
                amount=-amount,
                hours=refund_hours,
                method=PaymentLog.Method.REFUND,
                transaction_id=refund.refund_reference,
                actor=actor if getattr(actor, 'is_authenticated', False) else None,
                note=f"Refund: {refund.reason}" if refund.reason else "Refund",
                snapshot={
                    'invoiceRemainingBefore': str(remaining_before),
                    'invoiceRemainingAfter': str(remaining_before + amount),
                },
            )
            paid_before = invoice.paid_amount
            invoice.paid_amount -= amount
            if refund.mark_refunded and invoice.paid_amount == 0:
                log_activity(
                    invoice,
                    'status_changed',
                    actor=actor,
                    note=refund.reason,
                    diff={'status': {'old': invoice.status, 'new': Status.REFUNDED}},
                )
                invoice.status = Status.REFUNDED
                invoice.paid_at = None
                fields = ['paid_amount', 'status', 'paid_at']
            else:
                fields = ['paid_amount'] + _settle_status(invoice, actor, note=refund.reason)
            save_invoice(invoice, fields)
            log_activity(
                invoice,
                'refund_recorded',
                actor=actor,
                note=refund.reason,
                diff={
                    'paidAmount': {'old': str(paid_before), 'new': str(invoice.paid_amount)},
                    'refundHours': str(refund_hours),
                },
            )

            try:
                balances.credit_refund_hours(
                    invoice,
                    refund_hours,
                    actor=actor,
                    note=f"Refund on {invoice.invoice_number}: {refund.reason}".rstrip(': '),
                )
            except InvalidRefundAmount:
                raise
            except Exception as exc:
                raise ReconciliationFatal(
                    f"Could not restore hours for refund on {invoice.invoice_number}: {exc}",
                    invoice_id=invoice.pk,
                    guardian_id=guardian_id,
                    operation='refund',
                ) from exc
    except ReconciliationBlocked:
        raise
    except ReconciliationFatal as exc:
        _escalate(exc, 'refund', guardian_id, invoice_id, {
            'amount': str(amount),
            'refundHours': str(refund_hours),
            'reference': refund.refund_reference,
        })
        raise

    logger.info(
        "Refund of %s (%sh) recorded on %s (status=%s)",
        amount, refund_hours, invoice.invoice_number, invoice.status,
    )
    return RefundResult(True, invoice, payment_log)


@retry_on_stale_write
def mark_invoice_sent(
    invoice_id,
    *,
    channel=DeliveryRecord.Channel.EMAIL,
    actor=None,
    template_id='',
    message_hash='',
    delivery_status=DeliveryRecord.Status.SENT,
    meta=None,
) -> DeliveryRecord:
    """
    Record a delivery attempt reported by the notification layer.

    A successful delivery moves a draft (or pending) invoice to sent.
    """
    if channel not in DeliveryRecord.Channel.values:
        raise BillingValidationError(f"Unknown delivery channel {channel!r}")
    with transaction.atomic():
        invoice = lock_invoice(invoice_id)
        if invoice.is_deleted or invoice.is_terminal:
            raise InvoiceStateError(f"Cannot deliver invoice in status={invoice.status}")

        attempt = invoice.deliveries.filter(channel=channel).count() + 1
        record = DeliveryRecord.objects.create(
            invoice=invoice,
            channel=channel,
            status=delivery_status,
            attempt=attempt,
            template_id=template_id,
            message_hash=message_hash,
            meta=meta or {},
            actor=actor if getattr(actor, 'is_authenticated', False) else None,
        )
        if delivery_status == DeliveryRecord.Status.SENT and invoice.status in (Status.DRAFT, Status.PENDING):
            log_activity(
                invoice,
                'status_changed',
                actor=actor,
                note=f"Delivered via {channel}",
                diff={'status': {'old': invoice.status, 'new': Status.SENT}},
            )
            invoice.status = Status.SENT
            invoice.sent_at = record.created_at
            save_invoice(invoice, ['status', 'sent_at'])
        log_activity(invoice, 'delivery', actor=actor, note=f"{channel} attempt {attempt}: {delivery_status}")
    return record


def _check_withdrawal(invoice, allowed, admin_override, override_note):
    if invoice.is_deleted:
        raise InvoiceStateError(f"Invoice {invoice.invoice_number} is already deleted")
    if invoice.status in allowed:
        return
    if not admin_override:
        raise InvoiceStateError(
            f"Invoice {invoice.invoice_number} is {invoice.status}; "
            "an admin override with a note is required"
        )
    if not (override_note or '').strip():
        raise BillingValidationError("Admin override requires an audit note")


def _withdraw(invoice, actor, operation):
    """Release the invoice's lessons and give back their hours."""
    released = linking.release_invoice_lessons(invoice)
    try:
        hours = balances.release_invoice_hours(invoice, actor=actor)
    except Exception as exc:
        raise ReconciliationFatal(
            f"Could not release hours for {invoice.invoice_number}: {exc}",
            invoice_id=invoice.pk,
            guardian_id=invoice.guardian_id,
            operation=operation,
        ) from exc
    return released, hours


@retry_on_stale_write
def cancel_invoice(invoice_id, *, actor=None, reason='', admin_override=False, override_note='') -> Invoice:
    """
    Cancel a draft or sent invoice, releasing its lessons and hours.

    Other statuses (partially paid, paid, refunded) need
    ``admin_override=True`` and an ``override_note`` for the audit trail.
    """
    guardian_id = None
    try:
        with transaction.atomic():
            invoice = lock_invoice(invoice_id)
            guardian_id = invoice.guardian_id
            if invoice.status == Status.CANCELLED:
                raise InvoiceStateError(f"Invoice {invoice.invoice_number} is already cancelled")
            _check_withdrawal(invoice, Invoice.CANCELLABLE_STATUSES, admin_override, override_note)

            released, hours = _withdraw(invoice, actor, 'cancel')
            previous = invoice.status
            invoice.status = Status.CANCELLED
            invoice.cancelled_at = timezone.now()
            invoice.cancellation_reason = reason
            save_invoice(invoice, ['status', 'cancelled_at', 'cancellation_reason'])
            log_activity(
                invoice,
                'cancelled',
                actor=actor,
                note=override_note if admin_override else reason,
                diff={
                    'status': {'old': previous, 'new': Status.CANCELLED},
                    'lessonsReleased': released,
                    'hoursReleased': str(hours),
                    'adminOverride': admin_override,
                },
            )
    except ReconciliationFatal as exc:
        _escalate(exc, 'cancel', guardian_id, invoice_id)
        raise

    logger.info("Invoice %s cancelled (%d lessons released)", invoice.invoice_number, released)
    return invoice


@retry_on_stale_write
def delete_invoice(invoice_id, *, actor=None, reason='', admin_override=False, override_note='') -> Invoice:
    """Soft-delete an invoice. Same rules as cancel_invoice; cancelled invoices may also be deleted."""
    guardian_id = None
    try:
        with transaction.atomic():
            invoice = lock_invoice(invoice_id)
            guardian_id = invoice.guardian_id
            _check_withdrawal(
                invoice,
                Invoice.CANCELLABLE_STATUSES + (Status.CANCELLED,),
                admin_override,
                override_note,
            )
            released, hours = _withdraw(invoice, actor, 'delete')
            invoice.deleted_at = timezone.now()
            invoice.deleted_by = actor if getattr(actor, 'is_authenticated', False) else None
            invoice.deletion_reason = reason
            save_invoice(invoice, ['deleted_at', 'deleted_by', 'deletion_reason'])
            log_activity(
                invoice,
                'deleted',
                actor=actor,
                note=override_note if admin_override else reason,
                diff={
                    'lessonsReleased': released,
                    'hoursReleased': str(hours),
                    'adminOverride': admin_override,
                },
            )
    except ReconciliationFatal as exc:
        _escalate(exc, 'delete', guardian_id, invoice_id)
        raise

    logger.info("Invoice %s deleted (%d lessons released)", invoice.invoice_number, released)
    return invoice


def _ensure_editable(invoice):
    if invoice.is_deleted or invoice.is_terminal:
        raise InvoiceStateError(
            f"Cannot change invoice {invoice.invoice_number} in status={invoice.status}"
        )


def recalculate_keeping_paid(invoice, actor, note):
    """Recalculate and refuse totals that would fall below what was already paid."""
    recalculate_totals(invoice, save=False)
    if invoice.total < invoice.paid_amount:
        raise BillingValidationError(
            f"New total {invoice.total} is below the {invoice.paid_amount} already paid; "
            "record a refund instead"
        )
    return list(TOTAL_FIELDS) + _settle_status(invoice, actor, note=note)


@retry_on_stale_write
def add_adjustment(invoice_id, *, reason, amount, applies_to=InvoiceAdjustment.AppliesTo.GUARDIAN, actor=None):
    """
    Attach a signed adjustment and recalculate.

    Positive amounts credit the guardian (lower the total); negative
    amounts add a charge.
    """
    amount = to_decimal(amount)
    if not reason:
        raise BillingValidationError("Adjustment requires a reason")
    if amount == 0:
        raise BillingValidationError("Adjustment amount must be non-zero")
    if applies_to not in InvoiceAdjustment.AppliesTo.values:
        raise BillingValidationError(f"Unknown adjustment target {applies_to!r}")

    with transaction.atomic():
        invoice = lock_invoice(invoice_id)
        _ensure_editable(invoice)
        total_before = invoice.total
        adjustment = InvoiceAdjustment.objects.create(
            invoice=invoice,
            reason=reason,
            amount=invoice.quantize(amount),
            applies_to=applies_to,
            created_by=actor if getattr(actor, 'is_authenticated', False) else None,
        )
        save_invoice(invoice, recalculate_keeping_paid(invoice, actor, reason))
        log_activity(
            invoice,
            'adjustment_added',
            actor=actor,
            note=reason,
            diff={'total': {'old': str(total_before), 'new': str(invoice.total)}},
        )
    return adjustment


@retry_on_stale_write
def apply_late_fee(invoice_id, amount, *, reason='', actor=None) -> Invoice:
    """Add a late fee once per invoice. Paid invoices are left alone."""
    amount = to_decimal(amount)
    if amount <= 0:
        raise BillingValidationError("Late fee must be greater than zero")

    with transaction.atomic():
        invoice = lock_invoice(invoice_id)
        _ensure_editable(invoice)
        if invoice.late_fee_applied:
            raise InvoiceStateError(f"Late fee already applied to {invoice.invoice_number}")
        if invoice.status == Status.PAID:
            raise InvoiceStateError(f"Invoice {invoice.invoice_number} is already paid")

        total_before = invoice.total
        invoice.late_fee = invoice.quantize(amount)
        invoice.late_fee_applied = True
        invoice.late_fee_applied_at = timezone.now()
        fields = ['late_fee', 'late_fee_applied', 'late_fee_applied_at']
        fields += recalculate_keeping_paid(invoice, actor, reason)
        save_invoice(invoice, fields)
        log_activity(
            invoice,
            'late_fee_applied',
            actor=actor,
            note=reason,
            diff={'total': {'old': str(total_before), 'new': str(invoice.total)}},
        )
    logger.info("Late fee of %s applied to %s", invoice.late_fee, invoice.invoice_number)
    return invoice


@retry_on_stale_write
def set_transfer_fee(invoice_id, *, mode, value, waived=False, actor=None) -> Invoice:
    """Override the invoice's transfer fee (source becomes manual)."""
    if mode not in TransferFeeMode.values:
        raise BillingValidationError(f"Unknown transfer fee mode {mode!r}")
    value = _transfer_fee_value(value)

    with transaction.atomic():
        invoice = lock_invoice(invoice_id)
        _ensure_editable(invoice)
        before = dict(invoice.transfer_fee)
        invoice.transfer_fee_mode = mode
        invoice.transfer_fee_value = value
        invoice.transfer_fee_waived = bool(waived)
        invoice.transfer_fee_waived_by_coverage = False
        invoice.transfer_fee_source = Invoice.TransferFeeSource.MANUAL
        invoice.transfer_fee_applied_at = timezone.now()
        fields = ['transfer_fee_mode', 'transfer_fee_value', 'transfer_fee_source', 'transfer_fee_applied_at']
        fields += recalculate_keeping_paid(invoice, actor, 'Transfer fee changed')
        save_invoice(invoice, fields)
        log_activity(
            invoice,
            'transfer_fee_changed',
            actor=actor,
            diff={'transferFee': {'old': str(before['amount']), 'new': str(invoice.transfer_fee_amount)}},
        )
    return invoice
