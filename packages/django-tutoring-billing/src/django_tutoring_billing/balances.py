"""Hour balance reconciliation.

Every change to ``Guardian.total_hours`` or ``Student.hours_remaining``
goes through ``_post`` which writes an immutable HourEntry and applies
the same delta to both balances with F() expressions, under a row lock
on the guardian.

Invoice events and their effect on hours:
    invoice created   lesson items debit their hours
    invoice paid      top-up items credit hours in proportion to what is paid
    refund recorded   lesson hours restored (or purchased hours reversed)
    invoice cancelled outstanding lesson debits credited back
    lesson removed    that lesson's outstanding debit credited back
"""

import logging
from collections import defaultdict
from decimal import Decimal

from django.db import transaction
from django.db.models import F, Q, Sum

from django_tutoring_billing.exceptions import BillingValidationError, InvalidRefundAmount
from django_tutoring_billing.models import (
    Guardian,
    HourEntry,
    InvoiceLineItem,
    Student,
)
from django_tutoring_billing.money import ZERO, round_hours, to_decimal

logger = logging.getLogger(__name__)

Kind = HourEntry.Kind
CREDIT = HourEntry.EntryType.CREDIT
DEBIT = HourEntry.EntryType.DEBIT


def lock_guardian(guardian_id) -> Guardian:
    """Serialize hour updates for one guardian."""
    return Guardian.all_objects.select_for_update().get(pk=guardian_id)


def _post(guardian_id, student_id, entry_type, kind, hours, invoice=None, note='', actor=None):
    hours = round_hours(hours)
    if hours <= 0:
        return None
    delta = hours if entry_type == CREDIT else -hours
    Guardian.all_objects.filter(pk=guardian_id).update(total_hours=F('total_hours') + delta)
    if student_id is not None:
        Student.all_objects.filter(pk=student_id).update(hours_remaining=F('hours_remaining') + delta)
    return HourEntry.objects.create(
        guardian_id=guardian_id,
        student_id=student_id,
        invoice=invoice,
        entry_type=entry_type,
        kind=kind,
        hours=hours,
        note=note[:255],
        actor=actor if getattr(actor, 'is_authenticated', False) else None,
    )


def distribute(total: Decimal, weights: dict) -> dict:
    """
    Split ``total`` across keys in proportion to their weights.

    Shares are rounded to hour precision; the largest weight absorbs the
    rounding remainder so the shares always add up to ``total``.
    """
    total = round_hours(total)
    weights = {key: weight for key, weight in weights.items() if weight > 0}
    weight_sum = sum(weights.values(), ZERO)
    if total <= 0 or weight_sum <= 0:
        return {}

    ordered = sorted(weights, key=lambda key: (-weights[key], str(key)))
    shares = {key: round_hours(total * weights[key] / weight_sum) for key in ordered}
    shares[ordered[0]] += total - sum(shares.values(), ZERO)
    return {key: share for key, share in shares.items() if share > 0}


def _tally(invoice) -> dict:
    """Hours per student per entry kind recorded against the invoice."""
    tally = defaultdict(lambda: defaultdict(lambda: ZERO))
    rows = (
        HourEntry.objects.filter(invoice=invoice)
        .order_by()
        .values('student_id', 'kind')
        .annotate(hours=Sum('hours'))
    )
    for row in rows:
        tally[row['student_id']][row['kind']] += to_decimal(row['hours'])
    return tally


def outstanding_lesson_hours(invoice) -> dict:
    """Lesson hours debited for the invoice and not yet given back, per student."""
    result = {}
    for student_id, kinds in _tally(invoice).items():
        outstanding = (
            kinds[Kind.LESSON_DEBIT]
            - kinds[Kind.REFUND_CREDIT]
            - kinds[Kind.CANCELLATION_CREDIT]
        )
        if outstanding > 0:
            result[student_id] = outstanding
    return result


def outstanding_purchased_hours(invoice) -> dict:
    result = {}
    for student_id, kinds in _tally(invoice).items():
        outstanding = kinds[Kind.PURCHASE_CREDIT] - kinds[Kind.PURCHASE_REVERSAL]
        if outstanding > 0:
            result[student_id] = outstanding
    return result


def refundable_hours(invoice) -> Decimal:
    """Upper bound on the hours a refund on this invoice may move."""
    lesson_hours = outstanding_lesson_hours(invoice)
    if lesson_hours:
        return sum(lesson_hours.values(), ZERO)
    return sum(outstanding_purchased_hours(invoice).values(), ZERO)


def debit_for_invoice(invoice, actor=None) -> Decimal:
    """Debit the hours of every lesson line item on a newly created invoice."""
    lock_guardian(invoice.guardian_id)
    if HourEntry.objects.filter(invoice=invoice, kind=Kind.LESSON_DEBIT).exists():
        raise BillingValidationError(f"Hours for invoice {invoice.invoice_number} were already debited")
    return debit_lesson_items(invoice, invoice.line_items.filter(kind=InvoiceLineItem.Kind.LESSON), actor)


def debit_lesson_items(invoice, items, actor=None) -> Decimal:
    """Debit the hours of the given lesson line items (lessons added to an open invoice)."""
    lock_guardian(invoice.guardian_id)
    debited = ZERO
    for item in items:
        entry = _post(
            invoice.guardian_id,
            item.student_id,
            DEBIT,
            Kind.LESSON_DEBIT,
            item.hours,
            invoice=invoice,
            note=f"Lesson {item.lesson_id} on {invoice.invoice_number}",
            actor=actor,
        )
        if entry is not None:
            debited += entry.hours
    return debited


def credit_purchased_hours(invoice, actor=None) -> Decimal:
    """
    Credit top-up hours for the share of the invoice that has been paid.

    Safe to call after every payment; only the difference between what
    the paid share entitles and what was already credited is posted.
    """
    purchased = defaultdict(lambda: ZERO)
    for item in invoice.line_items.filter(kind=InvoiceLineItem.Kind.TOP_UP):
        purchased[item.student_id] += item.hours
    if not purchased or invoice.total <= 0:
        return ZERO

    lock_guardian(invoice.guardian_id)
    fully_paid = invoice.paid_amount >= invoice.total
    fraction = min(Decimal('1'), invoice.paid_amount / invoice.total)
    credited_so_far = outstanding_purchased_hours(invoice)

    credited = ZERO
    for student_id, hours in purchased.items():
        target = hours if fully_paid else round_hours(hours * fraction)
        delta = target - credited_so_far.get(student_id, ZERO)
        entry = _post(
            invoice.guardian_id,
            student_id,
            CREDIT,
            Kind.PURCHASE_CREDIT,
            delta,
            invoice=invoice,
            note=f"Hours purchased on {invoice.invoice_number}",
            actor=actor,
        )
        if entry is not None:
            credited += entry.hours
    return credited


def credit_refund_hours(invoice, refund_hours, actor=None, note='') -> list:
    """
    Apply the hour side of a refund.

    Lesson invoices get hours restored to each student in proportion to
    the lesson hours still debited for them. Top-up invoices have the
    purchased hours reversed instead. Either way the movement never
    exceeds what the invoice put on the ledger.

    Raises:
        InvalidRefundAmount: If refund_hours exceeds that bound
    """
    refund_hours = round_hours(refund_hours or 0)
    if refund_hours <= 0:
        return []

    lock_guardian(invoice.guardian_id)
    lesson_hours = outstanding_lesson_hours(invoice)
    if lesson_hours:
        weights, entry_type, kind = lesson_hours, CREDIT, Kind.REFUND_CREDIT
    else:
        weights, entry_type, kind = outstanding_purchased_hours(invoice), DEBIT, Kind.PURCHASE_REVERSAL

    available = sum(weights.values(), ZERO)
    if refund_hours > available:
        raise InvalidRefundAmount(
            f"Refund of {refund_hours}h exceeds the {available}h billed on {invoice.invoice_number}"
        )

    entries = []
    for student_id, share in distribute(refund_hours, weights).items():
        entries.append(_post(
            invoice.guardian_id,
            student_id,
            entry_type,
            kind,
            share,
            invoice=invoice,
            note=note or f"Refund on {invoice.invoice_number}",
            actor=actor,
        ))
    return entries


def release_invoice_hours(invoice, actor=None) -> Decimal:
    """Give back every lesson hour still debited for a cancelled or deleted invoice."""
    lock_guardian(invoice.guardian_id)
    released = ZERO
    for student_id, hours in outstanding_lesson_hours(invoice).items():
        entry = _post(
            invoice.guardian_id,
            student_id,
            CREDIT,
            Kind.CANCELLATION_CREDIT,
            hours,
            invoice=invoice,
            note=f"{invoice.invoice_number} withdrawn",
            actor=actor,
        )
        released += entry.hours
    return released


def release_lesson_hours(invoice, lesson, actor=None, note='') -> Decimal:
    """
    Give back the hours one lesson still holds on ``invoice``.

    Used when a lesson leaves an invoice without the whole invoice being
    withdrawn: removed from an open invoice, or taken over from a
    refunded one. Capped by what is still debited for the student there,
    so hours already restored by a refund are not credited twice.
    """
    lock_guardian(invoice.guardian_id)
    item = invoice.line_items.filter(kind=InvoiceLineItem.Kind.LESSON, lesson_id=lesson.pk).first()
    if item is None:
        return ZERO
    outstanding = outstanding_lesson_hours(invoice).get(item.student_id, ZERO)
    entry = _post(
        invoice.guardian_id,
        item.student_id,
        CREDIT,
        Kind.CANCELLATION_CREDIT,
        min(item.hours, outstanding),
        invoice=invoice,
        note=note or f"Lesson {lesson.pk} released from {invoice.invoice_number}",
        actor=actor,
    )
    return entry.hours if entry is not None else ZERO


@transaction.atomic
def adjust_hours_manually(guardian, delta, reason, actor=None, student=None) -> HourEntry:
    """Staff correction of a guardian's (and optionally a student's) hours."""
    delta = round_hours(delta)
    if delta == 0:
        raise BillingValidationError("Hour adjustment must be non-zero")
    if not reason:
        raise BillingValidationError("Hour adjustment requires a reason")
    if student is not None and student.guardian_id != guardian.pk:
        raise BillingValidationError(f"Student {student.pk} does not belong to guardian {guardian.pk}")

    lock_guardian(guardian.pk)
    entry = _post(
        guardian.pk,
        student.pk if student is not None else None,
        CREDIT if delta > 0 else DEBIT,
        Kind.MANUAL_ADJUSTMENT,
        abs(delta),
        note=reason,
        actor=actor,
    )
    logger.info("Manual hour adjustment of %s for guardian %s: %s", delta, guardian.pk, reason)
    return entry


def ledger_balance(guardian=None, student=None) -> Decimal:
    """Net hours according to HourEntry rows."""
    if student is not None:
        entries = HourEntry.objects.filter(student=student)
    elif guardian is not None:
        entries = HourEntry.objects.filter(guardian=guardian)
    else:
        raise ValueError("ledger_balance() needs a guardian or a student")
    totals = entries.aggregate(
        credits=Sum('hours', filter=Q(entry_type=CREDIT)),
        debits=Sum('hours', filter=Q(entry_type=DEBIT)),
    )
    return round_hours(to_decimal(totals['credits'] or 0) - to_decimal(totals['debits'] or 0))


def balance_discrepancies(guardians=None):
    """
    Yield (obj, stored, ledger) for every guardian or student whose stored
    hours disagree with its HourEntry ledger.
    """
    guardians = guardians if guardians is not None else Guardian.all_objects.all()
    for guardian in guardians:
        ledger = ledger_balance(guardian=guardian)
        if round_hours(guardian.total_hours) != ledger:
            yield guardian, guardian.total_hours, ledger
        for student in Student.all_objects.filter(guardian=guardian):
            ledger = ledger_balance(student=student)
            if round_hours(student.hours_remaining) != ledger:
                yield student, student.hours_remaining, ledger
