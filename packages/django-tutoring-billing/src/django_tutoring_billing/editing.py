"""Editing the lessons on an open invoice.

Draft, pending and sent invoices can gain or lose lessons. Each edit
claims or releases the lesson, moves its hours, recalculates totals and
writes the invoice under its version check, all in one transaction.

Usage:
    from django_tutoring_billing.editing import add_lessons_to_invoice, preview_lesson_changes

    preview = preview_lesson_changes(invoice, add=[lesson])
    preview.after.total - preview.before.total
    add_lessons_to_invoice(invoice.pk, [lesson], actor=request.user)
"""

import dataclasses
import logging
from typing import NamedTuple, Optional

from django.db import transaction
from django.db.models import Max

from django_tutoring_billing import balances, linking
from django_tutoring_billing.audit import (
    ensure_not_blocked,
    escalate_reconciliation_failure,
    log_activity,
)
from django_tutoring_billing.decorators import retry_on_stale_write
from django_tutoring_billing.exceptions import (
    BillingValidationError,
    InvoiceStateError,
    ReconciliationBlocked,
    ReconciliationFatal,
)
from django_tutoring_billing.models import Invoice, InvoiceLineItem
from django_tutoring_billing.services import (
    figures_for,
    lock_invoice,
    recalculate_keeping_paid,
    save_invoice,
)
from django_tutoring_billing.totals import LineItemFigures, TotalsResult, compute_totals

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (Invoice.Status.DRAFT, Invoice.Status.PENDING, Invoice.Status.SENT)
AUTO_ADD_STATUSES = (Invoice.Status.DRAFT, Invoice.Status.PENDING)


class LessonChangePreview(NamedTuple):
    before: TotalsResult
    after: TotalsResult
    added_minutes: int
    removed_minutes: int


class LessonSyncResult(NamedTuple):
    changed: bool
    invoice: Optional[Invoice] = None
    reason: str = ''


def _ensure_lessons_editable(invoice):
    if invoice.is_deleted or invoice.status not in EDITABLE_STATUSES:
        raise InvoiceStateError(
            f"Lessons on invoice {invoice.invoice_number} cannot change in status={invoice.status}"
        )


def _lesson_figures(invoice, lesson) -> LineItemFigures:
    rate = lesson.rate if lesson.rate is not None else invoice.guardian.effective_hourly_rate
    return LineItemFigures(
        duration_minutes=lesson.duration_minutes,
        rate=rate,
        date=lesson.scheduled_at,
    )


def preview_lesson_changes(invoice, add=(), remove=()) -> LessonChangePreview:
    """
    Totals before and after adding or removing lessons. Writes nothing.

    Lessons in ``remove`` that the invoice does not bill are ignored.
    """
    add = list(add)
    remove_ids = {lesson.pk for lesson in remove}
    figures = figures_for(invoice)

    removed = list(
        invoice.line_items.filter(kind=InvoiceLineItem.Kind.LESSON, lesson_id__in=remove_ids)
        .values_list('pk', 'duration_minutes')
    )
    removed_pks = {pk for pk, _ in removed}
    items = tuple(item for item in figures.items if item.key not in removed_pks)
    items += tuple(_lesson_figures(invoice, lesson) for lesson in add)

    return LessonChangePreview(
        before=compute_totals(figures),
        after=compute_totals(dataclasses.replace(figures, items=items)),
        added_minutes=sum(lesson.duration_minutes for lesson in add),
        removed_minutes=sum(minutes for _, minutes in removed),
    )


def _run_edit(operation, invoice_id, edit):
    guardian_id = None
    try:
        with transaction.atomic():
            invoice = lock_invoice(invoice_id)
            guardian_id = invoice.guardian_id
            ensure_not_blocked(guardian_id, invoice.pk, operation)
            _ensure_lessons_editable(invoice)
            return edit(invoice)
    except ReconciliationBlocked:
        raise
    except ReconciliationFatal as exc:
        escalate_reconciliation_failure(exc, operation=operation, guardian_id=guardian_id, invoice_id=invoice_id)
        raise


@retry_on_stale_write
def add_lessons_to_invoice(invoice_id, lessons, *, actor=None, note='') -> Invoice:
    """
    Bill more lessons on an open invoice and debit their hours.

    Raises:
        InvoiceStateError: If the invoice is deleted or not draft/pending/sent
        BillingValidationError: If no lessons are given or one is already on the invoice
        DoubleBillingConflict: If a lesson is billed by another live invoice
        ReconciliationFatal: If the hour debit failed
    """
    lessons = list(lessons)
    if not lessons:
        raise BillingValidationError("No lessons to add")

    def edit(invoice):
        already = invoice.line_items.filter(lesson_id__in=[lesson.pk for lesson in lessons])
        if already.exists():
            raise BillingValidationError(
                f"Lesson {already.first().lesson_id} is already on {invoice.invoice_number}"
            )
        total_before = invoice.total
        next_position = (invoice.line_items.aggregate(last=Max('position'))['last'] or 0) + 1
        items = linking.attach_lessons(invoice, lessons, start_position=next_position, actor=actor)
        try:
            hours = balances.debit_lesson_items(invoice, items, actor=actor)
        except Exception as exc:
            raise ReconciliationFatal(
                f"Could not debit hours for lessons added to {invoice.invoice_number}: {exc}",
                invoice_id=invoice.pk,
                guardian_id=invoice.guardian_id,
                operation='add_lessons',
            ) from exc
        save_invoice(invoice, recalculate_keeping_paid(invoice, actor, note))
        log_activity(
            invoice,
            'lessons_added',
            actor=actor,
            note=note,
            diff={
                'total': {'old': str(total_before), 'new': str(invoice.total)},
                'lessons': [lesson.pk for lesson in lessons],
                'hoursDebited': str(hours),
            },
        )
        return invoice

    invoice = _run_edit('add_lessons', invoice_id, edit)
    logger.info("Added %d lesson(s) to %s: total=%s", len(lessons), invoice.invoice_number, invoice.total)
    return invoice


@retry_on_stale_write
def remove_lesson_from_invoice(invoice_id, lesson, *, actor=None, note='') -> Invoice:
    """
    Take a lesson off an open invoice and give its hours back.

    Refused when it is the invoice's last line (cancel the invoice
    instead) or when the new total would fall below what was paid.
    """
    def edit(invoice):
        item = invoice.line_items.filter(kind=InvoiceLineItem.Kind.LESSON, lesson_id=lesson.pk).first()
        if item is None:
            raise BillingValidationError(f"Lesson {lesson.pk} is not billed on {invoice.invoice_number}")
        if invoice.line_items.count() == 1:
            raise BillingValidationError(
                f"Lesson {lesson.pk} is the only item on {invoice.invoice_number}; cancel the invoice instead"
            )
        if not linking.unbill_lesson(lesson, invoice):
            raise BillingValidationError(f"Lesson {lesson.pk} is not held by {invoice.invoice_number}")

        total_before = invoice.total
        try:
            hours = balances.release_lesson_hours(invoice, lesson, actor=actor, note=note)
        except Exception as exc:
            raise ReconciliationFatal(
                f"Could not release hours for lesson {lesson.pk} on {invoice.invoice_number}: {exc}",
                invoice_id=invoice.pk,
                guardian_id=invoice.guardian_id,
                operation='remove_lesson',
            ) from exc
        item.delete()
        save_invoice(invoice, recalculate_keeping_paid(invoice, actor, note))
        log_activity(
            invoice,
            'lesson_removed',
            actor=actor,
            note=note,
            diff={
                'total': {'old': str(total_before), 'new': str(invoice.total)},
                'lesson': lesson.pk,
                'hoursReleased': str(hours),
            },
        )
        return invoice

    invoice = _run_edit('remove_lesson', invoice_id, edit)
    logger.info("Removed lesson %s from %s: total=%s", lesson.pk, invoice.invoice_number, invoice.total)
    return invoice


def find_open_invoice_for(lesson):
    """Newest draft or pending guardian invoice whose period contains the lesson."""
    return (
        Invoice.objects.live()
        .filter(
            guardian_id=lesson.guardian_id,
            invoice_type=Invoice.InvoiceType.GUARDIAN_INVOICE,
            status__in=AUTO_ADD_STATUSES,
            billing_period_start__lte=lesson.scheduled_at,
            billing_period_end__gt=lesson.scheduled_at,
        )
        .order_by('-created_at', '-pk')
        .first()
    )


def add_lesson_to_open_invoice(lesson, actor=None) -> LessonSyncResult:
    """
    Put a newly scheduled lesson on the guardian's open invoice for its period.

    Skips ('already_billed', 'no_open_invoice') rather than raising, so
    schedulers can call it for every new lesson.
    """
    lesson.refresh_from_db(fields=['billed_in_invoice', 'billed_at'])
    holder = lesson.billed_in_invoice
    if holder is not None and holder.is_live:
        return LessonSyncResult(False, holder, 'already_billed')
    invoice = find_open_invoice_for(lesson)
    if invoice is None:
        return LessonSyncResult(False, reason='no_open_invoice')
    invoice = add_lessons_to_invoice(invoice.pk, [lesson], actor=actor, note="Added: new scheduled lesson")
    return LessonSyncResult(True, invoice, 'added')


def remove_lesson_from_open_invoice(lesson, actor=None, note='') -> LessonSyncResult:
    """
    Take a lesson that will not be billed (cancelled, rescheduled away) off
    the draft or pending invoice holding it.
    """
    lesson.refresh_from_db(fields=['billed_in_invoice', 'billed_at'])
    holder = lesson.billed_in_invoice
    if holder is None or not holder.is_live:
        return LessonSyncResult(False, reason='not_billed')
    if holder.status not in AUTO_ADD_STATUSES:
        return LessonSyncResult(False, holder, 'invoice_not_open')
    invoice = remove_lesson_from_invoice(holder.pk, lesson, actor=actor, note=note or "Removed: lesson withdrawn")
    return LessonSyncResult(True, invoice, 'removed')
