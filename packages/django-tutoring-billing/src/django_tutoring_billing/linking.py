"""Lesson-to-invoice linking.

A lesson is billed by at most one live invoice. Claims are a single
conditional UPDATE (compare-and-set on ``billed_in_invoice``) so two
invoices built concurrently for the same lessons cannot both win.
"""

import logging

from django.utils import timezone

from django_tutoring_billing import balances
from django_tutoring_billing.exceptions import BillingValidationError, DoubleBillingConflict
from django_tutoring_billing.models import Invoice, InvoiceLineItem, Lesson

logger = logging.getLogger(__name__)

MAX_CLAIM_ATTEMPTS = 3


def claim_lesson(lesson, invoice, actor=None):
    """
    Point ``lesson.billed_in_invoice`` at ``invoice``.

    Succeeds when the lesson is unbilled, already held by ``invoice``, or
    held by an invoice that is cancelled, refunded or deleted. Otherwise
    raises DoubleBillingConflict naming both invoices.

    Taking a lesson over from a dead invoice credits back whatever that
    invoice still debits for it, so the new invoice's debit is the only
    one outstanding. Run it inside the caller's transaction.
    """
    holder_id = None
    for _ in range(MAX_CLAIM_ATTEMPTS):
        now = timezone.now()
        claimed = Lesson.objects.filter(
            pk=lesson.pk,
            billed_in_invoice__isnull=True,
        ).update(billed_in_invoice=invoice, billed_at=now)
        if claimed:
            lesson.billed_in_invoice = invoice
            lesson.billed_at = now
            return

        holder_id = (
            Lesson.objects.filter(pk=lesson.pk)
            .values_list('billed_in_invoice_id', flat=True)
            .first()
        )
        if holder_id == invoice.pk:
            return
        if holder_id is None:
            # Released between the two statements; claim again.
            continue

        holder = Invoice.all_objects.get(pk=holder_id)
        if holder.is_live:
            raise DoubleBillingConflict(lesson.pk, holder.invoice_number, invoice.invoice_number)

        reassigned = Lesson.objects.filter(
            pk=lesson.pk,
            billed_in_invoice_id=holder_id,
        ).update(billed_in_invoice=invoice, billed_at=now)
        if reassigned:
            balances.release_lesson_hours(
                holder,
                lesson,
                actor=actor,
                note=f"Lesson {lesson.pk} moved to {invoice.invoice_number}",
            )
            logger.info(
                "Lesson %s moved from %s invoice %s to %s",
                lesson.pk, holder.status, holder.invoice_number, invoice.invoice_number,
            )
            lesson.billed_in_invoice = invoice
            lesson.billed_at = now
            return

    existing = Invoice.all_objects.filter(pk=holder_id).values_list('invoice_number', flat=True).first()
    raise DoubleBillingConflict(lesson.pk, existing or 'unknown', invoice.invoice_number)


def unbill_lesson(lesson, invoice) -> bool:
    """Clear the lesson's back-reference if ``invoice`` still holds it."""
    released = Lesson.objects.filter(
        pk=lesson.pk,
        billed_in_invoice=invoice,
    ).update(billed_in_invoice=None, billed_at=None)
    if released:
        lesson.billed_in_invoice = None
        lesson.billed_at = None
    return bool(released)


def release_invoice_lessons(invoice) -> int:
    """Unbill every lesson the invoice holds. Returns the number released."""
    return Lesson.objects.filter(billed_in_invoice=invoice).update(
        billed_in_invoice=None,
        billed_at=None,
    )


def lessons_billed_by(invoice):
    return Lesson.objects.filter(billed_in_invoice=invoice)


def attach_lessons(invoice, lessons, start_position=0, actor=None):
    """
    Claim each lesson for the invoice and add its line item.

    Must run inside the caller's transaction so a conflict on any lesson
    rolls back the whole batch.

    Returns:
        List of created InvoiceLineItem
    """
    lessons = list(lessons)
    seen = set()
    for lesson in lessons:
        if lesson.pk in seen:
            raise BillingValidationError(f"Lesson {lesson.pk} listed twice")
        seen.add(lesson.pk)
        if lesson.guardian_id != invoice.guardian_id:
            raise BillingValidationError(
                f"Lesson {lesson.pk} belongs to guardian {lesson.guardian_id}, "
                f"not {invoice.guardian_id}"
            )

    guardian = invoice.guardian
    items = []
    for position, lesson in enumerate(lessons, start=start_position):
        claim_lesson(lesson, invoice, actor=actor)
        student = lesson.student
        rate = lesson.rate if lesson.rate is not None else guardian.effective_hourly_rate
        items.append(InvoiceLineItem.objects.create(
            invoice=invoice,
            position=position,
            kind=InvoiceLineItem.Kind.LESSON,
            lesson=lesson,
            description=f"{lesson.subject or 'Lesson'} with {student.full_name}",
            date=lesson.scheduled_at,
            duration_minutes=lesson.duration_minutes,
            rate=rate,
            student=student,
            student_name=student.full_name,
            teacher=lesson.teacher,
            teacher_name=lesson.teacher_name,
            attended=lesson.attended,
        ))
    return items
