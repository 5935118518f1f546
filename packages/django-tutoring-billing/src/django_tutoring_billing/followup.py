"""Follow-up (top-up) invoice generation.

After an invoice is paid, a guardian whose students are about to run
out of prepaid time gets a zero-hour refill invoice for the next
billing period.
"""

import logging
from decimal import Decimal
from typing import NamedTuple, Optional

from django.db import transaction
from django.utils import timezone

from django_tutoring_billing.audit import escalate_reconciliation_failure, find_blocking_incident
from django_tutoring_billing.balances import lock_guardian
from django_tutoring_billing.exceptions import BillingValidationError, ReconciliationFatal
from django_tutoring_billing.models import Invoice, Student
from django_tutoring_billing.money import round_hours, to_decimal
from django_tutoring_billing.services import TopUpItem, add_months, create_invoice

logger = logging.getLogger(__name__)

THRESHOLD_FOLLOWUP = 'threshold_followup'


class FollowUpResult(NamedTuple):
    created: bool
    invoice: Optional[Invoice] = None
    reason: str = ''


def lowest_balance_student(students, threshold_minutes):
    """
    The student with the fewest remaining minutes at or below the threshold.

    Ties go to the earliest-created student, then the lowest id.
    """
    candidates = [s for s in students if s.remaining_minutes <= threshold_minutes]
    if not candidates:
        return None
    return min(candidates, key=lambda s: (s.remaining_minutes, s.created_at, s.pk))


def find_covering_invoice(guardian, period_start, exclude_pk=None):
    """Most recent live guardian invoice whose period contains ``period_start``."""
    invoices = (
        Invoice.objects.live()
        .filter(
            guardian=guardian,
            invoice_type=Invoice.InvoiceType.GUARDIAN_INVOICE,
            billing_period_start__lte=period_start,
            billing_period_end__gt=period_start,
        )
        .order_by('-created_at', '-pk')
    )
    if exclude_pk is not None:
        invoices = invoices.exclude(pk=exclude_pk)
    return invoices.first()


def ensure_next_invoice_if_below_threshold(guardian_id, previous_invoice=None, actor=None) -> FollowUpResult:
    """
    Create a refill invoice for the next period when a student is low on hours.

    The follow-up period starts exactly where ``previous_invoice`` ended
    (or now, without one) and runs one month.

    Returns:
        FollowUpResult(created, invoice, reason); reason explains a skip
        ('reconciliation_blocked', 'no_active_students',
        'above_threshold', 'already_invoiced') or is 'threshold_followup'
    """
    period_start = previous_invoice.billing_period_end if previous_invoice is not None else timezone.now()

    try:
        with transaction.atomic():
            result = _ensure_next_invoice(guardian_id, previous_invoice, period_start, actor)
    except ReconciliationFatal as exc:
        escalate_reconciliation_failure(exc, operation='followup', guardian_id=guardian_id)
        raise
    return result


def _ensure_next_invoice(guardian_id, previous_invoice, period_start, actor):
    guardian = lock_guardian(guardian_id)

    if find_blocking_incident(guardian_id=guardian.pk) is not None:
        logger.warning("Follow-up for guardian %s skipped: open reconciliation incident", guardian.pk)
        return FollowUpResult(False, reason='reconciliation_blocked')

    students = list(Student.objects.filter(guardian=guardian, is_active=True))
    if not students:
        return FollowUpResult(False, reason='no_active_students')

    threshold = guardian.threshold_minutes
    student = lowest_balance_student(students, threshold)
    if student is None:
        return FollowUpResult(False, reason='above_threshold')

    existing = find_covering_invoice(
        guardian,
        period_start,
        exclude_pk=previous_invoice.pk if previous_invoice is not None else None,
    )
    if existing is not None:
        logger.info(
            "Follow-up for guardian %s skipped: %s already covers %s",
            guardian.pk, existing.invoice_number, period_start,
        )
        return FollowUpResult(False, invoice=existing, reason='already_invoiced')

    invoice = create_zero_hour_invoice(
        guardian,
        [student],
        reason=THRESHOLD_FOLLOWUP,
        billing_period_start=period_start,
        triggered_by=Invoice.GenerationSource.AUTO_PAYG,
        actor=actor,
        escalate=False,
    )
    logger.info(
        "Follow-up invoice %s created for guardian %s (student %s at %s min, threshold %s)",
        invoice.invoice_number, guardian.pk, student.pk, student.remaining_minutes, threshold,
    )
    return FollowUpResult(True, invoice=invoice, reason=THRESHOLD_FOLLOWUP)


def create_zero_hour_invoice(
    guardian,
    students=(),
    *,
    reason='',
    billing_period_start=None,
    billing_period_end=None,
    triggered_by=Invoice.GenerationSource.MANUAL,
    actor=None,
    due_only_hours=None,
    escalate=True,
) -> Invoice:
    """
    Create an invoice carrying only hour top-ups, no lessons.

    Each student gets a "Refill N hours for <name>" line at the guardian's
    hourly rate. Without students a threshold follow-up gets one
    guardian-level refill line. ``due_only_hours`` bills exactly that
    many owed hours in a single line instead.
    """
    students = list(students)
    period_start = billing_period_start or timezone.now()
    period_end = billing_period_end or add_months(period_start, 1)
    rate = guardian.effective_hourly_rate
    package_hours = round_hours(guardian.effective_package_hours)

    if due_only_hours is not None:
        hours = round_hours(to_decimal(due_only_hours))
        if hours <= 0:
            raise BillingValidationError("Owed hours must be positive")
        student = students[0] if len(students) == 1 else None
        top_ups = [TopUpItem(f"Hours due for {guardian.name}", hours, rate, student)]
    elif students:
        top_ups = [
            TopUpItem(f"Refill {_format_hours(package_hours)} hours for {s.full_name}", package_hours, rate, s)
            for s in students
        ]
    elif reason == THRESHOLD_FOLLOWUP:
        top_ups = [TopUpItem(f"Refill {_format_hours(package_hours)} hours for {guardian.name}", package_hours, rate)]
    else:
        raise BillingValidationError("A zero-hour invoice needs students, owed hours or a threshold reason")

    return create_invoice(
        guardian,
        [],
        period_start=period_start,
        period_end=period_end,
        top_ups=top_ups,
        actor=actor,
        generation_source=triggered_by,
        generation_reason=reason,
        escalate=escalate,
    )


def _format_hours(hours: Decimal) -> str:
    return format(hours.normalize(), 'f')
