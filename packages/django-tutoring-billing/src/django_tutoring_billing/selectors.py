"""Invoice selectors for read-only queries.

Uses select_related/prefetch_related to avoid N+1 queries.
"""

from datetime import timedelta

from django.db.models import Prefetch, Q
from django.utils import timezone

from django_tutoring_billing import conf
from django_tutoring_billing.export import build_export_snapshot
from django_tutoring_billing.models import (
    Invoice,
    InvoiceLineItem,
    Lesson,
    PaymentLog,
)


def get_invoice_for_export(invoice_id, *, include_deleted=False) -> Invoice:
    """Fetch an invoice with everything the export snapshot reads.

    Raises:
        Invoice.DoesNotExist: If invoice not found
    """
    manager = Invoice.all_objects if include_deleted else Invoice.objects
    return (
        manager.select_related('guardian')
        .prefetch_related(
            Prefetch('line_items', queryset=InvoiceLineItem.objects.order_by('position', 'pk')),
            Prefetch('payment_logs', queryset=PaymentLog.objects.order_by('processed_at', 'pk')),
            'adjustments',
            'deliveries',
            'activity',
        )
        .get(pk=invoice_id)
    )


def get_export_snapshot(invoice_id, **options) -> dict:
    """Load an invoice and build its export snapshot in one call."""
    include_deleted = options.pop('include_deleted', False)
    return build_export_snapshot(
        get_invoice_for_export(invoice_id, include_deleted=include_deleted),
        **options,
    )



def uninvoiced_lessons(*, since_days=None, now=None, guardian=None, include_unattended=False):
    """
    Past lessons that no live invoice holds.

    A lesson counts when it is unbilled or its holder has been cancelled,
    refunded or deleted. Only lessons scheduled in the last ``since_days``
    days (TUTORING_BILLING_UNINVOICED_LOOKBACK_DAYS by default) and
    before ``now`` are considered.
    """
    now = now or timezone.now()
    if since_days is None:
        since_days = conf.get_uninvoiced_lookback_days()
    lessons = Lesson.objects.filter(
        scheduled_at__gte=now - timedelta(days=since_days),
        scheduled_at__lt=now,
    ).filter(
        Q(billed_in_invoice__isnull=True)
        | Q(billed_in_invoice__deleted_at__isnull=False)
        | Q(billed_in_invoice__status__in=Invoice.TERMINAL_STATUSES)
    )
    if guardian is not None:
        lessons = lessons.filter(guardian=guardian)
    if not include_unattended:
        lessons = lessons.filter(attended=True)
    return lessons.select_related('guardian', 'student', 'billed_in_invoice').order_by('scheduled_at', 'pk')
