"""Read-only export snapshot of an invoice.

The snapshot is the single input for PDF/print renderers and API
responses, so its keys keep the camelCase names those consumers read.
Building it never writes to the database.

Usage:
    from django_tutoring_billing.selectors import get_invoice_for_export
    from django_tutoring_billing.export import build_export_snapshot

    snapshot = build_export_snapshot(
        get_invoice_for_export(invoice_id),
        timezone='Africa/Cairo',
        locale='en-gb',
    )
    snapshot['financials']['remainingBalance']
"""

import logging
from collections import OrderedDict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.utils import formats, translation
from django.utils import timezone as django_timezone

from django_tutoring_billing.models import DeliveryRecord, InvoiceLineItem
from django_tutoring_billing.money import ZERO, minutes_to_hours, round_currency

logger = logging.getLogger(__name__)

UNASSIGNED_TEACHER = 'Unassigned'


def resolve_timezone(name):
    """ZoneInfo for ``name``; unknown names fall back to UTC."""
    try:
        return ZoneInfo(name or 'UTC')
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r in export request, using UTC", name)
        return ZoneInfo('UTC')


class _Formatter:
    def __init__(self, tz, locale):
        self.tz = tz
        self.locale = locale

    def local(self, value):
        if value is None:
            return None
        if django_timezone.is_naive(value):
            value = django_timezone.make_aware(value, ZoneInfo('UTC'))
        return value.astimezone(self.tz)

    def date(self, value):
        local = self.local(value)
        if local is None:
            return None
        with translation.override(self.locale):
            formatted = formats.date_format(local, 'DATE_FORMAT')
        return {'iso': local.isoformat(), 'formatted': formatted}


def _delivery_status(deliveries):
    statuses = {record.status for record in deliveries}
    if DeliveryRecord.Status.SENT in statuses:
        return DeliveryRecord.Status.SENT
    if DeliveryRecord.Status.QUEUED in statuses:
        return DeliveryRecord.Status.QUEUED
    if DeliveryRecord.Status.FAILED in statuses:
        return DeliveryRecord.Status.FAILED
    return 'not_sent'


def _student_rollup(items, invoice, currency):
    students = OrderedDict()
    for item in items:
        key = item.student_id
        entry = students.get(key)
        if entry is None:
            entry = students[key] = {
                'id': key,
                'name': item.student_name or invoice.guardian.name,
                'lessons': 0,
                'minutes': 0,
                'amount': ZERO,
            }
        if item.kind == InvoiceLineItem.Kind.LESSON:
            entry['lessons'] += 1
        entry['minutes'] += item.duration_minutes
        entry['amount'] += _item_amount(item, currency)
    for entry in students.values():
        entry['hours'] = minutes_to_hours(entry['minutes'])
        entry['amount'] = round_currency(entry['amount'], currency)
    return list(students.values())


def _teacher_rollup(items):
    teachers = OrderedDict()
    for item in items:
        key = item.teacher_id
        entry = teachers.get(key)
        if entry is None:
            entry = teachers[key] = {
                'id': key,
                'name': item.teacher_name or UNASSIGNED_TEACHER,
                'lessons': 0,
                'minutes': 0,
            }
        if item.kind == InvoiceLineItem.Kind.LESSON:
            entry['lessons'] += 1
        entry['minutes'] += item.duration_minutes
    for entry in teachers.values():
        entry['hours'] = minutes_to_hours(entry['minutes'])
    return list(teachers.values())


def _item_amount(item, currency):
    if item.amount is not None:
        return round_currency(item.amount, currency)
    return round_currency(item.rate * item.duration_minutes / 60, currency)


def build_export_snapshot(
    invoice,
    *,
    timezone='UTC',
    locale='en-us',
    include_items=True,
    include_payments=True,
    include_activity=False,
    now=None,
) -> dict:
    """
    Describe an invoice for rendering.

    Aggregates (counts, hours, student and teacher rollups, financials)
    are always computed; ``include_items``, ``include_payments`` and
    ``include_activity`` decide whether the per-row sections are filled
    or left as empty lists. Pass an invoice loaded through
    selectors.get_invoice_for_export to avoid per-section queries.

    Args:
        invoice: The invoice to describe
        timezone: IANA zone for every date; unknown zones fall back to UTC
        locale: Language code used for the human-readable dates
        now: Reference time for the overdue check (default: now)

    Returns:
        dict
    """
    fmt = _Formatter(resolve_timezone(timezone), locale)
    currency = invoice.currency
    items = list(invoice.line_items.all())
    deliveries = list(invoice.deliveries.all())

    item_dates = [item.date for item in items if item.date is not None]
    local_days = {fmt.local(date).date() for date in item_dates}
    total_minutes = sum(item.duration_minutes for item in items)
    teachers = _teacher_rollup(items)

    snapshot = {
        'invoiceId': invoice.pk,
        'invoiceNumber': invoice.invoice_number,
        'invoiceType': invoice.invoice_type,
        'status': invoice.effective_status(now),
        'storedStatus': invoice.status,
        'generationSource': invoice.generation_source,
        'generationReason': invoice.generation_reason,
        'guardian': {
            'id': invoice.guardian_id,
            'name': invoice.guardian.name,
            'email': invoice.guardian.email,
        },
        'billingPeriod': {
            'start': fmt.date(invoice.billing_period_start),
            'end': fmt.date(invoice.billing_period_end),
            'month': invoice.billing_month,
            'year': invoice.billing_year,
        },
        'dueDate': fmt.date(invoice.due_date),
        'dateRange': {
            'start': fmt.date(min(item_dates)) if item_dates else None,
            'end': fmt.date(max(item_dates)) if item_dates else None,
        },
        'counts': {
            'lessonCount': sum(1 for item in items if item.kind == InvoiceLineItem.Kind.LESSON),
            'itemCount': len(items),
            'studentCount': len({item.student_id for item in items if item.student_id is not None}),
            'teacherCount': len({item.teacher_id for item in items if item.teacher_id is not None}),
            'dayCount': len(local_days),
        },
        'hours': {
            'totalMinutes': total_minutes,
            'totalHours': minutes_to_hours(total_minutes),
            'coveredHours': invoice.hours_covered,
        },
        'financials': {
            'currency': currency,
            'exchangeRate': invoice.exchange_rate,
            'subtotal': invoice.subtotal,
            'discount': invoice.discount,
            'tax': invoice.tax,
            'lateFee': invoice.late_fee,
            'transferFee': {
                'mode': invoice.transfer_fee_mode,
                'value': invoice.transfer_fee_value,
                'amount': invoice.transfer_fee_amount,
                'waived': invoice.transfer_fee_waived,
                'waivedByCoverage': invoice.transfer_fee_waived_by_coverage,
            },
            'total': invoice.total,
            'adjustedTotal': invoice.adjusted_total,
            'paidAmount': invoice.paid_amount,
            'remainingBalance': invoice.remaining_balance,
            'tip': invoice.tip,
            'needsReview': invoice.needs_review,
        },
        'coverage': invoice.coverage or {},
        'students': _student_rollup(items, invoice, currency),
        'teachers': teachers,
        'delivery': {
            'status': _delivery_status(deliveries),
            'channels': sorted({record.channel for record in deliveries}),
            'attempts': len(deliveries),
            'lastSentAt': fmt.date(max(
                (record.created_at for record in deliveries if record.status == DeliveryRecord.Status.SENT),
                default=None,
            )),
        },
        'metadata': {
            'timezone': str(fmt.tz),
            'locale': locale,
            'generatedAt': fmt.local(now or django_timezone.now()).isoformat(),
        },
        'items': [],
        'adjustments': [],
        'paymentLogs': [],
        'activity': [],
    }

    if include_items:
        snapshot['items'] = [
            {
                'id': item.pk,
                'kind': item.kind,
                'lessonId': item.lesson_id,
                'description': item.description,
                'date': fmt.date(item.date),
                'durationMinutes': item.duration_minutes,
                'hours': item.hours,
                'rate': item.rate,
                'amount': _item_amount(item, currency),
                'studentId': item.student_id,
                'studentName': item.student_name,
                'teacherId': item.teacher_id,
                'teacherName': item.teacher_name,
                'attended': item.attended,
            }
            for item in items
        ]
        snapshot['adjustments'] = [
            {'reason': adj.reason, 'amount': adj.amount, 'appliesTo': adj.applies_to}
            for adj in invoice.adjustments.all()
        ]
    if include_payments:
        snapshot['paymentLogs'] = [
            {
                'id': log.pk,
                'amount': log.amount,
                'tip': log.tip,
                'hours': log.hours,
                'method': log.method,
                'transactionId': log.transaction_id,
                'processedAt': fmt.date(log.processed_at),
                'note': log.note,
            }
            for log in invoice.payment_logs.all()
        ]
    if include_activity:
        snapshot['activity'] = [
            {
                'action': entry.action,
                'note': entry.note,
                'at': fmt.date(entry.created_at),
                'actorId': entry.actor_id,
            }
            for entry in invoice.activity.all()
        ]
    return snapshot
