"""Tests for the invoice export snapshot."""
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

import pytest

from django_tutoring_billing.export import build_export_snapshot, resolve_timezone
from django_tutoring_billing.selectors import get_export_snapshot, get_invoice_for_export
from django_tutoring_billing.services import (
    add_adjustment,
    delete_invoice,
    mark_invoice_sent,
    process_payment,
)


@pytest.mark.django_db
class TestBuildExportSnapshot:
    """Test suite for build_export_snapshot."""

    @pytest.fixture
    def invoice(self, make_invoice, make_lesson, student, second_student):
        """Three lessons for two students; one lesson late on Jan 6 UTC."""
        lessons = [
            make_lesson(student, day=6),
            make_lesson(second_student, minutes=30, scheduled_at=datetime(2025, 1, 6, 23, tzinfo=dt_timezone.utc)),
            make_lesson(student, day=13, teacher=None),
        ]
        return make_invoice(lessons)

    def test_identity_and_financials(self, invoice):
        snapshot = get_export_snapshot(invoice.pk)
        assert snapshot['invoiceNumber'] == invoice.invoice_number
        assert snapshot['status'] == 'draft'
        assert snapshot['guardian']['name'] == "Layla Hassan"
        financials = snapshot['financials']
        assert financials['subtotal'] == Decimal("50.00")
        assert financials['total'] == Decimal("50.00")
        assert financials['remainingBalance'] == Decimal("50.00")
        assert financials['transferFee']['mode'] == 'fixed'

    def test_counts_and_hours(self, invoice):
        snapshot = get_export_snapshot(invoice.pk)
        assert snapshot['counts'] == {
            'lessonCount': 3,
            'itemCount': 3,
            'studentCount': 2,
            'teacherCount': 1,
            'dayCount': 2,
        }
        assert snapshot['hours']['totalMinutes'] == 150
        assert snapshot['hours']['totalHours'] == Decimal("2.500")

    def test_day_count_uses_requested_timezone(self, invoice):
        snapshot = get_export_snapshot(invoice.pk, timezone='Africa/Cairo')
        # 23:00 UTC on Jan 6 is Jan 7 in Cairo
        assert snapshot['counts']['dayCount'] == 3
        assert snapshot['metadata']['timezone'] == 'Africa/Cairo'

    def test_unknown_timezone_falls_back_to_utc(self, invoice):
        snapshot = get_export_snapshot(invoice.pk, timezone='Mars/Olympus_Mons')
        assert snapshot['metadata']['timezone'] == 'UTC'
        assert str(resolve_timezone(None)) == 'UTC'

    def test_dates_carry_iso_and_formatted_value(self, invoice):
        snapshot = get_export_snapshot(invoice.pk)
        start = snapshot['dateRange']['start']
        assert start['iso'].startswith('2025-01-06T10:00:00')
        assert '2025' in start['formatted']
        assert snapshot['dateRange']['end']['iso'].startswith('2025-01-13')

    def test_student_and_teacher_rollups(self, invoice, student, teacher):
        snapshot = get_export_snapshot(invoice.pk)
        omar = next(entry for entry in snapshot['students'] if entry['id'] == student.pk)
        assert omar['lessons'] == 2
        assert omar['hours'] == Decimal("2.000")
        assert omar['amount'] == Decimal("40.00")
        names = {entry['name'] for entry in snapshot['teachers']}
        assert names == {"Tara Nasser", "Unassigned"}
        assert sum(entry['minutes'] for entry in snapshot['teachers']) == snapshot['hours']['totalMinutes']

    def test_delivery_status(self, invoice):
        assert get_export_snapshot(invoice.pk)['delivery']['status'] == 'not_sent'
        mark_invoice_sent(invoice.pk, channel='email', delivery_status='failed')
        assert get_export_snapshot(invoice.pk)['delivery']['status'] == 'failed'
        mark_invoice_sent(invoice.pk, channel='whatsapp')
        delivery = get_export_snapshot(invoice.pk)['delivery']
        assert delivery['status'] == 'sent'
        assert delivery['channels'] == ['email', 'whatsapp']
        assert delivery['attempts'] == 2
        assert delivery['lastSentAt'] is not None

    def test_optional_sections(self, invoice):
        process_payment(invoice.pk, Decimal("10.00"), 'cash', 'TXN-5')
        add_adjustment(invoice.pk, reason="Sibling discount", amount=Decimal("5.00"))
        snapshot = get_export_snapshot(invoice.pk, include_activity=True)
        assert len(snapshot['items']) == 3
        assert snapshot['adjustments'] == [
            {'reason': "Sibling discount", 'amount': Decimal("5.00"), 'appliesTo': 'guardian'},
        ]
        assert snapshot['paymentLogs'][0]['transactionId'] == 'TXN-5'
        assert [entry['action'] for entry in snapshot['activity']][0] == 'created'

    def test_sections_can_be_left_out(self, invoice):
        snapshot = get_export_snapshot(invoice.pk, include_items=False, include_payments=False)
        assert snapshot['items'] == []
        assert snapshot['paymentLogs'] == []
        assert snapshot['activity'] == []
        assert snapshot['counts']['itemCount'] == 3
        assert snapshot['hours']['totalMinutes'] == 150
        assert len(snapshot['students']) == 2

    def test_overdue_reported_from_due_date(self, make_invoice):
        invoice = make_invoice(due_date=datetime(2025, 2, 1, tzinfo=dt_timezone.utc))
        mark_invoice_sent(invoice.pk)
        snapshot = build_export_snapshot(
            get_invoice_for_export(invoice.pk),
            now=datetime(2025, 3, 1, tzinfo=dt_timezone.utc),
        )
        assert snapshot['status'] == 'overdue'
        assert snapshot['storedStatus'] == 'sent'

    def test_deleted_invoice_needs_flag(self, invoice):
        delete_invoice(invoice.pk)
        snapshot = get_export_snapshot(invoice.pk, include_deleted=True)
        assert snapshot['invoiceId'] == invoice.pk

    def test_export_does_not_write(self, invoice, django_assert_num_queries):
        loaded = get_invoice_for_export(invoice.pk)
        with django_assert_num_queries(0):
            build_export_snapshot(loaded, include_activity=True)
