"""Tests for invoice numbering."""
import pytest

from django_tutoring_billing.models import Invoice, InvoiceSequence
from django_tutoring_billing.sequence import next_invoice_number


@pytest.mark.django_db
class TestNextInvoiceNumber:
    """Numbers are PREFIX-YYYYMM-NNNN, sequential per type and month."""

    def test_first_number(self):
        assert next_invoice_number(Invoice.InvoiceType.GUARDIAN_INVOICE, 2025, 1) == "INV-202501-0001"

    def test_increments(self):
        next_invoice_number(Invoice.InvoiceType.GUARDIAN_INVOICE, 2025, 1)
        assert next_invoice_number(Invoice.InvoiceType.GUARDIAN_INVOICE, 2025, 1) == "INV-202501-0002"

    def test_each_month_starts_over(self):
        next_invoice_number(Invoice.InvoiceType.GUARDIAN_INVOICE, 2025, 1)
        assert next_invoice_number(Invoice.InvoiceType.GUARDIAN_INVOICE, 2025, 2) == "INV-202502-0001"

    def test_teacher_payments_use_their_own_prefix(self):
        next_invoice_number(Invoice.InvoiceType.GUARDIAN_INVOICE, 2025, 1)
        assert next_invoice_number(Invoice.InvoiceType.TEACHER_PAYMENT, 2025, 1) == "PAY-202501-0001"
        assert InvoiceSequence.objects.count() == 2

    def test_pad_width_setting(self, settings):
        settings.TUTORING_BILLING_INVOICE_PAD_WIDTH = 6
        assert next_invoice_number(Invoice.InvoiceType.GUARDIAN_INVOICE, 2025, 3) == "INV-202503-000001"

    def test_created_invoices_get_distinct_numbers(self, make_invoice, make_lesson, student):
        first = make_invoice()
        second = make_invoice([make_lesson(student, day=20)])
        assert first.invoice_number == "INV-202501-0001"
        assert second.invoice_number == "INV-202501-0002"
