"""Tests for refunds and the hours they restore."""
from decimal import Decimal

import pytest

from django_tutoring_billing.exceptions import InvalidRefundAmount
from django_tutoring_billing.followup import create_zero_hour_invoice
from django_tutoring_billing.models import HourEntry, Invoice, PaymentLog
from django_tutoring_billing.services import RefundRequest, process_payment, record_invoice_refund


@pytest.mark.django_db
class TestRecordInvoiceRefund:
    """Test suite for record_invoice_refund."""

    @pytest.fixture
    def paid_invoice(self, make_invoice):
        """Invoice of 40.00 paid in full."""
        invoice = make_invoice()
        process_payment(invoice.pk, Decimal("40.00"), 'cash', 'TXN-1')
        return Invoice.objects.get(pk=invoice.pk)

    def test_partial_refund_restores_hours(self, paid_invoice, guardian, student, staff_user):
        guardian.refresh_from_db()
        student.refresh_from_db()
        guardian_hours = guardian.total_hours
        student_hours = student.hours_remaining

        result = record_invoice_refund(
            paid_invoice.pk,
            RefundRequest(amount=Decimal("20"), refund_hours=Decimal("1"), reason="Missed lesson"),
            actor=staff_user,
        )

        invoice = Invoice.objects.get(pk=paid_invoice.pk)
        guardian.refresh_from_db()
        student.refresh_from_db()
        assert result.success is True
        assert invoice.paid_amount == Decimal("20.00")
        assert invoice.status == Invoice.Status.PARTIALLY_PAID
        assert result.payment_log.amount == Decimal("-20.00")
        assert result.payment_log.method == PaymentLog.Method.REFUND
        assert result.payment_log.note == "Refund: Missed lesson"
        assert guardian.total_hours == guardian_hours + 1
        assert student.hours_remaining == student_hours + 1

    def test_refund_hours_split_between_students(self, make_invoice, make_lesson, student, second_student):
        invoice = make_invoice([make_lesson(student), make_lesson(second_student)])
        process_payment(invoice.pk, Decimal("40.00"))

        record_invoice_refund(invoice.pk, RefundRequest(amount=Decimal("10"), refund_hours=Decimal("1")))

        credits = HourEntry.objects.filter(invoice=invoice, kind=HourEntry.Kind.REFUND_CREDIT)
        assert sorted(entry.hours for entry in credits) == [Decimal("0.500"), Decimal("0.500")]

    def test_refund_above_paid_rejected(self, paid_invoice):
        with pytest.raises(InvalidRefundAmount):
            record_invoice_refund(paid_invoice.pk, RefundRequest(amount=Decimal("40.01")))
        invoice = Invoice.objects.get(pk=paid_invoice.pk)
        assert invoice.paid_amount == Decimal("40.00")
        assert invoice.payment_logs.count() == 1

    def test_refund_hours_above_billed_rejected(self, paid_invoice):
        with pytest.raises(InvalidRefundAmount):
            record_invoice_refund(
                paid_invoice.pk,
                RefundRequest(amount=Decimal("10"), refund_hours=Decimal("3")),
            )

    def test_non_positive_refund_rejected(self, paid_invoice):
        with pytest.raises(InvalidRefundAmount):
            record_invoice_refund(paid_invoice.pk, RefundRequest(amount=Decimal("0")))

    def test_full_refund_returns_invoice_to_sent(self, paid_invoice):
        record_invoice_refund(paid_invoice.pk, RefundRequest(amount=Decimal("40")))
        invoice = Invoice.objects.get(pk=paid_invoice.pk)
        assert invoice.paid_amount == Decimal("0")
        assert invoice.status == Invoice.Status.SENT
        assert invoice.paid_at is None

    def test_full_refund_can_close_invoice(self, paid_invoice):
        record_invoice_refund(
            paid_invoice.pk,
            RefundRequest(amount=Decimal("40"), reason="Family moved", mark_refunded=True),
        )
        invoice = Invoice.objects.get(pk=paid_invoice.pk)
        assert invoice.status == Invoice.Status.REFUNDED
        assert not invoice.is_live

    def test_successive_refunds_never_go_below_zero(self, paid_invoice):
        record_invoice_refund(paid_invoice.pk, RefundRequest(amount=Decimal("25")))
        with pytest.raises(InvalidRefundAmount):
            record_invoice_refund(paid_invoice.pk, RefundRequest(amount=Decimal("20")))
        assert Invoice.objects.get(pk=paid_invoice.pk).paid_amount == Decimal("15.00")

    def test_refund_reference_recorded(self, paid_invoice):
        result = record_invoice_refund(
            paid_invoice.pk,
            RefundRequest(amount=Decimal("5"), refund_reference="RF-100"),
        )
        assert result.payment_log.transaction_id == "RF-100"


@pytest.mark.django_db
class TestTopUpRefund:
    """Refunds on top-up invoices take back purchased hours."""

    def test_refund_reverses_purchased_hours(self, guardian, student):
        invoice = create_zero_hour_invoice(guardian, [student], reason="manual_refill")
        process_payment(invoice.pk, invoice.total)
        student.refresh_from_db()
        assert student.hours_remaining == Decimal("10.000")

        record_invoice_refund(invoice.pk, RefundRequest(amount=Decimal("40"), refund_hours=Decimal("2")))

        student.refresh_from_db()
        assert student.hours_remaining == Decimal("8.000")
        assert HourEntry.objects.filter(invoice=invoice, kind=HourEntry.Kind.PURCHASE_REVERSAL).count() == 1
