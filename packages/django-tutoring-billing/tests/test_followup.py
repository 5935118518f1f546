"""Tests for threshold follow-up invoices."""
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from freezegun import freeze_time

from django_tutoring_billing.exceptions import BillingValidationError
from django_tutoring_billing.followup import (
    THRESHOLD_FOLLOWUP,
    create_zero_hour_invoice,
    ensure_next_invoice_if_below_threshold,
    lowest_balance_student,
)
from django_tutoring_billing.models import Invoice, InvoiceLineItem, ReconciliationIncident, Student


def set_hours(student, hours):
    Student.objects.filter(pk=student.pk).update(hours_remaining=Decimal(hours))


@pytest.mark.django_db
class TestEnsureNextInvoice:
    """Test suite for ensure_next_invoice_if_below_threshold."""

    @pytest.fixture
    def previous(self, guardian, student, make_invoice, make_lesson):
        """A January invoice; the guardian's follow-up threshold is one hour."""
        guardian.min_lesson_duration_minutes = 60
        guardian.save()
        return make_invoice([make_lesson(student)])

    def test_creates_invoice_for_lowest_student(self, previous, guardian, student, second_student):
        set_hours(student, "2")
        set_hours(second_student, "0.5")

        result = ensure_next_invoice_if_below_threshold(guardian.pk, previous)

        assert result.created is True
        assert result.reason == THRESHOLD_FOLLOWUP
        invoice = result.invoice
        assert invoice.billing_period_start == previous.billing_period_end
        assert invoice.generation_reason == THRESHOLD_FOLLOWUP
        assert invoice.generation_source == Invoice.GenerationSource.AUTO_PAYG
        item = invoice.line_items.get()
        assert item.kind == InvoiceLineItem.Kind.TOP_UP
        assert item.student_id == second_student.pk
        assert item.description == "Refill 10 hours for Mona Hassan"
        assert invoice.total == Decimal("200.00")

    def test_follow_up_runs_one_month(self, previous, guardian, student):
        set_hours(student, "0")
        invoice = ensure_next_invoice_if_below_threshold(guardian.pk, previous).invoice
        assert invoice.billing_period_start == datetime(2025, 2, 1, tzinfo=dt_timezone.utc)
        assert invoice.billing_period_end == datetime(2025, 3, 1, tzinfo=dt_timezone.utc)
        assert (invoice.billing_year, invoice.billing_month) == (2025, 2)

    def test_threshold_is_inclusive(self, previous, guardian, student):
        set_hours(student, "1")
        assert ensure_next_invoice_if_below_threshold(guardian.pk, previous).created is True

    def test_above_threshold(self, previous, guardian, student):
        set_hours(student, "1.5")
        result = ensure_next_invoice_if_below_threshold(guardian.pk, previous)
        assert result.created is False
        assert result.reason == 'above_threshold'

    def test_no_active_students(self, previous, guardian, student):
        Student.objects.filter(pk=student.pk).update(is_active=False)
        result = ensure_next_invoice_if_below_threshold(guardian.pk, previous)
        assert result.reason == 'no_active_students'

    def test_second_call_finds_existing_invoice(self, previous, guardian, student):
        set_hours(student, "0")
        first = ensure_next_invoice_if_below_threshold(guardian.pk, previous)
        second = ensure_next_invoice_if_below_threshold(guardian.pk, previous)
        assert second.created is False
        assert second.reason == 'already_invoiced'
        assert second.invoice == first.invoice
        assert Invoice.objects.filter(generation_reason=THRESHOLD_FOLLOWUP).count() == 1

    def test_cancelled_follow_up_does_not_block(self, previous, guardian, student):
        from django_tutoring_billing.services import cancel_invoice

        set_hours(student, "0")
        first = ensure_next_invoice_if_below_threshold(guardian.pk, previous).invoice
        cancel_invoice(first.pk)
        assert ensure_next_invoice_if_below_threshold(guardian.pk, previous).created is True

    def test_open_incident_blocks(self, previous, guardian, student):
        set_hours(student, "0")
        ReconciliationIncident.objects.create(guardian=guardian, operation='payment')
        result = ensure_next_invoice_if_below_threshold(guardian.pk, previous)
        assert result.created is False
        assert result.reason == 'reconciliation_blocked'

    def test_default_threshold_setting(self, guardian, student, settings):
        settings.TUTORING_BILLING_MIN_LESSON_MINUTES = 45
        set_hours(student, "0.75")
        with freeze_time("2025-03-10 09:00:00"):
            result = ensure_next_invoice_if_below_threshold(guardian.pk)
        assert result.created is True
        assert result.invoice.billing_period_start == datetime(2025, 3, 10, 9, tzinfo=dt_timezone.utc)


class TestLowestBalanceStudent:
    """Tie-break between students at the same balance."""

    def student(self, pk, minutes, created):
        return SimpleNamespace(
            pk=pk,
            remaining_minutes=Decimal(minutes),
            created_at=datetime(2024, 1, created, tzinfo=dt_timezone.utc),
        )

    def test_lowest_wins(self):
        students = [self.student(1, 30, 1), self.student(2, 10, 2)]
        assert lowest_balance_student(students, 60).pk == 2

    def test_tie_goes_to_earliest_created(self):
        students = [self.student(1, 30, 5), self.student(2, 30, 2)]
        assert lowest_balance_student(students, 60).pk == 2

    def test_tie_on_creation_goes_to_lowest_id(self):
        students = [self.student(9, 30, 2), self.student(4, 30, 2)]
        assert lowest_balance_student(students, 60).pk == 4

    def test_none_below_threshold(self):
        assert lowest_balance_student([self.student(1, 90, 1)], 60) is None


@pytest.mark.django_db
class TestCreateZeroHourInvoice:
    """Top-up-only invoices."""

    def test_one_line_per_student(self, guardian, student, second_student):
        invoice = create_zero_hour_invoice(guardian, [student, second_student], reason="manual_refill")
        assert invoice.line_items.count() == 2
        assert invoice.billed_lessons.count() == 0

    def test_package_hours_from_guardian(self, guardian, student):
        guardian.default_package_hours = Decimal("2.5")
        guardian.save()
        invoice = create_zero_hour_invoice(guardian, [student], reason="manual_refill")
        item = invoice.line_items.get()
        assert item.description == "Refill 2.5 hours for Omar Hassan"
        assert item.duration_minutes == 150

    def test_due_only_hours(self, guardian, student):
        invoice = create_zero_hour_invoice(guardian, [student], reason="owed", due_only_hours="3")
        item = invoice.line_items.get()
        assert item.hours == Decimal("3.000")
        assert invoice.total == Decimal("60.00")

    def test_guardian_level_threshold_refill(self, guardian):
        invoice = create_zero_hour_invoice(guardian, reason=THRESHOLD_FOLLOWUP)
        item = invoice.line_items.get()
        assert item.student_id is None
        assert item.description == "Refill 10 hours for Layla Hassan"

    def test_needs_students_or_hours(self, guardian):
        with pytest.raises(BillingValidationError):
            create_zero_hour_invoice(guardian, reason="manual_refill")
