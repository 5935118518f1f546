"""Tests for adding and removing lessons on open invoices."""
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

import pytest

from django_tutoring_billing import balances
from django_tutoring_billing.editing import (
    add_lesson_to_open_invoice,
    add_lessons_to_invoice,
    preview_lesson_changes,
    remove_lesson_from_invoice,
    remove_lesson_from_open_invoice,
)
from django_tutoring_billing.exceptions import (
    BillingValidationError,
    DoubleBillingConflict,
    InvoiceStateError,
    ReconciliationBlocked,
    ReconciliationFatal,
)
from django_tutoring_billing.models import HourEntry, Invoice, Lesson, ReconciliationIncident
from django_tutoring_billing.services import cancel_invoice, mark_invoice_sent, process_payment


def reload(invoice):
    return Invoice.all_objects.get(pk=invoice.pk)


@pytest.mark.django_db
class TestAddLessons:
    """Lessons added to an open invoice are billed and debited."""

    @pytest.fixture
    def invoice(self, make_invoice):
        """Draft invoice of two 60-minute lessons (total 40)."""
        return make_invoice()

    def test_adds_line_total_and_hours(self, invoice, make_lesson, student, staff_user):
        lesson = make_lesson(student, day=20, minutes=90)
        version = invoice.version

        add_lessons_to_invoice(invoice.pk, [lesson], actor=staff_user, note="Extra session")

        invoice = reload(invoice)
        assert invoice.total == Decimal("70.00")
        assert invoice.version > version
        assert invoice.line_items.count() == 3
        assert invoice.line_items.get(lesson=lesson).position == 2
        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id == invoice.pk
        student.refresh_from_db()
        assert student.hours_remaining == Decimal("-3.500")
        activity = invoice.activity.get(action='lessons_added')
        assert activity.diff['hoursDebited'] == '1.500'
        assert activity.actor == staff_user

    def test_sent_invoice_can_gain_lessons(self, invoice, make_lesson, student):
        mark_invoice_sent(invoice.pk)
        add_lessons_to_invoice(invoice.pk, [make_lesson(student, day=20)])
        invoice = reload(invoice)
        assert invoice.status == Invoice.Status.SENT
        assert invoice.total == Decimal("60.00")

    def test_lesson_on_other_live_invoice_conflicts(self, invoice, make_invoice, make_lesson, student):
        held = make_lesson(student, day=20)
        make_invoice([held])

        with pytest.raises(DoubleBillingConflict):
            add_lessons_to_invoice(invoice.pk, [held])

        assert reload(invoice).total == Decimal("40.00")
        student.refresh_from_db()
        assert student.hours_remaining == Decimal("-3.000")

    def test_lesson_already_on_invoice_rejected(self, invoice):
        lesson = invoice.line_items.first().lesson
        with pytest.raises(BillingValidationError):
            add_lessons_to_invoice(invoice.pk, [lesson])

    def test_empty_batch_rejected(self, invoice):
        with pytest.raises(BillingValidationError):
            add_lessons_to_invoice(invoice.pk, [])

    def test_paid_invoice_is_closed(self, invoice, make_lesson, student):
        process_payment(invoice.pk, Decimal("40.00"))
        with pytest.raises(InvoiceStateError):
            add_lessons_to_invoice(invoice.pk, [make_lesson(student, day=20)])

    def test_blocked_by_open_incident(self, invoice, make_lesson, student, guardian):
        ReconciliationIncident.objects.create(guardian=guardian, operation='refund')
        with pytest.raises(ReconciliationBlocked):
            add_lessons_to_invoice(invoice.pk, [make_lesson(student, day=20)])
        assert ReconciliationIncident.objects.count() == 1

    def test_failed_debit_rolls_back_and_escalates(self, invoice, make_lesson, student, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("hour store unavailable")

        monkeypatch.setattr(balances, 'debit_lesson_items', explode)
        lesson = make_lesson(student, day=20)

        with pytest.raises(ReconciliationFatal):
            add_lessons_to_invoice(invoice.pk, [lesson])

        assert reload(invoice).line_items.count() == 2
        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id is None
        incident = ReconciliationIncident.objects.get()
        assert incident.operation == 'add_lessons'
        assert incident.invoice_id == invoice.pk


@pytest.mark.django_db
class TestRemoveLesson:
    """A removed lesson is unbilled and its hours come back."""

    @pytest.fixture
    def invoice(self, make_invoice):
        """Draft invoice of two 60-minute lessons (total 40)."""
        return make_invoice()

    def test_removes_line_and_restores_hours(self, invoice, student):
        lesson = invoice.line_items.first().lesson

        remove_lesson_from_invoice(invoice.pk, lesson, note="Teacher was ill")

        invoice = reload(invoice)
        assert invoice.total == Decimal("20.00")
        assert not invoice.line_items.filter(lesson=lesson).exists()
        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id is None
        student.refresh_from_db()
        assert student.hours_remaining == Decimal("-1.000")
        assert balances.ledger_balance(student=student) == Decimal("-1.000")
        credit = HourEntry.objects.get(invoice=invoice, kind=HourEntry.Kind.CANCELLATION_CREDIT)
        assert credit.note == "Teacher was ill"
        assert invoice.activity.filter(action='lesson_removed').exists()

    def test_removed_lesson_can_be_billed_again(self, invoice, make_invoice, student):
        lesson = invoice.line_items.first().lesson
        remove_lesson_from_invoice(invoice.pk, lesson)

        other = make_invoice([lesson])

        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id == other.pk
        student.refresh_from_db()
        assert student.hours_remaining == Decimal("-2.000")

    def test_last_line_cannot_be_removed(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        invoice = make_invoice([lesson])
        with pytest.raises(BillingValidationError):
            remove_lesson_from_invoice(invoice.pk, lesson)
        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id == invoice.pk

    def test_lesson_not_on_invoice_rejected(self, invoice, make_lesson, student):
        with pytest.raises(BillingValidationError):
            remove_lesson_from_invoice(invoice.pk, make_lesson(student, day=20))

    def test_cancelled_invoice_is_closed(self, invoice):
        lesson = invoice.line_items.first().lesson
        cancel_invoice(invoice.pk)
        with pytest.raises(InvoiceStateError):
            remove_lesson_from_invoice(invoice.pk, lesson)


@pytest.mark.django_db
class TestPreviewLessonChanges:
    """Previews compute new totals without writing."""

    def test_preview_add_and_remove(self, make_invoice, make_lesson, student):
        invoice = make_invoice()
        removed = invoice.line_items.first().lesson
        added = make_lesson(student, day=20, minutes=30)

        preview = preview_lesson_changes(invoice, add=[added], remove=[removed])

        assert preview.before.total == Decimal("40.00")
        assert preview.after.total == Decimal("30.00")
        assert preview.added_minutes == 30
        assert preview.removed_minutes == 60
        assert reload(invoice).line_items.count() == 2
        assert Lesson.objects.get(pk=added.pk).billed_in_invoice_id is None

    def test_lesson_without_rate_uses_guardian_rate(self, make_invoice, make_lesson, student):
        invoice = make_invoice()
        preview = preview_lesson_changes(invoice, add=[make_lesson(student, day=20, rate=None)])
        assert preview.after.total == Decimal("60.00")


@pytest.mark.django_db
class TestOpenInvoiceSync:
    """Scheduler hooks keep the guardian's open invoice in step."""

    def test_new_lesson_joins_open_invoice(self, make_invoice, make_lesson, student):
        invoice = make_invoice()
        lesson = make_lesson(student, day=20)

        result = add_lesson_to_open_invoice(lesson)

        assert result.changed is True
        assert result.reason == 'added'
        assert result.invoice.pk == invoice.pk
        assert reload(invoice).total == Decimal("60.00")

    def test_lesson_outside_any_period_skipped(self, make_invoice, make_lesson, student):
        make_invoice()
        lesson = make_lesson(student, scheduled_at=datetime(2025, 2, 10, 10, tzinfo=dt_timezone.utc))
        result = add_lesson_to_open_invoice(lesson)
        assert result == (False, None, 'no_open_invoice')

    def test_sent_invoice_not_auto_extended(self, make_invoice, make_lesson, student):
        invoice = make_invoice()
        mark_invoice_sent(invoice.pk)
        result = add_lesson_to_open_invoice(make_lesson(student, day=20))
        assert result.reason == 'no_open_invoice'

    def test_billed_lesson_skipped(self, make_invoice):
        invoice = make_invoice()
        lesson = invoice.line_items.first().lesson
        result = add_lesson_to_open_invoice(lesson)
        assert result.changed is False
        assert result.reason == 'already_billed'
        assert result.invoice.pk == invoice.pk

    def test_withdrawn_lesson_leaves_open_invoice(self, make_invoice):
        invoice = make_invoice()
        lesson = invoice.line_items.first().lesson

        result = remove_lesson_from_open_invoice(lesson)

        assert result.changed is True
        assert result.reason == 'removed'
        assert reload(invoice).total == Decimal("20.00")

    def test_withdrawn_lesson_on_sent_invoice_left_alone(self, make_invoice):
        invoice = make_invoice()
        mark_invoice_sent(invoice.pk)
        lesson = invoice.line_items.first().lesson
        result = remove_lesson_from_open_invoice(lesson)
        assert result.reason == 'invoice_not_open'
        assert reload(invoice).line_items.count() == 2

    def test_unbilled_lesson_nothing_to_remove(self, make_lesson, student):
        result = remove_lesson_from_open_invoice(make_lesson(student))
        assert result == (False, None, 'not_billed')
