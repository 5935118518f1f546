"""Tests for lesson-to-invoice linking."""
from decimal import Decimal

import pytest

from django_tutoring_billing.balances import ledger_balance, refundable_hours
from django_tutoring_billing.exceptions import BillingValidationError, DoubleBillingConflict
from django_tutoring_billing.linking import claim_lesson, lessons_billed_by, unbill_lesson
from django_tutoring_billing.models import Guardian, HourEntry, Invoice, InvoiceLineItem, Lesson, Student
from django_tutoring_billing.services import (
    RefundRequest,
    cancel_invoice,
    process_payment,
    record_invoice_refund,
)


@pytest.mark.django_db
class TestAttachLessons:
    """Creating an invoice claims its lessons."""

    def test_lessons_point_at_invoice(self, make_invoice):
        invoice = make_invoice()
        assert lessons_billed_by(invoice).count() == 2
        for lesson in lessons_billed_by(invoice):
            assert lesson.billed_at is not None

    def test_line_items_describe_lessons(self, make_invoice, student):
        invoice = make_invoice()
        item = invoice.line_items.first()
        assert item.kind == InvoiceLineItem.Kind.LESSON
        assert item.description == f"Math with {student.full_name}"
        assert item.student_name == "Omar Hassan"
        assert item.teacher_name == "Tara Nasser"
        assert item.hours == 1

    def test_missing_lesson_rate_uses_guardian_rate(self, make_invoice, make_lesson, student):
        invoice = make_invoice([make_lesson(student, rate=None)])
        assert invoice.line_items.get().rate == student.guardian.hourly_rate

    def test_duplicate_lesson_rejected(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        with pytest.raises(BillingValidationError):
            make_invoice([lesson, lesson])

    def test_other_guardians_lesson_rejected(self, make_invoice, make_lesson, guardian):
        other = Guardian.objects.create(name="Someone Else")
        other_student = Student.objects.create(guardian=other, first_name="Ali")
        lesson = make_lesson(other_student)
        with pytest.raises(BillingValidationError):
            make_invoice([lesson], guardian=guardian)


@pytest.mark.django_db
class TestAtMostOnceBilling:
    """A lesson is held by at most one live invoice."""

    def test_second_invoice_for_same_lesson_conflicts(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        first = make_invoice([lesson])
        with pytest.raises(DoubleBillingConflict) as excinfo:
            make_invoice([lesson])
        assert excinfo.value.lesson_id == lesson.pk
        assert excinfo.value.existing_invoice_number == first.invoice_number
        assert Invoice.objects.count() == 1

    def test_conflict_rolls_back_whole_batch(self, make_invoice, make_lesson, student):
        held = make_lesson(student, day=6)
        make_invoice([held])
        fresh = make_lesson(student, day=13)
        with pytest.raises(DoubleBillingConflict):
            make_invoice([fresh, held])
        fresh.refresh_from_db()
        assert fresh.billed_in_invoice_id is None

    def test_cancelled_invoice_releases_lessons(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        first = make_invoice([lesson])
        cancel_invoice(first.pk, reason="Wrong guardian")
        lesson.refresh_from_db()
        assert lesson.billed_in_invoice_id is None

        second = make_invoice([lesson])
        lesson.refresh_from_db()
        assert lesson.billed_in_invoice_id == second.pk

    def test_lesson_held_by_dead_invoice_is_reassigned(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        first = make_invoice([lesson])
        Invoice.all_objects.filter(pk=first.pk).update(status=Invoice.Status.CANCELLED)

        second = make_invoice([lesson])
        lesson.refresh_from_db()
        assert lesson.billed_in_invoice_id == second.pk

    def test_claim_by_holder_is_a_no_op(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        invoice = make_invoice([lesson])
        claim_lesson(lesson, invoice)
        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id == invoice.pk

    def test_unbill_only_by_holder(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        holder = make_invoice([lesson])
        other = make_invoice([make_lesson(student, day=20)])
        assert unbill_lesson(lesson, other) is False
        assert unbill_lesson(lesson, holder) is True
        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id is None


@pytest.mark.django_db
class TestTakeoverFromRefundedInvoice:
    """A lesson moved off a refunded invoice is debited only once."""

    @pytest.fixture
    def refunded(self, make_invoice, make_lesson, student):
        """One 60-minute lesson billed, paid and refunded in full as refunded."""
        lesson = make_lesson(student)
        invoice = make_invoice([lesson])
        process_payment(invoice.pk, Decimal("20.00"))
        record_invoice_refund(
            invoice.pk,
            RefundRequest(amount=Decimal("20.00"), reason="Billed in error", mark_refunded=True),
        )
        return Invoice.all_objects.get(pk=invoice.pk), lesson

    def test_rebilled_lesson_debited_once(self, refunded, make_invoice, student):
        old, lesson = refunded
        student.refresh_from_db()
        assert student.hours_remaining == Decimal("-1.000")

        new = make_invoice([lesson])

        student.refresh_from_db()
        assert student.hours_remaining == Decimal("-1.000")
        assert ledger_balance(student=student) == Decimal("-1.000")
        assert Lesson.objects.get(pk=lesson.pk).billed_in_invoice_id == new.pk
        credit = HourEntry.objects.get(invoice=old, kind=HourEntry.Kind.CANCELLATION_CREDIT)
        assert credit.hours == Decimal("1.000")
        assert refundable_hours(old) == Decimal("0")

    def test_hours_already_refunded_not_credited_again(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        old = make_invoice([lesson])
        process_payment(old.pk, Decimal("20.00"))
        record_invoice_refund(
            old.pk,
            RefundRequest(amount=Decimal("20.00"), refund_hours=Decimal("1"), mark_refunded=True),
        )
        student.refresh_from_db()
        assert student.hours_remaining == Decimal("0.000")

        make_invoice([lesson])

        student.refresh_from_db()
        assert student.hours_remaining == Decimal("-1.000")
        assert not HourEntry.objects.filter(invoice=old, kind=HourEntry.Kind.CANCELLATION_CREDIT).exists()
