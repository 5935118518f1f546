"""Tests for the uninvoiced-lesson audit."""
from datetime import datetime, timezone as dt_timezone
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError
from freezegun import freeze_time

from django_tutoring_billing.models import Guardian, Invoice, Student
from django_tutoring_billing.selectors import uninvoiced_lessons

NOW = datetime(2025, 2, 15, tzinfo=dt_timezone.utc)


@pytest.mark.django_db
class TestUninvoicedLessons:
    """Past lessons no live invoice holds are reported."""

    def test_unbilled_past_lesson_listed(self, make_lesson, student):
        lesson = make_lesson(student)
        assert list(uninvoiced_lessons(now=NOW)) == [lesson]

    def test_billed_lesson_not_listed(self, make_invoice):
        make_invoice()
        assert not uninvoiced_lessons(now=NOW).exists()

    def test_lesson_on_refunded_invoice_listed(self, make_invoice, make_lesson, student):
        lesson = make_lesson(student)
        invoice = make_invoice([lesson])
        Invoice.all_objects.filter(pk=invoice.pk).update(status=Invoice.Status.REFUNDED)
        assert list(uninvoiced_lessons(now=NOW)) == [lesson]

    def test_future_and_old_lessons_ignored(self, make_lesson, student):
        make_lesson(student, scheduled_at=datetime(2025, 3, 1, tzinfo=dt_timezone.utc))
        make_lesson(student, scheduled_at=datetime(2024, 6, 1, tzinfo=dt_timezone.utc))
        assert not uninvoiced_lessons(now=NOW).exists()

    def test_window_is_configurable(self, make_lesson, student, settings):
        make_lesson(student, day=6)
        assert uninvoiced_lessons(now=NOW, since_days=30).count() == 0
        settings.TUTORING_BILLING_UNINVOICED_LOOKBACK_DAYS = 45
        assert uninvoiced_lessons(now=NOW).count() == 1

    def test_unattended_lessons_optional(self, make_lesson, student):
        make_lesson(student, attended=False)
        assert not uninvoiced_lessons(now=NOW).exists()
        assert uninvoiced_lessons(now=NOW, include_unattended=True).count() == 1

    def test_filter_by_guardian(self, make_lesson, student, guardian):
        other = Guardian.objects.create(name="Someone Else")
        make_lesson(Student.objects.create(guardian=other, first_name="Ali"))
        mine = make_lesson(student)
        assert list(uninvoiced_lessons(now=NOW, guardian=guardian)) == [mine]


@pytest.mark.django_db
class TestFindUninvoicedLessonsCommand:
    """The management command reports the audit."""

    @freeze_time(NOW)
    def test_reports_lessons(self, make_lesson, student):
        lesson = make_lesson(student)
        out = StringIO()
        call_command('find_uninvoiced_lessons', stdout=out)
        output = out.getvalue()
        assert f"Lesson {lesson.pk} on 2025-01-06" in output
        assert "unbilled" in output
        assert "1 uninvoiced lesson(s) found" in output

    @freeze_time(NOW)
    def test_nothing_to_report(self, make_invoice):
        make_invoice()
        out = StringIO()
        call_command('find_uninvoiced_lessons', stdout=out)
        assert "Every lesson in the window is invoiced" in out.getvalue()

    @freeze_time(NOW)
    def test_fail_on_found(self, make_lesson, student):
        make_lesson(student)
        with pytest.raises(CommandError):
            call_command('find_uninvoiced_lessons', '--fail-on-found', stdout=StringIO())

    def test_since_days_must_be_positive(self):
        with pytest.raises(CommandError):
            call_command('find_uninvoiced_lessons', '--since-days', '0', stdout=StringIO())
