"""Pytest configuration for django-tutoring-billing tests."""

from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

import pytest

PERIOD_START = datetime(2025, 1, 1, tzinfo=dt_timezone.utc)


def at(day, hour=10, month=1, year=2025):
    """Aware UTC datetime in the test billing month."""
    return datetime(year, month, day, hour, tzinfo=dt_timezone.utc)


@pytest.fixture
def staff_user(db, django_user_model):
    """Create the staff user recorded as actor."""
    return django_user_model.objects.create_user(
        username="billing-admin",
        password="testpass123",
        is_staff=True,
    )


@pytest.fixture
def teacher(db, django_user_model):
    """Create a teacher user."""
    return django_user_model.objects.create_user(
        username="tara",
        password="testpass123",
        first_name="Tara",
        last_name="Nasser",
    )


@pytest.fixture
def guardian(db):
    """Create a guardian billed at 20/hour with no transfer fee."""
    from django_tutoring_billing.models import Guardian

    return Guardian.objects.create(
        name="Layla Hassan",
        email="layla@example.com",
        hourly_rate=Decimal("20.00"),
    )


@pytest.fixture
def student(guardian):
    """Create the guardian's first student."""
    from django_tutoring_billing.models import Student

    return Student.objects.create(guardian=guardian, first_name="Omar", last_name="Hassan")


@pytest.fixture
def second_student(guardian):
    """Create the guardian's second student."""
    from django_tutoring_billing.models import Student

    return Student.objects.create(guardian=guardian, first_name="Mona", last_name="Hassan")


@pytest.fixture
def make_lesson(teacher):
    """Factory for lessons in January 2025."""
    from django_tutoring_billing.models import Lesson

    def _make(student, day=6, minutes=60, rate=Decimal("20.00"), subject="Math", **kwargs):
        return Lesson.objects.create(
            guardian=student.guardian,
            student=student,
            teacher=kwargs.pop("teacher", teacher),
            subject=subject,
            scheduled_at=kwargs.pop("scheduled_at", at(day)),
            duration_minutes=minutes,
            rate=rate,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_invoice(student, make_lesson, staff_user):
    """Factory for invoices; defaults to two 60-minute lessons at 20/hour (total 40)."""
    from django_tutoring_billing.services import create_invoice

    def _make(lessons=None, guardian=None, **kwargs):
        if lessons is None:
            lessons = [make_lesson(student, day=6), make_lesson(student, day=13)]
        kwargs.setdefault("period_start", PERIOD_START)
        kwargs.setdefault("actor", staff_user)
        return create_invoice(guardian or student.guardian, lessons, **kwargs)

    return _make
