"""Configuration for django-tutoring-billing.

All settings are optional and read lazily so tests can override them
with ``settings`` fixtures.
"""

from decimal import Decimal, InvalidOperation

from django.conf import settings

from django_tutoring_billing.exceptions import BillingConfigError


def _decimal_setting(name, default):
    value = getattr(settings, name, default)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise BillingConfigError(f"{name} must be a number, got {value!r}")
    if result < 0:
        raise BillingConfigError(f"{name} must not be negative, got {value!r}")
    return result


def _int_setting(name, default, minimum=0):
    value = getattr(settings, name, default)
    if not isinstance(value, int) or value < minimum:
        raise BillingConfigError(f"{name} must be an integer >= {minimum}, got {value!r}")
    return value


def get_default_currency() -> str:
    """ISO code stamped on new invoices (TUTORING_BILLING_CURRENCY)."""
    return getattr(settings, "TUTORING_BILLING_CURRENCY", "USD")


def get_due_days() -> int:
    """Days between invoice creation and its due date."""
    return _int_setting("TUTORING_BILLING_DUE_DAYS", 7)


def get_min_lesson_minutes() -> int:
    """Follow-up threshold used when a guardian has none recorded."""
    return _int_setting("TUTORING_BILLING_MIN_LESSON_MINUTES", 30)


def get_default_package_hours() -> Decimal:
    return _decimal_setting("TUTORING_BILLING_DEFAULT_PACKAGE_HOURS", 10)


def get_default_hourly_rate() -> Decimal:
    return _decimal_setting("TUTORING_BILLING_DEFAULT_HOURLY_RATE", 10)


def get_default_exchange_rate() -> Decimal:
    """Rate used when no monthly exchange rate has been recorded."""
    return _decimal_setting("TUTORING_BILLING_DEFAULT_EXCHANGE_RATE", 1)


def get_stale_write_retries() -> int:
    return _int_setting("TUTORING_BILLING_STALE_WRITE_RETRIES", 3, minimum=1)


def get_invoice_pad_width() -> int:
    return _int_setting("TUTORING_BILLING_INVOICE_PAD_WIDTH", 4, minimum=1)


def get_uninvoiced_lookback_days() -> int:
    """How far back the uninvoiced-lesson audit looks by default."""
    return _int_setting("TUTORING_BILLING_UNINVOICED_LOOKBACK_DAYS", 90, minimum=1)
