"""Monthly exchange rate management.

Issued invoices copy their rate onto ``Invoice.exchange_rate``; nothing
re-reads a rate after issue. Locking a month keeps its record fixed for
audit, and new invoices are only ever priced against unlocked records.
"""

import logging
from decimal import Decimal

from django.db import transaction

from django_tutoring_billing import conf
from django_tutoring_billing.exceptions import ExchangeRateLockedError
from django_tutoring_billing.models import MonthlyExchangeRate

logger = logging.getLogger(__name__)


@transaction.atomic
def set_rate_for_month(month: int, year: int, rate, user=None, source='manual', notes='') -> MonthlyExchangeRate:
    """
    Create or update the rate for a month.

    Raises:
        ExchangeRateLockedError: If the month's rate is locked
        BillingValidationError: If the rate is out of range
    """
    record = MonthlyExchangeRate.objects.select_for_update().filter(month=month, year=year).first()
    if record is None:
        record = MonthlyExchangeRate(
            month=month,
            year=year,
            rate=MonthlyExchangeRate.validate_rate(rate),
            source=source,
            notes=notes,
            set_by=user,
        )
        record._record('create', user, newRate=str(record.rate))
        record.save()
        logger.info("Exchange rate for %s-%02d set to %s", year, month, record.rate)
        return record

    record.update_rate(rate, user=user, notes=notes)
    record.source = source
    record.save()
    logger.info("Exchange rate for %s-%02d updated to %s", year, month, record.rate)
    return record


@transaction.atomic
def lock_rate(month: int, year: int, user=None) -> MonthlyExchangeRate:
    record = MonthlyExchangeRate.objects.select_for_update().get(month=month, year=year)
    record.lock(user)
    record.save()
    return record


@transaction.atomic
def unlock_rate(month: int, year: int, user=None, reason='') -> MonthlyExchangeRate:
    record = MonthlyExchangeRate.objects.select_for_update().get(month=month, year=year)
    record.unlock(user, reason=reason)
    record.save()
    logger.warning("Exchange rate for %s-%02d unlocked: %s", year, month, reason)
    return record


def get_rate_for_month(month: int, year: int):
    """Return the recorded rate for the month, locked or not, or None."""
    return (
        MonthlyExchangeRate.objects.filter(month=month, year=year)
        .values_list('rate', flat=True)
        .first()
    )


def get_rate_for_new_invoice(month: int, year: int) -> Decimal:
    """
    Rate to stamp on an invoice being generated for the month.

    Falls back to TUTORING_BILLING_DEFAULT_EXCHANGE_RATE when the month
    has no record.

    Raises:
        ExchangeRateLockedError: If the month's record is locked
    """
    record = MonthlyExchangeRate.objects.filter(month=month, year=year).first()
    if record is None:
        return conf.get_default_exchange_rate()
    if record.locked:
        raise ExchangeRateLockedError(
            f"Exchange rate for {year}-{month:02d} is locked; unlock it before issuing new invoices"
        )
    return record.rate
