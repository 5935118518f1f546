"""Decorators for invoice write operations."""

import functools
import logging

from django_tutoring_billing import conf
from django_tutoring_billing.exceptions import StaleWriteConflict

logger = logging.getLogger(__name__)


def retry_on_stale_write(func=None, *, attempts=None):
    """
    Re-run an operation that lost an optimistic-concurrency race.

    The wrapped function must open its own transaction and reload the
    invoice each time it runs. After ``attempts`` tries (default
    TUTORING_BILLING_STALE_WRITE_RETRIES) the last StaleWriteConflict
    propagates.

    Usage:
        @retry_on_stale_write
        def process_payment(invoice_id, amount, ...):
            ...
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            limit = attempts or conf.get_stale_write_retries()
            for attempt in range(1, limit + 1):
                try:
                    return func(*args, **kwargs)
                except StaleWriteConflict as exc:
                    if attempt >= limit:
                        raise
                    logger.warning(
                        "%s hit a stale write on invoice %s (attempt %d/%d), retrying",
                        func.__name__,
                        exc.invoice_id,
                        attempt,
                        limit,
                    )
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
