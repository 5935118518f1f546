"""Exceptions for django-tutoring-billing."""


class BillingError(Exception):
    """Base exception for billing errors."""
    pass


class BillingConfigError(BillingError):
    """Raised when a TUTORING_BILLING_* setting is invalid."""
    pass


class BillingValidationError(BillingError):
    """Raised when caller input is rejected before any state is touched."""
    pass


class InvalidRefundAmount(BillingValidationError):
    """Raised when a refund exceeds what was paid or what was debited."""
    pass


class InvoiceStateError(BillingError):
    """Raised when an operation is not allowed in the invoice's current status."""
    pass


class ExchangeRateLockedError(BillingError):
    """Raised when modifying, or issuing new invoices against, a locked rate."""
    pass


class StaleWriteConflict(BillingError):
    """Raised when an invoice changed underneath a read-modify-write cycle."""

    def __init__(self, message, invoice_id=None):
        super().__init__(message)
        self.invoice_id = invoice_id


class DoubleBillingConflict(BillingError):
    """Raised when a lesson is already billed by another live invoice."""

    def __init__(self, lesson_id, existing_invoice_number, requested_invoice_number):
        self.lesson_id = lesson_id
        self.existing_invoice_number = existing_invoice_number
        self.requested_invoice_number = requested_invoice_number
        super().__init__(
            f"Lesson {lesson_id} is already billed in invoice "
            f"{existing_invoice_number}; cannot bill it again in "
            f"{requested_invoice_number}"
        )


class ReconciliationFatal(BillingError):
    """Raised when money and hour balances could not be kept consistent.

    The failed unit of work is rolled back and an incident is recorded;
    automatic operations for the guardian/invoice pair stay blocked until
    the incident is resolved.
    """

    def __init__(self, message, invoice_id=None, guardian_id=None, operation=''):
        super().__init__(message)
        self.invoice_id = invoice_id
        self.guardian_id = guardian_id
        self.operation = operation


class ReconciliationBlocked(ReconciliationFatal):
    """Raised when an unresolved reconciliation incident blocks an operation."""
    pass


class ImmutableRecordError(BillingError):
    """Raised when updating an append-only record (payment log, hour entry)."""
    pass
