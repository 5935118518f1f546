"""Django Tutoring Billing - invoices, payments and hour balances for tutoring platforms."""

__version__ = "0.1.0"

__all__ = [
    # Models
    "Guardian",
    "Student",
    "Lesson",
    "Invoice",
    "InvoiceLineItem",
    "PaymentLog",
    "HourEntry",
    "MonthlyExchangeRate",
    # Services
    "create_invoice",
    "recalculate_totals",
    "process_payment",
    "record_invoice_refund",
    "RefundRequest",
    "ensure_next_invoice_if_below_threshold",
    "create_zero_hour_invoice",
    "add_lessons_to_invoice",
    "remove_lesson_from_invoice",
    "build_export_snapshot",
    # Engine
    "compute_totals",
    # Exceptions
    "BillingError",
    "BillingValidationError",
    "InvalidRefundAmount",
    "DoubleBillingConflict",
    "StaleWriteConflict",
    "ReconciliationFatal",
]


def __getattr__(name):
    """Lazy import to avoid AppRegistryNotReady errors."""
    if name in ("Guardian", "Student", "Lesson", "Invoice", "InvoiceLineItem",
                "PaymentLog", "HourEntry", "MonthlyExchangeRate"):
        from django_tutoring_billing import models
        return getattr(models, name)
    if name in ("create_invoice", "recalculate_totals", "process_payment",
                "record_invoice_refund", "RefundRequest"):
        from django_tutoring_billing import services
        return getattr(services, name)
    if name in ("ensure_next_invoice_if_below_threshold", "create_zero_hour_invoice"):
        from django_tutoring_billing import followup
        return getattr(followup, name)
    if name in ("add_lessons_to_invoice", "remove_lesson_from_invoice"):
        from django_tutoring_billing import editing
        return getattr(editing, name)
    if name == "build_export_snapshot":
        from django_tutoring_billing import export
        return getattr(export, name)
    if name == "compute_totals":
        from django_tutoring_billing import totals
        return getattr(totals, name)
    if name in ("BillingError", "BillingValidationError", "InvalidRefundAmount",
                "DoubleBillingConflict", "StaleWriteConflict", "ReconciliationFatal"):
        from django_tutoring_billing import exceptions
        return getattr(exceptions, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
