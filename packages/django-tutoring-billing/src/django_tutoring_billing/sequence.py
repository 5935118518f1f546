"""Invoice number allocation."""

from django.db import transaction

from django_tutoring_billing import conf
from django_tutoring_billing.models import Invoice, InvoiceSequence


PREFIXES = {
    Invoice.InvoiceType.GUARDIAN_INVOICE: 'INV',
    Invoice.InvoiceType.TEACHER_PAYMENT: 'PAY',
}


def next_invoice_number(invoice_type: str, year: int, month: int) -> str:
    """
    Allocate the next invoice number for a type and billing month.

    Uses select_for_update() so concurrent invoice creation never hands
    out the same number twice.

    Returns:
        The formatted number, e.g. "INV-202501-0001"
    """
    period = f"{year:04d}{month:02d}"
    with transaction.atomic():
        seq, _ = InvoiceSequence.objects.select_for_update().get_or_create(
            invoice_type=invoice_type,
            period=period,
            defaults={'prefix': PREFIXES.get(invoice_type, 'INV')},
        )
        seq.current_value += 1
        seq.save(update_fields=['current_value', 'updated_at'])
        return seq.format_value(conf.get_invoice_pad_width())
