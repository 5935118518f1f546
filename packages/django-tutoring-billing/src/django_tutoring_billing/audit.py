"""Invoice activity trail and reconciliation incident handling.

    from django_tutoring_billing.audit import log_activity

    log_activity(invoice, 'payment_recorded', actor=request.user,
                 diff={'paidAmount': {'old': '0.00', 'new': '40.00'}})
"""

import logging

from django.db import transaction
from django.utils import timezone

from django_tutoring_billing.exceptions import ReconciliationBlocked
from django_tutoring_billing.models import InvoiceActivity, ReconciliationIncident

logger = logging.getLogger(__name__)


def _actor_or_none(actor):
    if actor is None or not getattr(actor, 'is_authenticated', False):
        return None
    return actor


def log_activity(invoice, action, actor=None, note='', diff=None):
    """Append an entry to the invoice's activity trail.

    Args:
        invoice: The invoice acted on
        action: Short verb, e.g. created, status_changed, refund_recorded
        actor: User who performed the action (optional)
        note: Free-text note shown to staff
        diff: Dict of changes: {"field": {"old": x, "new": y}}

    Returns:
        InvoiceActivity instance
    """
    return InvoiceActivity.objects.create(
        invoice=invoice,
        action=action,
        actor=_actor_or_none(actor),
        note=note or '',
        diff=diff or {},
    )


def find_blocking_incident(guardian_id=None, invoice_id=None):
    return ReconciliationIncident.objects.blocking(guardian_id, invoice_id).first()


def ensure_not_blocked(guardian_id=None, invoice_id=None, operation=''):
    """Raise ReconciliationBlocked while an incident for the pair is unresolved."""
    incident = find_blocking_incident(guardian_id, invoice_id)
    if incident is not None:
        raise ReconciliationBlocked(
            f"{operation or 'Operation'} blocked by unresolved reconciliation "
            f"incident {incident.pk}",
            invoice_id=invoice_id,
            guardian_id=guardian_id,
            operation=operation,
        )


def escalate_reconciliation_failure(exc, operation, guardian_id=None, invoice_id=None, details=None):
    """
    Record a ReconciliationFatal so it is visible to operators.

    Must be called after the failed unit of work has rolled back; the
    incident is written in its own transaction so it persists.

    Returns:
        ReconciliationIncident instance
    """
    cause = exc.__cause__ or exc
    logger.critical(
        "Reconciliation failure during %s (guardian=%s, invoice=%s): %s",
        operation,
        guardian_id,
        invoice_id,
        cause,
        exc_info=exc,
    )
    with transaction.atomic():
        return ReconciliationIncident.objects.create(
            guardian_id=guardian_id,
            invoice_id=invoice_id,
            operation=operation,
            error_code=type(cause).__name__,
            error_message=str(cause),
            details=details or {},
        )


def resolve_incident(incident, actor=None, note=''):
    """Close an incident, unblocking automatic operations for its guardian/invoice."""
    if not incident.is_open:
        return incident
    incident.resolved_at = timezone.now()
    incident.resolved_by = _actor_or_none(actor)
    incident.resolution_note = note
    incident.save(update_fields=['resolved_at', 'resolved_by', 'resolution_note', 'updated_at'])
    logger.info("Reconciliation incident %s resolved", incident.pk)
    return incident
