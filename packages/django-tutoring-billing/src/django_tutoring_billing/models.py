"""Models for guardians, lessons, invoices and their reconciliation records.

Invoices are the only money documents. Child tables hold what used to be
embedded arrays: line items, adjustments, payment logs, delivery records
and the activity log. Hour balances live on Guardian and Student and are
backed by the immutable HourEntry ledger.
"""

from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from django_tutoring_billing import conf
from django_tutoring_billing.exceptions import (
    BillingValidationError,
    ExchangeRateLockedError,
    ImmutableRecordError,
    InvoiceStateError,
)
from django_tutoring_billing.money import ZERO, minutes_to_hours, round_currency


def money_field(**kwargs):
    """DecimalField with the precision used for every stored currency amount."""
    kwargs.setdefault('default', Decimal('0.00'))
    return models.DecimalField(max_digits=12, decimal_places=2, **kwargs)


def hours_field(**kwargs):
    kwargs.setdefault('default', Decimal('0.000'))
    return models.DecimalField(max_digits=10, decimal_places=3, **kwargs)


class TimeStampedModel(models.Model):
    """Abstract base model with created/updated timestamps."""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class SoftDeleteManager(models.Manager):
    """Manager that excludes soft-deleted objects by default."""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def with_deleted(self):
        return super().get_queryset()

    def deleted_only(self):
        return super().get_queryset().filter(deleted_at__isnull=False)


class BaseModel(TimeStampedModel):
    """Timestamps plus soft delete.

    Attributes:
        deleted_at: Timestamp when soft-deleted, None if active
        objects: Manager that excludes deleted records
        all_objects: Manager that includes all records
    """

    deleted_at = models.DateTimeField(null=True, blank=True)

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        abstract = True

    def delete(self, using=None, keep_parents=False):
        """Soft delete the object by setting deleted_at timestamp."""
        self.deleted_at = timezone.now()
        self.save(update_fields=['deleted_at', 'updated_at'])

    def restore(self):
        self.deleted_at = None
        self.save(update_fields=['deleted_at', 'updated_at'])

    @property
    def is_deleted(self):
        return self.deleted_at is not None


class TransferFeeMode(models.TextChoices):
    FIXED = 'fixed', 'Fixed amount'
    PERCENT = 'percent', 'Percent of subtotal'


class Guardian(BaseModel):
    """
    The paying party. Owns students and the aggregate hour balance.

    ``total_hours`` may go negative when lessons are taught before a
    top-up invoice is paid.
    """

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tutoring_guardian',
    )
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True, default='')

    total_hours = hours_field(help_text="Aggregate prepaid hours across all students")
    min_lesson_duration_minutes = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Follow-up threshold in minutes; falls back to TUTORING_BILLING_MIN_LESSON_MINUTES",
    )
    preferred_payment_method = models.CharField(max_length=30, blank=True, default='')
    hourly_rate = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Rate used for top-up items",
    )
    default_package_hours = models.DecimalField(
        max_digits=8,
        decimal_places=3,
        null=True,
        blank=True,
        help_text="Hours per refill line item",
    )
    transfer_fee_mode = models.CharField(
        max_length=10,
        choices=TransferFeeMode.choices,
        default=TransferFeeMode.FIXED,
    )
    transfer_fee_value = money_field()
    currency = models.CharField(max_length=3, blank=True, default='')

    class Meta:
        app_label = 'django_tutoring_billing'

    def __str__(self):
        return self.name

    @property
    def threshold_minutes(self) -> int:
        if self.min_lesson_duration_minutes is None:
            return conf.get_min_lesson_minutes()
        return self.min_lesson_duration_minutes

    @property
    def effective_hourly_rate(self) -> Decimal:
        if self.hourly_rate is None:
            return conf.get_default_hourly_rate()
        return self.hourly_rate

    @property
    def effective_package_hours(self) -> Decimal:
        if not self.default_package_hours:
            return conf.get_default_package_hours()
        return self.default_package_hours

    @property
    def effective_currency(self) -> str:
        return self.currency or conf.get_default_currency()


class Student(BaseModel):
    """A learner whose lessons are billed to a guardian."""

    guardian = models.ForeignKey(
        Guardian,
        on_delete=models.PROTECT,
        related_name='students',
    )
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100, blank=True, default='')
    email = models.EmailField(blank=True, default='')
    hours_remaining = hours_field()
    is_active = models.BooleanField(default=True)

    class Meta:
        app_label = 'django_tutoring_billing'

    def __str__(self):
        return self.full_name

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def remaining_minutes(self) -> Decimal:
        return self.hours_remaining * 60


class Lesson(TimeStampedModel):
    """
    A delivered (or scheduled) lesson that can be billed exactly once.

    ``billed_in_invoice`` is written only by the linker's compare-and-set
    in ``django_tutoring_billing.linking``.
    """

    guardian = models.ForeignKey(Guardian, on_delete=models.PROTECT, related_name='lessons')
    student = models.ForeignKey(Student, on_delete=models.PROTECT, related_name='lessons')
    teacher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='tutoring_lessons',
    )
    subject = models.CharField(max_length=100, blank=True, default='')
    scheduled_at = models.DateTimeField()
    duration_minutes = models.PositiveIntegerField()
    rate = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Hourly rate; falls back to the guardian's rate",
    )
    attended = models.BooleanField(default=True)

    billed_in_invoice = models.ForeignKey(
        'Invoice',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='billed_lessons',
    )
    billed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['scheduled_at', 'pk']
        constraints = [
            models.CheckConstraint(
                condition=Q(duration_minutes__gt=0),
                name='lesson_duration_positive',
            ),
        ]

    def __str__(self):
        return f"Lesson {self.pk} ({self.student_id} @ {self.scheduled_at:%Y-%m-%d})"

    @property
    def teacher_name(self) -> str:
        if self.teacher is None:
            return ''
        return self.teacher.get_full_name() or self.teacher.get_username()


class InvoiceQuerySet(models.QuerySet):
    """Custom queryset for Invoice model."""

    def live(self):
        """Invoices that still hold their lessons: not cancelled, refunded or deleted."""
        return self.filter(deleted_at__isnull=True).exclude(status__in=Invoice.TERMINAL_STATUSES)

    def awaiting_payment(self):
        return self.live().filter(status__in=Invoice.PAYABLE_STATUSES)

    def overdue(self, now=None):
        """Invoices past due with money outstanding."""
        now = now or timezone.now()
        return self.awaiting_payment().filter(
            due_date__lt=now,
            paid_amount__lt=F('total'),
        ).exclude(status=Invoice.Status.DRAFT)


class InvoiceManager(SoftDeleteManager.from_queryset(InvoiceQuerySet)):
    pass


class Invoice(BaseModel):
    """
    Guardian invoice (or teacher payment statement).

    Derived figures (subtotal, tax, transfer fee amount, total,
    adjusted_total, hours_covered) are written only by
    ``services.recalculate_totals``. ``paid_amount`` always equals the sum
    of the invoice's payment logs.

    Writes go through ``services.save_invoice`` which bumps ``version``
    and raises StaleWriteConflict when another writer got there first.
    """

    class Status(models.TextChoices):
        DRAFT = 'draft', 'Draft'
        PENDING = 'pending', 'Pending'
        SENT = 'sent', 'Sent'
        PARTIALLY_PAID = 'partially_paid', 'Partially paid'
        PAID = 'paid', 'Paid'
        OVERDUE = 'overdue', 'Overdue'
        CANCELLED = 'cancelled', 'Cancelled'
        REFUNDED = 'refunded', 'Refunded'

    class InvoiceType(models.TextChoices):
        GUARDIAN_INVOICE = 'guardian_invoice', 'Guardian invoice'
        TEACHER_PAYMENT = 'teacher_payment', 'Teacher payment'

    class GenerationSource(models.TextChoices):
        MANUAL = 'manual', 'Manual'
        AUTO_MONTHLY = 'auto-monthly', 'Automatic (monthly)'
        AUTO_PAYG = 'auto-payg', 'Automatic (pay as you go)'
        FIRST_LESSON = 'first-lesson', 'First lesson'

    class TransferFeeSource(models.TextChoices):
        GUARDIAN_DEFAULT = 'guardian_default', 'Guardian default'
        MANUAL = 'manual', 'Manual'

    TERMINAL_STATUSES = (Status.CANCELLED, Status.REFUNDED)
    PAYABLE_STATUSES = (
        Status.DRAFT,
        Status.PENDING,
        Status.SENT,
        Status.OVERDUE,
        Status.PARTIALLY_PAID,
    )
    CANCELLABLE_STATUSES = (Status.DRAFT, Status.PENDING, Status.SENT)

    invoice_number = models.CharField(max_length=32, unique=True)
    invoice_type = models.CharField(
        max_length=20,
        choices=InvoiceType.choices,
        default=InvoiceType.GUARDIAN_INVOICE,
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.DRAFT,
        db_index=True,
    )
    generation_source = models.CharField(
        max_length=20,
        choices=GenerationSource.choices,
        default=GenerationSource.MANUAL,
    )
    generation_reason = models.CharField(
        max_length=50,
        blank=True,
        default='',
        help_text="Why the invoice was generated, e.g. threshold_followup",
    )

    guardian = models.ForeignKey(Guardian, on_delete=models.PROTECT, related_name='invoices')

    # Billing period: half-open [start, end)
    billing_period_start = models.DateTimeField()
    billing_period_end = models.DateTimeField()
    billing_month = models.PositiveSmallIntegerField()
    billing_year = models.PositiveIntegerField()
    due_date = models.DateTimeField()

    currency = models.CharField(max_length=3, default='USD')
    exchange_rate = models.DecimalField(max_digits=12, decimal_places=4, default=Decimal('1'))

    # Authored inputs
    discount = money_field()
    discount_reason = models.CharField(max_length=255, blank=True, default='')
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    late_fee = money_field()
    late_fee_applied = models.BooleanField(default=False)
    late_fee_applied_at = models.DateTimeField(null=True, blank=True)
    coverage = models.JSONField(
        default=dict,
        blank=True,
        help_text="waiveTransferFee, maxHours, notes",
    )

    # Derived figures
    subtotal = money_field()
    tax = money_field()
    total = money_field()
    adjusted_total = money_field()
    hours_covered = hours_field()
    needs_review = models.BooleanField(default=False)
    review_note = models.CharField(max_length=255, blank=True, default='')

    # Settlement
    paid_amount = money_field()
    tip = money_field()
    paid_at = models.DateTimeField(null=True, blank=True)

    # Transfer fee
    transfer_fee_mode = models.CharField(
        max_length=10,
        choices=TransferFeeMode.choices,
        default=TransferFeeMode.FIXED,
    )
    transfer_fee_value = money_field()
    transfer_fee_amount = money_field()
    transfer_fee_waived = models.BooleanField(default=False)
    transfer_fee_waived_by_coverage = models.BooleanField(default=False)
    transfer_fee_source = models.CharField(
        max_length=20,
        choices=TransferFeeSource.choices,
        default=TransferFeeSource.GUARDIAN_DEFAULT,
    )
    transfer_fee_applied_at = models.DateTimeField(null=True, blank=True)

    notes = models.TextField(blank=True, default='')
    internal_notes = models.TextField(blank=True, default='')

    version = models.PositiveIntegerField(default=1)

    sent_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True, default='')
    deletion_reason = models.TextField(blank=True, default='')

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    deleted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )

    objects = InvoiceManager()
    all_objects = InvoiceQuerySet.as_manager()

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['-created_at', '-pk']
        indexes = [
            models.Index(fields=['guardian', 'status'], name='invoice_guardian_status_idx'),
            models.Index(fields=['billing_year', 'billing_month'], name='invoice_billing_month_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total__gte=0),
                name='invoice_total_non_negative',
            ),
            models.CheckConstraint(
                condition=Q(paid_amount__gte=0) & Q(paid_amount__lte=F('total')),
                name='invoice_paid_within_total',
            ),
            models.CheckConstraint(
                condition=Q(billing_period_end__gt=F('billing_period_start')),
                name='invoice_period_ordered',
            ),
        ]

    def __str__(self):
        return f"{self.invoice_number} ({self.status})"

    def delete(self, using=None, keep_parents=False):
        raise InvoiceStateError(
            "Invoices are deleted through services.delete_invoice() so lessons "
            "and hours are released"
        )

    @property
    def remaining_balance(self) -> Decimal:
        return max(ZERO, self.total - self.paid_amount)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_live(self) -> bool:
        """True while the invoice holds its lessons."""
        return not self.is_deleted and not self.is_terminal

    def is_overdue(self, now=None) -> bool:
        now = now or timezone.now()
        return (
            self.status in (self.Status.SENT, self.Status.PENDING, self.Status.PARTIALLY_PAID)
            and not self.is_deleted
            and self.due_date < now
            and self.remaining_balance > 0
        )

    def effective_status(self, now=None) -> str:
        """Stored status, reported as overdue once past due with money outstanding."""
        if self.is_overdue(now):
            return self.Status.OVERDUE
        return self.status

    @property
    def transfer_fee(self) -> dict:
        return {
            'mode': self.transfer_fee_mode,
            'value': self.transfer_fee_value,
            'amount': self.transfer_fee_amount,
            'waived': self.transfer_fee_waived,
            'waivedByCoverage': self.transfer_fee_waived_by_coverage,
            'source': self.transfer_fee_source,
        }

    @property
    def guardian_financial(self) -> dict:
        return {'transferFee': self.transfer_fee}

    @property
    def billing_period(self) -> dict:
        return {
            'startDate': self.billing_period_start,
            'endDate': self.billing_period_end,
            'month': self.billing_month,
            'year': self.billing_year,
        }

    def quantize(self, value) -> Decimal:
        return round_currency(value, self.currency)


class InvoiceLineItem(models.Model):
    """One billable row: a lesson, or a top-up of prepaid hours."""

    class Kind(models.TextChoices):
        LESSON = 'lesson', 'Lesson'
        TOP_UP = 'top_up', 'Hour top-up'

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='line_items')
    position = models.PositiveIntegerField(default=0)
    kind = models.CharField(max_length=10, choices=Kind.choices, default=Kind.LESSON)
    lesson = models.ForeignKey(
        Lesson,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='invoice_line_items',
    )
    description = models.CharField(max_length=255, blank=True, default='')
    date = models.DateTimeField(null=True, blank=True)
    duration_minutes = models.PositiveIntegerField(default=0)
    rate = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Explicit amount; derived from rate and duration when empty",
    )

    student = models.ForeignKey(
        Student,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='invoice_line_items',
    )
    student_name = models.CharField(max_length=255, blank=True, default='')
    teacher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    teacher_name = models.CharField(max_length=255, blank=True, default='')
    attended = models.BooleanField(default=True)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['position', 'pk']
        constraints = [
            models.UniqueConstraint(
                fields=['invoice', 'lesson'],
                condition=Q(lesson__isnull=False),
                name='line_item_lesson_once_per_invoice',
            ),
        ]

    def __str__(self):
        return f"{self.description or self.kind} ({self.duration_minutes} min)"

    @property
    def hours(self) -> Decimal:
        return minutes_to_hours(self.duration_minutes)


class InvoiceAdjustment(models.Model):
    """Signed correction to an invoice. Positive amounts credit the guardian."""

    class AppliesTo(models.TextChoices):
        GUARDIAN = 'guardian', 'Guardian'
        TEACHER = 'teacher', 'Teacher'
        BOTH = 'both', 'Both'

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='adjustments')
    reason = models.CharField(max_length=255)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    applies_to = models.CharField(
        max_length=10,
        choices=AppliesTo.choices,
        default=AppliesTo.GUARDIAN,
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['created_at', 'pk']

    def __str__(self):
        return f"{self.reason}: {self.amount}"


class ImmutableMixin:
    """Rows that can be inserted but never updated."""

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError(
                f"{type(self).__name__} {self.pk} is immutable. Record a new entry instead."
            )
        super().save(*args, **kwargs)


class PaymentLog(ImmutableMixin, models.Model):
    """
    Append-only money movement on an invoice.

    Payments are positive, refunds negative. The sum of an invoice's
    logs equals its paid_amount.
    """

    class Method(models.TextChoices):
        MANUAL = 'manual', 'Manual'
        CREDIT_CARD = 'credit_card', 'Credit card'
        BANK_TRANSFER = 'bank_transfer', 'Bank transfer'
        PAYPAL = 'paypal', 'PayPal'
        CASH = 'cash', 'Cash'
        CHECK = 'check', 'Check'
        REFUND = 'refund', 'Refund'

    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name='payment_logs')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    tip = money_field()
    hours = hours_field(help_text="Hours restored by a refund")
    method = models.CharField(max_length=20, choices=Method.choices, default=Method.MANUAL)
    transaction_id = models.CharField(max_length=255, blank=True, default='')
    processed_at = models.DateTimeField(default=timezone.now)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    note = models.TextField(blank=True, default='')
    snapshot = models.JSONField(default=dict, blank=True)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['processed_at', 'pk']
        constraints = [
            models.CheckConstraint(
                condition=~Q(amount=0),
                name='payment_log_amount_non_zero',
            ),
            models.UniqueConstraint(
                fields=['invoice', 'transaction_id'],
                condition=Q(amount__gt=0) & ~Q(transaction_id=''),
                name='payment_log_transaction_once',
            ),
        ]

    def __str__(self):
        return f"{self.method} {self.amount} on {self.invoice_id}"

    @property
    def is_refund(self) -> bool:
        return self.amount < 0


class DeliveryRecord(models.Model):
    """One attempt at sending an invoice through a channel."""

    class Channel(models.TextChoices):
        EMAIL = 'email', 'Email'
        PAYPAL = 'paypal', 'PayPal'
        WHATSAPP = 'whatsapp', 'WhatsApp'
        MANUAL = 'manual', 'Manual'

    class Status(models.TextChoices):
        QUEUED = 'queued', 'Queued'
        SENT = 'sent', 'Sent'
        FAILED = 'failed', 'Failed'

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='deliveries')
    channel = models.CharField(max_length=20, choices=Channel.choices)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.SENT)
    attempt = models.PositiveSmallIntegerField(default=1)
    template_id = models.CharField(max_length=100, blank=True, default='')
    message_hash = models.CharField(max_length=128, blank=True, default='')
    meta = models.JSONField(default=dict, blank=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['created_at', 'pk']

    def __str__(self):
        return f"{self.channel} #{self.attempt}: {self.status}"


class HourEntry(ImmutableMixin, models.Model):
    """
    Immutable hour ledger row.

    Balances on Guardian and Student are caches of these entries; the
    ``check_hour_balances`` command compares the two.
    """

    class EntryType(models.TextChoices):
        DEBIT = 'debit', 'Debit'
        CREDIT = 'credit', 'Credit'

    class Kind(models.TextChoices):
        LESSON_DEBIT = 'lesson_debit', 'Lesson billed'
        REFUND_CREDIT = 'refund_credit', 'Refund restored hours'
        CANCELLATION_CREDIT = 'cancellation_credit', 'Invoice cancelled'
        PURCHASE_CREDIT = 'purchase_credit', 'Hours purchased'
        PURCHASE_REVERSAL = 'purchase_reversal', 'Purchase refunded'
        MANUAL_ADJUSTMENT = 'manual_adjustment', 'Manual adjustment'

    guardian = models.ForeignKey(Guardian, on_delete=models.PROTECT, related_name='hour_entries')
    student = models.ForeignKey(
        Student,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='hour_entries',
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='hour_entries',
    )
    entry_type = models.CharField(max_length=10, choices=EntryType.choices)
    kind = models.CharField(max_length=30, choices=Kind.choices)
    hours = models.DecimalField(max_digits=10, decimal_places=3)
    note = models.CharField(max_length=255, blank=True, default='')
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['created_at', 'pk']
        verbose_name_plural = 'hour entries'
        constraints = [
            models.CheckConstraint(
                condition=Q(hours__gt=0),
                name='hour_entry_hours_positive',
            ),
        ]

    def __str__(self):
        return f"{self.entry_type} {self.hours}h ({self.kind})"

    @property
    def signed_hours(self) -> Decimal:
        if self.entry_type == self.EntryType.DEBIT:
            return -self.hours
        return self.hours


class MonthlyExchangeRate(TimeStampedModel):
    """
    Exchange rate for one billing month.

    Locked rates belong to invoices already issued and can no longer be
    changed; unlock first, with a reason that lands in the history.
    """

    MIN_RATE = Decimal('0.01')
    MAX_RATE = Decimal('1000')

    month = models.PositiveSmallIntegerField()
    year = models.PositiveIntegerField()
    rate = models.DecimalField(max_digits=12, decimal_places=4)
    source = models.CharField(max_length=100, blank=True, default='manual')
    notes = models.TextField(blank=True, default='')
    locked = models.BooleanField(default=False)
    locked_at = models.DateTimeField(null=True, blank=True)
    locked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    set_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    modification_history = models.JSONField(default=list, blank=True)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['-year', '-month']
        constraints = [
            models.UniqueConstraint(fields=['month', 'year'], name='exchange_rate_month_once'),
            models.CheckConstraint(
                condition=Q(month__gte=1) & Q(month__lte=12),
                name='exchange_rate_month_valid',
            ),
        ]

    def __str__(self):
        return f"{self.year}-{self.month:02d}: {self.rate}"

    @classmethod
    def validate_rate(cls, rate) -> Decimal:
        rate = Decimal(str(rate))
        if rate < cls.MIN_RATE or rate > cls.MAX_RATE:
            raise BillingValidationError(
                f"Exchange rate must be between {cls.MIN_RATE} and {cls.MAX_RATE}, got {rate}"
            )
        return rate

    def _record(self, action, user, **extra):
        entry = {
            'action': action,
            'at': timezone.now().isoformat(),
            'by': getattr(user, 'pk', None),
        }
        entry.update(extra)
        self.modification_history = [*self.modification_history, entry]

    def update_rate(self, new_rate, user=None, notes=''):
        if self.locked:
            raise ExchangeRateLockedError(
                f"Exchange rate for {self.year}-{self.month:02d} is locked"
            )
        new_rate = self.validate_rate(new_rate)
        self._record(
            'update',
            user,
            oldRate=str(self.rate),
            newRate=str(new_rate),
            notes=notes,
        )
        self.rate = new_rate
        self.set_by = user
        if notes:
            self.notes = notes

    def lock(self, user=None):
        if self.locked:
            return
        self.locked = True
        self.locked_at = timezone.now()
        self.locked_by = user
        self._record('lock', user)

    def unlock(self, user=None, reason=''):
        if not reason:
            raise BillingValidationError("Unlocking an exchange rate requires a reason")
        self.locked = False
        self.locked_at = None
        self.locked_by = None
        self._record('unlock', user, reason=reason)


class InvoiceSequence(models.Model):
    """Per type and billing month counter behind invoice numbers."""

    invoice_type = models.CharField(max_length=20)
    period = models.CharField(max_length=6, help_text="YYYYMM")
    prefix = models.CharField(max_length=10)
    current_value = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        app_label = 'django_tutoring_billing'
        constraints = [
            models.UniqueConstraint(
                fields=['invoice_type', 'period'],
                name='invoice_sequence_scope_once',
            ),
        ]

    def __str__(self):
        return f"{self.invoice_type} {self.period}: {self.current_value}"

    def format_value(self, pad_width: int) -> str:
        return f"{self.prefix}-{self.period}-{str(self.current_value).zfill(pad_width)}"


class InvoiceActivity(models.Model):
    """Audit trail entry for an invoice."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='activity')
    action = models.CharField(max_length=50)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    note = models.TextField(blank=True, default='')
    diff = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['created_at', 'pk']
        verbose_name_plural = 'invoice activity'

    def __str__(self):
        return f"{self.action} on {self.invoice_id}"


class ReconciliationIncidentQuerySet(models.QuerySet):

    def open(self):
        return self.filter(resolved_at__isnull=True)

    def blocking(self, guardian_id=None, invoice_id=None):
        """Open incidents for the guardian, or for the specific invoice."""
        query = Q()
        if guardian_id is not None:
            query |= Q(guardian_id=guardian_id)
        if invoice_id is not None:
            query |= Q(invoice_id=invoice_id)
        if not query:
            return self.none()
        return self.open().filter(query)


class ReconciliationIncident(TimeStampedModel):
    """A money/hours update that could not be completed consistently."""

    guardian = models.ForeignKey(
        Guardian,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='reconciliation_incidents',
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='reconciliation_incidents',
    )
    operation = models.CharField(max_length=50)
    error_code = models.CharField(max_length=100, blank=True, default='')
    error_message = models.TextField(blank=True, default='')
    details = models.JSONField(default=dict, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    resolution_note = models.TextField(blank=True, default='')

    objects = ReconciliationIncidentQuerySet.as_manager()

    class Meta:
        app_label = 'django_tutoring_billing'
        ordering = ['-created_at']

    def __str__(self):
        state = "open" if self.is_open else "resolved"
        return f"{self.operation} ({state}): {self.error_message[:50]}"

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None
