# Generated manually for standalone django-tutoring-billing package

from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Guardian",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("name", models.CharField(max_length=255)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                (
                    "total_hours",
                    models.DecimalField(
                        decimal_places=3,
                        default=Decimal("0.000"),
                        help_text="Aggregate prepaid hours across all students",
                        max_digits=10,
                    ),
                ),
                (
                    "min_lesson_duration_minutes",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Follow-up threshold in minutes; falls back to TUTORING_BILLING_MIN_LESSON_MINUTES",
                        null=True,
                    ),
                ),
                ("preferred_payment_method", models.CharField(blank=True, default="", max_length=30)),
                (
                    "hourly_rate",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Rate used for top-up items",
                        max_digits=10,
                        null=True,
                    ),
                ),
                (
                    "default_package_hours",
                    models.DecimalField(
                        blank=True,
                        decimal_places=3,
                        help_text="Hours per refill line item",
                        max_digits=8,
                        null=True,
                    ),
                ),
                (
                    "transfer_fee_mode",
                    models.CharField(
                        choices=[("fixed", "Fixed amount"), ("percent", "Percent of subtotal")],
                        default="fixed",
                        max_length=10,
                    ),
                ),
                ("transfer_fee_value", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("currency", models.CharField(blank=True, default="", max_length=3)),
                (
                    "user",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="tutoring_guardian",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="Student",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("first_name", models.CharField(max_length=100)),
                ("last_name", models.CharField(blank=True, default="", max_length=100)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                ("hours_remaining", models.DecimalField(decimal_places=3, default=Decimal("0.000"), max_digits=10)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "guardian",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="students",
                        to="django_tutoring_billing.guardian",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("invoice_number", models.CharField(max_length=32, unique=True)),
                (
                    "invoice_type",
                    models.CharField(
                        choices=[("guardian_invoice", "Guardian invoice"), ("teacher_payment", "Teacher payment")],
                        default="guardian_invoice",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("pending", "Pending"),
                            ("sent", "Sent"),
                            ("partially_paid", "Partially paid"),
                            ("paid", "Paid"),
                            ("overdue", "Overdue"),
                            ("cancelled", "Cancelled"),
                            ("refunded", "Refunded"),
                        ],
                        db_index=True,
                        default="draft",
                        max_length=20,
                    ),
                ),
                (
                    "generation_source",
                    models.CharField(
                        choices=[
                            ("manual", "Manual"),
                            ("auto-monthly", "Automatic (monthly)"),
                            ("auto-payg", "Automatic (pay as you go)"),
                            ("first-lesson", "First lesson"),
                        ],
                        default="manual",
                        max_length=20,
                    ),
                ),
                (
                    "generation_reason",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Why the invoice was generated, e.g. threshold_followup",
                        max_length=50,
                    ),
                ),
                ("billing_period_start", models.DateTimeField()),
                ("billing_period_end", models.DateTimeField()),
                ("billing_month", models.PositiveSmallIntegerField()),
                ("billing_year", models.PositiveIntegerField()),
                ("due_date", models.DateTimeField()),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("exchange_rate", models.DecimalField(decimal_places=4, default=Decimal("1"), max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("discount_reason", models.CharField(blank=True, default="", max_length=255)),
                ("tax_rate", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=5)),
                ("late_fee", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("late_fee_applied", models.BooleanField(default=False)),
                ("late_fee_applied_at", models.DateTimeField(blank=True, null=True)),
                ("coverage", models.JSONField(blank=True, default=dict, help_text="waiveTransferFee, maxHours, notes")),
                ("subtotal", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("tax", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("total", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("adjusted_total", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("hours_covered", models.DecimalField(decimal_places=3, default=Decimal("0.000"), max_digits=10)),
                ("needs_review", models.BooleanField(default=False)),
                ("review_note", models.CharField(blank=True, default="", max_length=255)),
                ("paid_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("tip", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                (
                    "transfer_fee_mode",
                    models.CharField(
                        choices=[("fixed", "Fixed amount"), ("percent", "Percent of subtotal")],
                        default="fixed",
                        max_length=10,
                    ),
                ),
                ("transfer_fee_value", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("transfer_fee_amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("transfer_fee_waived", models.BooleanField(default=False)),
                ("transfer_fee_waived_by_coverage", models.BooleanField(default=False)),
                (
                    "transfer_fee_source",
                    models.CharField(
                        choices=[("guardian_default", "Guardian default"), ("manual", "Manual")],
                        default="guardian_default",
                        max_length=20,
                    ),
                ),
                ("transfer_fee_applied_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("internal_notes", models.TextField(blank=True, default="")),
                ("version", models.PositiveIntegerField(default=1)),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, default="")),
                ("deletion_reason", models.TextField(blank=True, default="")),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "deleted_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "guardian",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="django_tutoring_billing.guardian",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-pk"],
                "indexes": [
                    models.Index(fields=["guardian", "status"], name="invoice_guardian_status_idx"),
                    models.Index(fields=["billing_year", "billing_month"], name="invoice_billing_month_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("total__gte", 0)),
                        name="invoice_total_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("paid_amount__gte", 0),
                            ("paid_amount__lte", models.F("total")),
                        ),
                        name="invoice_paid_within_total",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("billing_period_end__gt", models.F("billing_period_start"))),
                        name="invoice_period_ordered",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Lesson",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("subject", models.CharField(blank=True, default="", max_length=100)),
                ("scheduled_at", models.DateTimeField()),
                ("duration_minutes", models.PositiveIntegerField()),
                (
                    "rate",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Hourly rate; falls back to the guardian's rate",
                        max_digits=10,
                        null=True,
                    ),
                ),
                ("attended", models.BooleanField(default=True)),
                ("billed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "billed_in_invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="billed_lessons",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
                (
                    "guardian",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="lessons",
                        to="django_tutoring_billing.guardian",
                    ),
                ),
                (
                    "student",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="lessons",
                        to="django_tutoring_billing.student",
                    ),
                ),
                (
                    "teacher",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="tutoring_lessons",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["scheduled_at", "pk"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("duration_minutes__gt", 0)),
                        name="lesson_duration_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceLineItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("position", models.PositiveIntegerField(default=0)),
                (
                    "kind",
                    models.CharField(
                        choices=[("lesson", "Lesson"), ("top_up", "Hour top-up")],
                        default="lesson",
                        max_length=10,
                    ),
                ),
                ("description", models.CharField(blank=True, default="", max_length=255)),
                ("date", models.DateTimeField(blank=True, null=True)),
                ("duration_minutes", models.PositiveIntegerField(default=0)),
                ("rate", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                (
                    "amount",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Explicit amount; derived from rate and duration when empty",
                        max_digits=12,
                        null=True,
                    ),
                ),
                ("student_name", models.CharField(blank=True, default="", max_length=255)),
                ("teacher_name", models.CharField(blank=True, default="", max_length=255)),
                ("attended", models.BooleanField(default=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="line_items",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
                (
                    "lesson",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoice_line_items",
                        to="django_tutoring_billing.lesson",
                    ),
                ),
                (
                    "student",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="invoice_line_items",
                        to="django_tutoring_billing.student",
                    ),
                ),
                (
                    "teacher",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["position", "pk"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("lesson__isnull", False)),
                        fields=("invoice", "lesson"),
                        name="line_item_lesson_once_per_invoice",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceAdjustment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("reason", models.CharField(max_length=255)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "applies_to",
                    models.CharField(
                        choices=[("guardian", "Guardian"), ("teacher", "Teacher"), ("both", "Both")],
                        default="guardian",
                        max_length=10,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="adjustments",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "pk"],
            },
        ),
        migrations.CreateModel(
            name="PaymentLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("tip", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                (
                    "hours",
                    models.DecimalField(
                        decimal_places=3,
                        default=Decimal("0.000"),
                        help_text="Hours restored by a refund",
                        max_digits=10,
                    ),
                ),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("manual", "Manual"),
                            ("credit_card", "Credit card"),
                            ("bank_transfer", "Bank transfer"),
                            ("paypal", "PayPal"),
                            ("cash", "Cash"),
                            ("check", "Check"),
                            ("refund", "Refund"),
                        ],
                        default="manual",
                        max_length=20,
                    ),
                ),
                ("transaction_id", models.CharField(blank=True, default="", max_length=255)),
                ("processed_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("note", models.TextField(blank=True, default="")),
                ("snapshot", models.JSONField(blank=True, default=dict)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_logs",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["processed_at", "pk"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount", 0), _negated=True),
                        name="payment_log_amount_non_zero",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("amount__gt", 0), models.Q(("transaction_id", ""), _negated=True)),
                        fields=("invoice", "transaction_id"),
                        name="payment_log_transaction_once",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "channel",
                    models.CharField(
                        choices=[
                            ("email", "Email"),
                            ("paypal", "PayPal"),
                            ("whatsapp", "WhatsApp"),
                            ("manual", "Manual"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("queued", "Queued"), ("sent", "Sent"), ("failed", "Failed")],
                        default="sent",
                        max_length=10,
                    ),
                ),
                ("attempt", models.PositiveSmallIntegerField(default=1)),
                ("template_id", models.CharField(blank=True, default="", max_length=100)),
                ("message_hash", models.CharField(blank=True, default="", max_length=128)),
                ("meta", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="deliveries",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at", "pk"],
            },
        ),
        migrations.CreateModel(
            name="HourEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "entry_type",
                    models.CharField(choices=[("debit", "Debit"), ("credit", "Credit")], max_length=10),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("lesson_debit", "Lesson billed"),
                            ("refund_credit", "Refund restored hours"),
                            ("cancellation_credit", "Invoice cancelled"),
                            ("purchase_credit", "Hours purchased"),
                            ("purchase_reversal", "Purchase refunded"),
                            ("manual_adjustment", "Manual adjustment"),
                        ],
                        max_length=30,
                    ),
                ),
                ("hours", models.DecimalField(decimal_places=3, max_digits=10)),
                ("note", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "guardian",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="hour_entries",
                        to="django_tutoring_billing.guardian",
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="hour_entries",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
                (
                    "student",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="hour_entries",
                        to="django_tutoring_billing.student",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "hour entries",
                "ordering": ["created_at", "pk"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("hours__gt", 0)),
                        name="hour_entry_hours_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="MonthlyExchangeRate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("month", models.PositiveSmallIntegerField()),
                ("year", models.PositiveIntegerField()),
                ("rate", models.DecimalField(decimal_places=4, max_digits=12)),
                ("source", models.CharField(blank=True, default="manual", max_length=100)),
                ("notes", models.TextField(blank=True, default="")),
                ("locked", models.BooleanField(default=False)),
                ("locked_at", models.DateTimeField(blank=True, null=True)),
                ("modification_history", models.JSONField(blank=True, default=list)),
                (
                    "locked_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "set_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-year", "-month"],
                "constraints": [
                    models.UniqueConstraint(fields=("month", "year"), name="exchange_rate_month_once"),
                    models.CheckConstraint(
                        condition=models.Q(("month__gte", 1), ("month__lte", 12)),
                        name="exchange_rate_month_valid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("invoice_type", models.CharField(max_length=20)),
                ("period", models.CharField(help_text="YYYYMM", max_length=6)),
                ("prefix", models.CharField(max_length=10)),
                ("current_value", models.PositiveIntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("invoice_type", "period"), name="invoice_sequence_scope_once"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceActivity",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("action", models.CharField(max_length=50)),
                ("note", models.TextField(blank=True, default="")),
                ("diff", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="activity",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "invoice activity",
                "ordering": ["created_at", "pk"],
            },
        ),
        migrations.CreateModel(
            name="ReconciliationIncident",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("operation", models.CharField(max_length=50)),
                ("error_code", models.CharField(blank=True, default="", max_length=100)),
                ("error_message", models.TextField(blank=True, default="")),
                ("details", models.JSONField(blank=True, default=dict)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("resolution_note", models.TextField(blank=True, default="")),
                (
                    "guardian",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reconciliation_incidents",
                        to="django_tutoring_billing.guardian",
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reconciliation_incidents",
                        to="django_tutoring_billing.invoice",
                    ),
                ),
                (
                    "resolved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
