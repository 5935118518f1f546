"""Django app configuration for django-tutoring-billing."""

from django.apps import AppConfig


class DjangoTutoringBillingConfig(AppConfig):
    """App configuration for django-tutoring-billing."""

    name = 'django_tutoring_billing'
    verbose_name = 'Tutoring Billing'
    default_auto_field = 'django.db.models.BigAutoField'
