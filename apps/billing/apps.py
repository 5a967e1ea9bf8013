"""Billing app configuration."""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Plans, subscriptions and the payment gateway."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.billing"
