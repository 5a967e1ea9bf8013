"""
Base Django settings for the billing service.

Shared configuration for all environments.
"""

from pathlib import Path

from pydantic_settings import BaseSettings

from apps.core.logging import configure_logging


class Settings(BaseSettings):
    """Environment-based configuration using pydantic-settings."""

    SECRET_KEY: str = "django-insecure-change-me-in-production"
    DEBUG: bool = False
    ALLOWED_HOSTS: str = "localhost,127.0.0.1"

    DB_NAME: str = "billing"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = "postgres"
    DB_HOST: str = "localhost"
    DB_PORT: str = "5432"

    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"

    # Stripe (payment gateway)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Invoicing
    INVOICE_PREFIX: str = "INV"
    DEFAULT_CURRENCY: str = "USD"

    # Billing policy defaults (overridable per tenant and per plan)
    PAST_DUE_AFTER_FAILURES: int = 3
    PAYMENT_RETRY_DELAYS_DAYS: list[int] = [1, 3, 5, 7, 10]
    RENEWAL_REMINDER_OFFSETS_DAYS: list[int] = [7, 3, 1]
    USAGE_ANOMALY_CHANGE_PERCENT: int = 200
    USAGE_ANOMALY_ZSCORE: float = 2.0
    USAGE_ANOMALY_LOOKBACK_DAYS: int = 30
    USAGE_ANOMALY_MIN_HISTORY: int = 10
    USAGE_RETENTION_DAYS: int = 395

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = settings.SECRET_KEY

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = settings.DEBUG

ALLOWED_HOSTS = [h.strip() for h in settings.ALLOWED_HOSTS.split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    # Local apps
    "apps.core",
    "apps.organizations",
    "apps.events",
    "apps.billing",
    "apps.invoices",
    "apps.usage",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"

WSGI_APPLICATION = "config.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": settings.DB_NAME,
        "USER": settings.DB_USER,
        "PASSWORD": settings.DB_PASSWORD,
        "HOST": settings.DB_HOST,
        "PORT": settings.DB_PORT,
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# structlog owns log formatting
LOGGING_CONFIG = None
configure_logging(json_format=settings.LOG_JSON, log_level=settings.LOG_LEVEL)
