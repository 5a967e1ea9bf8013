"""
Test settings.

In-memory SQLite so the suite runs without a database server.
"""

from .base import *  # noqa: F403

DEBUG = False

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

configure_logging(json_format=False, log_level="WARNING")  # noqa: F405
