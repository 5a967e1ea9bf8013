"""
Billing error taxonomy.

Every error carries a stable machine-readable code. Validation and domain
errors are raised before any mutation and are never retried automatically.
"""

from typing import Any


class BillingError(Exception):
    """Base exception for billing errors."""

    default_code = "BILLING_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(BillingError):
    """Missing or malformed input (bad currency code, non-positive amount)."""

    default_code = "VALIDATION_ERROR"


class DomainRuleViolation(BillingError):
    """Operation conflicts with the current state of the entity."""

    default_code = "DOMAIN_RULE_VIOLATION"


class NotFoundError(BillingError):
    """Unknown subscription, invoice, plan, usage record or organization."""

    default_code = "NOT_FOUND"


class TransientError(BillingError):
    """Temporary failure of an external collaborator (payment gateway timeout)."""

    default_code = "TRANSIENT_ERROR"


class ConcurrencyConflict(TransientError):
    """Entity was modified by another writer; reload and retry."""

    default_code = "CONCURRENT_MODIFICATION"

    def __init__(self, message: str, expected_version: int | None = None, actual_version: int | None = None):
        super().__init__(
            message,
            details={"expected_version": expected_version, "actual_version": actual_version},
        )
