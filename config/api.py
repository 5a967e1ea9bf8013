"""
Django Ninja API configuration.
"""

from django.http import HttpRequest
from ninja import NinjaAPI

from apps.billing.api import router as billing_router
from apps.core.exceptions import (
    BillingError,
    DomainRuleViolation,
    NotFoundError,
    TransientError,
    ValidationError,
)
from apps.core.logging import get_logger
from apps.invoices.api import router as invoices_router
from apps.usage.api import router as usage_router

logger = get_logger(__name__)

api = NinjaAPI(
    title="Billing API",
    version="1.0.0",
    description="Subscription lifecycle, invoicing and usage metering.",
    openapi_extra={
        "info": {
            "contact": {"name": "API Support"},
        },
        "tags": [
            {"name": "billing", "description": "Plans, subscriptions and revenue metrics"},
            {"name": "invoices", "description": "Invoices, payments, credits and refunds"},
            {"name": "usage", "description": "Metered usage ingestion and reports"},
            {"name": "health", "description": "Service health and readiness checks"},
        ],
    },
)

api.add_router("/billing", billing_router)
api.add_router("/invoices", invoices_router)
api.add_router("/usage", usage_router)

# Most specific first: ConcurrencyConflict is a TransientError
ERROR_STATUS: list[tuple[type[BillingError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (DomainRuleViolation, 409),
    (TransientError, 503),
]


@api.exception_handler(BillingError)
def billing_error_handler(request: HttpRequest, exc: BillingError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    if status >= 500:
        logger.warning("billing_request_transient_error", path=request.path, error_code=exc.code)
    return api.create_response(
        request,
        {"detail": exc.message, "code": exc.code, **({"details": exc.details} if exc.details else {})},
        status=status,
    )


@api.get("/health", tags=["health"], operation_id="healthCheck", summary="Health check", auth=None)
def health_check(request: HttpRequest) -> dict:
    """Health check endpoint for load balancer."""
    return {"status": "ok"}
