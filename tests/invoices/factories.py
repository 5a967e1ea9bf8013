"""
Factories for invoices app models.

Invoices carry derived totals and a sequential number, so tests build them
through the service rather than a model factory.
"""

from datetime import UTC, datetime
from typing import Any

from apps.invoices.models import Invoice
from apps.invoices.services import create_invoice
from tests.organizations.factories import OrganizationFactory

ISSUED_AT = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


def make_invoice(
    organization=None,
    line_items: list[dict[str, Any]] | None = None,
    total: str = "100.00",
    now: datetime = ISSUED_AT,
    **kwargs: Any,
) -> Invoice:
    """
    Create an invoice through create_invoice.

    Without line_items, a single subscription line priced at total is used.
    """
    return create_invoice(
        organization or OrganizationFactory.create(),
        line_items or [{"description": "Pro plan", "unit_price": total}],
        now=now,
        **kwargs,
    )
