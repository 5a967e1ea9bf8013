"""
Organization services - tenant registry lookups used by billing.
"""

from apps.core.exceptions import NotFoundError
from apps.organizations.models import Organization


def get_organization(organization_id) -> Organization:
    """
    Fetch an organization by primary key.

    Raises:
        NotFoundError: Unknown organization.
    """
    try:
        return Organization.objects.get(pk=organization_id)
    except (Organization.DoesNotExist, ValueError, TypeError) as e:
        raise NotFoundError(
            f"Organization {organization_id} not found",
            code="ORGANIZATION_NOT_FOUND",
        ) from e
