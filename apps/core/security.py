"""
Core security - authentication classes for API.
"""

from django.http import HttpRequest
from ninja.security import HttpBearer

ACTOR_HEADER = "X-Actor-Id"


class BearerAuth(HttpBearer):
    """
    Bearer token authentication for billing endpoints.

    Token validation (sessions, MFA, API keys) belongs to the gateway in front
    of this service. This class only requires the header to be present and
    documents the security scheme in OpenAPI.
    """

    def authenticate(self, request, token: str) -> str | None:
        return token if token else None


def get_actor_id(request: HttpRequest) -> str | None:
    """Acting user forwarded by the gateway, recorded on audit entries."""
    return request.headers.get(ACTOR_HEADER) or None
