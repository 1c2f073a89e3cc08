"""API dependencies for service access and admin authentication."""

from __future__ import annotations

import secrets

from fastapi import Header, Request

from coinquote.core.config import settings
from coinquote.core.exceptions import AppException, AuthorizationError
from coinquote.services.resolver_service import ResolverService


__all__ = ["get_service", "require_admin"]


def get_service(request: Request) -> ResolverService:
    """The running ResolverService, attached to app state by the lifespan."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise AppException(
            message="Resolver service is not running",
            error_code="SERVICE_UNAVAILABLE",
            status_code=503,
        )
    return service


async def require_admin(
    x_admin_token: str | None = Header(default=None),
) -> None:
    """
    Require the configured admin token.

    Raises AuthorizationError when the token is missing, wrong, or admin
    routes are disabled (no token configured).
    """
    if not settings.admin_token:
        raise AuthorizationError(
            message="Admin API is disabled",
            error_code="ADMIN_DISABLED",
        )
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.admin_token):
        raise AuthorizationError(
            message="Admin token required",
            error_code="ADMIN_REQUIRED",
        )
