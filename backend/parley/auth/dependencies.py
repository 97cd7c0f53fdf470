"""FastAPI dependencies for bearer-token authentication.

Missing or malformed credentials are told apart by error code:

    - ``auth_required``       no Authorization header
    - ``invalid_auth_header`` header present but not ``Bearer <token>``
    - ``invalid_token``       token failed verification
"""
import logging
from typing import Optional

from fastapi import Depends, Header, Request

from parley.errors import AuthError, AuthorizationError
from parley.services import Services

from .tokens import Principal
from .users import UserRole

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    return request.app.state.services


def parse_bearer(authorization: Optional[str]) -> str:
    """Extract the token from an ``Authorization`` header value.

    Raises:
        AuthError: With ``auth_required`` or ``invalid_auth_header``.
    """
    if not authorization:
        raise AuthError("Authentication required", code="auth_required")
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise AuthError("Invalid authorization header", code="invalid_auth_header")
    return token


def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> Principal:
    principal = services.tokens.authenticate(parse_bearer(authorization))
    # Rate-limit key function reads this
    request.state.user_id = principal.user.id
    return principal


def require_role(*roles: UserRole):
    """Dependency factory rejecting callers whose live role is not in *roles*."""

    def _check(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.user.role not in roles:
            logger.info(
                "[auth] User %s (role=%s) denied; needs one of %s",
                principal.user.id, principal.user.role.value, [r.value for r in roles],
            )
            raise AuthorizationError("Access denied")
        return principal

    return _check
