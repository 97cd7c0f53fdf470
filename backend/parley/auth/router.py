"""Auth router for account and session endpoints.

Endpoints:
    POST /auth/login        - Exchange credentials for a session token
    POST /auth/register     - Create an account (no auto-login)
    POST /auth/logout       - End the session and revoke its token
    GET  /auth/profile      - Caller's own profile
    PUT  /auth/status       - Set presence status (admins may target others)
    GET  /auth/admin/users  - Paginated user list (admin only)
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from parley.errors import AuthError, AuthorizationError, ConflictError, NotFoundError
from parley.pagination import clamp_page, pagination_view
from parley.ratelimit import limiter, limits_disabled, login_limit
from parley.services import Services

from .dependencies import get_principal, get_services, require_role
from .schemas import (
    LoginRequest,
    RegisterRequest,
    StatusUpdate,
    admin_list_view,
    auth_view,
    profile_view,
)
from .tokens import Principal
from .users import UserRole, UserStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login")
@limiter.limit(login_limit, exempt_when=limits_disabled)
async def login(
    request: Request,
    body: LoginRequest,
    services: Services = Depends(get_services),
) -> dict:
    """Verify credentials, open a session and issue a token bound to it.

    Unknown accounts and wrong passwords get the same response.
    """
    user = services.users.authenticate(body.password, username=body.username, email=body.email)
    if user is None:
        logger.info("[auth] Failed login for %s", body.username or body.email)
        raise AuthError("Invalid credentials", code="invalid_credentials")

    session_id = str(uuid.uuid4())
    issued = services.tokens.issue(user, session_id)
    services.sessions.create_session(session_id, user.id, issued.token_id)
    services.users.update_status(user.id, UserStatus.ONLINE)
    logger.info("[auth] User %s logged in (session %s)", user.username, session_id)

    return {
        "message": "Login successful",
        "token": issued.token,
        "user": auth_view(user),
    }


@router.post("/register", status_code=201)
async def register(body: RegisterRequest, services: Services = Depends(get_services)) -> dict:
    if services.users.find_existing(body.username, body.email) is not None:
        raise ConflictError("User already exists", code="user_exists")
    try:
        user = services.users.create_user(body.username, body.email, body.password)
    except ValueError:
        raise ConflictError("User already exists", code="user_exists")
    return {"message": "User registered successfully", "user": auth_view(user)}


@router.post("/logout")
async def logout(
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    """Delete the session and revoke the token until it would have expired anyway.

    Open WebSocket connections are left alone; only new authentications with
    this token fail. The user goes offline only when none of their
    connections remain, and the change is broadcast like any other.
    """
    claims = principal.claims
    services.sessions.delete_session(claims.session_id)
    services.sessions.revoke_token(claims.token_id, claims.expires_at)
    if not services.manager.is_online(principal.user.id):
        await services.manager.publish_presence(principal.user.id, UserStatus.OFFLINE.value)
    logger.info("[auth] User %s logged out (session %s)", principal.user.username, claims.session_id)
    return {"message": "Logout successful"}


@router.get("/profile")
async def profile(principal: Principal = Depends(get_principal)) -> dict:
    return profile_view(principal.user)


@router.put("/status")
async def update_status(
    body: StatusUpdate,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    target_id = principal.user.id
    if body.user_id and body.user_id != principal.user.id:
        if principal.user.role is not UserRole.ADMIN:
            raise AuthorizationError("Admin role required to update other users")
        target_id = body.user_id

    if services.users.find_by_id(target_id) is None:
        raise NotFoundError("User not found", code="user_not_found")
    await services.manager.publish_presence(target_id, body.status.value)
    logger.info("[auth] Status of %s set to %s by %s", target_id, body.status.value, principal.user.id)
    return {"message": "Status updated successfully", "status": body.status.value}


@router.get("/admin/users")
async def list_users(
    limit: Optional[int] = Query(None),
    offset: Optional[int] = Query(None),
    principal: Principal = Depends(require_role(UserRole.ADMIN)),
    services: Services = Depends(get_services),
) -> dict:
    page = clamp_page(limit, offset, services.config.pagination)
    users = services.users.list_users()
    return {
        "users": [admin_list_view(u) for u in users[page.offset:page.offset + page.limit]],
        "pagination": pagination_view(page, len(users)),
    }
