"""Signed session tokens (JWT, HS256 by default).

``TokenService.verify`` is the single verification path shared by the HTTP
bearer dependency and the WebSocket handshake / ``auth`` message. A token is
valid only when all of the following hold:

1. the signature and ``exp`` claim check out;
2. its ``jti`` is not in the revocation set (explicit logout);
3. its ``sid`` names a live session (session expiry or deletion).

Checks 2 and 3 guard different invalidation triggers and are kept as
independent predicates.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

import jwt
from pydantic import BaseModel

from parley.errors import AuthError

from .sessions import SessionStore
from .users import User, UserRole, UserStore

logger = logging.getLogger(__name__)


class IssuedToken(NamedTuple):
    token: str
    token_id: str
    expires_at: datetime


class TokenClaims(BaseModel):
    user_id: str
    username: str
    role: UserRole
    session_id: str
    token_id: str
    expires_at: datetime


class Principal(NamedTuple):
    """An authenticated caller: the live user record plus the verified claims."""
    user: User
    claims: TokenClaims


class TokenService:
    def __init__(self, sessions: SessionStore, users: UserStore, secret_key: str,
                 algorithm: str = "HS256", ttl: timedelta = timedelta(hours=24)) -> None:
        self._sessions = sessions
        self._users = users
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._ttl = ttl

    def issue(self, user: User, session_id: str) -> IssuedToken:
        """Sign a token for *user* bound to *session_id* with a fresh token id."""
        token_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        expires_at = now + self._ttl
        payload = {
            "sub": user.id,
            "username": user.username,
            "role": user.role.value,
            "sid": session_id,
            "jti": token_id,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at)

    def decode(self, token: str) -> TokenClaims:
        """Check signature and expiry only.

        Raises:
            AuthError: If the token is malformed, forged or expired.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["exp", "sub", "sid", "jti"]},
            )
            return TokenClaims(
                user_id=payload["sub"],
                username=payload.get("username", ""),
                role=payload.get("role", UserRole.USER.value),
                session_id=payload["sid"],
                token_id=payload["jti"],
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except jwt.ExpiredSignatureError:
            logger.debug("[auth] Rejected expired token")
            raise AuthError()
        except (jwt.PyJWTError, ValueError) as e:
            logger.debug("[auth] Rejected malformed token: %s", type(e).__name__)
            raise AuthError()

    def is_revoked(self, claims: TokenClaims) -> bool:
        return self._sessions.is_token_revoked(claims.token_id)

    def is_session_live(self, claims: TokenClaims) -> bool:
        return self._sessions.is_session_live(claims.session_id)

    def verify(self, token: str) -> TokenClaims:
        """Fully verify *token*.

        Raises:
            AuthError: On any failure; the message does not say which check failed.
        """
        claims = self.decode(token)
        if self.is_revoked(claims):
            logger.debug("[auth] Rejected revoked token %s", claims.token_id)
            raise AuthError()
        if not self.is_session_live(claims):
            logger.debug("[auth] Rejected token for dead session %s", claims.session_id)
            raise AuthError()
        return claims

    def authenticate(self, token: str) -> Principal:
        """Verify *token* and resolve it to a live user, refreshing the session.

        Used by both the HTTP bearer dependency and the WebSocket layer.

        Raises:
            AuthError: If verification fails or the user no longer exists.
        """
        claims = self.verify(token)
        user = self._users.find_by_id(claims.user_id)
        if user is None:
            logger.warning("[auth] Token %s names unknown user %s", claims.token_id, claims.user_id)
            raise AuthError()
        self._sessions.touch(claims.session_id)
        return Principal(user=user, claims=claims)
