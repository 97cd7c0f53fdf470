"""Session store and token-revocation set.

A session is created at login and bound to exactly one token id. Logout
deletes the session *and* revokes the token id; the revocation entry keeps
the token's own expiry so the periodic sweep can drop it once the token
could no longer verify anyway.

Expired records are treated as absent on read even before the sweep runs.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    session_id: str
    user_id: str
    token_id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime


class RevokedToken(BaseModel):
    token_id: str
    revoked_at: datetime
    expires_at: datetime


class SessionStore:
    """Active sessions plus the revoked-token set."""

    def __init__(self, max_age: timedelta) -> None:
        self._max_age = max_age
        self._sessions: Dict[str, Session] = {}
        self._revoked: Dict[str, RevokedToken] = {}

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    def create_session(self, session_id: str, user_id: str, token_id: str) -> Session:
        now = _utcnow()
        session = Session(
            session_id=session_id,
            user_id=user_id,
            token_id=token_id,
            created_at=now,
            last_activity=now,
            expires_at=now + self._max_age,
        )
        self._sessions[session_id] = session
        logger.debug("[auth] Session %s created for user %s", session_id, user_id)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is not None and session.expires_at <= _utcnow():
            del self._sessions[session_id]
            return None
        return session

    def is_session_live(self, session_id: str) -> bool:
        return self.get_session(session_id) is not None

    def touch(self, session_id: str) -> None:
        """Record authenticated activity on a session."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = _utcnow()

    def delete_session(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def delete_user_sessions(self, user_id: str) -> int:
        doomed = [sid for sid, s in self._sessions.items() if s.user_id == user_id]
        for sid in doomed:
            del self._sessions[sid]
        return len(doomed)

    # -----------------------------------------------------------------------
    # Revocation
    # -----------------------------------------------------------------------

    def revoke_token(self, token_id: str, expires_at: datetime) -> None:
        self._revoked[token_id] = RevokedToken(
            token_id=token_id,
            revoked_at=_utcnow(),
            expires_at=expires_at,
        )
        logger.debug("[auth] Token %s revoked until %s", token_id, expires_at.isoformat())

    def is_token_revoked(self, token_id: str) -> bool:
        entry = self._revoked.get(token_id)
        if entry is None:
            return False
        if entry.expires_at <= _utcnow():
            # The token itself has expired; signature checks reject it now.
            del self._revoked[token_id]
            return False
        return True

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------

    def cleanup(self) -> int:
        """Drop expired sessions and revocation entries.

        Returns:
            Number of records removed.
        """
        now = _utcnow()
        expired_sessions = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
        for sid in expired_sessions:
            del self._sessions[sid]
        expired_tokens = [jti for jti, e in self._revoked.items() if e.expires_at <= now]
        for jti in expired_tokens:
            del self._revoked[jti]
        removed = len(expired_sessions) + len(expired_tokens)
        if removed:
            logger.info(
                "[auth] Cleanup removed %d sessions and %d revoked tokens",
                len(expired_sessions),
                len(expired_tokens),
            )
        return removed

    async def run_cleanup(self, interval: float) -> None:
        """Sweep expired records every *interval* seconds until cancelled."""
        logger.info("[auth] Session cleanup every %.0fs", interval)
        while True:
            await asyncio.sleep(interval)
            self.cleanup()

    def session_count(self) -> int:
        return len(self._sessions)

    def revoked_count(self) -> int:
        return len(self._revoked)
