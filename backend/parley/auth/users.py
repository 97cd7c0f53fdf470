"""Credential store: user records and bcrypt-hashed passwords.

Users are kept in memory for the lifetime of one application instance and
are never hard-deleted. Lookups by username and email are case-sensitive on
username and case-insensitive on email.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import bcrypt
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

AVATAR_URL_TEMPLATE = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Account role.

    Attributes:
        ADMIN: Can update any user's status and list all users.
        MODERATOR: Can delete any message.
        USER: Regular account.
    """
    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"


class UserStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"
    BUSY = "busy"


ELEVATED_ROLES = frozenset({UserRole.ADMIN, UserRole.MODERATOR})


class User(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    username: str
    email: str
    password_hash: str
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.OFFLINE
    avatar: str = ""
    last_seen: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)


class UserStore:
    """In-memory user records keyed by id, with unique username and email."""

    def __init__(self, bcrypt_rounds: int = 12) -> None:
        self._bcrypt_rounds = bcrypt_rounds
        self._users: Dict[str, User] = {}

    # -----------------------------------------------------------------------
    # Passwords
    # -----------------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self._bcrypt_rounds)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def find_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.username == username), None)

    def find_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        return next((u for u in self._users.values() if u.email.lower() == email), None)

    def find_existing(self, username: str, email: str) -> Optional[User]:
        """Return a user that already owns *username* or *email*, if any."""
        return self.find_by_username(username) or self.find_by_email(email)

    def authenticate(self, password: str, *, username: Optional[str] = None,
                     email: Optional[str] = None) -> Optional[User]:
        """Return the user when the credentials match, otherwise None.

        Unknown users and wrong passwords are indistinguishable to callers.
        """
        user = None
        if username:
            user = self.find_by_username(username)
        elif email:
            user = self.find_by_email(email)
        if user is None or not self.verify_password(password, user.password_hash):
            return None
        return user

    def list_users(self) -> List[User]:
        return list(self._users.values())

    def count(self) -> int:
        return len(self._users)

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.OFFLINE,
        user_id: Optional[str] = None,
    ) -> User:
        """Create a user with a freshly hashed password.

        Raises:
            ValueError: If the username or email is already taken.
        """
        if self.find_existing(username, email) is not None:
            raise ValueError("username or email already registered")
        user = User(
            id=user_id or str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=self.hash_password(password),
            role=role,
            status=status,
            avatar=AVATAR_URL_TEMPLATE.format(seed=username),
        )
        self._users[user.id] = user
        logger.info("[auth] Created user %s (%s, role=%s)", user.id, user.username, user.role.value)
        return user

    def update_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        """Set a user's presence status and bump ``last_seen``.

        Returns:
            The updated user, or None if no such user exists.
        """
        user = self._users.get(user_id)
        if user is None:
            return None
        user.status = UserStatus(status)
        user.last_seen = _utcnow()
        return user
