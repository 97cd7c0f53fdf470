"""Request bodies and client-facing views for the auth endpoints.

Views never include email addresses or password hashes.
"""
import re
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from .users import User, UserStatus

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class LoginRequest(BaseModel):
    """Either ``username`` or ``email`` identifies the account."""
    username: Optional[str] = Field(None, min_length=1, max_length=30)
    email:    Optional[EmailStr] = None
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None

    @model_validator(mode="after")
    def _needs_identifier(self) -> "LoginRequest":
        if not self.username and not self.email:
            raise ValueError("username or email is required")
        return self


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email:    EmailStr
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("username", mode="before")
    @classmethod
    def _check_username(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if value and not USERNAME_PATTERN.match(value):
                raise ValueError("may only contain letters, numbers, underscores and hyphens")
        return value


class StatusUpdate(BaseModel):
    """``user_id`` targets another account and requires the admin role."""
    status:  UserStatus
    user_id: Optional[str] = Field(None, alias="userId")

    model_config = {"populate_by_name": True}


# =============================================================================
# Views
# =============================================================================


def auth_view(user: User) -> dict:
    """Minimal view returned by login and register."""
    return {
        "username": user.username,
        "role": user.role.value,
        "status": user.status.value,
        "avatar": user.avatar,
    }


def profile_view(user: User) -> dict:
    view = auth_view(user)
    view["lastSeen"] = user.last_seen.isoformat()
    view["createdAt"] = user.created_at.isoformat()
    return view


def admin_list_view(user: User) -> dict:
    return {
        "username": user.username,
        "role": user.role.value,
        "status": user.status.value,
    }
