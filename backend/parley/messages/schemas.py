"""Pydantic schemas for room messages."""
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EditEntry(BaseModel):
    """One prior version of a message body."""
    previous_content: str
    edited_by: str
    edited_at: datetime = Field(default_factory=_utcnow)


class Message(BaseModel):
    """Stored message record. Soft-deleted records are kept but never listed."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    room_id: str
    user_id: str
    username: str
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    edited: bool = False
    last_edited_at: Optional[datetime] = None
    edit_history: List[EditEntry] = Field(default_factory=list)
    deleted: bool = False
    deleted_by: Optional[str] = None
    deleted_at: Optional[datetime] = None


class MessageCreate(BaseModel):
    """Request body for posting or editing a message."""
    content: str = Field(..., min_length=1)


class MessageUpdate(BaseModel):
    content: str = Field(..., min_length=1)


def message_view(message: Message, *, include_history: bool = False) -> dict:
    """Client-facing message shape; edit history only for the message owner."""
    view = {
        "id": message.id,
        "roomId": message.room_id,
        "userId": message.user_id,
        "username": message.username,
        "content": message.content,
        "timestamp": message.created_at.isoformat(),
        "edited": message.edited,
    }
    if message.last_edited_at is not None:
        view["lastEditedAt"] = message.last_edited_at.isoformat()
    if include_history and message.edit_history:
        view["editHistory"] = [
            {
                "previousContent": entry.previous_content,
                "editedBy": entry.edited_by,
                "editedAt": entry.edited_at.isoformat(),
            }
            for entry in message.edit_history
        ]
    return view
