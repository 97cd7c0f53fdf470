"""MessageStore: ordered per-room message log with soft delete and edit history."""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .schemas import EditEntry, Message

logger = logging.getLogger(__name__)


class MessageStore:
    """Append-only per-room logs.

    Every read path skips soft-deleted messages; the record itself is kept
    with its deleter and deletion time.
    """

    def __init__(self) -> None:
        # room_id -> messages in creation order
        self._rooms: Dict[str, List[Message]] = {}
        # message_id -> message
        self._by_id: Dict[str, Message] = {}

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def list_by_room(self, room_id: str, limit: int = 50, offset: int = 0) -> Tuple[List[Message], int]:
        """Return one page of visible messages plus the visible total."""
        visible = [m for m in self._rooms.get(room_id, []) if not m.deleted]
        return visible[offset:offset + limit], len(visible)

    def find_by_id(self, message_id: str, room_id: Optional[str] = None) -> Optional[Message]:
        """Look up a visible message, optionally requiring it to live in *room_id*."""
        message = self._by_id.get(message_id)
        if message is None or message.deleted:
            return None
        if room_id is not None and message.room_id != room_id:
            return None
        return message

    def get_record(self, message_id: str) -> Optional[Message]:
        """Raw record lookup, soft-deleted included."""
        return self._by_id.get(message_id)

    def search(self, query: str, room_id: Optional[str] = None) -> List[Message]:
        needle = query.lower()
        candidates = self._rooms.get(room_id, []) if room_id is not None else self._by_id.values()
        return [
            m for m in candidates
            if not m.deleted and needle in m.content.lower()
        ]

    def by_user(self, user_id: str) -> List[Message]:
        return [m for m in self._by_id.values() if m.user_id == user_id and not m.deleted]

    def count(self, room_id: str) -> int:
        return sum(1 for m in self._rooms.get(room_id, []) if not m.deleted)

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def create(self, room_id: str, user_id: str, username: str, content: str,
               message_id: Optional[str] = None, created_at: Optional[datetime] = None) -> Message:
        message = Message(room_id=room_id, user_id=user_id, username=username, content=content)
        if message_id is not None:
            message.id = message_id
        if created_at is not None:
            message.created_at = created_at
        self._rooms.setdefault(room_id, []).append(message)
        self._by_id[message.id] = message
        logger.debug("[messages] Created %s in room %s", message.id, room_id)
        return message

    def update(self, message_id: str, content: str, edited_by: str) -> Optional[Message]:
        """Replace the body, recording the previous one in the edit history.

        Identifier and author are left untouched.
        """
        message = self.find_by_id(message_id)
        if message is None:
            return None
        now = datetime.now(timezone.utc)
        message.edit_history.append(
            EditEntry(previous_content=message.content, edited_by=edited_by, edited_at=now)
        )
        message.content = content
        message.edited = True
        message.last_edited_at = now
        return message

    def soft_delete(self, message_id: str, deleted_by: str) -> bool:
        message = self.find_by_id(message_id)
        if message is None:
            return False
        message.deleted = True
        message.deleted_by = deleted_by
        message.deleted_at = datetime.now(timezone.utc)
        return True
