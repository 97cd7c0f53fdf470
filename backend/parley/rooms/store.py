"""Room metadata and membership.

Public rooms are readable and joinable by any authenticated user; private
rooms require membership. Rooms are never deleted. Membership here governs
persisted access rights; live WebSocket subscriptions are tracked by the
connection manager and re-checked against :meth:`RoomStore.can_access` on
every join.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class RoomVisibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Room(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    visibility: RoomVisibility = RoomVisibility.PUBLIC
    owner_id: str
    members: Set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RoomStore:
    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}

    def create_room(
        self,
        name: str,
        owner_id: str,
        visibility: RoomVisibility = RoomVisibility.PUBLIC,
        members: Optional[Set[str]] = None,
        room_id: Optional[str] = None,
    ) -> Room:
        """Create a room. The owner is always a member.

        Raises:
            ValueError: If *room_id* is already taken.
        """
        if room_id is not None and room_id in self._rooms:
            raise ValueError(f"room {room_id} already exists")
        room = Room(
            id=room_id or str(uuid.uuid4()),
            name=name,
            visibility=visibility,
            owner_id=owner_id,
            members=set(members or ()) | {owner_id},
        )
        self._rooms[room.id] = room
        logger.info("[rooms] Created %s room %s (%s)", room.visibility.value, room.id, room.name)
        return room

    def find_by_id(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def list_rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def rooms_for_user(self, user_id: str) -> List[Room]:
        """Rooms the user may read: every public room plus private memberships."""
        return [r for r in self._rooms.values() if self._accessible(r, user_id)]

    def is_member(self, room_id: str, user_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and user_id in room.members

    def is_owner(self, room_id: str, user_id: str) -> bool:
        room = self._rooms.get(room_id)
        return room is not None and room.owner_id == user_id

    def can_access(self, room_id: str, user_id: str) -> bool:
        """Access-control predicate. Unknown rooms are never accessible."""
        room = self._rooms.get(room_id)
        return room is not None and self._accessible(room, user_id)

    def add_member(self, room_id: str, user_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        room.members.add(user_id)
        return True

    def remove_member(self, room_id: str, user_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None or user_id not in room.members:
            return False
        room.members.discard(user_id)
        return True

    @staticmethod
    def _accessible(room: Room, user_id: str) -> bool:
        return room.visibility == RoomVisibility.PUBLIC or user_id in room.members
