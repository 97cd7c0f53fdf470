"""Message router: room-scoped message CRUD.

Every endpoint requires a bearer token. Private rooms are only visible to
their members. Successful writes are pushed to the room's live subscribers
through the connection manager.
"""
import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request

from parley.auth.dependencies import get_principal, get_services
from parley.auth.tokens import Principal
from parley.auth.users import ELEVATED_ROLES
from parley.errors import AuthorizationError, NotFoundError, ValidationError
from parley.pagination import clamp_page, pagination_view
from parley.ratelimit import limiter, limits_disabled, messages_limit
from parley.rooms.store import Room
from parley.services import Services

from .schemas import MessageCreate, MessageUpdate, message_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def _accessible_room(services: Services, room_id: str, user_id: str) -> Room:
    room = services.rooms.find_by_id(room_id)
    if room is None:
        raise NotFoundError("Room not found", code="room_not_found")
    if not services.rooms.can_access(room_id, user_id):
        logger.info("[messages] User %s denied access to room %s", user_id, room_id)
        raise AuthorizationError("Access denied to private room")
    return room


def _clean_content(raw: str, max_length: int) -> str:
    """Trim, bound and HTML-escape a message body."""
    content = raw.strip()
    if not content:
        raise ValidationError("Message content cannot be empty", field="content")
    if len(content) > max_length:
        raise ValidationError(
            f"Message is too long (max {max_length} characters)", field="content"
        )
    return html.escape(content)


def _room_view(room: Room) -> dict:
    return {
        "id": room.id,
        "name": room.name,
        "type": room.visibility.value,
        "memberCount": len(room.members),
        "createdAt": room.created_at.isoformat(),
    }


@router.get("")
async def list_rooms(
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    """Rooms the caller can read: all public rooms plus private rooms they belong to."""
    rooms = services.rooms.rooms_for_user(principal.user.id)
    return {"rooms": [_room_view(r) for r in rooms]}


@router.get("/{room_id}")
async def list_messages(
    room_id: str = Path(..., min_length=1, max_length=50),
    limit: Optional[int] = Query(None),
    offset: Optional[int] = Query(None),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    """One page of a room's visible messages, oldest first."""
    room = _accessible_room(services, room_id, principal.user.id)
    page = clamp_page(limit, offset, services.config.pagination)
    messages, total = services.messages.list_by_room(room_id, page.limit, page.offset)
    return {
        "messages": [message_view(m) for m in messages],
        "room": {"id": room.id, "name": room.name, "type": room.visibility.value},
        "pagination": pagination_view(page, total),
    }


@router.get("/{room_id}/search")
async def search_messages(
    room_id: str = Path(..., min_length=1, max_length=50),
    q: str = Query(..., min_length=1, max_length=200),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    _accessible_room(services, room_id, principal.user.id)
    results = services.messages.search(q, room_id=room_id)
    return {"messages": [message_view(m) for m in results], "count": len(results)}


@router.get("/{room_id}/{message_id}")
async def get_message(
    room_id: str = Path(..., min_length=1, max_length=50),
    message_id: str = Path(..., min_length=1, max_length=100),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    """A single message. Edit history is included only for its author."""
    _accessible_room(services, room_id, principal.user.id)
    message = services.messages.find_by_id(message_id, room_id=room_id)
    if message is None:
        raise NotFoundError("Message not found", code="message_not_found")
    return message_view(message, include_history=message.user_id == principal.user.id)


@router.post("/{room_id}", status_code=201)
@limiter.limit(messages_limit, exempt_when=limits_disabled)
async def send_message(
    request: Request,
    body: MessageCreate,
    room_id: str = Path(..., min_length=1, max_length=50),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    """Post a message and push it to the room's subscribers.

    Private rooms additionally require membership.
    """
    _accessible_room(services, room_id, principal.user.id)
    content = _clean_content(body.content, services.config.messages.max_length)
    message = services.messages.create(
        room_id=room_id,
        user_id=principal.user.id,
        username=principal.user.username,
        content=content,
    )
    view = message_view(message)
    await services.manager.broadcast_new_message(room_id, view)
    logger.info("[messages] %s posted %s in room %s", principal.user.username, message.id, room_id)
    return {"message": "Message sent successfully", "messageData": view}


@router.put("/{room_id}/{message_id}")
async def update_message(
    body: MessageUpdate,
    room_id: str = Path(..., min_length=1, max_length=50),
    message_id: str = Path(..., min_length=1, max_length=100),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    """Edit a message. Only its author may edit; the old body goes to edit history."""
    _accessible_room(services, room_id, principal.user.id)
    message = services.messages.find_by_id(message_id, room_id=room_id)
    if message is None:
        raise NotFoundError("Message not found", code="message_not_found")
    if message.user_id != principal.user.id:
        logger.info("[messages] User %s tried to edit %s owned by %s",
                    principal.user.id, message_id, message.user_id)
        raise AuthorizationError("You can only edit your own messages")

    content = _clean_content(body.content, services.config.messages.max_length)
    updated = services.messages.update(message_id, content, edited_by=principal.user.id)
    await services.manager.broadcast_message_updated(room_id, message_view(updated))
    logger.info("[messages] Updated %s in room %s", message_id, room_id)
    return {
        "message": "Message updated successfully",
        "messageData": message_view(updated, include_history=True),
    }


@router.delete("/{room_id}/{message_id}")
async def delete_message(
    room_id: str = Path(..., min_length=1, max_length=50),
    message_id: str = Path(..., min_length=1, max_length=100),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    """Soft-delete a message.

    Allowed for the author, the room owner, admins and moderators.
    """
    _accessible_room(services, room_id, principal.user.id)
    message = services.messages.find_by_id(message_id, room_id=room_id)
    if message is None:
        raise NotFoundError("Message not found", code="message_not_found")

    user = principal.user
    allowed = (
        message.user_id == user.id
        or services.rooms.is_owner(room_id, user.id)
        or user.role in ELEVATED_ROLES
    )
    if not allowed:
        raise AuthorizationError("Permission denied")

    services.messages.soft_delete(message_id, deleted_by=user.id)
    await services.manager.broadcast_message_deleted(room_id, message_id)
    logger.info("[messages] %s deleted %s from room %s", user.username, message_id, room_id)
    return {"message": "Message deleted successfully"}
