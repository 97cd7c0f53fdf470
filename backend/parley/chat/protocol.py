"""Inbound WebSocket protocol.

Every client frame is a JSON object with a ``type`` discriminator:

    - auth:       {type, token}
    - join_room:  {type, roomId}
    - leave_room: {type, roomId}
    - typing:     {type, roomId, isTyping}
    - presence:   {type, status}
    - ping:       {type}            (answered with a pong event)

Server pushes are flat JSON objects with a ``type`` field as well; see
``ConnectionManager`` for the event catalogue.
"""
import json
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, Field, StrictBool, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from parley.errors import ValidationError


class AuthMessage(BaseModel):
    type: Literal["auth"]
    token: str = Field(..., min_length=1)


class JoinRoomMessage(BaseModel):
    type: Literal["join_room"]
    roomId: str = Field(..., min_length=1, max_length=50)


class LeaveRoomMessage(BaseModel):
    type: Literal["leave_room"]
    roomId: str = Field(..., min_length=1, max_length=50)


class TypingMessage(BaseModel):
    type: Literal["typing"]
    roomId: str = Field(..., min_length=1, max_length=50)
    isTyping: StrictBool


class PresenceMessage(BaseModel):
    # Checked against UserStatus by the manager so bad values get a
    # dedicated "Invalid status" error.
    type: Literal["presence"]
    status: str


class PingMessage(BaseModel):
    type: Literal["ping"]


InboundMessage = Annotated[
    Union[
        AuthMessage,
        JoinRoomMessage,
        LeaveRoomMessage,
        TypingMessage,
        PresenceMessage,
        PingMessage,
    ],
    Field(discriminator="type"),
]

MESSAGE_TYPES = frozenset(
    {"auth", "join_room", "leave_room", "typing", "presence", "ping"}
)

_inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)


def decode_frame(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    """Decode a raw frame into a JSON object.

    Raises:
        ValidationError: If the frame is not a JSON object.
    """
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid message format", code="invalid_format")
    if not isinstance(data, dict):
        raise ValidationError("Invalid message format", code="invalid_format")
    return data


def parse_message(data: Dict[str, Any]) -> InboundMessage:
    """Validate a decoded frame against the tagged union.

    Raises:
        ValidationError: For unknown types or missing/ill-typed fields; the
            error names the first offending field.
    """
    message_type = data.get("type")
    if not isinstance(message_type, str) or message_type not in MESSAGE_TYPES:
        raise ValidationError("Unknown message type", field="type", code="unknown_type")
    try:
        return _inbound_adapter.validate_python(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        # First loc element is the union tag, e.g. ("typing", "isTyping")
        loc = [str(part) for part in first.get("loc", ())[1:]]
        field = ".".join(loc) or None
        message = f"Invalid {field}" if field else "Invalid message format"
        raise ValidationError(message, field=field)
