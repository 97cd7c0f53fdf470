"""WebSocket connection manager for real-time rooms.

This module owns all live connection state: which connections belong to
which user, which users are subscribed to which rooms, and the pending
typing-indicator timers. It is the only place that fans events out to
clients.

Key features:
    - Per-connection lifecycle (pending -> authenticated -> closed)
    - Multiple connections per user; presence goes online on the first one
      and offline once the last one is gone
    - Room subscriptions re-checked against room access on every join
    - Typing indicators with a server-side expiry timer per (room, user)
    - Heartbeat sweep that closes connections whose sends have failed;
      silent peers are caught by protocol-level ping/pong in the server
    - Concurrent delivery with asyncio.gather() and dead-connection marking

Design:
    Handlers are synchronous. They mutate state and return a list of
    ``Outbound`` items (recipients snapshot + event). ``deliver`` then sends
    them. Sends are serialized behind a lock so events reach every
    connection in the order handlers produced them.

Thread Safety:
    Designed for a single event loop. It is NOT thread-safe.

Event catalogue (server -> client):
    connected / authenticated   {userId, username}
    presence_update             {userId, username, status, timestamp}
    joined_room / left_room     {roomId}
    user_joined / user_left     {userId, username, roomId}
    typing_start / typing_stop  {userId, username, roomId}
    new_message                 {roomId, message, timestamp}
    message_updated             {roomId, message, timestamp}
    message_deleted             {roomId, messageId, timestamp}
    pong                        {timestamp}  (answer to a client ping)
    error                       {code, message[, field]}
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from parley.auth.tokens import Principal, TokenService
from parley.auth.users import UserStatus, UserStore
from parley.errors import AuthError, AuthorizationError, NotFoundError, ParleyError, ValidationError
from parley.rooms.store import RoomStore

from .protocol import (
    AuthMessage,
    JoinRoomMessage,
    LeaveRoomMessage,
    PresenceMessage,
    TypingMessage,
    decode_frame,
    parse_message,
)

logger = logging.getLogger(__name__)

# Close code for connections that missed a heartbeat round
HEARTBEAT_CLOSE_CODE = 4002


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Connection
# =============================================================================


class ConnectionState(str, Enum):
    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class Connection:
    """One live WebSocket.

    ``transport`` only needs ``send_json`` and ``close`` coroutines, which
    Starlette's ``WebSocket`` provides.
    """

    def __init__(self, transport: Any) -> None:
        self.id = str(uuid.uuid4())
        self.transport = transport
        self.state = ConnectionState.PENDING
        self.user_id: Optional[str] = None
        self.username: Optional[str] = None
        # Cleared by a failed send, set again by any inbound frame
        self.is_alive = True

    @property
    def authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    def __repr__(self) -> str:
        return f"<Connection {self.id[:8]} {self.state.value} user={self.user_id}>"


@dataclass(frozen=True)
class Outbound:
    """An event and the connections it goes to, fixed when it was produced."""
    recipients: Tuple[Connection, ...]
    event: Dict[str, Any]


# =============================================================================
# Manager
# =============================================================================


class ConnectionManager:
    """Tracks connections, room subscriptions and typing timers.

    Attributes:
        connections: Every open connection, authenticated or not.
        user_connections: user_id -> that user's authenticated connections.
        room_subscribers: room_id -> subscribed user ids. Empty sets are dropped.
        typing_timers: (room_id, user_id) -> pending typing-expiry task.
    """

    def __init__(
        self,
        users: UserStore,
        rooms: RoomStore,
        tokens: TokenService,
        typing_timeout: float = 3.0,
    ) -> None:
        self._users = users
        self._rooms = rooms
        self._tokens = tokens
        self.typing_timeout = typing_timeout

        self.connections: Set[Connection] = set()
        self.user_connections: Dict[str, Set[Connection]] = {}
        self.room_subscribers: Dict[str, Set[str]] = {}
        self.typing_timers: Dict[Tuple[str, str], asyncio.Task] = {}

        self._send_lock = asyncio.Lock()
        self._handlers: Dict[str, Callable[[Connection, Any], List[Outbound]]] = {
            "auth": self._on_auth,
            "join_room": self._on_join_room,
            "leave_room": self._on_leave_room,
            "typing": self._on_typing,
            "presence": self._on_presence,
            "ping": self._on_ping,
        }

    # -------------------------------------------------------------------------
    # Recipient helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_connection(conn: Connection, event: Dict[str, Any]) -> Outbound:
        return Outbound((conn,), event)

    def _to_user(self, user_id: str, event: Dict[str, Any]) -> Outbound:
        return Outbound(tuple(self.user_connections.get(user_id, ())), event)

    def _to_room(self, room_id: str, event: Dict[str, Any],
                 exclude_user: Optional[str] = None) -> Outbound:
        recipients: List[Connection] = []
        for user_id in self.room_subscribers.get(room_id, ()):
            if user_id == exclude_user:
                continue
            recipients.extend(self.user_connections.get(user_id, ()))
        return Outbound(tuple(recipients), event)

    def _to_everyone(self, event: Dict[str, Any]) -> Outbound:
        recipients = [c for conns in self.user_connections.values() for c in conns]
        return Outbound(tuple(recipients), event)

    @staticmethod
    def _error(conn: Connection, exc: ParleyError) -> Outbound:
        event = {"type": "error", "code": exc.code, "message": exc.message}
        field = getattr(exc, "field", None)
        if field:
            event["field"] = field
        return Outbound((conn,), event)

    def _username(self, user_id: str) -> Optional[str]:
        user = self._users.find_by_id(user_id)
        return user.username if user is not None else None

    def _presence(self, user_id: str, status: UserStatus) -> Optional[Outbound]:
        user = self._users.find_by_id(user_id)
        if user is None:
            return None
        return self._to_everyone({
            "type": "presence_update",
            "userId": user_id,
            "username": user.username,
            "status": UserStatus(status).value,
            "timestamp": _timestamp(),
        })

    # -------------------------------------------------------------------------
    # Connection registry
    # -------------------------------------------------------------------------

    def attach(self, conn: Connection) -> None:
        """Track a freshly accepted connection (still pending)."""
        self.connections.add(conn)

    def register(self, user_id: str, conn: Connection) -> bool:
        """Add *conn* to *user_id*'s connection set.

        Idempotent. Returns True when this is the user's first connection.
        """
        conns = self.user_connections.setdefault(user_id, set())
        first = not conns
        conns.add(conn)
        return first

    def unregister(self, user_id: str, conn: Connection) -> List[Outbound]:
        """Remove *conn*; if it was the user's last one, run disconnect cleanup."""
        conns = self.user_connections.get(user_id)
        if not conns or conn not in conns:
            return []
        conns.discard(conn)
        if conns:
            return []
        del self.user_connections[user_id]
        return self.handle_disconnect(user_id)

    def detach(self, conn: Connection) -> List[Outbound]:
        """Forget a closed connection. Safe to call more than once."""
        if conn.state is ConnectionState.CLOSED:
            return []
        was_authenticated = conn.authenticated
        conn.state = ConnectionState.CLOSED
        self.connections.discard(conn)
        if was_authenticated and conn.user_id is not None:
            logger.info("[WS] Connection %s closed for user %s", conn.id[:8], conn.user_id)
            return self.unregister(conn.user_id, conn)
        return []

    async def disconnect(self, conn: Connection) -> None:
        await self.deliver(self.detach(conn))

    def authenticate(self, conn: Connection, principal: Principal,
                     event_type: str = "authenticated") -> List[Outbound]:
        """Bind a pending connection to an authenticated user.

        Acknowledges on the connection itself with *event_type*
        (``connected`` for the handshake, ``authenticated`` for the ``auth``
        message) and, on the user's first connection, marks them online.
        """
        user = principal.user
        conn.state = ConnectionState.AUTHENTICATED
        conn.user_id = user.id
        conn.username = user.username
        first = self.register(user.id, conn)
        logger.info("[WS] User %s (%s) authenticated on %s", user.id, user.username, conn.id[:8])

        outbound = [self._to_connection(conn, {
            "type": event_type,
            "userId": user.id,
            "username": user.username,
        })]
        if first:
            self._users.update_status(user.id, UserStatus.ONLINE)
            presence = self._presence(user.id, UserStatus.ONLINE)
            if presence is not None:
                outbound.append(presence)
        return outbound

    def handle_disconnect(self, user_id: str) -> List[Outbound]:
        """Clean up after a user's last connection has closed.

        Stops their typing indicators, drops every subscription and marks
        them offline.
        """
        username = self._username(user_id)
        outbound: List[Outbound] = []

        for key in [k for k in self.typing_timers if k[1] == user_id]:
            self._cancel_typing_timer(key)
            outbound.append(self._to_room(key[0], {
                "type": "typing_stop",
                "userId": user_id,
                "username": username,
                "roomId": key[0],
            }, exclude_user=user_id))

        for room_id in list(self.room_subscribers):
            self._unsubscribe(room_id, user_id)

        self._users.update_status(user_id, UserStatus.OFFLINE)
        presence = self._presence(user_id, UserStatus.OFFLINE)
        if presence is not None:
            outbound.append(presence)
        logger.info("[WS] User %s disconnected", user_id)
        return outbound

    # -------------------------------------------------------------------------
    # Rooms
    # -------------------------------------------------------------------------

    def _unsubscribe(self, room_id: str, user_id: str) -> bool:
        subscribers = self.room_subscribers.get(room_id)
        if subscribers is None or user_id not in subscribers:
            return False
        subscribers.discard(user_id)
        if not subscribers:
            del self.room_subscribers[room_id]
        return True

    def is_subscribed(self, room_id: str, user_id: str) -> bool:
        return user_id in self.room_subscribers.get(room_id, ())

    def is_online(self, user_id: str) -> bool:
        """True while the user has at least one authenticated connection."""
        return bool(self.user_connections.get(user_id))

    def join_room(self, user_id: str, room_id: str) -> List[Outbound]:
        """Subscribe *user_id* to *room_id*.

        Raises:
            NotFoundError: Unknown room.
            AuthorizationError: Private room the user is not a member of.
        """
        room = self._rooms.find_by_id(room_id)
        if room is None:
            raise NotFoundError("Room not found", code="room_not_found")
        if not self._rooms.can_access(room_id, user_id):
            logger.info("[WS] User %s denied join to private room %s", user_id, room_id)
            raise AuthorizationError("Access denied")

        self.room_subscribers.setdefault(room_id, set()).add(user_id)
        logger.debug("[WS] User %s joined room %s", user_id, room_id)
        return [
            self._to_user(user_id, {"type": "joined_room", "roomId": room_id}),
            self._to_room(room_id, {
                "type": "user_joined",
                "userId": user_id,
                "username": self._username(user_id),
                "roomId": room_id,
            }, exclude_user=user_id),
        ]

    def leave_room(self, user_id: str, room_id: str) -> List[Outbound]:
        """Unsubscribe *user_id* from *room_id*. Leaving a room never joined is a no-op ack."""
        username = self._username(user_id)
        outbound: List[Outbound] = []
        if self._cancel_typing_timer((room_id, user_id)):
            outbound.append(self._to_room(room_id, {
                "type": "typing_stop",
                "userId": user_id,
                "username": username,
                "roomId": room_id,
            }, exclude_user=user_id))

        was_subscribed = self._unsubscribe(room_id, user_id)
        outbound.append(self._to_user(user_id, {"type": "left_room", "roomId": room_id}))
        if was_subscribed:
            outbound.append(self._to_room(room_id, {
                "type": "user_left",
                "userId": user_id,
                "username": username,
                "roomId": room_id,
            }))
        return outbound

    # -------------------------------------------------------------------------
    # Typing
    # -------------------------------------------------------------------------

    def _cancel_typing_timer(self, key: Tuple[str, str]) -> bool:
        task = self.typing_timers.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def typing(self, user_id: str, username: str, room_id: str, is_typing: bool) -> List[Outbound]:
        """Start, restart or stop a typing indicator.

        At most one timer exists per (room, user). A start replaces any
        pending timer; an explicit stop cancels the timer and always tells
        the rest of the room. Must run inside the event loop.

        Raises:
            NotFoundError: Unknown room.
            AuthorizationError: Private room the user is not a member of.
        """
        if self._rooms.find_by_id(room_id) is None:
            raise NotFoundError("Room not found", code="room_not_found")
        if not self._rooms.can_access(room_id, user_id):
            raise AuthorizationError("Access denied")

        key = (room_id, user_id)
        self._cancel_typing_timer(key)
        event = {"userId": user_id, "username": username, "roomId": room_id}

        if is_typing:
            self.typing_timers[key] = asyncio.get_running_loop().create_task(
                self._expire_typing(key, username)
            )
            return [self._to_room(room_id, {"type": "typing_start", **event}, exclude_user=user_id)]
        return [self._to_room(room_id, {"type": "typing_stop", **event}, exclude_user=user_id)]

    async def _expire_typing(self, key: Tuple[str, str], username: str) -> None:
        await asyncio.sleep(self.typing_timeout)
        # A restart or stop may have replaced this timer while it slept
        if self.typing_timers.get(key) is not asyncio.current_task():
            return
        del self.typing_timers[key]
        room_id, user_id = key
        logger.debug("[WS] Typing expired for user %s in room %s", user_id, room_id)
        await self.deliver([self._to_room(room_id, {
            "type": "typing_stop",
            "userId": user_id,
            "username": username,
            "roomId": room_id,
        })])

    # -------------------------------------------------------------------------
    # Presence and messages
    # -------------------------------------------------------------------------

    def presence_update(self, user_id: str, status: str) -> List[Outbound]:
        """Persist and broadcast a status change.

        Raises:
            ValidationError: *status* is not a known status.
        """
        try:
            new_status = UserStatus(status)
        except ValueError:
            raise ValidationError("Invalid status", field="status", code="invalid_status")
        if self._users.update_status(user_id, new_status) is None:
            raise NotFoundError("User not found", code="user_not_found")
        presence = self._presence(user_id, new_status)
        return [presence] if presence is not None else []

    async def publish_presence(self, user_id: str, status: str) -> None:
        await self.deliver(self.presence_update(user_id, status))

    def new_message(self, room_id: str, message: Dict[str, Any]) -> List[Outbound]:
        return [self._to_room(room_id, {
            "type": "new_message",
            "roomId": room_id,
            "message": message,
            "timestamp": _timestamp(),
        })]

    async def broadcast_new_message(self, room_id: str, message: Dict[str, Any]) -> None:
        """Push a freshly posted message to every subscriber of *room_id*."""
        await self.deliver(self.new_message(room_id, message))

    async def broadcast_message_updated(self, room_id: str, message: Dict[str, Any]) -> None:
        await self.deliver([self._to_room(room_id, {
            "type": "message_updated",
            "roomId": room_id,
            "message": message,
            "timestamp": _timestamp(),
        })])

    async def broadcast_message_deleted(self, room_id: str, message_id: str) -> None:
        await self.deliver([self._to_room(room_id, {
            "type": "message_deleted",
            "roomId": room_id,
            "messageId": message_id,
            "timestamp": _timestamp(),
        })])

    # -------------------------------------------------------------------------
    # Inbound dispatch
    # -------------------------------------------------------------------------

    def handle(self, conn: Connection, raw: Any) -> List[Outbound]:
        """Route one inbound frame. Errors go back to *conn* only."""
        try:
            data = decode_frame(raw)
            if not conn.authenticated and data.get("type") != "auth":
                raise AuthError("Authentication required", code="auth_required")
            message = parse_message(data)
            return self._handlers[message.type](conn, message)
        except ParleyError as e:
            logger.debug("[WS] %s rejected frame: %s", conn, e.code)
            return [self._error(conn, e)]

    async def dispatch(self, conn: Connection, raw: Any) -> None:
        conn.is_alive = True
        await self.deliver(self.handle(conn, raw))

    def _on_auth(self, conn: Connection, message: AuthMessage) -> List[Outbound]:
        if conn.authenticated:
            raise ValidationError("Already authenticated", code="already_authenticated")
        # AuthError propagates; the connection stays pending
        principal = self._tokens.authenticate(message.token)
        return self.authenticate(conn, principal, "authenticated")

    def _on_join_room(self, conn: Connection, message: JoinRoomMessage) -> List[Outbound]:
        return self.join_room(conn.user_id, message.roomId)

    def _on_leave_room(self, conn: Connection, message: LeaveRoomMessage) -> List[Outbound]:
        return self.leave_room(conn.user_id, message.roomId)

    def _on_typing(self, conn: Connection, message: TypingMessage) -> List[Outbound]:
        return self.typing(conn.user_id, conn.username, message.roomId, message.isTyping)

    def _on_presence(self, conn: Connection, message: PresenceMessage) -> List[Outbound]:
        return self.presence_update(conn.user_id, message.status)

    def _on_ping(self, conn: Connection, message: Any) -> List[Outbound]:
        return [self._to_connection(conn, {"type": "pong", "timestamp": _timestamp()})]

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def deliver(self, outbound: Iterable[Outbound]) -> None:
        """Send events in order, each to its recipients concurrently."""
        outbound = list(outbound)
        if not outbound:
            return
        async with self._send_lock:
            for item in outbound:
                recipients = [c for c in item.recipients if c.state is not ConnectionState.CLOSED]
                if not recipients:
                    continue
                await asyncio.gather(
                    *[self._safe_send(conn, item.event) for conn in recipients]
                )

    async def _safe_send(self, conn: Connection, event: Dict[str, Any]) -> bool:
        """Send one event; a failed send marks the connection for the next heartbeat."""
        try:
            await conn.transport.send_json(event)
            return True
        except Exception as e:
            logger.debug("[WS] Send to %s failed: %s", conn, e)
            conn.is_alive = False
            return False

    # -------------------------------------------------------------------------
    # Heartbeat and lifecycle
    # -------------------------------------------------------------------------

    async def heartbeat(self) -> None:
        """Run one heartbeat round.

        Pings go out at the protocol level (uvicorn's ``ws_ping_interval`` and
        ``ws_ping_timeout``), so a peer that stops answering has its socket
        closed and its receive loop ends in ``disconnect``. This round closes
        with 4002 the connections whose last send failed.
        """
        for conn in list(self.connections):
            if not conn.is_alive:
                logger.info("[WS] Terminating unresponsive connection %s", conn)
                await self.terminate(conn, HEARTBEAT_CLOSE_CODE, "Heartbeat timeout")

    async def run_heartbeat(self, interval: float) -> None:
        logger.info("[WS] Heartbeat every %.1fs", interval)
        while True:
            await asyncio.sleep(interval)
            await self.heartbeat()

    async def terminate(self, conn: Connection, code: int, reason: str) -> None:
        try:
            await conn.transport.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("[WS] Close of %s failed: %s", conn, e)
        await self.disconnect(conn)

    async def shutdown(self) -> None:
        """Cancel pending typing timers and close every connection."""
        for key in list(self.typing_timers):
            self._cancel_typing_timer(key)
        for conn in list(self.connections):
            await self.terminate(conn, 1001, "Server shutting down")

    def stats(self) -> Dict[str, int]:
        return {
            "totalConnections": len(self.connections),
            "uniqueUsers": len(self.user_connections),
            "activeRooms": len(self.room_subscribers),
            "typingIndicators": len(self.typing_timers),
        }
