"""Unit tests for ConnectionManager using in-memory transports.

No sockets are involved: each Connection wraps a FakeTransport that records
what was sent and how it was closed.
"""
import asyncio
import json
import uuid
from datetime import timedelta

import pytest

from parley.auth.sessions import SessionStore
from parley.auth.tokens import TokenService
from parley.auth.users import UserRole, UserStatus, UserStore
from parley.chat.manager import HEARTBEAT_CLOSE_CODE, Connection, ConnectionManager, ConnectionState
from parley.rooms.store import RoomStore, RoomVisibility

TYPING_TIMEOUT = 0.05


class FakeTransport:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed_with = None
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.closed_with = (code, reason)

    def types(self):
        return [event["type"] for event in self.sent]

    def of_type(self, event_type):
        return [event for event in self.sent if event["type"] == event_type]


class Harness:
    """Stores, token service and manager wired together like the real app."""

    def __init__(self):
        self.users = UserStore(bcrypt_rounds=4)
        self.sessions = SessionStore(max_age=timedelta(hours=1))
        self.rooms = RoomStore()
        self.tokens = TokenService(self.sessions, self.users, secret_key="x" * 32)
        self.manager = ConnectionManager(
            self.users, self.rooms, self.tokens, typing_timeout=TYPING_TIMEOUT
        )
        self.users.create_user("alice", "alice@chat.com", "pw-alice", role=UserRole.ADMIN, user_id="u1")
        self.users.create_user("bob", "bob@chat.com", "pw-bob", user_id="u2")
        self.users.create_user("carol", "carol@chat.com", "pw-carol", user_id="u3")
        self.rooms.create_room("General", owner_id="u1", room_id="general")
        self.rooms.create_room("Secret", owner_id="u1", visibility=RoomVisibility.PRIVATE, room_id="secret")

    def token_for(self, user_id):
        session_id = str(uuid.uuid4())
        issued = self.tokens.issue(self.users.find_by_id(user_id), session_id)
        self.sessions.create_session(session_id, user_id, issued.token_id)
        return issued.token

    async def connect(self, user_id, **transport_kwargs):
        conn = Connection(FakeTransport(**transport_kwargs))
        self.manager.attach(conn)
        principal = self.tokens.authenticate(self.token_for(user_id))
        await self.manager.deliver(self.manager.authenticate(conn, principal, "connected"))
        return conn

    async def send(self, conn, **frame):
        await self.manager.dispatch(conn, json.dumps(frame))


@pytest.fixture
def harness():
    return Harness()


def clear(*conns):
    for conn in conns:
        conn.transport.sent.clear()


# =============================================================================
# Registry and presence counting
# =============================================================================


@pytest.mark.asyncio
async def test_online_presence_only_on_first_connection(harness):
    carol = await harness.connect("u3")
    clear(carol)

    await harness.connect("u1")
    await harness.connect("u1")

    online = carol.transport.of_type("presence_update")
    assert len(online) == 1
    assert online[0]["userId"] == "u1"
    assert online[0]["status"] == "online"
    assert harness.users.find_by_id("u1").status is UserStatus.ONLINE


@pytest.mark.asyncio
async def test_offline_presence_only_after_last_connection(harness):
    carol = await harness.connect("u3")
    first = await harness.connect("u1")
    second = await harness.connect("u1")
    clear(carol)

    await harness.manager.disconnect(first)
    assert carol.transport.of_type("presence_update") == []
    assert harness.manager.user_connections["u1"] == {second}

    await harness.manager.disconnect(second)
    offline = carol.transport.of_type("presence_update")
    assert len(offline) == 1
    assert offline[0]["status"] == "offline"
    assert "u1" not in harness.manager.user_connections
    assert harness.users.find_by_id("u1").status is UserStatus.OFFLINE

    # Detaching twice is harmless
    await harness.manager.disconnect(second)
    assert len(carol.transport.of_type("presence_update")) == 1


@pytest.mark.asyncio
async def test_register_is_idempotent(harness):
    conn = Connection(FakeTransport())
    assert harness.manager.register("u1", conn) is True
    assert harness.manager.register("u1", conn) is False
    assert harness.manager.user_connections["u1"] == {conn}


# =============================================================================
# Rooms
# =============================================================================


@pytest.mark.asyncio
async def test_join_broadcast_audience(harness):
    alice = await harness.connect("u1")
    bob = await harness.connect("u2")
    bob_tab = await harness.connect("u2")
    await harness.send(alice, type="join_room", roomId="general")
    clear(alice, bob, bob_tab)

    await harness.send(bob, type="join_room", roomId="general")

    # every bob connection gets the ack, nobody else does
    assert bob.transport.sent == [{"type": "joined_room", "roomId": "general"}]
    assert bob_tab.transport.sent == [{"type": "joined_room", "roomId": "general"}]
    assert alice.transport.types() == ["user_joined"]
    assert harness.manager.room_subscribers["general"] == {"u1", "u2"}


@pytest.mark.asyncio
async def test_join_private_room_denied_to_caller_only(harness):
    alice = await harness.connect("u1")
    bob = await harness.connect("u2")
    bob_tab = await harness.connect("u2")
    clear(alice, bob, bob_tab)

    await harness.send(bob, type="join_room", roomId="secret")

    assert bob.transport.sent[0]["type"] == "error"
    assert bob.transport.sent[0]["message"] == "Access denied"
    assert bob_tab.transport.sent == []
    assert alice.transport.sent == []
    assert "secret" not in harness.manager.room_subscribers


@pytest.mark.asyncio
async def test_public_join_grants_nothing_private(harness):
    bob = await harness.connect("u2")
    await harness.send(bob, type="join_room", roomId="general")
    clear(bob)

    await harness.send(bob, type="join_room", roomId="secret")

    assert bob.transport.sent[0]["type"] == "error"
    assert bob.transport.sent[0]["code"] == "forbidden"
    assert harness.manager.is_subscribed("general", "u2")
    assert not harness.manager.is_subscribed("secret", "u2")


@pytest.mark.asyncio
async def test_membership_is_checked_on_every_join(harness):
    bob = await harness.connect("u2")
    harness.rooms.add_member("secret", "u2")
    await harness.send(bob, type="join_room", roomId="secret")
    assert bob.transport.of_type("joined_room") == [{"type": "joined_room", "roomId": "secret"}]

    await harness.send(bob, type="leave_room", roomId="secret")
    harness.rooms.remove_member("secret", "u2")
    clear(bob)

    await harness.send(bob, type="join_room", roomId="secret")
    assert bob.transport.types() == ["error"]
    assert bob.transport.sent[0]["message"] == "Access denied"
    assert not harness.manager.is_subscribed("secret", "u2")


@pytest.mark.asyncio
async def test_leave_without_join_only_acks(harness):
    alice = await harness.connect("u1")
    bob = await harness.connect("u2")
    await harness.send(alice, type="join_room", roomId="general")
    clear(alice, bob)

    await harness.send(bob, type="leave_room", roomId="general")

    assert bob.transport.sent == [{"type": "left_room", "roomId": "general"}]
    assert alice.transport.sent == []


@pytest.mark.asyncio
async def test_empty_subscription_sets_are_dropped(harness):
    alice = await harness.connect("u1")
    await harness.send(alice, type="join_room", roomId="general")
    await harness.send(alice, type="leave_room", roomId="general")
    assert harness.manager.room_subscribers == {}


# =============================================================================
# Typing
# =============================================================================


async def _typing_pair(harness):
    alice = await harness.connect("u1")
    bob = await harness.connect("u2")
    await harness.send(alice, type="join_room", roomId="general")
    await harness.send(bob, type="join_room", roomId="general")
    clear(alice, bob)
    return alice, bob


@pytest.mark.asyncio
async def test_typing_restart_yields_single_stop(harness):
    alice, bob = await _typing_pair(harness)

    await harness.send(alice, type="typing", roomId="general", isTyping=True)
    await asyncio.sleep(TYPING_TIMEOUT / 2)
    await harness.send(alice, type="typing", roomId="general", isTyping=True)
    assert len(harness.manager.typing_timers) == 1

    await asyncio.sleep(TYPING_TIMEOUT * 3)

    assert bob.transport.types() == ["typing_start", "typing_start", "typing_stop"]
    # expiry goes to the whole room, typer included
    assert alice.transport.types() == ["typing_stop"]
    assert harness.manager.typing_timers == {}


@pytest.mark.asyncio
async def test_explicit_stop_cancels_timer(harness):
    alice, bob = await _typing_pair(harness)

    await harness.send(alice, type="typing", roomId="general", isTyping=True)
    await harness.send(alice, type="typing", roomId="general", isTyping=False)
    await asyncio.sleep(TYPING_TIMEOUT * 3)

    assert bob.transport.types() == ["typing_start", "typing_stop"]
    assert alice.transport.sent == []
    assert harness.manager.typing_timers == {}


@pytest.mark.asyncio
async def test_typing_needs_access_not_subscription(harness):
    alice = await harness.connect("u1")
    bob = await harness.connect("u2")
    await harness.send(alice, type="join_room", roomId="general")
    clear(alice, bob)

    await harness.send(bob, type="typing", roomId="general", isTyping=True)
    assert alice.transport.types() == ["typing_start"]
    assert bob.transport.sent == []

    await harness.send(bob, type="typing", roomId="secret", isTyping=True)
    assert bob.transport.sent[0]["code"] == "forbidden"
    assert list(harness.manager.typing_timers) == [("general", "u2")]

    await harness.send(bob, type="typing", roomId="general", isTyping=False)
    assert alice.transport.types() == ["typing_start", "typing_stop"]
    assert harness.manager.typing_timers == {}


@pytest.mark.asyncio
async def test_leave_room_stops_typing(harness):
    alice, bob = await _typing_pair(harness)

    await harness.send(alice, type="typing", roomId="general", isTyping=True)
    await harness.send(alice, type="leave_room", roomId="general")
    await asyncio.sleep(TYPING_TIMEOUT * 3)

    assert bob.transport.types() == ["typing_start", "typing_stop", "user_left"]
    assert harness.manager.typing_timers == {}


@pytest.mark.asyncio
async def test_disconnect_clears_typing_and_subscriptions(harness):
    alice, bob = await _typing_pair(harness)
    await harness.send(alice, type="typing", roomId="general", isTyping=True)
    clear(bob)

    await harness.manager.disconnect(alice)
    await asyncio.sleep(TYPING_TIMEOUT * 3)

    assert bob.transport.types() == ["typing_stop", "presence_update"]
    assert harness.manager.room_subscribers == {"general": {"u2"}}
    assert harness.manager.typing_timers == {}


# =============================================================================
# Presence, messages and dispatch
# =============================================================================


@pytest.mark.asyncio
async def test_presence_is_global_and_validated(harness):
    alice = await harness.connect("u1")
    bob = await harness.connect("u2")
    clear(alice, bob)

    await harness.send(bob, type="presence", status="napping")
    assert bob.transport.sent[0]["code"] == "invalid_status"
    assert alice.transport.sent == []
    assert harness.users.find_by_id("u2").status is UserStatus.ONLINE

    await harness.send(bob, type="presence", status="away")
    assert alice.transport.of_type("presence_update")[0]["status"] == "away"
    assert harness.users.find_by_id("u2").status is UserStatus.AWAY


@pytest.mark.asyncio
async def test_new_message_only_reaches_subscribers(harness):
    alice = await harness.connect("u1")
    bob = await harness.connect("u2")
    await harness.send(alice, type="join_room", roomId="general")
    clear(alice, bob)

    await harness.manager.broadcast_new_message("general", {"id": "m1", "content": "hi"})

    assert alice.transport.types() == ["new_message"]
    assert alice.transport.sent[0]["message"] == {"id": "m1", "content": "hi"}
    assert bob.transport.sent == []


@pytest.mark.asyncio
async def test_pending_connection_flow(harness):
    conn = Connection(FakeTransport())
    harness.manager.attach(conn)

    await harness.manager.dispatch(conn, json.dumps({"type": "join_room", "roomId": "general"}))
    await harness.manager.dispatch(conn, json.dumps({"type": "auth", "token": "bogus"}))
    assert [e["code"] for e in conn.transport.sent] == ["auth_required", "invalid_token"]
    assert conn.state is ConnectionState.PENDING

    await harness.manager.dispatch(conn, {"type": "auth", "token": harness.token_for("u2")})
    assert conn.state is ConnectionState.AUTHENTICATED
    assert conn.transport.sent[2] == {"type": "authenticated", "userId": "u2", "username": "bob"}


@pytest.mark.asyncio
async def test_non_string_type_keeps_connection_open(harness):
    alice = await harness.connect("u1")
    clear(alice)

    await harness.manager.dispatch(alice, json.dumps({"type": ["join_room"], "roomId": "general"}))
    await harness.manager.dispatch(alice, json.dumps({"type": {}}))

    assert [e["code"] for e in alice.transport.sent] == ["unknown_type", "unknown_type"]
    assert alice.state is ConnectionState.AUTHENTICATED
    assert "general" not in harness.manager.room_subscribers


@pytest.mark.asyncio
async def test_is_online_tracks_connections(harness):
    assert not harness.manager.is_online("u1")
    alice = await harness.connect("u1")
    assert harness.manager.is_online("u1")
    await harness.manager.disconnect(alice)
    assert not harness.manager.is_online("u1")


@pytest.mark.asyncio
async def test_auth_message_with_revoked_token(harness):
    token = harness.token_for("u2")
    claims = harness.tokens.verify(token)
    harness.sessions.revoke_token(claims.token_id, claims.expires_at)

    conn = Connection(FakeTransport())
    harness.manager.attach(conn)
    await harness.manager.dispatch(conn, {"type": "auth", "token": token})
    assert conn.transport.sent[0]["code"] == "invalid_token"
    assert conn.state is ConnectionState.PENDING


# =============================================================================
# Heartbeat and delivery
# =============================================================================


@pytest.mark.asyncio
async def test_heartbeat_keeps_listen_only_connections(harness):
    alice = await harness.connect("u1")
    await harness.send(alice, type="join_room", roomId="general")
    clear(alice)

    for _ in range(3):
        await harness.manager.heartbeat()

    assert alice.transport.closed_with is None
    assert alice.state is ConnectionState.AUTHENTICATED
    # nothing is pushed to check liveness
    assert alice.transport.sent == []

    await harness.manager.broadcast_new_message("general", {"id": "m1"})
    assert alice.transport.types() == ["new_message"]


@pytest.mark.asyncio
async def test_heartbeat_terminates_connections_with_failed_sends(harness):
    carol = await harness.connect("u3")
    alice = await harness.connect("u1")
    clear(carol)
    alice.transport.fail = True

    await harness.manager.publish_presence("u3", "away")
    assert alice.is_alive is False

    await harness.manager.heartbeat()

    assert alice.transport.closed_with == (HEARTBEAT_CLOSE_CODE, "Heartbeat timeout")
    assert alice.state is ConnectionState.CLOSED
    assert alice not in harness.manager.connections
    assert carol.transport.closed_with is None
    offline = carol.transport.of_type("presence_update")
    assert offline[-1]["userId"] == "u1"
    assert offline[-1]["status"] == "offline"


@pytest.mark.asyncio
async def test_failed_send_marks_connection_dead(harness):
    bob = await harness.connect("u2", fail=True)
    assert bob.is_alive is False

    await harness.manager.heartbeat()
    assert bob.state is ConnectionState.CLOSED
    assert "u2" not in harness.manager.user_connections


@pytest.mark.asyncio
async def test_closed_connections_receive_nothing(harness):
    alice = await harness.connect("u1")
    await harness.send(alice, type="join_room", roomId="general")
    outbound = harness.manager.new_message("general", {"id": "m1"})
    await harness.manager.disconnect(alice)
    clear(alice)

    await harness.manager.deliver(outbound)
    assert alice.transport.sent == []


@pytest.mark.asyncio
async def test_stats(harness):
    pending = Connection(FakeTransport())
    harness.manager.attach(pending)
    alice = await harness.connect("u1")
    await harness.connect("u1")
    await harness.send(alice, type="join_room", roomId="general")

    assert harness.manager.stats() == {
        "totalConnections": 3,
        "uniqueUsers": 1,
        "activeRooms": 1,
        "typingIndicators": 0,
    }
