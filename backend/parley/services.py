"""Per-application service container and demo seed data.

``create_app`` builds one ``Services`` instance and stores it on
``app.state.services``; routers and the WebSocket endpoint read it from
there, so two apps in one process never share state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from parley.auth.sessions import SessionStore
from parley.auth.tokens import TokenService
from parley.auth.users import UserRole, UserStore
from parley.chat.manager import ConnectionManager
from parley.config import AppConfig
from parley.messages.store import MessageStore
from parley.rooms.store import RoomStore, RoomVisibility

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    users: UserStore
    sessions: SessionStore
    rooms: RoomStore
    messages: MessageStore
    tokens: TokenService
    manager: ConnectionManager


def build_services(config: AppConfig) -> Services:
    users = UserStore(bcrypt_rounds=config.auth.bcrypt_rounds)
    sessions = SessionStore(max_age=timedelta(minutes=config.auth.session_max_age_minutes))
    rooms = RoomStore()
    messages = MessageStore()
    tokens = TokenService(
        sessions,
        users,
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.secrets.jwt.algorithm,
        ttl=timedelta(minutes=config.auth.token_expire_minutes),
    )
    manager = ConnectionManager(
        users,
        rooms,
        tokens,
        typing_timeout=config.websocket.typing_timeout_seconds,
    )
    services = Services(
        config=config,
        users=users,
        sessions=sessions,
        rooms=rooms,
        messages=messages,
        tokens=tokens,
        manager=manager,
    )
    if config.seed.enabled:
        seed_demo_data(services)
    return services


# =============================================================================
# Seed data
# =============================================================================

SEED_USERS = [
    # (id, username, email, password, role)
    ("user1", "alice",   "alice@chat.com",   "password123", UserRole.ADMIN),
    ("user2", "bob",     "bob@chat.com",     "bobsecret",   UserRole.USER),
    ("user3", "charlie", "charlie@chat.com", "charlie2024", UserRole.MODERATOR),
]


def seed_demo_data(services: Services) -> None:
    """Load the demo accounts, the ``general`` and ``private`` rooms and a few messages."""
    for user_id, username, email, password, role in SEED_USERS:
        services.users.create_user(username, email, password, role=role, user_id=user_id)

    services.rooms.create_room(
        "General Chat", owner_id="user1", visibility=RoomVisibility.PUBLIC,
        members={"user1", "user2", "user3"}, room_id="general",
    )
    services.rooms.create_room(
        "Private Room", owner_id="user1", visibility=RoomVisibility.PRIVATE,
        room_id="private",
    )

    base = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    services.messages.create("general", "user1", "alice", "Welcome to the chat!",
                             message_id="1", created_at=base)
    services.messages.create("general", "user2", "bob", "Hello everyone!",
                             message_id="2", created_at=base + timedelta(minutes=1))
    services.messages.create("private", "user1", "alice", "This is a private message",
                             message_id="3", created_at=base + timedelta(minutes=2))
    logger.info(
        "[seed] Loaded %d users, %d rooms", services.users.count(), len(services.rooms.list_rooms())
    )
