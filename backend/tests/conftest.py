"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from parley.config import AppConfig, AuthSettings, RateLimitSettings, WebSocketSettings
from parley.main import create_app

SEED_PASSWORDS = {
    "alice": "password123",
    "bob": "bobsecret",
    "charlie": "charlie2024",
}


@pytest.fixture
def config() -> AppConfig:
    """Seeded config with fast hashing, no rate limits and a short typing timeout."""
    return AppConfig(
        auth=AuthSettings(bcrypt_rounds=4),
        websocket=WebSocketSettings(typing_timeout_seconds=0.2),
        rate_limit=RateLimitSettings(enabled=False),
    )


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    """TestClient running the app lifespan; one event loop for HTTP and WebSocket."""
    with TestClient(app) as test_client:
        yield test_client


def login(client: TestClient, username: str, password: str = None) -> str:
    """Log a seed user in and return the bearer token."""
    response = client.post(
        "/auth/login",
        json={"username": username, "password": password or SEED_PASSWORDS[username]},
    )
    assert response.status_code == 200, response.text
    return response.json()["token"]


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice_token(client) -> str:
    return login(client, "alice")


@pytest.fixture
def bob_token(client) -> str:
    return login(client, "bob")


@pytest.fixture
def charlie_token(client) -> str:
    return login(client, "charlie")
