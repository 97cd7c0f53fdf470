"""Tests for the /auth endpoints and bearer-token handling."""
from conftest import bearer, login


def test_login_returns_token_and_minimal_user(client):
    response = client.post("/auth/login", json={"username": "alice", "password": "password123"})
    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "Login successful"
    assert data["token"]
    assert data["user"] == {
        "username": "alice",
        "role": "admin",
        "status": "online",
        "avatar": data["user"]["avatar"],
    }
    assert "email" not in data["user"]
    assert "password_hash" not in data["user"]


def test_login_by_email(client):
    response = client.post("/auth/login", json={"email": "bob@chat.com", "password": "bobsecret"})
    assert response.status_code == 200
    assert response.json()["user"]["username"] == "bob"


def test_login_wrong_password_and_unknown_user_look_the_same(client):
    wrong = client.post("/auth/login", json={"username": "alice", "password": "nope"})
    unknown = client.post("/auth/login", json={"username": "mallory", "password": "nope"})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json() == {"error": "Invalid credentials", "code": "invalid_credentials"}


def test_login_requires_identifier(client):
    response = client.post("/auth/login", json={"password": "password123"})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_register_creates_user_without_logging_in(client):
    response = client.post(
        "/auth/register",
        json={"username": "dana", "email": "dana@chat.com", "password": "hunter22"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["username"] == "dana"
    assert body["user"]["role"] == "user"
    assert "token" not in body

    token = login(client, "dana", "hunter22")
    assert token


def test_register_duplicate_is_conflict(client):
    response = client.post(
        "/auth/register",
        json={"username": "alice", "email": "someone@chat.com", "password": "hunter22"},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "user_exists"


def test_register_validation_names_field(client):
    response = client.post(
        "/auth/register",
        json={"username": "dana", "email": "dana@chat.com", "password": "123"},
    )
    assert response.status_code == 400
    assert response.json()["field"] == "password"

    response = client.post(
        "/auth/register",
        json={"username": "bad name!", "email": "dana@chat.com", "password": "hunter22"},
    )
    assert response.status_code == 400
    assert response.json()["field"] == "username"


def test_profile_returns_own_profile(client, bob_token):
    response = client.get("/auth/profile", headers=bearer(bob_token))
    assert response.status_code == 200
    profile = response.json()
    assert profile["username"] == "bob"
    assert profile["status"] == "online"
    assert "lastSeen" in profile and "createdAt" in profile
    assert "email" not in profile


def test_missing_and_malformed_headers_have_distinct_codes(client, alice_token):
    assert client.get("/auth/profile").json()["code"] == "auth_required"

    response = client.get("/auth/profile", headers={"Authorization": f"Token {alice_token}"})
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_auth_header"

    response = client.get("/auth/profile", headers={"Authorization": "Bearer"})
    assert response.json()["code"] == "invalid_auth_header"

    response = client.get("/auth/profile", headers=bearer("not.a.jwt"))
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_token"


def test_logout_revokes_token(client, alice_token):
    response = client.post("/auth/logout", headers=bearer(alice_token))
    assert response.status_code == 200
    assert response.json() == {"message": "Logout successful"}

    response = client.get("/auth/profile", headers=bearer(alice_token))
    assert response.status_code == 401
    assert response.json()["code"] == "invalid_token"

    services = client.app.state.services
    assert services.users.find_by_id("user1").status.value == "offline"


def test_logout_leaves_other_sessions_alone(client):
    first = login(client, "bob")
    second = login(client, "bob")
    client.post("/auth/logout", headers=bearer(first))

    assert client.get("/auth/profile", headers=bearer(second)).status_code == 200


def test_update_own_status(client, bob_token):
    response = client.put("/auth/status", json={"status": "away"}, headers=bearer(bob_token))
    assert response.status_code == 200
    assert response.json()["status"] == "away"
    assert client.app.state.services.users.find_by_id("user2").status.value == "away"


def test_update_status_rejects_unknown_value(client, bob_token):
    response = client.put("/auth/status", json={"status": "sleeping"}, headers=bearer(bob_token))
    assert response.status_code == 400
    assert response.json()["field"] == "status"
    assert client.app.state.services.users.find_by_id("user2").status.value == "online"


def test_update_other_users_status_requires_admin(client, bob_token, alice_token):
    response = client.put(
        "/auth/status", json={"status": "busy", "userId": "user3"}, headers=bearer(bob_token)
    )
    assert response.status_code == 403

    response = client.put(
        "/auth/status", json={"status": "busy", "userId": "user3"}, headers=bearer(alice_token)
    )
    assert response.status_code == 200
    assert client.app.state.services.users.find_by_id("user3").status.value == "busy"

    response = client.put(
        "/auth/status", json={"status": "busy", "userId": "ghost"}, headers=bearer(alice_token)
    )
    assert response.status_code == 404


def test_admin_user_list(client, alice_token, bob_token):
    assert client.get("/auth/admin/users", headers=bearer(bob_token)).status_code == 403

    response = client.get("/auth/admin/users?limit=2", headers=bearer(alice_token))
    assert response.status_code == 200
    body = response.json()
    assert len(body["users"]) == 2
    assert body["pagination"]["total"] == 3
    assert body["pagination"]["hasMore"] is True
    assert set(body["users"][0]) == {"username", "role", "status"}


def test_admin_user_list_clamps_limit(client, alice_token):
    response = client.get("/auth/admin/users?limit=1000&offset=-5", headers=bearer(alice_token))
    pagination = response.json()["pagination"]
    assert pagination["limit"] == 100
    assert pagination["offset"] == 0
