from fastapi.testclient import TestClient

from conftest import add_user, api_headers, make_config
from vulnz.admin import create_app
from vulnz.storage import get_user_by_username, list_api_call_logs


def test_register_then_login(client):
    response = client.post("/api/auth/register", json={"username": "new@example.com", "password": "Secret123"})
    assert response.status_code == 201
    assert response.json()["success"] is True

    response = client.post("/api/auth/login", json={"username": "new@example.com", "password": "Secret123"})
    assert response.status_code == 200
    assert response.json()["user"]["username"] == "new@example.com"
    assert "vulnz_session" in response.cookies

    me = client.get("/api/auth/me").json()
    assert me["username"] == "new@example.com"

    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").json() is None


def test_register_duplicate_gets_same_answer(client, conn):
    add_user(conn, "taken@example.com")
    response = client.post("/api/auth/register", json={"username": "taken@example.com", "password": "Secret123"})
    assert response.status_code == 201


def test_register_weak_password_lists_errors(client):
    response = client.post("/api/auth/register", json={"username": "new@example.com", "password": "abc"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert len(body["errors"]) == 2


def test_login_rejects_bad_password(client, conn):
    add_user(conn, "user@example.com")
    response = client.post("/api/auth/login", json={"username": "user@example.com", "password": "Wrong1234"})
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Invalid username or password."}


def test_unauthenticated_api_call(client):
    response = client.get("/api/websites")
    assert response.status_code == 401


def test_password_reset_over_http(client, conn, mailer):
    add_user(conn, "user@example.com")
    response = client.post("/api/auth/reset-password", json={"username": "user@example.com"})
    assert response.status_code == 200
    unknown = client.post("/api/auth/reset-password", json={"username": "ghost@example.com"})
    assert unknown.json()["message"] == response.json()["message"]

    (message,) = mailer.sent
    assert "/ui/reset-password?token=" in message["text"]
    token = message["text"].split("token=", 1)[1].split()[0]
    assert client.get(f"/api/auth/validate-token/{token}").status_code == 200

    response = client.post("/api/auth/update-password", json={"token": token, "newPassword": "Changed123"})
    assert response.status_code == 200
    assert client.get(f"/api/auth/validate-token/{token}").status_code == 404
    login = client.post("/api/auth/login", json={"username": "user@example.com", "password": "Changed123"})
    assert login.status_code == 200


def test_api_keys_and_call_log(client, conn):
    user = add_user(conn, "user@example.com")
    headers = api_headers(conn, user)
    response = client.post("/api/api-keys", headers=headers)
    assert response.status_code == 201
    new_key = response.json()["apiKey"]

    keys = client.get("/api/api-keys", headers=headers).json()
    assert {key["api_key"] for key in keys} == {headers["X-API-Key"], new_key}
    assert client.delete(f"/api/api-keys/{new_key}", headers=headers).status_code == 204
    assert client.delete(f"/api/api-keys/{new_key}", headers=headers).status_code == 404

    logged = list_api_call_logs(conn, user.id, 10, 0)
    assert [(entry.method, entry.path) for entry in logged][-1] == ("POST", "/api/api-keys")


def test_invalid_api_key_is_unauthorized(client):
    response = client.get("/api/websites", headers={"X-API-Key": "nope"})
    assert response.status_code == 401


def test_unknown_api_key_falls_back_to_session(client, conn):
    add_user(conn, "user@example.com")
    client.post("/api/auth/login", json={"username": "user@example.com", "password": "Secret123"})
    assert client.get("/api/websites").status_code == 200

    response = client.get("/api/websites", headers={"X-API-Key": "stale"})
    assert response.status_code == 200

    client.post("/api/auth/logout")
    assert client.get("/api/websites", headers={"X-API-Key": "stale"}).status_code == 401


def test_login_is_throttled_per_client(tmp_path, conn):
    add_user(conn, "user@example.com")
    client = TestClient(create_app(make_config(tmp_path, api={"login_limit": 2})))
    credentials = {"username": "user@example.com", "password": "Wrong1234"}
    assert client.post("/api/auth/login", json=credentials).status_code == 401
    assert client.post("/api/auth/login", json=credentials).status_code == 401
    response = client.post("/api/auth/login", json=credentials)
    assert response.status_code == 429
    assert response.json() == {"success": False, "message": "Too many requests, please try again later."}


def test_anonymous_search_is_throttled(tmp_path, conn):
    user = add_user(conn, "user@example.com")
    headers = api_headers(conn, user)
    client = TestClient(create_app(make_config(tmp_path, api={"search_limit_per_second": 1})))
    assert client.get("/api/components/search", params={"query": "akismet"}).status_code == 200
    assert client.get("/api/components/search", params={"query": "akismet"}).status_code == 429
    for _ in range(3):
        response = client.get("/api/components/search", params={"query": "akismet"}, headers=headers)
        assert response.status_code == 200


def test_search_throttle_can_be_disabled(tmp_path):
    client = TestClient(create_app(make_config(tmp_path, api={"search_limit_per_second": 0})))
    for _ in range(20):
        assert client.get("/api/components/search", params={"query": "akismet"}).status_code == 200


def test_blocked_user_api_key(client, conn):
    user = add_user(conn, "blocked@example.com", blocked=True)
    response = client.get("/api/websites", headers=api_headers(conn, user))
    assert response.status_code == 401
    assert response.json()["message"] == "User account is blocked."


def test_admin_user_management(client, conn):
    admin = add_user(conn, "admin@example.com", roles=["user", "administrator"])
    user = add_user(conn, "user@example.com")
    headers = api_headers(conn, admin)

    assert client.get("/api/users", headers=api_headers(conn, user)).status_code == 403
    assert len(client.get("/api/users", headers=headers).json()) == 2

    created = client.post(
        "/api/users",
        headers=headers,
        json={"username": "other@example.com", "password": "Secret123", "reporting_weekday": "fri"},
    )
    assert created.status_code == 201
    assert created.json()["user"]["reporting_weekday"] == "FRI"

    updated = client.put(f"/api/users/{user.id}", headers=headers, json={"blocked": True})
    assert updated.json()["blocked"] is True
    assert client.delete(f"/api/users/{user.id}", headers=headers).status_code == 204
    assert client.get(f"/api/users/{user.id}", headers=headers).status_code == 404
    assert get_user_by_username(conn, "user@example.com") is None


def test_self_service_profile(client, conn):
    user = add_user(conn, "user@example.com")
    headers = api_headers(conn, user)
    response = client.put(
        "/api/users/me",
        headers=headers,
        json={"reporting_weekday": "MON", "paused": True, "roles": ["administrator"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["reporting_weekday"] == "MON"
    assert body["paused"] is True
    assert body["roles"] == ["user"]

    response = client.put("/api/users/password", headers=headers, json={"newPassword": "x"})
    assert response.status_code == 400


def test_public_config_and_health(tmp_path):
    client = TestClient(create_app(make_config(tmp_path, app={"registration_enabled": False})))
    assert client.get("/api/config").json() == {
        "baseUrl": "http://localhost:8000",
        "registrationEnabled": False,
    }
    assert client.get("/health").json()["ok"] is True
