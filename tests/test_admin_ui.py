from conftest import add_user


def _login(client, conn, username="user@example.com", **fields):
    add_user(conn, username, **fields)
    response = client.post("/api/auth/login", json={"username": username, "password": "Secret123"})
    assert response.status_code == 200


def test_root_redirects_to_ui(client):
    response = client.get("/", follow_redirects=False)
    assert response.headers["location"] == "/ui/"


def test_dashboard_requires_login(client):
    response = client.get("/ui/", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/ui/login"


def test_login_page_renders(client):
    response = client.get("/ui/login")
    assert response.status_code == 200
    assert "<form" in response.text


def test_dashboard_lists_websites(client, conn):
    _login(client, conn)
    client.post("/api/websites", json={"domain": "example.com", "title": "Example"})
    response = client.get("/ui/")
    assert response.status_code == 200
    assert "example.com" in response.text

    detail = client.get("/ui/websites/example.com")
    assert detail.status_code == 200
    assert client.get("/ui/websites/missing.example.com").status_code == 404


def test_reset_password_page_carries_token(client):
    response = client.get("/ui/reset-password?token=abc123")
    assert response.status_code == 200
    assert "abc123" in response.text


def test_static_assets_served(client):
    assert client.get("/ui/static/admin.css").status_code == 200
