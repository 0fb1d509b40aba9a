import pytest

from conftest import add_user, api_headers


@pytest.fixture
def owner(conn):
    return add_user(conn, "owner@example.com")


@pytest.fixture
def headers(conn, owner):
    return api_headers(conn, owner)


def _create(client, headers, domain="example.com", **extra):
    response = client.post("/api/websites", headers=headers, json={"domain": domain, **extra})
    assert response.status_code == 201
    return response.json()


def test_create_and_read_website(client, headers):
    created = _create(client, headers, title="Example")
    assert created["title"] == "Example"
    assert created["url"] == "https://example.com"
    assert created["wordpress-plugins"] == []

    response = client.get("/api/websites/example.com", headers=headers)
    assert response.status_code == 200
    assert response.json()["username"] == "owner@example.com"


def test_invalid_and_duplicate_domains(client, headers):
    response = client.post("/api/websites", headers=headers, json={"domain": "not a domain"})
    assert response.status_code == 400
    assert client.post("/api/websites", headers=headers, json={}).status_code == 400
    _create(client, headers)
    duplicate = client.post("/api/websites", headers=headers, json={"domain": "example.com"})
    assert duplicate.status_code == 409


def test_component_reconciliation_and_changes(client, headers):
    _create(client, headers)
    response = client.put(
        "/api/websites/example.com",
        headers=headers,
        json={
            "wordpress-plugins": [{"slug": "akismet", "version": "5.0"}],
            "components": [{"slug": "lodash", "version": "4.17.20", "type": "npm-package"}],
        },
    )
    assert response.status_code == 200
    assert response.json()["component_changes"]["added"] == 2

    response = client.put(
        "/api/websites/example.com",
        headers=headers,
        json={"wordpress-plugins": [{"slug": "akismet", "version": "5.1"}]},
    )
    assert response.json()["component_changes"] == {"added": 0, "removed": 0, "updated": 1, "total": 1}

    website = client.get("/api/websites/example.com", headers=headers).json()
    assert {(item["slug"], item["version"]) for item in website["components"]} == {
        ("akismet", "5.1"),
        ("lodash", "4.17.20"),
    }

    changes = client.get("/api/websites/example.com/changes", headers=headers).json()["changes"]
    assert changes[0]["change_type"] == "updated"
    assert changes[0]["old_version"] == "5.0"
    assert changes[0]["new_version"] == "5.1"


def test_vulnerable_filter(client, headers):
    _create(client, headers, domain="safe.example.com")
    _create(client, headers, domain="risky.example.com")
    client.put(
        "/api/websites/risky.example.com",
        headers=headers,
        json={"wordpress-plugins": [{"slug": "akismet", "version": "5.0"}]},
    )
    client.post(
        "/api/components/wordpress-plugin/akismet/5.0",
        headers=headers,
        json={"urls": ["https://example.com/advisory/1"]},
    )
    listing = client.get("/api/websites?only_vulnerable=true", headers=headers).json()
    assert listing["total"] == 1
    assert listing["websites"][0]["domain"] == "risky.example.com"
    assert listing["websites"][0]["vulnerability_count"] == 1


def test_other_users_cannot_see_website(client, conn, headers):
    _create(client, headers)
    stranger = api_headers(conn, add_user(conn, "stranger@example.com"))
    assert client.get("/api/websites/example.com", headers=stranger).status_code == 401
    assert client.get("/api/websites", headers=stranger).json()["total"] == 0

    admin = api_headers(conn, add_user(conn, "admin@example.com", roles=["user", "administrator"]))
    assert client.get("/api/websites/example.com", headers=admin).status_code == 200


def test_only_admins_change_ownership(client, conn, headers):
    _create(client, headers)
    other = add_user(conn, "other@example.com")
    response = client.put("/api/websites/example.com", headers=headers, json={"user_id": other.id})
    assert response.status_code == 403


def test_versions_endpoint(client, headers):
    _create(client, headers)
    response = client.put(
        "/api/websites/example.com/versions",
        headers=headers,
        json={"wordpress_version": "6.5", "php_version": "8.2", "db_server_type": "mariadb"},
    )
    assert response.status_code == 200
    website = client.get("/api/websites/example.com", headers=headers).json()
    assert website["wordpress_version"] == "6.5"
    assert website["db_server_type"] == "mariadb"
    assert client.put("/api/websites/example.com/versions", headers=headers, json={}).status_code == 400


def test_security_events_are_deduplicated(client, headers):
    _create(client, headers)
    event = {"event_type": "failed-login", "source_ip": "203.0.113.9", "event_datetime": "2026-10-18T12:00:00Z"}
    response = client.post("/api/websites/example.com/security-events", headers=headers, json={"events": [event]})
    assert response.status_code == 201
    assert response.json()["events_created"] == 1
    again = client.post(
        "/api/websites/example.com/security-events", headers=headers, json={"events": [event]}
    ).json()
    assert again["events_duplicate"] == 1

    bad = client.post(
        "/api/websites/example.com/security-events",
        headers=headers,
        json={"events": [dict(event, event_type="made-up")]},
    )
    assert bad.status_code == 400


def test_security_scan_round(client, headers):
    _create(client, headers)
    files = [{"path": "wp-config.php", "issues": [{"type": "eval", "severity": "error", "line": 3}]}]
    first = client.post("/api/websites/example.com/security-scan", headers=headers, json={"files": files}).json()
    assert first["issues_created"] == 1
    assert first["summary"]["error"] == 1
    second = client.post("/api/websites/example.com/security-scan", headers=headers, json={"files": files}).json()
    assert second["issues_updated"] == 1

    issues = client.get("/api/websites/example.com/security-issues", headers=headers).json()["issues"]
    assert issues[0]["file_path"] == "wp-config.php"

    cleared = client.post(
        "/api/websites/example.com/security-scan",
        headers=headers,
        json={"files": [{"path": "wp-config.php", "issues": []}]},
    ).json()
    assert cleared["issues_deleted"] == 1


def test_delete_website(client, headers):
    _create(client, headers)
    assert client.delete("/api/websites/example.com", headers=headers).json()["success"] is True
    assert client.get("/api/websites/example.com", headers=headers).status_code == 404
