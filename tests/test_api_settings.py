import pytest

from conftest import add_user, api_headers


@pytest.fixture
def headers(conn):
    return api_headers(conn, add_user(conn, "user@example.com"))


@pytest.fixture
def admin_headers(conn):
    return api_headers(conn, add_user(conn, "admin@example.com", roles=["user", "administrator"]))


def test_settings_are_typed(client, headers):
    body = client.get("/api/settings/report.include_security_events", headers=headers).json()
    assert body["setting"]["value"] is True
    assert body["setting"]["rawValue"] == "true"
    assert client.get("/api/settings/no.such.key", headers=headers).status_code == 404


def test_grouped_listing(client, headers):
    grouped = client.get("/api/settings?grouped=true", headers=headers).json()["settings"]
    assert "retention" in grouped
    versions = client.get("/api/settings?category=versions", headers=headers).json()["settings"]
    assert all(item["category"] == "versions" for item in versions)


def test_admin_updates_settings(client, headers, admin_headers):
    payload = {"value": 14, "type": "integer"}
    assert client.put("/api/settings/retention.api_logs_days", headers=headers, json=payload).status_code == 403
    response = client.put("/api/settings/retention.api_logs_days", headers=admin_headers, json=payload)
    assert response.status_code == 200
    assert client.get("/api/settings/retention.api_logs_days", headers=headers).json()["setting"]["value"] == 14

    bad = client.put(
        "/api/settings/retention.api_logs_days",
        headers=admin_headers,
        json={"value": "x", "type": "integer"},
    )
    assert bad.status_code == 400
    assert client.put("/api/settings/custom.flag", headers=admin_headers, json={"type": "boolean"}).status_code == 400


def test_system_settings_cannot_be_deleted(client, admin_headers):
    client.put("/api/settings/custom.flag", headers=admin_headers, json={"value": True, "type": "boolean"})
    assert client.delete("/api/settings/custom.flag", headers=admin_headers).status_code == 200
    assert client.delete("/api/settings/custom.flag", headers=admin_headers).status_code == 404
    assert client.delete("/api/settings/wordpress.minimum_version", headers=admin_headers).status_code == 403


def test_summary_email_endpoint(client, conn, admin_headers, mailer):
    target = add_user(conn, "target@example.com")
    response = client.post("/api/reports/summary-email", headers=admin_headers, json={"user_id": target.id})
    assert response.status_code == 200
    assert response.json()["recipient"] == "target@example.com"
    assert [item["to"] for item in mailer.sent] == ["target@example.com"]
    missing = client.post("/api/reports/summary-email", headers=admin_headers, json={"user_id": 9999})
    assert missing.status_code == 404


def test_logs_are_scoped(client, headers, admin_headers):
    client.get("/api/websites", headers=headers)
    client.get("/api/websites", headers=admin_headers)
    own = client.get("/api/logs", headers=headers).json()
    assert {entry["username"] for entry in own} == {"user@example.com"}
    everything = client.get("/api/logs", headers=admin_headers).json()
    assert {"user@example.com", "admin@example.com"} <= {entry["username"] for entry in everything}
