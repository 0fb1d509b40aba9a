import json

from conftest import make_config
from vulnz.services.reconcile import find_or_create_component
from vulnz.storage import get_component
from vulnz.wporg import parse_wporg_date, parse_wporg_datetime, plugin_metadata, sync_next_plugins


class FakeFetch:
    def __init__(self, responses):
        self.responses = responses
        self.urls = []

    def __call__(self, url, headers, timeout):
        self.urls.append(url)
        slug = url.rsplit("/", 1)[-1].removesuffix(".json")
        return self.responses[slug]


def _ok(payload):
    return 200, json.dumps(payload).encode("utf-8"), None


def test_parse_wporg_dates():
    assert parse_wporg_date("2019-05-01") == "2019-05-01"
    assert parse_wporg_date("May 2019") is None
    assert parse_wporg_datetime("2024-03-01 4:05pm GMT") == "2024-03-01 16:05:00"
    assert parse_wporg_datetime("2024-03-01 12:30am GMT") == "2024-03-01 00:30:00"
    assert parse_wporg_datetime(None) is None


def test_plugin_metadata_strips_markup():
    metadata = plugin_metadata(
        "akismet",
        {
            "name": "Akismet <b>Anti-Spam</b>",
            "sections": {"description": "<p>Stops spam.</p><script>alert(1)</script> Mail admin@example.com"},
            "added": "2005-10-20",
            "requires_php": "",
        },
    )
    assert metadata["title"] == "Akismet Anti-Spam"
    assert metadata["url"] == "https://wordpress.org/plugins/akismet/"
    assert "alert" not in metadata["description"]
    assert "admin@example.com" not in metadata["description"]
    assert metadata["requires_php"] is None


def test_sync_updates_found_plugin(conn, cfg):
    component = find_or_create_component(conn, "akismet", "wordpress-plugin")
    fetch = FakeFetch(
        {"akismet": _ok({"name": "Akismet", "last_updated": "2024-03-01 4:05pm GMT", "tested": "6.5"})}
    )
    result = sync_next_plugins(conn, cfg.wporg, fetch=fetch)
    assert result == {"checked": 1, "found": 1, "not_found": 0, "errors": 0}
    assert fetch.urls == ["https://api.wordpress.org/plugins/info/1.0/akismet.json"]
    synced = get_component(conn, component.id)
    assert synced.synced_from_wporg is True
    assert synced.title == "Akismet"
    row = conn.execute("SELECT last_updated, tested FROM components WHERE id = ?", (component.id,)).fetchone()
    assert row["last_updated"] == "2024-03-01 16:05:00"
    assert row["tested"] == "6.5"


def test_not_found_is_marked_synced(tmp_path, conn):
    cfg = make_config(tmp_path, wporg={"batch_size": 5})
    missing = find_or_create_component(conn, "gone", "wordpress-plugin")
    null_body = find_or_create_component(conn, "nulled", "wordpress-plugin")
    fetch = FakeFetch({"gone": (404, None, "HTTP Error 404"), "nulled": (200, b"null", None)})
    result = sync_next_plugins(conn, cfg.wporg, fetch=fetch)
    assert result["not_found"] == 2
    assert get_component(conn, missing.id).synced_from_wporg is True
    assert get_component(conn, null_body.id).synced_from_wporg is True


def test_fetch_error_retried_next_tick(conn, cfg):
    component = find_or_create_component(conn, "flaky", "wordpress-plugin")
    result = sync_next_plugins(conn, cfg.wporg, fetch=FakeFetch({"flaky": (None, None, "timed out")}))
    assert result["errors"] == 1
    assert get_component(conn, component.id).synced_from_wporg is False

    result = sync_next_plugins(conn, cfg.wporg, fetch=FakeFetch({"flaky": (200, b"{not json", None)}))
    assert result["errors"] == 1


def test_only_wordpress_plugins_are_synced(conn, cfg):
    find_or_create_component(conn, "lodash", "npm-package")
    fetch = FakeFetch({})
    assert sync_next_plugins(conn, cfg.wporg, fetch=fetch)["checked"] == 0
    assert fetch.urls == []


def test_disabled_sync_does_nothing(tmp_path, conn):
    cfg = make_config(tmp_path, wporg={"enabled": False})
    find_or_create_component(conn, "akismet", "wordpress-plugin")
    fetch = FakeFetch({})
    assert sync_next_plugins(conn, cfg.wporg, fetch=fetch)["checked"] == 0
