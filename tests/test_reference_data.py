import json

from conftest import make_config
from vulnz.reference_data import apply_reference_settings, is_valid_version, update_from_reference
from vulnz.storage import get_setting, get_setting_row


def test_version_format():
    assert is_valid_version("8.1")
    assert is_valid_version("6.4.2")
    assert not is_valid_version("latest")
    assert not is_valid_version(8.1)


def test_apply_updates_known_settings_only(conn):
    summary = apply_reference_settings(
        conn,
        {
            "app_settings": {
                "wordpress.minimum_version": "6.5",
                "php.minimum_version": "8.1",
                "database.mysql_minimum_version": "eight",
                "brand.new.key": "x",
            }
        },
    )
    assert summary["updated"] == 1
    assert summary["skipped"] == 1
    assert summary["invalid"] == 1
    assert summary["unknown"] == 1
    assert get_setting(conn, "wordpress.minimum_version") == "6.5"
    assert get_setting(conn, "database.mysql_minimum_version") == "8.0"
    assert get_setting_row(conn, "brand.new.key") is None


def test_disabled_method(conn, cfg):
    assert update_from_reference(conn, cfg) == {"updated": 0, "skipped": 0, "method": "disabled"}


def test_file_method_resolves_against_data_dir(tmp_path, conn):
    cfg = make_config(tmp_path, reference={"method": "file", "location": "reference.json"})
    (tmp_path / "data" / "reference.json").write_text(
        json.dumps({"app_settings": {"php.minimum_version": "8.2"}}), encoding="utf-8"
    )
    result = update_from_reference(conn, cfg)
    assert result["method"] == "file"
    assert result["updated"] == 1
    assert get_setting(conn, "php.minimum_version") == "8.2"


def test_missing_file_reports_error(tmp_path, conn):
    cfg = make_config(tmp_path, reference={"method": "file", "location": "missing.json"})
    result = update_from_reference(conn, cfg)
    assert "Failed to read file" in result["error"]


def test_url_method_uses_fetcher(tmp_path, conn):
    cfg = make_config(tmp_path, reference={"method": "url", "location": "https://example.com/ref.json"})
    seen = []

    def fetch(url):
        seen.append(url)
        return {"app_settings": {"wordpress.minimum_version": "6.6"}}

    result = update_from_reference(conn, cfg, fetch_url=fetch)
    assert seen == ["https://example.com/ref.json"]
    assert result["updated"] == 1


def test_malformed_reference_is_an_error(tmp_path, conn):
    cfg = make_config(tmp_path, reference={"method": "url", "location": "https://example.com/ref.json"})
    result = update_from_reference(conn, cfg, fetch_url=lambda url: {"settings": {}})
    assert result["error"] == "Invalid reference data format: missing app_settings"
