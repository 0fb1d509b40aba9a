import sqlite3

from vulnz.migrations import _get_migrations, applied_versions, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    apply_migrations(conn)
    apply_migrations(conn)

    versions = applied_versions(conn)
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_seed_data_present(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"), isolation_level=None)
    apply_migrations(conn)
    apply_migrations(conn)

    roles = [row[0] for row in conn.execute("SELECT name FROM roles ORDER BY name")]
    assert roles == ["administrator", "user"]
    types = dict(conn.execute("SELECT slug, ecosystem_id FROM component_types").fetchall())
    assert set(types) == {"wordpress-plugin", "wordpress-theme", "npm-package"}
    assert all(ecosystem_id is not None for ecosystem_id in types.values())
    retention = conn.execute(
        "SELECT setting_value FROM app_settings WHERE setting_key = 'retention.api_logs_days'"
    ).fetchone()
    assert retention == ("30",)
