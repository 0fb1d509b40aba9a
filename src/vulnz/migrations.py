from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import json_dumps, utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("vulnz.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {row[0] for row in conn.execute("SELECT version FROM migrations").fetchall()}
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def applied_versions(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute("SELECT version FROM migrations ORDER BY version").fetchall()
    return [row[0] for row in rows]


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_core_schema", _migration_core_schema),
        ("002_components_fts", _migration_components_fts),
        ("003_security_monitoring", _migration_security_monitoring),
        ("004_app_settings", _migration_app_settings),
        ("005_ecosystems", _migration_ecosystems),
        ("006_email_and_api_logs", _migration_email_and_api_logs),
        ("007_wporg_metadata", _migration_wporg_metadata),
    ]


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def _migration_core_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            reporting_weekday TEXT NULL,
            reporting_email TEXT NULL,
            max_api_keys INTEGER NULL,
            blocked INTEGER NOT NULL DEFAULT 0,
            paused INTEGER NOT NULL DEFAULT 0,
            last_summary_sent_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_roles (
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            role_id INTEGER NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
            PRIMARY KEY (user_id, role_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_keys (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            api_key TEXT NOT NULL UNIQUE,
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS password_reset_tokens (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            token TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            token TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            expires_at TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS component_types (
            slug TEXT PRIMARY KEY,
            title TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS components (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            slug TEXT NOT NULL,
            component_type_slug TEXT NOT NULL REFERENCES component_types(slug),
            title TEXT NULL,
            url TEXT NULL,
            description TEXT NULL,
            synced_from_wporg INTEGER NOT NULL DEFAULT 0,
            synced_from_wporg_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(slug, component_type_slug)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS releases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            component_id INTEGER NOT NULL REFERENCES components(id) ON DELETE CASCADE,
            version TEXT NOT NULL,
            release_date TEXT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(component_id, version)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS vulnerabilities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            release_id INTEGER NOT NULL REFERENCES releases(id) ON DELETE CASCADE,
            url TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(release_id, url)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS websites (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            domain TEXT NOT NULL,
            title TEXT NOT NULL,
            is_ssl INTEGER NOT NULL DEFAULT 1,
            is_dev INTEGER NOT NULL DEFAULT 0,
            meta TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(user_id, domain)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS website_components (
            website_id INTEGER NOT NULL REFERENCES websites(id) ON DELETE CASCADE,
            release_id INTEGER NOT NULL REFERENCES releases(id) ON DELETE CASCADE,
            PRIMARY KEY (website_id, release_id)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_releases_component ON releases(component_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_websites_user ON websites(user_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_website_components_release ON website_components(release_id)"
    )
    conn.executemany(
        "INSERT OR IGNORE INTO roles (name) VALUES (?)",
        [("user",), ("administrator",)],
    )
    conn.executemany(
        "INSERT OR IGNORE INTO component_types (slug, title) VALUES (?, ?)",
        [
            ("wordpress-plugin", "WordPress Plugin"),
            ("wordpress-theme", "WordPress Theme"),
        ],
    )


def _migration_components_fts(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS components_fts USING fts5(
            slug, title, content='components', content_rowid='id'
        )
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS components_fts_ai AFTER INSERT ON components BEGIN
            INSERT INTO components_fts(rowid, slug, title) VALUES (new.id, new.slug, new.title);
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS components_fts_ad AFTER DELETE ON components BEGIN
            INSERT INTO components_fts(components_fts, rowid, slug, title)
            VALUES ('delete', old.id, old.slug, old.title);
        END
        """
    )
    conn.execute(
        """
        CREATE TRIGGER IF NOT EXISTS components_fts_au AFTER UPDATE OF slug, title ON components BEGIN
            INSERT INTO components_fts(components_fts, rowid, slug, title)
            VALUES ('delete', old.id, old.slug, old.title);
            INSERT INTO components_fts(rowid, slug, title) VALUES (new.id, new.slug, new.title);
        END
        """
    )
    conn.execute("INSERT INTO components_fts(components_fts) VALUES ('rebuild')")


SECURITY_EVENT_TYPES = [
    ("failed-login", "Failed Login", "Failed login attempt", "warning"),
    ("blocked-user-enum", "Blocked User Enumeration", "User enumeration attempt was blocked", "warning"),
    ("xmlrpc-probe", "XML-RPC Probe", "Request probing the XML-RPC endpoint", "info"),
    ("file-probe", "File Probe", "Request for a sensitive or non-existent file", "info"),
    ("plugin-enum", "Plugin Enumeration", "Attempt to enumerate installed plugins", "warning"),
    ("theme-enum", "Theme Enumeration", "Attempt to enumerate installed themes", "warning"),
    ("brute-force", "Brute Force", "Repeated authentication failures from one source", "critical"),
    ("sql-injection", "SQL Injection Attempt", "Request containing SQL injection patterns", "critical"),
    ("xss-attempt", "XSS Attempt", "Request containing cross-site scripting patterns", "critical"),
    ("command-injection", "Command Injection Attempt", "Request containing shell command patterns", "critical"),
]


def _migration_security_monitoring(conn: sqlite3.Connection) -> None:
    columns = _table_columns(conn, "websites")
    for name, ddl in (
        ("wordpress_version", "TEXT NULL"),
        ("php_version", "TEXT NULL"),
        ("db_server_type", "TEXT NULL"),
        ("db_server_version", "TEXT NULL"),
        ("versions_last_checked_at", "TEXT NULL"),
    ):
        if name not in columns:
            conn.execute(f"ALTER TABLE websites ADD COLUMN {name} {ddl}")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS security_event_types (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            slug TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            description TEXT NULL,
            severity TEXT NOT NULL DEFAULT 'info',
            enabled INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS security_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            website_id INTEGER NOT NULL REFERENCES websites(id) ON DELETE CASCADE,
            event_type_id INTEGER NOT NULL REFERENCES security_event_types(id),
            source_ip TEXT NOT NULL,
            event_datetime TEXT NOT NULL,
            continent_code TEXT NULL,
            country_code TEXT NULL,
            details TEXT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(website_id, event_type_id, source_ip, event_datetime)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS file_security_issues (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            website_id INTEGER NOT NULL REFERENCES websites(id) ON DELETE CASCADE,
            file_path TEXT NOT NULL,
            line_number INTEGER NOT NULL DEFAULT 0,
            issue_type TEXT NOT NULL,
            severity TEXT NOT NULL DEFAULT 'warning',
            message TEXT NULL,
            created_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL,
            UNIQUE(website_id, file_path, line_number, issue_type)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS component_changes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            website_id INTEGER NOT NULL REFERENCES websites(id) ON DELETE CASCADE,
            component_id INTEGER NOT NULL REFERENCES components(id) ON DELETE CASCADE,
            change_type TEXT NOT NULL,
            old_release_id INTEGER NULL REFERENCES releases(id) ON DELETE SET NULL,
            new_release_id INTEGER NULL REFERENCES releases(id) ON DELETE SET NULL,
            changed_by_user_id INTEGER NULL REFERENCES users(id) ON DELETE SET NULL,
            changed_via TEXT NOT NULL,
            changed_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_security_events_website ON security_events(website_id, event_datetime)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_component_changes_website ON component_changes(website_id, changed_at)"
    )
    conn.executemany(
        """
        INSERT OR IGNORE INTO security_event_types (slug, title, description, severity, enabled)
        VALUES (?, ?, ?, ?, 1)
        """,
        SECURITY_EVENT_TYPES,
    )


APP_SETTING_SEEDS = [
    ("wordpress.current_version", "6.7.1", "string", "Latest WordPress release", "versions"),
    ("wordpress.minimum_version", "6.4", "string", "Oldest WordPress version considered supported", "versions"),
    ("php.minimum_version", "8.1", "string", "Oldest PHP version considered supported", "versions"),
    ("php.recommended_version", "8.3", "string", "Recommended PHP version", "versions"),
    ("php.eol_version", "7.4", "string", "PHP versions at or below this are end of life", "versions"),
    ("database.mysql_minimum_version", "8.0", "string", "Oldest supported MySQL version", "versions"),
    ("database.mariadb_minimum_version", "10.5", "string", "Oldest supported MariaDB version", "versions"),
    ("retention.security_events_days", "30", "integer", "Days to keep security events", "retention"),
    ("retention.file_security_issues_days", "30", "integer", "Days to keep unseen file issues", "retention"),
    ("retention.component_changes_days", "365", "integer", "Days to keep component changes", "retention"),
    ("retention.email_logs_days", "90", "integer", "Days to keep email logs", "retention"),
    ("retention.api_logs_days", "30", "integer", "Days to keep API call logs", "retention"),
    ("batch.security_events_max", "1000", "integer", "Maximum events accepted per request", "batch"),
    ("batch.file_issues_max", "5000", "integer", "Maximum file entries accepted per scan", "batch"),
    ("rate.security_events_per_hour", "10000", "integer", "Security events accepted per site per hour", "rate"),
    ("feature.geoip_enabled", "true", "boolean", "Enrich security events with GeoIP data", "features"),
    ("feature.component_change_tracking", "true", "boolean", "Record component changes", "features"),
    ("feature.version_tracking", "true", "boolean", "Track WordPress, PHP and database versions", "features"),
    ("report.include_security_events", "true", "boolean", "Include security events in reports", "reports"),
    ("report.include_version_status", "true", "boolean", "Include version status in reports", "reports"),
    ("report.include_component_changes", "true", "boolean", "Include component changes in reports", "reports"),
    ("report.include_static_analysis", "true", "boolean", "Include static analysis in reports", "reports"),
    ("report.security_event_limit", "50", "integer", "Maximum events listed per report", "reports"),
]


def _migration_app_settings(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS app_settings (
            setting_key TEXT PRIMARY KEY,
            setting_value TEXT NULL,
            value_type TEXT NOT NULL DEFAULT 'string',
            description TEXT NULL,
            category TEXT NULL,
            is_system INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    now = utc_now_iso()
    conn.executemany(
        """
        INSERT OR IGNORE INTO app_settings
            (setting_key, setting_value, value_type, description, category, is_system, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 1, ?, ?)
        """,
        [seed + (now, now) for seed in APP_SETTING_SEEDS],
    )


def _migration_ecosystems(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ecosystems (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            slug TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            description TEXT NULL,
            data TEXT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )
    now = utc_now_iso()
    conn.executemany(
        """
        INSERT OR IGNORE INTO ecosystems (slug, name, description, data, active, created_at)
        VALUES (?, ?, ?, ?, 1, ?)
        """,
        [
            (
                "wordpress",
                "WordPress",
                "WordPress plugins and themes",
                json_dumps({"urlBase": "https://wordpress.org", "metadataSync": True}),
                now,
            ),
            (
                "npm",
                "npm",
                "Node.js packages from the npm registry",
                json_dumps({"registryUrl": "https://registry.npmjs.org", "metadataSync": False}),
                now,
            ),
        ],
    )
    if "ecosystem_id" not in _table_columns(conn, "component_types"):
        conn.execute(
            "ALTER TABLE component_types ADD COLUMN ecosystem_id INTEGER NULL REFERENCES ecosystems(id)"
        )
    websites = _table_columns(conn, "websites")
    if "ecosystem_id" not in websites:
        conn.execute("ALTER TABLE websites ADD COLUMN ecosystem_id INTEGER NULL REFERENCES ecosystems(id)")
    if "platform_metadata" not in websites:
        conn.execute("ALTER TABLE websites ADD COLUMN platform_metadata TEXT NULL")
    conn.execute(
        "INSERT OR IGNORE INTO component_types (slug, title) VALUES ('npm-package', 'npm Package')"
    )
    conn.execute(
        """
        UPDATE component_types
        SET ecosystem_id = (SELECT id FROM ecosystems WHERE slug = 'wordpress')
        WHERE slug IN ('wordpress-plugin', 'wordpress-theme')
        """
    )
    conn.execute(
        """
        UPDATE component_types
        SET ecosystem_id = (SELECT id FROM ecosystems WHERE slug = 'npm')
        WHERE slug = 'npm-package'
        """
    )
    conn.execute(
        """
        UPDATE websites
        SET ecosystem_id = (SELECT id FROM ecosystems WHERE slug = 'wordpress')
        WHERE ecosystem_id IS NULL
        """
    )


def _migration_email_and_api_logs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS email_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipient_email TEXT NOT NULL,
            email_type TEXT NOT NULL,
            status TEXT NOT NULL,
            error TEXT NULL,
            sent_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS api_call_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NULL REFERENCES users(id) ON DELETE SET NULL,
            method TEXT NOT NULL,
            path TEXT NOT NULL,
            status_code INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_email_logs_sent ON email_logs(sent_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_api_call_logs_created ON api_call_logs(created_at)")


def _migration_wporg_metadata(conn: sqlite3.Connection) -> None:
    columns = _table_columns(conn, "components")
    for name in ("added", "last_updated", "requires_php", "tested"):
        if name not in columns:
            conn.execute(f"ALTER TABLE components ADD COLUMN {name} TEXT NULL")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_components_wporg_sync ON components(synced_from_wporg, synced_from_wporg_at)"
    )
