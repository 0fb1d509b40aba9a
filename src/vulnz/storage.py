from __future__ import annotations

import re
import sqlite3
from typing import Any, Iterable

from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .models import (
    ApiCallLog,
    ApiKey,
    AppSetting,
    Component,
    ComponentType,
    Ecosystem,
    EmailLog,
    FileSecurityIssue,
    InstalledComponent,
    Release,
    SecurityEventType,
    User,
    Vulnerability,
    Website,
)
from .utils import json_dumps, json_loads, utc_now_iso

SETTING_KEY_PATTERN = re.compile(r"^[a-z0-9_]+(\.[a-z0-9_]+)*$")
SETTING_TYPES = ("string", "integer", "float", "boolean")
DB_SERVER_TYPES = ("mysql", "mariadb", "unknown")

_USER_COLUMNS = (
    "id, username, reporting_weekday, reporting_email, max_api_keys, blocked, paused, "
    "last_summary_sent_at, created_at"
)
_COMPONENT_COLUMNS = (
    "id, slug, component_type_slug, title, url, description, synced_from_wporg, synced_from_wporg_at"
)
_WEBSITE_COLUMNS = (
    "id, user_id, domain, title, is_ssl, is_dev, meta, wordpress_version, php_version, "
    "db_server_type, db_server_version, versions_last_checked_at, ecosystem_id, "
    "platform_metadata, created_at, updated_at"
)


# Users and roles


def get_user(conn: Any, user_id: int) -> User | None:
    row = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return _row_to_user(row, get_user_roles(conn, row["id"]))


def get_user_by_username(conn: Any, username: str) -> User | None:
    row = conn.execute(
        f"SELECT {_USER_COLUMNS} FROM users WHERE username = ?", (username,)
    ).fetchone()
    if not row:
        return None
    return _row_to_user(row, get_user_roles(conn, row["id"]))


def get_password_hash(conn: Any, user_id: int) -> str | None:
    row = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,)).fetchone()
    return row["password_hash"] if row else None


def get_user_roles(conn: Any, user_id: int) -> list[str]:
    rows = conn.execute(
        """
        SELECT r.name
        FROM roles r
        JOIN user_roles ur ON r.id = ur.role_id
        WHERE ur.user_id = ?
        ORDER BY r.id
        """,
        (user_id,),
    ).fetchall()
    return [row["name"] for row in rows]


def list_roles(conn: Any) -> list[dict[str, object]]:
    rows = conn.execute("SELECT id, name FROM roles ORDER BY id").fetchall()
    return [{"id": row["id"], "name": row["name"]} for row in rows]


def create_user(
    conn: Any,
    username: str,
    password_hash: str,
    roles: Iterable[str],
    *,
    blocked: bool = False,
    paused: bool = False,
    max_api_keys: int | None = None,
    reporting_weekday: str | None = None,
    reporting_email: str | None = None,
) -> User:
    now = utc_now_iso()
    try:
        cursor = conn.execute(
            """
            INSERT INTO users
                (username, password_hash, reporting_weekday, reporting_email, max_api_keys,
                 blocked, paused, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                username,
                password_hash,
                reporting_weekday,
                reporting_email,
                max_api_keys,
                1 if blocked else 0,
                1 if paused else 0,
                now,
                now,
            ),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError("Email address is already registered") from exc
    user_id = int(cursor.lastrowid)
    set_user_roles(conn, user_id, roles)
    user = get_user(conn, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def set_user_roles(conn: Any, user_id: int, roles: Iterable[str]) -> list[str]:
    """Replace the role set; unknown role names are ignored."""
    conn.execute("DELETE FROM user_roles WHERE user_id = ?", (user_id,))
    applied: list[str] = []
    for name in dict.fromkeys(roles):
        row = conn.execute("SELECT id FROM roles WHERE name = ?", (name,)).fetchone()
        if not row:
            continue
        conn.execute(
            "INSERT OR IGNORE INTO user_roles (user_id, role_id) VALUES (?, ?)",
            (user_id, row["id"]),
        )
        applied.append(name)
    return applied


_USER_UPDATABLE = {
    "username",
    "password_hash",
    "reporting_weekday",
    "reporting_email",
    "max_api_keys",
    "blocked",
    "paused",
    "last_summary_sent_at",
}


def update_user(conn: Any, user_id: int, fields: dict[str, object]) -> bool:
    updates = {key: value for key, value in fields.items() if key in _USER_UPDATABLE}
    if not updates:
        return False
    for flag in ("blocked", "paused"):
        if flag in updates:
            updates[flag] = 1 if updates[flag] else 0
    assignments = ", ".join(f"{key} = ?" for key in updates)
    params = list(updates.values()) + [utc_now_iso(), user_id]
    try:
        cursor = conn.execute(
            f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
            params,
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError("Email address is already registered") from exc
    return cursor.rowcount > 0


def delete_user(conn: Any, user_id: int) -> bool:
    cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    return cursor.rowcount > 0


def list_users(conn: Any, limit: int | None = None, offset: int = 0) -> list[User]:
    sql = f"SELECT {_USER_COLUMNS} FROM users ORDER BY id"
    params: list[object] = []
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
    rows = conn.execute(sql, params).fetchall()
    return [_row_to_user(row, get_user_roles(conn, row["id"])) for row in rows]


_DUE_FOR_REPORT = """
    FROM users
    WHERE reporting_weekday = ?
      AND (last_summary_sent_at IS NULL OR last_summary_sent_at < ?)
      AND blocked = 0
      AND paused = 0
"""


def list_users_due_for_report(conn: Any, weekday: str, day_start_iso: str, limit: int) -> list[User]:
    rows = conn.execute(
        f"SELECT {_USER_COLUMNS} {_DUE_FOR_REPORT} ORDER BY id LIMIT ?",
        (weekday, day_start_iso, limit),
    ).fetchall()
    return [_row_to_user(row, get_user_roles(conn, row["id"])) for row in rows]


def count_users_due_for_report(conn: Any, weekday: str, day_start_iso: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) {_DUE_FOR_REPORT}", (weekday, day_start_iso)).fetchone()
    return int(row[0])


def mark_summary_sent(conn: Any, user_id: int, sent_at: str) -> None:
    conn.execute(
        "UPDATE users SET last_summary_sent_at = ?, updated_at = ? WHERE id = ?",
        (sent_at, utc_now_iso(), user_id),
    )


# API keys, sessions and password reset tokens


def list_api_keys(conn: Any, user_id: int) -> list[ApiKey]:
    rows = conn.execute(
        "SELECT id, api_key, user_id, created_at FROM api_keys WHERE user_id = ? ORDER BY id",
        (user_id,),
    ).fetchall()
    return [ApiKey(id=row["id"], api_key=row["api_key"], user_id=row["user_id"], created_at=row["created_at"]) for row in rows]


def count_api_keys(conn: Any, user_id: int) -> int:
    row = conn.execute("SELECT COUNT(*) FROM api_keys WHERE user_id = ?", (user_id,)).fetchone()
    return int(row[0])


def insert_api_key(conn: Any, user_id: int, api_key: str) -> ApiKey:
    now = utc_now_iso()
    cursor = conn.execute(
        "INSERT INTO api_keys (api_key, user_id, created_at) VALUES (?, ?, ?)",
        (api_key, user_id, now),
    )
    return ApiKey(id=int(cursor.lastrowid), api_key=api_key, user_id=user_id, created_at=now)


def get_api_key(conn: Any, api_key: str) -> ApiKey | None:
    row = conn.execute(
        "SELECT id, api_key, user_id, created_at FROM api_keys WHERE api_key = ?",
        (api_key,),
    ).fetchone()
    if not row:
        return None
    return ApiKey(id=row["id"], api_key=row["api_key"], user_id=row["user_id"], created_at=row["created_at"])


def delete_api_key(conn: Any, api_key: str, user_id: int | None = None) -> bool:
    if user_id is None:
        cursor = conn.execute("DELETE FROM api_keys WHERE api_key = ?", (api_key,))
    else:
        cursor = conn.execute(
            "DELETE FROM api_keys WHERE api_key = ? AND user_id = ?", (api_key, user_id)
        )
    return cursor.rowcount > 0


def insert_session(conn: Any, token: str, user_id: int, expires_at: str) -> None:
    conn.execute(
        "INSERT INTO sessions (token, user_id, expires_at, created_at) VALUES (?, ?, ?, ?)",
        (token, user_id, expires_at, utc_now_iso()),
    )


def get_session_user_id(conn: Any, token: str, now_iso: str) -> int | None:
    row = conn.execute(
        "SELECT user_id FROM sessions WHERE token = ? AND expires_at > ?",
        (token, now_iso),
    ).fetchone()
    return int(row["user_id"]) if row else None


def delete_session(conn: Any, token: str) -> None:
    conn.execute("DELETE FROM sessions WHERE token = ?", (token,))


def purge_expired_sessions(conn: Any, now_iso: str) -> int:
    cursor = conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (now_iso,))
    return cursor.rowcount


def replace_reset_token(conn: Any, user_id: int, token: str) -> None:
    conn.execute("DELETE FROM password_reset_tokens WHERE user_id = ?", (user_id,))
    conn.execute(
        "INSERT INTO password_reset_tokens (user_id, token, created_at) VALUES (?, ?, ?)",
        (user_id, token, utc_now_iso()),
    )


def get_reset_token(conn: Any, token: str) -> dict[str, object] | None:
    row = conn.execute(
        "SELECT id, user_id, token, created_at FROM password_reset_tokens WHERE token = ?",
        (token,),
    ).fetchone()
    return dict(row) if row else None


def delete_reset_tokens(conn: Any, user_id: int) -> None:
    conn.execute("DELETE FROM password_reset_tokens WHERE user_id = ?", (user_id,))


# Ecosystems and component types


def list_ecosystems(conn: Any, active_only: bool = True) -> list[Ecosystem]:
    sql = "SELECT id, slug, name, description, data, active FROM ecosystems"
    if active_only:
        sql += " WHERE active = 1"
    rows = conn.execute(sql + " ORDER BY id").fetchall()
    return [_row_to_ecosystem(row) for row in rows]


def get_ecosystem_by_slug(conn: Any, slug: str) -> Ecosystem | None:
    row = conn.execute(
        "SELECT id, slug, name, description, data, active FROM ecosystems WHERE slug = ?",
        (slug,),
    ).fetchone()
    return _row_to_ecosystem(row) if row else None


def list_component_types(conn: Any) -> list[ComponentType]:
    rows = conn.execute(
        "SELECT slug, title, ecosystem_id FROM component_types ORDER BY slug"
    ).fetchall()
    return [ComponentType(slug=row["slug"], title=row["title"], ecosystem_id=row["ecosystem_id"]) for row in rows]


def get_component_type(conn: Any, slug: str) -> ComponentType | None:
    row = conn.execute(
        "SELECT slug, title, ecosystem_id FROM component_types WHERE slug = ?", (slug,)
    ).fetchone()
    if not row:
        return None
    return ComponentType(slug=row["slug"], title=row["title"], ecosystem_id=row["ecosystem_id"])


# Components, releases and vulnerabilities


def get_component(conn: Any, component_id: int) -> Component | None:
    row = conn.execute(
        f"SELECT {_COMPONENT_COLUMNS} FROM components WHERE id = ?", (component_id,)
    ).fetchone()
    return _row_to_component(row) if row else None


def get_component_by_slug(conn: Any, slug: str, type_slug: str) -> Component | None:
    row = conn.execute(
        f"SELECT {_COMPONENT_COLUMNS} FROM components WHERE slug = ? AND component_type_slug = ?",
        (slug, type_slug),
    ).fetchone()
    return _row_to_component(row) if row else None


def find_components_by_slug(conn: Any, slug: str) -> list[dict[str, object]]:
    """Components of any type with this slug, with release and vulnerability counts."""
    rows = conn.execute(
        """
        SELECT c.id, c.slug, c.component_type_slug, c.title,
               COUNT(DISTINCT r.id) AS release_count, COUNT(v.id) AS vulnerability_count
        FROM components c
        LEFT JOIN releases r ON r.component_id = c.id
        LEFT JOIN vulnerabilities v ON v.release_id = r.id
        WHERE c.slug = ?
        GROUP BY c.id
        ORDER BY c.component_type_slug
        """,
        (slug,),
    ).fetchall()
    return [dict(row) for row in rows]


def insert_component_ignore(
    conn: Any, slug: str, type_slug: str, title: str | None, description: str | None = ""
) -> None:
    """Insert a component unless (slug, type) already exists.

    Raises NotFoundError when the component type is unknown.
    """
    now = utc_now_iso()
    try:
        conn.execute(
            """
            INSERT OR IGNORE INTO components
                (slug, component_type_slug, title, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (slug, type_slug, title, description, now, now),
        )
    except sqlite3.IntegrityError as exc:
        raise NotFoundError("Component type not found") from exc


def create_component(
    conn: Any, slug: str, type_slug: str, title: str | None, description: str | None
) -> Component:
    if get_component_type(conn, type_slug) is None:
        raise NotFoundError("Component type not found")
    now = utc_now_iso()
    try:
        cursor = conn.execute(
            """
            INSERT INTO components
                (slug, component_type_slug, title, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (slug, type_slug, title, description, now, now),
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError("Component already exists") from exc
    component = get_component(conn, int(cursor.lastrowid))
    if component is None:
        raise NotFoundError("Component not found")
    return component


def list_components(conn: Any, limit: int, offset: int) -> list[Component]:
    rows = conn.execute(
        f"SELECT {_COMPONENT_COLUMNS} FROM components ORDER BY id LIMIT ? OFFSET ?",
        (limit, offset),
    ).fetchall()
    return [_row_to_component(row) for row in rows]


def count_components(conn: Any) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM components").fetchone()[0])


def update_component(conn: Any, component_id: int, fields: dict[str, object]) -> bool:
    allowed = {"title", "description", "url"}
    updates = {key: value for key, value in fields.items() if key in allowed}
    if not updates:
        return False
    assignments = ", ".join(f"{key} = ?" for key in updates)
    cursor = conn.execute(
        f"UPDATE components SET {assignments}, updated_at = ? WHERE id = ?",
        list(updates.values()) + [utc_now_iso(), component_id],
    )
    return cursor.rowcount > 0


def delete_component(conn: Any, component_id: int) -> bool:
    cursor = conn.execute("DELETE FROM components WHERE id = ?", (component_id,))
    return cursor.rowcount > 0


def get_release_by_version(conn: Any, component_id: int, version: str) -> Release | None:
    row = conn.execute(
        "SELECT id, component_id, version, release_date FROM releases WHERE component_id = ? AND version = ?",
        (component_id, version),
    ).fetchone()
    return _row_to_release(row) if row else None


def insert_release_ignore(conn: Any, component_id: int, version: str) -> None:
    try:
        conn.execute(
            "INSERT OR IGNORE INTO releases (component_id, version, created_at) VALUES (?, ?, ?)",
            (component_id, version, utc_now_iso()),
        )
    except sqlite3.IntegrityError as exc:
        raise NotFoundError("Component not found") from exc


def list_releases(conn: Any, component_ids: Iterable[int]) -> dict[int, list[dict[str, object]]]:
    """Releases per component, each flagged with has_vulnerabilities."""
    ids = list(component_ids)
    result: dict[int, list[dict[str, object]]] = {component_id: [] for component_id in ids}
    if not ids:
        return result
    placeholders = ", ".join("?" for _ in ids)
    rows = conn.execute(
        f"""
        SELECT r.id, r.component_id, r.version, r.release_date,
               COUNT(v.id) > 0 AS has_vulnerabilities
        FROM releases r
        LEFT JOIN vulnerabilities v ON v.release_id = r.id
        WHERE r.component_id IN ({placeholders})
        GROUP BY r.id
        """,
        ids,
    ).fetchall()
    for row in rows:
        result[row["component_id"]].append(
            {
                "id": row["id"],
                "component_id": row["component_id"],
                "version": row["version"],
                "release_date": row["release_date"],
                "has_vulnerabilities": bool(row["has_vulnerabilities"]),
            }
        )
    return result


def list_vulnerabilities(conn: Any, release_id: int) -> list[Vulnerability]:
    rows = conn.execute(
        "SELECT id, release_id, url FROM vulnerabilities WHERE release_id = ? ORDER BY id",
        (release_id,),
    ).fetchall()
    return [Vulnerability(id=row["id"], release_id=row["release_id"], url=row["url"]) for row in rows]


def insert_vulnerability_ignore(conn: Any, release_id: int, url: str) -> bool:
    cursor = conn.execute(
        "INSERT OR IGNORE INTO vulnerabilities (release_id, url, created_at) VALUES (?, ?, ?)",
        (release_id, url, utc_now_iso()),
    )
    return cursor.rowcount > 0


def invalidate_wporg_sync(conn: Any, component_ids: Iterable[int]) -> int:
    ids = sorted(set(component_ids))
    if not ids:
        return 0
    placeholders = ", ".join("?" for _ in ids)
    cursor = conn.execute(
        f"UPDATE components SET synced_from_wporg = 0 WHERE id IN ({placeholders})",
        ids,
    )
    return cursor.rowcount


def list_components_for_wporg_sync(conn: Any, limit: int) -> list[Component]:
    rows = conn.execute(
        f"""
        SELECT {_COMPONENT_COLUMNS}
        FROM components
        WHERE component_type_slug = 'wordpress-plugin' AND synced_from_wporg != 1
        ORDER BY synced_from_wporg_at IS NOT NULL, synced_from_wporg_at ASC, id ASC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [_row_to_component(row) for row in rows]


def mark_wporg_synced(conn: Any, component_id: int, synced_at: str, metadata: dict[str, object] | None = None) -> None:
    allowed = ("title", "url", "description", "added", "last_updated", "requires_php", "tested")
    updates = {key: value for key, value in (metadata or {}).items() if key in allowed}
    assignments = "".join(f", {key} = ?" for key in updates)
    conn.execute(
        f"UPDATE components SET synced_from_wporg = 1, synced_from_wporg_at = ?{assignments} WHERE id = ?",
        [synced_at] + list(updates.values()) + [component_id],
    )


def get_feed_status(conn: Any) -> dict[str, object]:
    counts = {}
    for table in ("components", "releases", "vulnerabilities"):
        counts[table] = int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
    row = conn.execute("SELECT MAX(synced_from_wporg_at) FROM components").fetchone()
    counts["last_synced_at"] = row[0]
    return counts


# Websites


def get_website(conn: Any, website_id: int) -> Website | None:
    row = conn.execute(f"SELECT {_WEBSITE_COLUMNS} FROM websites WHERE id = ?", (website_id,)).fetchone()
    return _row_to_website(row) if row else None


def get_website_by_domain(conn: Any, domain: str, prefer_user_id: int | None = None) -> Website | None:
    """Look up a website by domain.

    A domain is only unique per user, so the caller's own site wins when
    several users monitor the same domain.
    """
    rows = conn.execute(
        f"SELECT {_WEBSITE_COLUMNS} FROM websites WHERE domain = ? ORDER BY id",
        (domain,),
    ).fetchall()
    if not rows:
        return None
    if prefer_user_id is not None:
        for row in rows:
            if row["user_id"] == prefer_user_id:
                return _row_to_website(row)
    return _row_to_website(rows[0])


def _website_filters(user_id: int | None, search: str | None, only_vulnerable: bool) -> tuple[str, list[object]]:
    clauses: list[str] = []
    params: list[object] = []
    if user_id is not None:
        clauses.append("w.user_id = ?")
        params.append(user_id)
    if search:
        clauses.append("(w.domain LIKE ? ESCAPE '\\' OR w.title LIKE ? ESCAPE '\\')")
        pattern = f"%{escape_like(search)}%"
        params.extend([pattern, pattern])
    if only_vulnerable:
        clauses.append(
            """
            EXISTS (
                SELECT 1
                FROM website_components wc
                JOIN vulnerabilities v ON v.release_id = wc.release_id
                WHERE wc.website_id = w.id
            )
            """
        )
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


def list_websites(
    conn: Any,
    user_id: int | None,
    limit: int,
    offset: int,
    search: str | None = None,
    only_vulnerable: bool = False,
) -> list[Website]:
    where, params = _website_filters(user_id, search, only_vulnerable)
    columns = ", ".join(f"w.{column.strip()}" for column in _WEBSITE_COLUMNS.split(","))
    rows = conn.execute(
        f"SELECT {columns} FROM websites w {where} ORDER BY w.domain, w.id LIMIT ? OFFSET ?",
        params + [limit, offset],
    ).fetchall()
    return [_row_to_website(row) for row in rows]


def count_websites(conn: Any, user_id: int | None, search: str | None = None, only_vulnerable: bool = False) -> int:
    where, params = _website_filters(user_id, search, only_vulnerable)
    row = conn.execute(f"SELECT COUNT(*) FROM websites w {where}", params).fetchone()
    return int(row[0])


def create_website(
    conn: Any,
    user_id: int,
    domain: str,
    title: str,
    *,
    is_dev: bool = False,
    meta: dict[str, object] | None = None,
    ecosystem_id: int | None = None,
    platform_metadata: dict[str, object] | None = None,
) -> Website:
    now = utc_now_iso()
    try:
        cursor = conn.execute(
            """
            INSERT INTO websites
                (user_id, domain, title, is_ssl, is_dev, meta, ecosystem_id, platform_metadata,
                 created_at, updated_at)
            VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                domain,
                title,
                1 if is_dev else 0,
                json_dumps(meta) if meta else None,
                ecosystem_id,
                json_dumps(platform_metadata) if platform_metadata else None,
                now,
                now,
            ),
        )
    except sqlite3.IntegrityError as exc:
        if "FOREIGN KEY" in str(exc).upper():
            raise NotFoundError("User not found") from exc
        raise ConflictError("That website has already been added.") from exc
    website = get_website(conn, int(cursor.lastrowid))
    if website is None:
        raise NotFoundError("Website not found")
    return website


_WEBSITE_UPDATABLE = {"title", "is_dev", "is_ssl", "meta", "user_id", "ecosystem_id", "platform_metadata"}


def update_website(conn: Any, website_id: int, fields: dict[str, object]) -> bool:
    updates = {key: value for key, value in fields.items() if key in _WEBSITE_UPDATABLE}
    if not updates:
        return False
    for flag in ("is_dev", "is_ssl"):
        if flag in updates:
            updates[flag] = 1 if updates[flag] else 0
    for blob in ("meta", "platform_metadata"):
        if blob in updates:
            updates[blob] = json_dumps(updates[blob]) if updates[blob] is not None else None
    assignments = ", ".join(f"{key} = ?" for key in updates)
    try:
        cursor = conn.execute(
            f"UPDATE websites SET {assignments}, updated_at = ? WHERE id = ?",
            list(updates.values()) + [utc_now_iso(), website_id],
        )
    except sqlite3.IntegrityError as exc:
        raise ConflictError("That website has already been added.") from exc
    return cursor.rowcount > 0


def update_website_versions(conn: Any, website_id: int, versions: dict[str, object]) -> bool:
    allowed = ("wordpress_version", "php_version", "db_server_type", "db_server_version")
    updates = {key: versions[key] for key in allowed if key in versions}
    if "db_server_type" in updates and updates["db_server_type"] not in DB_SERVER_TYPES:
        raise ValidationError(
            f"Invalid db_server_type. Must be one of: {', '.join(DB_SERVER_TYPES)}"
        )
    now = utc_now_iso()
    assignments = "".join(f"{key} = ?, " for key in updates)
    cursor = conn.execute(
        f"UPDATE websites SET {assignments}versions_last_checked_at = ?, updated_at = ? WHERE id = ?",
        list(updates.values()) + [now, now, website_id],
    )
    return cursor.rowcount > 0


def touch_website(conn: Any, website_id: int) -> None:
    conn.execute("UPDATE websites SET updated_at = ? WHERE id = ?", (utc_now_iso(), website_id))


def delete_website(conn: Any, website_id: int) -> bool:
    cursor = conn.execute("DELETE FROM websites WHERE id = ?", (website_id,))
    return cursor.rowcount > 0


# Website components and change tracking


def list_website_components(
    conn: Any, website_id: int, type_slug: str | None = None
) -> list[InstalledComponent]:
    sql = """
        SELECT c.id AS component_id, r.id AS release_id, c.slug, c.component_type_slug,
               c.title, r.version, v.url AS vulnerability_url
        FROM website_components wc
        JOIN releases r ON wc.release_id = r.id
        JOIN components c ON r.component_id = c.id
        LEFT JOIN vulnerabilities v ON v.release_id = r.id
        WHERE wc.website_id = ?
    """
    params: list[object] = [website_id]
    if type_slug is not None:
        sql += " AND c.component_type_slug = ?"
        params.append(type_slug)
    sql += " ORDER BY c.slug, r.id, v.id"
    grouped: dict[int, dict[str, Any]] = {}
    for row in conn.execute(sql, params).fetchall():
        entry = grouped.setdefault(
            row["release_id"],
            {
                "component_id": row["component_id"],
                "release_id": row["release_id"],
                "slug": row["slug"],
                "component_type_slug": row["component_type_slug"],
                "title": row["title"],
                "version": row["version"],
                "vulnerabilities": [],
            },
        )
        if row["vulnerability_url"]:
            entry["vulnerabilities"].append(row["vulnerability_url"])
    return [
        InstalledComponent(has_vulnerabilities=bool(entry["vulnerabilities"]), **entry)
        for entry in grouped.values()
    ]


def snapshot_website_components(conn: Any, website_id: int) -> list[tuple[int, int]]:
    rows = conn.execute(
        """
        SELECT r.component_id, wc.release_id
        FROM website_components wc
        JOIN releases r ON wc.release_id = r.id
        WHERE wc.website_id = ?
        ORDER BY wc.release_id
        """,
        (website_id,),
    ).fetchall()
    return [(row["component_id"], row["release_id"]) for row in rows]


def delete_website_components_by_type(conn: Any, website_id: int, type_slug: str) -> int:
    cursor = conn.execute(
        """
        DELETE FROM website_components
        WHERE website_id = ?
          AND release_id IN (
              SELECT r.id
              FROM releases r
              JOIN components c ON r.component_id = c.id
              WHERE c.component_type_slug = ?
          )
        """,
        (website_id, type_slug),
    )
    return cursor.rowcount


def insert_website_component(conn: Any, website_id: int, release_id: int) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO website_components (website_id, release_id) VALUES (?, ?)",
        (website_id, release_id),
    )


def insert_component_changes(conn: Any, changes: Iterable[dict[str, object]]) -> int:
    rows = [
        (
            change["website_id"],
            change["component_id"],
            change["change_type"],
            change.get("old_release_id"),
            change.get("new_release_id"),
            change.get("changed_by_user_id"),
            change.get("changed_via") or "api",
            change.get("changed_at") or utc_now_iso(),
        )
        for change in changes
    ]
    if not rows:
        return 0
    conn.executemany(
        """
        INSERT INTO component_changes
            (website_id, component_id, change_type, old_release_id, new_release_id,
             changed_by_user_id, changed_via, changed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )
    return len(rows)


def list_recent_changes(conn: Any, website_id: int, limit: int = 50) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT cc.id, cc.change_type, cc.changed_via, cc.changed_at,
               c.slug AS component_slug, c.title AS component_title, c.component_type_slug,
               r_old.version AS old_version, r_new.version AS new_version,
               u.username AS changed_by_username
        FROM component_changes cc
        JOIN components c ON cc.component_id = c.id
        LEFT JOIN releases r_old ON cc.old_release_id = r_old.id
        LEFT JOIN releases r_new ON cc.new_release_id = r_new.id
        LEFT JOIN users u ON cc.changed_by_user_id = u.id
        WHERE cc.website_id = ?
        ORDER BY cc.changed_at DESC, cc.id DESC
        LIMIT ?
        """,
        (website_id, limit),
    ).fetchall()
    return [dict(row) for row in rows]


def summarize_changes(conn: Any, website_ids: list[int], start_iso: str, end_iso: str) -> list[dict[str, object]]:
    if not website_ids:
        return []
    placeholders = ", ".join("?" for _ in website_ids)
    rows = conn.execute(
        f"""
        SELECT w.domain,
               SUM(CASE WHEN cc.change_type = 'added' THEN 1 ELSE 0 END) AS added,
               SUM(CASE WHEN cc.change_type = 'removed' THEN 1 ELSE 0 END) AS removed,
               SUM(CASE WHEN cc.change_type = 'updated' THEN 1 ELSE 0 END) AS updated
        FROM component_changes cc
        JOIN websites w ON cc.website_id = w.id
        WHERE cc.website_id IN ({placeholders})
          AND cc.changed_at >= ? AND cc.changed_at < ?
        GROUP BY w.id, w.domain
        ORDER BY w.domain
        """,
        list(website_ids) + [start_iso, end_iso],
    ).fetchall()
    return [dict(row) for row in rows]


# Security events and static analysis


def get_security_event_type(conn: Any, slug: str) -> SecurityEventType | None:
    row = conn.execute(
        "SELECT id, slug, title, description, severity, enabled FROM security_event_types WHERE slug = ?",
        (slug,),
    ).fetchone()
    return _row_to_event_type(row) if row else None


def insert_security_event(
    conn: Any,
    website_id: int,
    event_type_id: int,
    source_ip: str,
    event_datetime: str,
    continent_code: str | None,
    country_code: str | None,
    details: object | None,
) -> bool:
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO security_events
            (website_id, event_type_id, source_ip, event_datetime, continent_code,
             country_code, details, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            website_id,
            event_type_id,
            source_ip,
            event_datetime,
            continent_code,
            country_code,
            json_dumps(details) if details is not None else None,
            utc_now_iso(),
        ),
    )
    return cursor.rowcount > 0


def count_security_events(conn: Any, website_ids: list[int], start_iso: str, end_iso: str) -> int:
    if not website_ids:
        return 0
    placeholders = ", ".join("?" for _ in website_ids)
    row = conn.execute(
        f"""
        SELECT COUNT(*) FROM security_events
        WHERE website_id IN ({placeholders}) AND event_datetime >= ? AND event_datetime < ?
        """,
        list(website_ids) + [start_iso, end_iso],
    ).fetchone()
    return int(row[0])


def security_events_by_type(
    conn: Any, website_ids: list[int], start_iso: str, end_iso: str, limit: int = 50
) -> list[dict[str, object]]:
    if not website_ids:
        return []
    placeholders = ", ".join("?" for _ in website_ids)
    rows = conn.execute(
        f"""
        SELECT t.slug AS event_type_slug, t.title AS event_type_title, t.severity,
               COUNT(*) AS event_count
        FROM security_events e
        JOIN security_event_types t ON e.event_type_id = t.id
        WHERE e.website_id IN ({placeholders}) AND e.event_datetime >= ? AND e.event_datetime < ?
        GROUP BY t.id
        ORDER BY event_count DESC, t.slug
        LIMIT ?
        """,
        list(website_ids) + [start_iso, end_iso, limit],
    ).fetchall()
    return [dict(row) for row in rows]


def top_event_countries(
    conn: Any, website_ids: list[int], start_iso: str, end_iso: str, limit: int = 10
) -> list[dict[str, object]]:
    if not website_ids:
        return []
    placeholders = ", ".join("?" for _ in website_ids)
    rows = conn.execute(
        f"""
        SELECT country_code, COUNT(*) AS event_count
        FROM security_events
        WHERE website_id IN ({placeholders}) AND event_datetime >= ? AND event_datetime < ?
          AND country_code IS NOT NULL
        GROUP BY country_code
        ORDER BY event_count DESC, country_code
        LIMIT ?
        """,
        list(website_ids) + [start_iso, end_iso, limit],
    ).fetchall()
    return [dict(row) for row in rows]


def upsert_file_issue(
    conn: Any,
    website_id: int,
    file_path: str,
    line_number: int,
    issue_type: str,
    severity: str,
    message: str | None,
) -> bool:
    """Insert or refresh one issue; returns True when it was already known."""
    existing = conn.execute(
        """
        SELECT 1 FROM file_security_issues
        WHERE website_id = ? AND file_path = ? AND line_number = ? AND issue_type = ?
        """,
        (website_id, file_path, line_number, issue_type),
    ).fetchone()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO file_security_issues
            (website_id, file_path, line_number, issue_type, severity, message, created_at, last_seen_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(website_id, file_path, line_number, issue_type) DO UPDATE SET
            severity = excluded.severity,
            message = excluded.message,
            last_seen_at = excluded.last_seen_at
        """,
        (website_id, file_path, line_number, issue_type, severity, message, now, now),
    )
    return existing is not None


def delete_file_issues(conn: Any, website_id: int, file_path: str) -> int:
    cursor = conn.execute(
        "DELETE FROM file_security_issues WHERE website_id = ? AND file_path = ?",
        (website_id, file_path),
    )
    return cursor.rowcount


def list_file_issues(conn: Any, website_id: int, limit: int = 100) -> list[FileSecurityIssue]:
    rows = conn.execute(
        """
        SELECT id, website_id, file_path, line_number, issue_type, severity, message,
               created_at, last_seen_at
        FROM file_security_issues
        WHERE website_id = ?
        ORDER BY file_path, line_number
        LIMIT ?
        """,
        (website_id, limit),
    ).fetchall()
    return [FileSecurityIssue(**dict(row)) for row in rows]


def file_issue_summary(conn: Any, website_ids: list[int]) -> list[dict[str, object]]:
    if not website_ids:
        return []
    placeholders = ", ".join("?" for _ in website_ids)
    rows = conn.execute(
        f"""
        SELECT w.id AS website_id, w.domain, w.title,
               COUNT(*) AS total_issues,
               SUM(CASE WHEN f.severity = 'error' THEN 1 ELSE 0 END) AS error_count,
               SUM(CASE WHEN f.severity = 'warning' THEN 1 ELSE 0 END) AS warning_count,
               SUM(CASE WHEN f.severity = 'info' THEN 1 ELSE 0 END) AS info_count
        FROM file_security_issues f
        JOIN websites w ON f.website_id = w.id
        WHERE w.id IN ({placeholders})
        GROUP BY w.id
        ORDER BY error_count DESC, warning_count DESC, total_issues DESC
        """,
        list(website_ids),
    ).fetchall()
    return [dict(row) for row in rows]


def top_issue_files(conn: Any, website_ids: list[int], limit: int = 10) -> list[dict[str, object]]:
    if not website_ids:
        return []
    placeholders = ", ".join("?" for _ in website_ids)
    rows = conn.execute(
        f"""
        SELECT w.domain, f.file_path, COUNT(*) AS issue_count,
               SUM(CASE WHEN f.severity = 'error' THEN 1 ELSE 0 END) AS error_count
        FROM file_security_issues f
        JOIN websites w ON f.website_id = w.id
        WHERE w.id IN ({placeholders})
        GROUP BY w.domain, f.file_path
        ORDER BY error_count DESC, issue_count DESC, f.file_path
        LIMIT ?
        """,
        list(website_ids) + [limit],
    ).fetchall()
    return [dict(row) for row in rows]


# App settings


def cast_setting(value: str | None, value_type: str) -> object:
    if value is None:
        return None
    if value_type == "integer":
        return int(float(value))
    if value_type == "float":
        return float(value)
    if value_type == "boolean":
        return value == "true"
    return value


def get_setting(conn: Any, key: str, default: object = None) -> object:
    row = conn.execute(
        "SELECT setting_value, value_type FROM app_settings WHERE setting_key = ?", (key,)
    ).fetchone()
    if not row:
        return default
    return cast_setting(row["setting_value"], row["value_type"])


def get_settings(conn: Any, keys: Iterable[str]) -> dict[str, object]:
    keys = list(keys)
    if not keys:
        return {}
    placeholders = ", ".join("?" for _ in keys)
    rows = conn.execute(
        f"SELECT setting_key, setting_value, value_type FROM app_settings WHERE setting_key IN ({placeholders})",
        keys,
    ).fetchall()
    return {row["setting_key"]: cast_setting(row["setting_value"], row["value_type"]) for row in rows}


def get_setting_row(conn: Any, key: str) -> AppSetting | None:
    row = conn.execute(
        """
        SELECT setting_key, setting_value, value_type, description, category, is_system,
               created_at, updated_at
        FROM app_settings WHERE setting_key = ?
        """,
        (key,),
    ).fetchone()
    return _row_to_setting(row) if row else None


def list_settings(conn: Any, category: str | None = None) -> list[AppSetting]:
    sql = """
        SELECT setting_key, setting_value, value_type, description, category, is_system,
               created_at, updated_at
        FROM app_settings
    """
    params: list[object] = []
    if category:
        sql += " WHERE category = ?"
        params.append(category)
    rows = conn.execute(sql + " ORDER BY category, setting_key", params).fetchall()
    return [_row_to_setting(row) for row in rows]


def set_setting(
    conn: Any,
    key: str,
    value: object,
    value_type: str = "string",
    description: str | None = None,
    category: str | None = None,
    is_system: bool = False,
) -> None:
    if value_type not in SETTING_TYPES:
        raise ValidationError(
            f"Invalid value_type: {value_type}. Must be one of: {', '.join(SETTING_TYPES)}"
        )
    if not SETTING_KEY_PATTERN.fullmatch(key):
        raise ValidationError(
            f"Invalid setting key format: {key}. Use lowercase letters, numbers, underscores, and dots only."
        )
    stored = _setting_to_text(value, value_type)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO app_settings
            (setting_key, setting_value, value_type, description, category, is_system, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(setting_key) DO UPDATE SET
            setting_value = excluded.setting_value,
            value_type = excluded.value_type,
            description = COALESCE(excluded.description, app_settings.description),
            category = COALESCE(excluded.category, app_settings.category),
            updated_at = excluded.updated_at
        """,
        (key, stored, value_type, description, category, 1 if is_system else 0, now, now),
    )


def delete_setting(conn: Any, key: str) -> bool:
    row = conn.execute("SELECT is_system FROM app_settings WHERE setting_key = ?", (key,)).fetchone()
    if not row:
        return False
    if row["is_system"]:
        raise ForbiddenError(f"Cannot delete system setting: {key}")
    cursor = conn.execute("DELETE FROM app_settings WHERE setting_key = ?", (key,))
    return cursor.rowcount > 0


def _setting_to_text(value: object, value_type: str) -> str:
    if value_type == "boolean":
        if isinstance(value, str):
            return "true" if value.strip().lower() in {"true", "1", "yes", "on"} else "false"
        return "true" if value else "false"
    if value_type == "integer":
        try:
            return str(int(value))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Value must be an integer: {value}") from exc
    if value_type == "float":
        try:
            return str(float(value))  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Value must be a number: {value}") from exc
    return str(value)


# Email and API call logs


def insert_email_log(conn: Any, recipient: str, email_type: str, status: str, error: str | None = None) -> None:
    conn.execute(
        "INSERT INTO email_logs (recipient_email, email_type, status, error, sent_at) VALUES (?, ?, ?, ?, ?)",
        (recipient, email_type, status, error, utc_now_iso()),
    )


def list_email_logs(conn: Any, limit: int = 50) -> list[EmailLog]:
    rows = conn.execute(
        "SELECT id, recipient_email, email_type, status, error, sent_at FROM email_logs ORDER BY id DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [EmailLog(**dict(row)) for row in rows]


def insert_api_call_log(conn: Any, user_id: int | None, method: str, path: str, status_code: int) -> None:
    conn.execute(
        "INSERT INTO api_call_logs (user_id, method, path, status_code, created_at) VALUES (?, ?, ?, ?, ?)",
        (user_id, method, path, status_code, utc_now_iso()),
    )


def list_api_call_logs(conn: Any, user_id: int | None, limit: int, offset: int) -> list[ApiCallLog]:
    sql = """
        SELECT l.id, l.user_id, u.username, l.method, l.path, l.status_code, l.created_at
        FROM api_call_logs l
        LEFT JOIN users u ON l.user_id = u.id
    """
    params: list[object] = []
    if user_id is not None:
        sql += " WHERE l.user_id = ?"
        params.append(user_id)
    rows = conn.execute(sql + " ORDER BY l.id DESC LIMIT ? OFFSET ?", params + [limit, offset]).fetchall()
    return [ApiCallLog(**dict(row)) for row in rows]


# Retention


_PURGE_TARGETS = {
    "api_call_logs": "created_at",
    "email_logs": "sent_at",
    "security_events": "event_datetime",
    "file_security_issues": "last_seen_at",
    "component_changes": "changed_at",
}


def purge_older_than(conn: Any, table: str, cutoff_iso: str) -> int:
    column = _PURGE_TARGETS.get(table)
    if column is None:
        raise ValueError(f"unsupported purge table: {table}")
    cursor = conn.execute(f"DELETE FROM {table} WHERE {column} < ?", (cutoff_iso,))
    return cursor.rowcount


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Row mapping


def _row_to_user(row: Any, roles: list[str]) -> User:
    return User(
        id=int(row["id"]),
        username=row["username"],
        roles=roles,
        reporting_weekday=row["reporting_weekday"] or None,
        reporting_email=row["reporting_email"] or None,
        max_api_keys=row["max_api_keys"],
        blocked=bool(row["blocked"]),
        paused=bool(row["paused"]),
        last_summary_sent_at=row["last_summary_sent_at"],
        created_at=row["created_at"],
    )


def _row_to_ecosystem(row: Any) -> Ecosystem:
    return Ecosystem(
        id=int(row["id"]),
        slug=row["slug"],
        name=row["name"],
        description=row["description"],
        data=json_loads(row["data"], {}) or {},
        active=bool(row["active"]),
    )


def _row_to_component(row: Any) -> Component:
    return Component(
        id=int(row["id"]),
        slug=row["slug"],
        component_type_slug=row["component_type_slug"],
        title=row["title"],
        url=row["url"],
        description=row["description"],
        synced_from_wporg=bool(row["synced_from_wporg"]),
        synced_from_wporg_at=row["synced_from_wporg_at"],
    )


def _row_to_release(row: Any) -> Release:
    return Release(
        id=int(row["id"]),
        component_id=int(row["component_id"]),
        version=row["version"],
        release_date=row["release_date"],
    )


def _row_to_website(row: Any) -> Website:
    return Website(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        domain=row["domain"],
        title=row["title"],
        is_ssl=bool(row["is_ssl"]),
        is_dev=bool(row["is_dev"]),
        meta=json_loads(row["meta"], {}) or {},
        wordpress_version=row["wordpress_version"],
        php_version=row["php_version"],
        db_server_type=row["db_server_type"],
        db_server_version=row["db_server_version"],
        versions_last_checked_at=row["versions_last_checked_at"],
        ecosystem_id=row["ecosystem_id"],
        platform_metadata=json_loads(row["platform_metadata"], {}) or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_event_type(row: Any) -> SecurityEventType:
    return SecurityEventType(
        id=int(row["id"]),
        slug=row["slug"],
        title=row["title"],
        description=row["description"],
        severity=row["severity"],
        enabled=bool(row["enabled"]),
    )


def _row_to_setting(row: Any) -> AppSetting:
    return AppSetting(
        setting_key=row["setting_key"],
        setting_value=row["setting_value"],
        value_type=row["value_type"],
        description=row["description"],
        category=row["category"],
        is_system=bool(row["is_system"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
