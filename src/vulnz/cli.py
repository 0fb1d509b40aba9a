from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable

from .config import Config, ConfigError, get_state_db_path, load_config
from .db import DBConn, connect_db, transaction
from .errors import VulnzError
from .migrations import applied_versions
from .models import User
from .normalize import sort_by_version
from .security.passwords import generate_token
from .services.accounts import ADMIN_ROLES, DEFAULT_ROLES, change_password, create_account
from .storage import (
    delete_api_key,
    delete_user,
    find_components_by_slug,
    get_api_key,
    get_feed_status,
    get_user_by_username,
    insert_api_key,
    list_api_keys,
    list_releases,
    list_users,
    update_user,
)
from .utils import configure_logging, log_event, to_jsonable

Command = Callable[[argparse.Namespace, DBConn, Config], int]


def _print_table(headers: list[str], rows: list[list[object]]) -> None:
    widths = [len(header) for header in headers]
    for row in rows:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(str(value)))
    line = "  ".join(header.ljust(widths[index]) for index, header in enumerate(headers))
    print(line.rstrip())
    print("-" * len(line.rstrip()))
    for row in rows:
        print("  ".join(str(value).ljust(widths[index]) for index, value in enumerate(row)).rstrip())


def _print_json(value: object) -> None:
    print(json.dumps(to_jsonable(value), indent=2))


def _require_user(conn: DBConn, email: str) -> User:
    user = get_user_by_username(conn, email)
    if user is None:
        raise VulnzError(f"User '{email}' not found.")
    return user


def _user_status(user: User) -> str:
    if user.blocked:
        return "BLOCKED"
    if user.paused:
        return "paused"
    return "active"


def _cmd_user_add(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    roles = list(ADMIN_ROLES if args.admin else DEFAULT_ROLES)
    with transaction(conn):
        user = create_account(conn, cfg, {"username": args.email, "password": args.password}, roles=roles)
    print(f"Created user: {user.username} (id={user.id}, roles={','.join(user.roles)})")
    return 0


def _cmd_user_list(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    users = list_users(conn)
    if args.json:
        _print_json(users)
        return 0
    if not users:
        print("No users found.")
        return 0
    _print_table(
        ["ID", "USERNAME", "ROLES", "STATUS"],
        [[user.id, user.username, ",".join(user.roles), _user_status(user)] for user in users],
    )
    return 0


def _cmd_user_delete(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    user = _require_user(conn, args.email)
    delete_user(conn, user.id)
    print(f"Deleted user: {args.email} (id={user.id})")
    return 0


def _cmd_user_block(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    user = _require_user(conn, args.email)
    update_user(conn, user.id, {"blocked": True})
    print(f"Blocked user: {args.email} (id={user.id})")
    return 0


def _cmd_user_unblock(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    user = _require_user(conn, args.email)
    update_user(conn, user.id, {"blocked": False})
    print(f"Unblocked user: {args.email} (id={user.id})")
    return 0


def _cmd_user_reset_password(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    user = _require_user(conn, args.email)
    change_password(conn, cfg, user.id, args.new_password)
    print(f"Password reset for user: {args.email} (id={user.id})")
    return 0


def _cmd_key_list(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    user = _require_user(conn, args.email)
    keys = list_api_keys(conn, user.id)
    if args.json:
        _print_json(keys)
        return 0
    if not keys:
        print(f"No API keys found for {args.email}.")
        return 0
    _print_table(["ID", "API KEY", "CREATED"], [[key.id, key.api_key, key.created_at] for key in keys])
    return 0


def _cmd_key_generate(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    # Operator override: the per-user key ceiling only applies to self-service.
    user = _require_user(conn, args.email)
    key = insert_api_key(conn, user.id, generate_token())
    print(f"Generated API key for {args.email}: {key.api_key}")
    return 0


def _cmd_key_revoke(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    if get_api_key(conn, args.key) is None:
        raise VulnzError("API key not found.")
    delete_api_key(conn, args.key)
    print(f"Revoked API key: {args.key}")
    return 0


def _cmd_feed_status(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    status = get_feed_status(conn)
    if args.json:
        _print_json(status)
        return 0
    print("Feed Status")
    print("-----------")
    print(f"  Components:       {status['components']:>8}")
    print(f"  Releases:         {status['releases']:>8}")
    print(f"  Vulnerabilities:  {status['vulnerabilities']:>8}")
    print(f"  Last wporg sync:  {status['last_synced_at'] or 'never'}")
    return 0


def _cmd_component_find(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    components = find_components_by_slug(conn, args.slug)
    if args.json:
        _print_json(components)
        return 0
    if not components:
        print(f"No component found with slug: {args.slug}")
        return 0
    _print_table(
        ["ID", "SLUG", "TYPE", "TITLE", "RELEASES", "VULNS"],
        [
            [
                item["id"],
                item["slug"],
                item["component_type_slug"],
                item["title"] or "",
                item["release_count"],
                item["vulnerability_count"] or "-",
            ]
            for item in components
        ],
    )
    return 0


def _cmd_release_list(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    components = find_components_by_slug(conn, args.slug)
    releases_by_component = list_releases(conn, [item["id"] for item in components])
    rows = []
    for item in components:
        for release in sort_by_version(releases_by_component[item["id"]], key=lambda entry: entry["version"]):
            rows.append({"type": item["component_type_slug"], **release})
    if args.json:
        _print_json(rows)
        return 0
    if not rows:
        print(f"No releases found for component: {args.slug}")
        return 0
    _print_table(
        ["TYPE", "VERSION", "VULNERABLE"],
        [[row["type"], row["version"], "yes" if row["has_vulnerabilities"] else "-"] for row in rows],
    )
    print(f"{len(rows)} release(s) listed.")
    return 0


def _cmd_db_migrate(args: argparse.Namespace, conn: DBConn, cfg: Config) -> int:
    print(f"Applied migrations: {', '.join(applied_versions(conn.raw))}")
    return 0


def _run(command: Command, args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn: DBConn | None = None
    try:
        conn = connect_db(get_state_db_path(cfg))
        return command(args, conn, cfg)
    except VulnzError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    except Exception as exc:
        log_event(logger, logging.ERROR, "cli_error", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        if conn is not None:
            conn.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vulnz", description="Vulnz admin CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to VZ_CONFIG_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    user_add = subparsers.add_parser("user:add", help="Create a new user account")
    user_add.add_argument("email")
    user_add.add_argument("password")
    user_add.add_argument("--admin", action="store_true", help="Grant the administrator role")
    user_add.set_defaults(func=_cmd_user_add)

    user_list = subparsers.add_parser("user:list", help="List all user accounts")
    user_list.add_argument("--json", action="store_true", help="Output as JSON")
    user_list.set_defaults(func=_cmd_user_list)

    for name, func, help_text in (
        ("user:delete", _cmd_user_delete, "Delete a user account"),
        ("user:block", _cmd_user_block, "Block a user account (prevents login)"),
        ("user:unblock", _cmd_user_unblock, "Unblock a user account"),
        ("key:generate", _cmd_key_generate, "Generate a new API key for a user"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("email")
        sub.set_defaults(func=func)

    reset = subparsers.add_parser("user:reset-password", help="Set a new password for a user")
    reset.add_argument("email")
    reset.add_argument("new_password")
    reset.set_defaults(func=_cmd_user_reset_password)

    key_list = subparsers.add_parser("key:list", help="List API keys for a user")
    key_list.add_argument("email")
    key_list.add_argument("--json", action="store_true", help="Output as JSON")
    key_list.set_defaults(func=_cmd_key_list)

    key_revoke = subparsers.add_parser("key:revoke", help="Revoke (delete) an API key")
    key_revoke.add_argument("key")
    key_revoke.set_defaults(func=_cmd_key_revoke)

    feed_status = subparsers.add_parser("feed:status", help="Show component, release and vulnerability counts")
    feed_status.add_argument("--json", action="store_true", help="Output as JSON")
    feed_status.set_defaults(func=_cmd_feed_status)

    component_find = subparsers.add_parser("component:find", help="Look up a component by slug")
    component_find.add_argument("slug")
    component_find.add_argument("--json", action="store_true", help="Output as JSON")
    component_find.set_defaults(func=_cmd_component_find)

    release_list = subparsers.add_parser("release:list", help="List known releases for a component slug")
    release_list.add_argument("slug")
    release_list.add_argument("--json", action="store_true", help="Output as JSON")
    release_list.set_defaults(func=_cmd_release_list)

    db_migrate = subparsers.add_parser("db:migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("vulnz.cli", default_level="WARNING")
    return _run(args.func, args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
