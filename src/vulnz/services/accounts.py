from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from ..config import Config
from ..errors import AuthError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..mailer import Mailer, send_password_reset_email
from ..models import ApiKey, User
from ..security.passwords import generate_token, hash_password, verify_password
from ..storage import (
    count_api_keys,
    create_user,
    delete_reset_tokens,
    get_api_key,
    get_password_hash,
    get_reset_token,
    get_session_user_id,
    get_user,
    get_user_by_username,
    insert_api_key,
    insert_session,
    replace_reset_token,
    set_user_roles,
    update_user,
)
from ..utils import log_event, parse_iso, to_utc_iso, utc_now, utc_now_iso
from ..validation import is_valid_email, normalize_weekday, validate_password, validate_username

logger = logging.getLogger("vulnz.accounts")

DEFAULT_ROLES = ["user"]
ADMIN_ROLES = ["user", "administrator"]


def validated_credentials(cfg: Config, payload: dict[str, Any]) -> tuple[str, str]:
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    if not username or not password:
        raise ValidationError("Username and password are required.")
    errors = validate_username(username) + validate_password(password, cfg.password)
    if errors:
        raise ValidationError(errors[0], errors)
    return username, password


def _reporting_fields(payload: dict[str, Any]) -> dict[str, object]:
    fields: dict[str, object] = {}
    if "reporting_weekday" in payload:
        raw = payload.get("reporting_weekday")
        weekday = normalize_weekday(raw)
        if raw not in (None, "") and weekday is None:
            raise ValidationError("reporting_weekday must be one of SUN, MON, TUE, WED, THU, FRI, SAT.")
        fields["reporting_weekday"] = weekday
    if "reporting_email" in payload:
        email = payload.get("reporting_email") or None
        if email is not None and not is_valid_email(email):
            raise ValidationError("reporting_email must be a valid email address.")
        fields["reporting_email"] = email
    return fields


def key_limit(cfg: Config, user: User) -> int:
    ceiling = cfg.auth.max_api_keys_per_user
    if user.max_api_keys is None:
        return ceiling
    return min(user.max_api_keys, ceiling)


def create_account(
    conn: Any,
    cfg: Config,
    payload: dict[str, Any],
    roles: list[str] | None = None,
) -> User:
    username, password = validated_credentials(cfg, payload)
    fields = _reporting_fields(payload)
    max_keys = payload.get("max_api_keys")
    if max_keys is not None:
        max_keys = min(int(max_keys), cfg.auth.max_api_keys_per_user)
    user = create_user(
        conn,
        username,
        hash_password(password),
        roles or DEFAULT_ROLES,
        blocked=bool(payload.get("blocked", False)),
        paused=bool(payload.get("paused", False)),
        max_api_keys=max_keys,
        reporting_weekday=fields.get("reporting_weekday"),  # type: ignore[arg-type]
        reporting_email=fields.get("reporting_email"),  # type: ignore[arg-type]
    )
    log_event(logger, logging.INFO, "user_created", user_id=user.id, roles=",".join(user.roles))
    return user


def register(conn: Any, cfg: Config, payload: dict[str, Any]) -> User | None:
    """Self-service sign up.

    An already registered address is not reported back to the caller; the
    existing account is left untouched and None is returned.
    """
    if not cfg.app.registration_enabled and not cfg.app.setup_mode:
        raise ForbiddenError("Registration is disabled.")
    roles = ADMIN_ROLES if cfg.app.setup_mode else DEFAULT_ROLES
    try:
        return create_account(conn, cfg, payload, roles=roles)
    except ConflictError:
        log_event(logger, logging.INFO, "register_existing_user")
        return None


def update_account(
    conn: Any,
    cfg: Config,
    user_id: int,
    payload: dict[str, Any],
) -> User:
    user = get_user(conn, user_id)
    if user is None:
        raise NotFoundError("User not found")
    fields = _reporting_fields(payload)
    if "username" in payload:
        errors = validate_username(payload.get("username"))
        if errors:
            raise ValidationError(errors[0], errors)
        fields["username"] = str(payload["username"]).strip()
    if payload.get("password"):
        errors = validate_password(str(payload["password"]), cfg.password)
        if errors:
            raise ValidationError(errors[0], errors)
        fields["password_hash"] = hash_password(str(payload["password"]))
    for flag in ("blocked", "paused"):
        if flag in payload:
            fields[flag] = bool(payload[flag])
    if "max_api_keys" in payload:
        raw = payload.get("max_api_keys")
        fields["max_api_keys"] = None if raw is None else min(int(raw), cfg.auth.max_api_keys_per_user)
    if fields:
        update_user(conn, user_id, fields)
    if "roles" in payload:
        roles = payload.get("roles")
        if not isinstance(roles, list):
            raise ValidationError("roles must be an array")
        set_user_roles(conn, user_id, [str(role) for role in roles])
    updated = get_user(conn, user_id)
    if updated is None:
        raise NotFoundError("User not found")
    return updated


def change_password(conn: Any, cfg: Config, user_id: int, new_password: object) -> None:
    if not new_password:
        raise ValidationError("New password is required.")
    errors = validate_password(str(new_password), cfg.password)
    if errors:
        raise ValidationError(errors[0], errors)
    update_user(conn, user_id, {"password_hash": hash_password(str(new_password))})


def authenticate(conn: Any, username: object, password: object) -> User:
    if not username or not password:
        raise ValidationError("Username and password are required.")
    user = get_user_by_username(conn, str(username).strip())
    if user is None:
        raise AuthError("Invalid username or password.")
    encoded = get_password_hash(conn, user.id)
    if not encoded or not verify_password(str(password), encoded):
        raise AuthError("Invalid username or password.")
    if user.blocked:
        raise AuthError("User account is blocked.")
    return user


def start_session(conn: Any, cfg: Config, user: User) -> tuple[str, str]:
    token = generate_token()
    expires_at = to_utc_iso(utc_now() + timedelta(days=cfg.auth.session_days))
    insert_session(conn, token, user.id, expires_at)
    log_event(logger, logging.INFO, "session_started", user_id=user.id)
    return token, expires_at


def user_for_session(conn: Any, token: str | None) -> User | None:
    if not token:
        return None
    user_id = get_session_user_id(conn, token, utc_now_iso())
    if user_id is None:
        return None
    return get_user(conn, user_id)


def user_for_api_key(conn: Any, key: str | None) -> User | None:
    if not key:
        return None
    record = get_api_key(conn, key)
    if record is None:
        return None
    return get_user(conn, record.user_id)


def generate_api_key(conn: Any, cfg: Config, user: User) -> ApiKey:
    if count_api_keys(conn, user.id) >= key_limit(cfg, user):
        raise ForbiddenError("You have reached the maximum number of API keys.")
    key = insert_api_key(conn, user.id, generate_token())
    log_event(logger, logging.INFO, "api_key_created", user_id=user.id, key_id=key.id)
    return key


def request_password_reset(conn: Any, cfg: Config, username: object, mailer: Mailer) -> None:
    """Issue a reset token and email it; silent for unknown or blocked users."""
    user = get_user_by_username(conn, str(username or "").strip())
    if user is None or user.blocked:
        log_event(logger, logging.INFO, "password_reset_ignored")
        return
    token = generate_token()
    replace_reset_token(conn, user.id, token)
    send_password_reset_email(mailer, cfg, user.username, token)
    log_event(logger, logging.INFO, "password_reset_requested", user_id=user.id)


def check_reset_token(conn: Any, cfg: Config, token: object) -> dict[str, object]:
    record = get_reset_token(conn, str(token or ""))
    if record is None:
        raise NotFoundError("Token not found or has expired.")
    issued = parse_iso(str(record["created_at"]))
    if utc_now() - issued > timedelta(seconds=cfg.auth.reset_token_seconds):
        raise ValidationError("Token has expired.")
    return record


def reset_password(conn: Any, cfg: Config, token: object, new_password: object) -> None:
    try:
        record = check_reset_token(conn, cfg, token)
    except (NotFoundError, ValidationError) as exc:
        raise ValidationError("Invalid or expired token.") from exc
    change_password(conn, cfg, int(record["user_id"]), new_password)  # type: ignore[arg-type]
    delete_reset_tokens(conn, int(record["user_id"]))  # type: ignore[arg-type]
    log_event(logger, logging.INFO, "password_reset_completed", user_id=record["user_id"])
