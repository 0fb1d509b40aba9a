from __future__ import annotations

from typing import Iterator

from fastapi import Depends, Request

from .config import Config, get_state_db_path
from .db import DBConn, connect_db
from .errors import AuthError, ForbiddenError
from .models import User
from .services.accounts import user_for_api_key, user_for_session

API_KEY_HEADER = "X-API-Key"


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_conn(cfg: Config = Depends(get_config)) -> Iterator[DBConn]:
    conn = connect_db(get_state_db_path(cfg), migrate=cfg.app.instance == 0)
    try:
        yield conn
    finally:
        conn.close()


def optional_user(
    request: Request,
    conn: DBConn = Depends(get_conn),
    cfg: Config = Depends(get_config),
) -> User | None:
    """Resolve the caller from the API key header, then the session cookie."""
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key:
        user = user_for_api_key(conn, api_key)
        if user is not None:
            request.state.api_key_user_id = user.id
            return user
    return user_for_session(conn, request.cookies.get(cfg.auth.cookie_name))


def current_user(user: User | None = Depends(optional_user)) -> User:
    if user is None:
        raise AuthError("Unauthorized")
    if user.blocked:
        raise AuthError("User account is blocked.")
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError("Forbidden")
    return user
