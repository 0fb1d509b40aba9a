from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .admin_components import catalog_router, components_router
from .admin_ui import BASE_DIR, ui_router
from .admin_websites import websites_router
from .config import Config, get_state_db_path, load_config
from .db import DBConn, connect_db, transaction
from .deps import current_user, get_config, get_conn, optional_user, require_admin
from .errors import NotFoundError, ValidationError, VulnzError
from .geoip import GeoIPLookup
from .mailer import Mailer
from .models import User
from .services.accounts import (
    DEFAULT_ROLES,
    authenticate,
    change_password,
    check_reset_token,
    create_account,
    generate_api_key,
    register,
    request_password_reset,
    reset_password,
    start_session,
    update_account,
)
from .services.reporting import send_summary_email
from .storage import (
    cast_setting,
    delete_api_key,
    delete_session,
    delete_setting,
    delete_user,
    get_setting_row,
    get_user,
    insert_api_call_log,
    list_api_call_logs,
    list_api_keys,
    list_roles,
    list_settings,
    list_users,
    set_setting,
)
from .throttle import RequestThrottle, throttle_login
from .utils import configure_logging, log_event, to_jsonable

logger = logging.getLogger("vulnz.admin")

RESET_REQUESTED_MESSAGE = "If that account exists, a password reset link has been sent."
REGISTERED_MESSAGE = "Registration received. You can now log in."


class LoginRequest(BaseModel):
    username: str | None = None
    password: str | None = None


class ResetRequest(BaseModel):
    username: str | None = None


class TokenRequest(BaseModel):
    token: str | None = None
    newPassword: str | None = None


class PasswordRequest(BaseModel):
    newPassword: str | None = None


class SettingRequest(BaseModel):
    value: Any = None
    type: str | None = None
    description: str | None = None
    category: str | None = None


class SummaryEmailRequest(BaseModel):
    user_id: int | None = None


def _user_view(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "username": user.username,
        "roles": user.roles,
        "blocked": user.blocked,
        "paused": user.paused,
        "reporting_weekday": user.reporting_weekday,
        "reporting_email": user.reporting_email,
        "max_api_keys": user.max_api_keys,
        "last_summary_sent_at": user.last_summary_sent_at,
    }


def _setting_view(setting) -> dict[str, object]:
    return {
        "key": setting.setting_key,
        "value": cast_setting(setting.setting_value, setting.value_type),
        "rawValue": setting.setting_value,
        "type": setting.value_type,
        "description": setting.description,
        "category": setting.category,
        "isSystem": setting.is_system,
        "createdAt": setting.created_at,
        "updatedAt": setting.updated_at,
    }


def _is_secure_request(request: Request) -> bool:
    forwarded_proto = request.headers.get("x-forwarded-proto", "").lower()
    if forwarded_proto:
        return forwarded_proto == "https"
    return request.url.scheme == "https"


def auth_router() -> APIRouter:
    router = APIRouter(prefix="/api/auth", tags=["auth"])

    @router.post("/register", status_code=201)
    def auth_register(
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
    ) -> dict[str, object]:
        with transaction(conn):
            register(conn, cfg, payload)
        return {"success": True, "message": REGISTERED_MESSAGE}

    @router.post("/login")
    def auth_login(
        payload: LoginRequest,
        request: Request,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        _: None = Depends(throttle_login),
    ) -> JSONResponse:
        user = authenticate(conn, payload.username, payload.password)
        token, _ = start_session(conn, cfg, user)
        response = JSONResponse(
            {
                "success": True,
                "message": "Logged in successfully",
                "user": {"id": user.id, "username": user.username, "roles": user.roles},
            }
        )
        response.set_cookie(
            cfg.auth.cookie_name,
            token,
            httponly=True,
            secure=_is_secure_request(request),
            samesite="lax",
            max_age=cfg.auth.session_days * 86400,
        )
        log_event(logger, logging.INFO, "login", user_id=user.id)
        return response

    @router.post("/logout")
    def auth_logout(
        request: Request,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
    ) -> JSONResponse:
        token = request.cookies.get(cfg.auth.cookie_name)
        if token:
            delete_session(conn, token)
        response = JSONResponse({"success": True, "message": "Logged out"})
        response.delete_cookie(cfg.auth.cookie_name)
        return response

    @router.get("/me")
    def auth_me(user: User | None = Depends(optional_user)) -> dict[str, object] | None:
        if user is None or user.blocked:
            return None
        return {"id": user.id, "username": user.username, "roles": user.roles}

    @router.post("/reset-password")
    def auth_reset_password(
        payload: ResetRequest,
        request: Request,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
    ) -> dict[str, object]:
        try:
            request_password_reset(conn, cfg, payload.username, request.app.state.mailer)
        except OSError as exc:
            # Same answer either way so the response never reveals whether the account exists.
            log_event(logger, logging.ERROR, "password_reset_email_failed", error=str(exc))
        return {"success": True, "message": RESET_REQUESTED_MESSAGE}

    @router.post("/update-password")
    def auth_update_password(
        payload: TokenRequest,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
    ) -> dict[str, object]:
        if not payload.token or not payload.newPassword:
            raise ValidationError("Token and new password are required.")
        with transaction(conn):
            reset_password(conn, cfg, payload.token, payload.newPassword)
        return {"success": True, "message": "Password updated successfully."}

    @router.get("/validate-token/{token}")
    def auth_validate_token(
        token: str,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
    ) -> dict[str, object]:
        check_reset_token(conn, cfg, token)
        return {"success": True, "message": "Token is valid."}

    return router


def users_router() -> APIRouter:
    router = APIRouter(prefix="/api/users", tags=["users"])

    @router.get("")
    def users_list(
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> list[dict[str, object]]:
        return [_user_view(user) for user in list_users(conn)]

    @router.post("", status_code=201)
    def users_create(
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        roles = payload.get("roles")
        if roles is not None and not isinstance(roles, list):
            raise ValidationError("roles must be an array")
        with transaction(conn):
            user = create_account(conn, cfg, payload, roles=roles or DEFAULT_ROLES)
        return {"success": True, "message": "User created", "user": _user_view(user)}

    @router.put("/password")
    def users_change_own_password(
        payload: PasswordRequest,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        change_password(conn, cfg, user.id, payload.newPassword)
        return {"success": True, "message": "Password updated successfully."}

    @router.get("/me")
    def users_me(user: User = Depends(current_user)) -> dict[str, object]:
        return _user_view(user)

    @router.put("/me")
    def users_update_me(
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        allowed = {key: payload[key] for key in ("reporting_weekday", "reporting_email", "paused") if key in payload}
        updated = update_account(conn, cfg, user.id, allowed)
        return _user_view(updated)

    @router.get("/{user_id}")
    def users_read(
        user_id: int,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        user = get_user(conn, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return _user_view(user)

    @router.put("/{user_id}")
    def users_update(
        user_id: int,
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        with transaction(conn):
            user = update_account(conn, cfg, user_id, payload)
        return _user_view(user)

    @router.delete("/{user_id}", status_code=204)
    def users_delete(
        user_id: int,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> Response:
        if not delete_user(conn, user_id):
            raise NotFoundError("User not found")
        return Response(status_code=204)

    return router


def api_keys_router() -> APIRouter:
    router = APIRouter(prefix="/api/api-keys", tags=["api-keys"])

    @router.get("")
    def api_keys_list(
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> list[dict[str, object]]:
        return to_jsonable(list_api_keys(conn, user.id))

    @router.post("", status_code=201)
    def api_keys_create(
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        with transaction(conn):
            key = generate_api_key(conn, cfg, user)
        return {"apiKey": key.api_key}

    @router.delete("/{api_key}", status_code=204)
    def api_keys_delete(
        api_key: str,
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> Response:
        if not delete_api_key(conn, api_key, user.id):
            raise NotFoundError("API key not found")
        return Response(status_code=204)

    return router


def settings_router() -> APIRouter:
    router = APIRouter(prefix="/api/settings", tags=["settings"])

    @router.get("")
    def settings_list(
        category: str | None = None,
        grouped: bool = False,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        items = [_setting_view(setting) for setting in list_settings(conn, category)]
        if not grouped:
            return {"success": True, "settings": items}
        by_category: dict[str, list[dict[str, object]]] = {}
        for item in items:
            by_category.setdefault(str(item["category"] or "general"), []).append(item)
        return {"success": True, "settings": by_category}

    @router.get("/{key}")
    def settings_read(
        key: str,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        setting = get_setting_row(conn, key)
        if setting is None:
            raise NotFoundError("Setting not found")
        return {"success": True, "setting": _setting_view(setting)}

    @router.put("/{key}")
    def settings_update(
        key: str,
        payload: SettingRequest,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        if payload.value is None:
            raise ValidationError("Value is required")
        if not payload.type:
            raise ValidationError("Type is required")
        existing = get_setting_row(conn, key)
        set_setting(
            conn,
            key,
            payload.value,
            payload.type,
            payload.description,
            payload.category,
            existing.is_system if existing else False,
        )
        return {"success": True, "key": key, "value": payload.value, "message": "Setting updated successfully"}

    @router.delete("/{key}")
    def settings_delete(
        key: str,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        if not delete_setting(conn, key):
            raise NotFoundError("Setting not found")
        return {"success": True, "message": "Setting deleted successfully"}

    return router


def misc_router() -> APIRouter:
    router = APIRouter(tags=["misc"])

    @router.get("/api/roles")
    def roles_list(
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> list[dict[str, object]]:
        return list_roles(conn)

    @router.get("/api/logs")
    def logs_list(
        page: int = 1,
        limit: int | None = None,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        user: User = Depends(current_user),
    ) -> list[dict[str, object]]:
        page = max(page, 1)
        limit = limit or cfg.api.list_page_size
        scope = None if user.is_admin else user.id
        return to_jsonable(list_api_call_logs(conn, scope, limit, (page - 1) * limit))

    @router.post("/api/reports/summary-email")
    def reports_summary_email(
        payload: SummaryEmailRequest,
        request: Request,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        if not payload.user_id:
            raise ValidationError("user_id is required")
        target = get_user(conn, payload.user_id)
        if target is None:
            raise NotFoundError("User not found")
        recipient = send_summary_email(conn, cfg, target, request.app.state.mailer)
        return {"success": True, "message": "Report sent", "recipient": recipient}

    @router.get("/api/config")
    def public_config(
        cfg: Config = Depends(get_config),
        user: User | None = Depends(optional_user),
    ) -> dict[str, object]:
        data: dict[str, object] = {
            "baseUrl": cfg.app.base_url,
            "registrationEnabled": cfg.app.registration_enabled,
        }
        if user is not None:
            data["maxApiKeysPerUser"] = cfg.auth.max_api_keys_per_user
            data["setupMode"] = cfg.app.setup_mode
        return data

    @router.get("/health")
    def health() -> dict[str, object]:
        return {"ok": True, "time": datetime.now(tz=timezone.utc).isoformat()}

    return router


def _error_response(exc: VulnzError) -> JSONResponse:
    body: dict[str, object] = {"success": False, "message": exc.message}
    if isinstance(exc, ValidationError) and len(exc.errors) > 1:
        body["errors"] = exc.errors
    return JSONResponse(body, status_code=exc.status_code)


def create_app(cfg: Config | None = None) -> FastAPI:
    cfg = cfg or load_config()
    configure_logging("vulnz.admin")
    app = FastAPI(title=f"{cfg.app.name} API")
    app.state.config = cfg
    app.state.mailer = Mailer(cfg.smtp)
    app.state.geoip = GeoIPLookup.open(cfg.geoip.database_path)
    app.state.throttle = RequestThrottle(cfg.api)
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
    app.mount("/ui/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")

    if cfg.app.instance == 0:
        connect_db(get_state_db_path(cfg)).close()

    @app.exception_handler(VulnzError)
    async def _vulnz_error(request: Request, exc: VulnzError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [str(item.get("msg")) for item in exc.errors()]
        return JSONResponse({"success": False, "message": "Invalid request", "errors": errors}, status_code=400)

    @app.exception_handler(Exception)
    async def _server_error(request: Request, exc: Exception) -> JSONResponse:
        log_event(logger, logging.ERROR, "unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse({"success": False, "message": "Server error"}, status_code=500)

    @app.middleware("http")
    async def _api_call_log(request: Request, call_next):
        response = await call_next(request)
        user_id = getattr(request.state, "api_key_user_id", None)
        if user_id is not None and request.url.path.startswith("/api"):
            conn = connect_db(get_state_db_path(cfg), migrate=False)
            try:
                insert_api_call_log(conn, user_id, request.method, request.url.path, response.status_code)
            finally:
                conn.close()
        return response

    @app.get("/")
    def root() -> RedirectResponse:
        return RedirectResponse("/ui/", status_code=307)

    for router in (
        auth_router(),
        users_router(),
        api_keys_router(),
        components_router(),
        catalog_router(),
        websites_router(),
        settings_router(),
        misc_router(),
        ui_router(),
    ):
        app.include_router(router)
    return app
