from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from .config import Config
from .db import DBConn
from .deps import get_config, get_conn, optional_user
from .errors import VulnzError
from .models import User
from .services.search import search_components
from .services.websites import accessible_website, website_view
from .storage import count_websites, get_feed_status, list_recent_changes, list_websites

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES = Jinja2Templates(directory=str(BASE_DIR / "templates"))
DASHBOARD_LIMIT = 50


def _base_context(request: Request, cfg: Config, user: User | None) -> dict[str, object]:
    return {
        "request": request,
        "app_name": cfg.app.name,
        "user": user,
        "is_authenticated": user is not None,
        "registration_enabled": cfg.app.registration_enabled or cfg.app.setup_mode,
    }


def ui_router() -> APIRouter:
    router = APIRouter(prefix="/ui", tags=["ui"])

    @router.get("/login", response_class=HTMLResponse)
    def ui_login(
        request: Request,
        cfg: Config = Depends(get_config),
        user: User | None = Depends(optional_user),
    ) -> Response:
        if user is not None and not user.blocked:
            return RedirectResponse("/ui/", status_code=303)
        return TEMPLATES.TemplateResponse(request, "admin/login.html", _base_context(request, cfg, None))

    @router.get("/reset-password", response_class=HTMLResponse)
    def ui_reset_password(
        request: Request,
        token: str = "",
        cfg: Config = Depends(get_config),
    ) -> Response:
        context = _base_context(request, cfg, None)
        context["token"] = token
        return TEMPLATES.TemplateResponse(request, "admin/reset_password.html", context)

    @router.get("/", response_class=HTMLResponse)
    def ui_dashboard(
        request: Request,
        q: str = "",
        only_vulnerable: bool = False,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        user: User | None = Depends(optional_user),
    ) -> Response:
        if user is None or user.blocked:
            return RedirectResponse("/ui/login", status_code=303)
        scope = None if user.is_admin else user.id
        websites = list_websites(conn, scope, DASHBOARD_LIMIT, 0, q or None, only_vulnerable)
        context = _base_context(request, cfg, user)
        context.update(
            {
                "query": q,
                "only_vulnerable": only_vulnerable,
                "websites": [website_view(conn, website) for website in websites],
                "website_total": count_websites(conn, scope),
                "vulnerable_total": count_websites(conn, scope, only_vulnerable=True),
                "feed_status": get_feed_status(conn) if user.is_admin else None,
            }
        )
        return TEMPLATES.TemplateResponse(request, "admin/dashboard.html", context)

    @router.get("/websites/{domain}", response_class=HTMLResponse)
    def ui_website(
        request: Request,
        domain: str,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        user: User | None = Depends(optional_user),
    ) -> Response:
        if user is None or user.blocked:
            return RedirectResponse("/ui/login", status_code=303)
        context = _base_context(request, cfg, user)
        try:
            website = accessible_website(conn, domain, user)
        except VulnzError as exc:
            context["error"] = exc.message
            return TEMPLATES.TemplateResponse(request, "admin/website.html", context, status_code=exc.status_code)
        context["website"] = website_view(conn, website)
        context["changes"] = list_recent_changes(conn, website.id, 20)
        return TEMPLATES.TemplateResponse(request, "admin/website.html", context)

    @router.get("/components", response_class=HTMLResponse)
    def ui_components(
        request: Request,
        q: str = "",
        page: int = 1,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        user: User | None = Depends(optional_user),
    ) -> Response:
        if user is None or user.blocked:
            return RedirectResponse("/ui/login", status_code=303)
        context = _base_context(request, cfg, user)
        context["query"] = q
        context["results"] = search_components(conn, q, page, cfg.api.list_page_size) if q.strip() else None
        return TEMPLATES.TemplateResponse(request, "admin/components.html", context)

    return router
