from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from .db import DBConn, transaction
from .deps import current_user, get_conn
from .models import User
from .services.websites import (
    accessible_website,
    add_website,
    apply_security_scan,
    edit_website,
    record_security_events,
    record_versions,
    website_view,
)
from .storage import count_websites, delete_website, list_file_issues, list_recent_changes, list_websites

_TRUTHY = {"true", "1"}


def websites_router() -> APIRouter:
    router = APIRouter(prefix="/api/websites", tags=["websites"])

    @router.get("")
    def websites_list(
        page: int = 1,
        limit: int = 10,
        q: str | None = None,
        only_vulnerable: str | None = None,
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        page = max(page, 1)
        limit = max(limit, 1)
        scope = None if user.is_admin else user.id
        vulnerable_only = (only_vulnerable or "").lower() in _TRUTHY
        websites = list_websites(conn, scope, limit, (page - 1) * limit, q or None, vulnerable_only)
        return {
            "websites": [website_view(conn, website) for website in websites],
            "total": count_websites(conn, scope, q or None, vulnerable_only),
            "page": page,
            "limit": limit,
        }

    @router.post("", status_code=201)
    def websites_create(
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = add_website(conn, user, payload)
        return website_view(conn, website)

    @router.get("/{domain}")
    def websites_read(
        domain: str,
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        return website_view(conn, accessible_website(conn, domain, user))

    @router.put("/{domain}")
    def websites_update(
        domain: str,
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = accessible_website(conn, domain, user)
        with transaction(conn):
            summary = edit_website(conn, user, website, payload)
        response: dict[str, object] = {"success": True, "message": "Website updated"}
        if summary is not None:
            response["component_changes"] = summary.as_dict()
        return response

    @router.delete("/{domain}")
    def websites_delete(
        domain: str,
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = accessible_website(conn, domain, user)
        delete_website(conn, website.id)
        return {"success": True, "message": "Website deleted"}

    @router.get("/{domain}/changes")
    def websites_changes(
        domain: str,
        limit: int = 50,
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = accessible_website(conn, domain, user)
        return {"domain": website.domain, "changes": list_recent_changes(conn, website.id, max(limit, 1))}

    @router.post("/{domain}/security-events", status_code=201)
    def websites_security_events(
        domain: str,
        request: Request,
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = accessible_website(conn, domain, user)
        with transaction(conn):
            return record_security_events(conn, website, payload.get("events"), request.app.state.geoip)

    @router.put("/{domain}/versions")
    def websites_versions(
        domain: str,
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = accessible_website(conn, domain, user)
        record_versions(conn, website, payload)
        return {"success": True, "message": "Versions updated successfully"}

    @router.post("/{domain}/security-scan", status_code=201)
    def websites_security_scan(
        domain: str,
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = accessible_website(conn, domain, user)
        with transaction(conn):
            return apply_security_scan(conn, website, payload.get("files"))

    @router.get("/{domain}/security-issues")
    def websites_security_issues(
        domain: str,
        limit: int = 100,
        conn: DBConn = Depends(get_conn),
        user: User = Depends(current_user),
    ) -> dict[str, object]:
        website = accessible_website(conn, domain, user)
        issues = list_file_issues(conn, website.id, max(limit, 1))
        return {"domain": website.domain, "issues": [asdict(issue) for issue in issues]}

    return router
