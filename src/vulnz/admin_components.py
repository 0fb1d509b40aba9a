from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Body, Depends, Response
from pydantic import BaseModel

from .config import Config
from .db import DBConn, transaction
from .deps import current_user, get_config, get_conn, require_admin
from .errors import NotFoundError, ValidationError
from .models import User
from .services.reconcile import (
    component_detail,
    find_or_create_component,
    release_detail,
    report_vulnerabilities,
    require_component_type,
)
from .services.search import search_components
from .storage import (
    count_components,
    create_component,
    delete_component,
    get_component,
    get_ecosystem_by_slug,
    list_component_types,
    list_components,
    list_ecosystems,
    update_component,
)
from .throttle import throttle_anonymous_search


class ComponentRequest(BaseModel):
    slug: str
    component_type_slug: str
    title: str | None = None
    description: str | None = None


class ComponentUpdateRequest(BaseModel):
    title: str | None = None
    description: str | None = None
    url: str | None = None


def components_router() -> APIRouter:
    router = APIRouter(prefix="/api/components", tags=["components"])

    @router.get("/search")
    def components_search(
        query: str = "",
        page: int = 1,
        limit: int = 10,
        conn: DBConn = Depends(get_conn),
        _: User | None = Depends(throttle_anonymous_search),
    ) -> dict[str, object]:
        return search_components(conn, query, page, limit)

    @router.get("")
    def components_list(
        page: int = 1,
        limit: int | None = None,
        conn: DBConn = Depends(get_conn),
        cfg: Config = Depends(get_config),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        page = max(page, 1)
        limit = limit or cfg.api.list_page_size
        components = list_components(conn, limit, (page - 1) * limit)
        return {
            "components": [asdict(component) for component in components],
            "total": count_components(conn),
            "page": page,
            "limit": limit,
        }

    @router.post("", status_code=201)
    def components_create(
        payload: ComponentRequest,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        component = create_component(
            conn,
            payload.slug,
            payload.component_type_slug,
            payload.title or payload.slug,
            payload.description or "",
        )
        return asdict(component)

    @router.post("/{type_slug}/{slug}/{version}")
    def components_report_vulnerabilities(
        type_slug: str,
        slug: str,
        version: str,
        payload: dict[str, Any] = Body(default_factory=dict),
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        with transaction(conn):
            release, inserted = report_vulnerabilities(conn, type_slug, slug, version, payload.get("urls"))
        return {"success": True, "release_id": release.id, "version": release.version, "inserted": inserted}

    @router.get("/{type_slug}/{slug}/{version}")
    def components_release(
        type_slug: str,
        slug: str,
        version: str,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        with transaction(conn):
            return release_detail(conn, type_slug, slug, version)

    @router.get("/{type_slug}/{slug}")
    def components_by_slug(
        type_slug: str,
        slug: str,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        with transaction(conn):
            require_component_type(conn, type_slug)
            component = find_or_create_component(conn, slug, type_slug)
        return component_detail(conn, component)

    @router.get("/{component_id}")
    def components_read(
        component_id: int,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        component = get_component(conn, component_id)
        if component is None:
            raise NotFoundError("Component not found")
        return component_detail(conn, component)

    @router.put("/{component_id}")
    def components_update(
        component_id: int,
        payload: ComponentUpdateRequest,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> dict[str, object]:
        fields = {key: value for key, value in payload.model_dump().items() if value}
        if not fields:
            raise ValidationError("No fields to update.")
        if get_component(conn, component_id) is None:
            raise NotFoundError("Component not found")
        update_component(conn, component_id, fields)
        return {"id": component_id, **fields}

    @router.delete("/{component_id}", status_code=204)
    def components_delete(
        component_id: int,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(require_admin),
    ) -> Response:
        delete_component(conn, component_id)
        return Response(status_code=204)

    return router


def catalog_router() -> APIRouter:
    """Read-only lookups: component types and ecosystems."""
    router = APIRouter(prefix="/api", tags=["catalog"])

    @router.get("/component-types")
    def component_types_list(
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> list[dict[str, object]]:
        slugs = {ecosystem.id: ecosystem.slug for ecosystem in list_ecosystems(conn, active_only=False)}
        return [
            {"slug": item.slug, "title": item.title, "ecosystem": slugs.get(item.ecosystem_id)}
            for item in list_component_types(conn)
        ]

    @router.get("/ecosystems")
    def ecosystems_list(
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> list[dict[str, object]]:
        return [
            {
                "id": ecosystem.id,
                "slug": ecosystem.slug,
                "name": ecosystem.name,
                "description": ecosystem.description,
                "active": ecosystem.active,
            }
            for ecosystem in list_ecosystems(conn)
        ]

    @router.get("/ecosystems/{slug}")
    def ecosystems_read(
        slug: str,
        conn: DBConn = Depends(get_conn),
        _: User = Depends(current_user),
    ) -> dict[str, object]:
        ecosystem = get_ecosystem_by_slug(conn, slug)
        if ecosystem is None:
            raise NotFoundError("Ecosystem not found")
        return asdict(ecosystem)

    return router
