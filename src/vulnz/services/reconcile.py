from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from ..errors import NotFoundError, ValidationError
from ..models import ChangeSummary, Component, Release
from ..normalize import is_url, sanitize_version, sort_by_version
from ..storage import (
    delete_website_components_by_type,
    get_component_by_slug,
    get_component_type,
    get_release_by_version,
    insert_component_changes,
    insert_component_ignore,
    insert_release_ignore,
    insert_vulnerability_ignore,
    insert_website_component,
    invalidate_wporg_sync,
    list_releases,
    list_vulnerabilities,
    snapshot_website_components,
    touch_website,
)
from ..utils import log_event, utc_now_iso

logger = logging.getLogger("vulnz.reconcile")

ComponentRef = tuple[int, int]


def find_or_create_component(conn: Any, slug: str, type_slug: str, title: str | None = None) -> Component:
    insert_component_ignore(conn, slug, type_slug, title or slug, "")
    component = get_component_by_slug(conn, slug, type_slug)
    if component is None:
        raise NotFoundError("Component not found")
    return component


def find_or_create_release(conn: Any, component_id: int, version: str) -> Release:
    version = sanitize_version(version)
    insert_release_ignore(conn, component_id, version)
    release = get_release_by_version(conn, component_id, version)
    if release is None:
        raise NotFoundError("Release not found")
    return release


def attach_vulnerabilities(conn: Any, release_id: int, urls: Iterable[str]) -> int:
    inserted = 0
    for url in urls:
        if insert_vulnerability_ignore(conn, release_id, url):
            inserted += 1
    return inserted


def validate_vulnerability_urls(urls: object) -> list[str]:
    if not isinstance(urls, list):
        raise ValidationError("An array of URLs is required.")
    for url in urls:
        if not is_url(url):
            raise ValidationError(f"Invalid URL format: {url}")
    return list(urls)


def require_component_type(conn: Any, type_slug: str) -> None:
    if get_component_type(conn, type_slug) is None:
        raise NotFoundError("Component type not found")


def report_vulnerabilities(
    conn: Any, type_slug: str, slug: str, version: str, urls: object
) -> tuple[Release, int]:
    """Record vulnerability URLs for one (type, slug, version) triple.

    The component and release are created on first sight. Re-reporting the
    same URLs is a no-op.
    """
    valid_urls = validate_vulnerability_urls(urls)
    require_component_type(conn, type_slug)
    component = find_or_create_component(conn, slug, type_slug)
    release = find_or_create_release(conn, component.id, version)
    inserted = attach_vulnerabilities(conn, release.id, valid_urls)
    log_event(
        logger,
        logging.INFO,
        "vulnerabilities_reported",
        component=f"{type_slug}/{slug}",
        version=release.version,
        received=len(valid_urls),
        inserted=inserted,
    )
    return release, inserted


def release_detail(conn: Any, type_slug: str, slug: str, version: str) -> dict[str, object]:
    require_component_type(conn, type_slug)
    component = find_or_create_component(conn, slug, type_slug)
    release = find_or_create_release(conn, component.id, version)
    vulnerabilities = list_vulnerabilities(conn, release.id)
    return {
        "id": release.id,
        "component_id": release.component_id,
        "version": release.version,
        "release_date": release.release_date,
        "vulnerabilities": [
            {"id": item.id, "release_id": item.release_id, "url": item.url} for item in vulnerabilities
        ],
        "has_vulnerabilities": bool(vulnerabilities),
    }


def component_detail(conn: Any, component: Component) -> dict[str, object]:
    releases = list_releases(conn, [component.id])[component.id]
    return {
        "id": component.id,
        "slug": component.slug,
        "component_type_slug": component.component_type_slug,
        "title": component.title,
        "url": component.url,
        "description": component.description,
        "synced_from_wporg": component.synced_from_wporg,
        "synced_from_wporg_at": component.synced_from_wporg_at,
        "releases": sort_by_version(releases, key=lambda item: item["version"]),
    }


def diff_components(old: Sequence[ComponentRef], new: Sequence[ComponentRef]) -> list[dict[str, object]]:
    """Compare two (component_id, release_id) sets keyed by component id."""
    old_map = {component_id: release_id for component_id, release_id in old}
    new_map = {component_id: release_id for component_id, release_id in new}
    changes: list[dict[str, object]] = []
    for component_id, release_id in new_map.items():
        if component_id not in old_map:
            changes.append(
                {
                    "component_id": component_id,
                    "change_type": "added",
                    "old_release_id": None,
                    "new_release_id": release_id,
                }
            )
        elif old_map[component_id] != release_id:
            changes.append(
                {
                    "component_id": component_id,
                    "change_type": "updated",
                    "old_release_id": old_map[component_id],
                    "new_release_id": release_id,
                }
            )
    for component_id, release_id in old_map.items():
        if component_id not in new_map:
            changes.append(
                {
                    "component_id": component_id,
                    "change_type": "removed",
                    "old_release_id": release_id,
                    "new_release_id": None,
                }
            )
    return changes


def record_changes(
    conn: Any,
    website_id: int,
    old: Sequence[ComponentRef],
    new: Sequence[ComponentRef],
    user_id: int | None = None,
    via: str = "api",
) -> ChangeSummary:
    changes = diff_components(old, new)
    changed_at = utc_now_iso()
    insert_component_changes(
        conn,
        (
            dict(
                change,
                website_id=website_id,
                changed_by_user_id=user_id,
                changed_via=via,
                changed_at=changed_at,
            )
            for change in changes
        ),
    )
    return ChangeSummary(
        added=sum(1 for change in changes if change["change_type"] == "added"),
        removed=sum(1 for change in changes if change["change_type"] == "removed"),
        updated=sum(1 for change in changes if change["change_type"] == "updated"),
    )


def replace_website_components(
    conn: Any,
    website_id: int,
    components_by_type: Mapping[str, Sequence[Mapping[str, object]]],
    user_id: int | None = None,
    via: str = "api",
    track_changes: bool = True,
) -> ChangeSummary:
    """Replace the reported component types of a website wholesale.

    Types absent from ``components_by_type`` are left untouched. Callers own
    the surrounding transaction.
    """
    for type_slug in components_by_type:
        require_component_type(conn, type_slug)
    old = snapshot_website_components(conn, website_id)
    touched: list[int] = []
    for type_slug, items in components_by_type.items():
        delete_website_components_by_type(conn, website_id, type_slug)
        for item in items:
            slug = str(item.get("slug") or "").strip()
            version = item.get("version")
            if not slug or version is None or str(version) == "":
                raise ValidationError("Each component must have slug and version")
            component = find_or_create_component(conn, slug, type_slug)
            release = find_or_create_release(conn, component.id, str(version))
            insert_website_component(conn, website_id, release.id)
            touched.append(component.id)
    invalidate_wporg_sync(conn, touched)
    new = snapshot_website_components(conn, website_id)
    summary = ChangeSummary()
    if track_changes:
        summary = record_changes(conn, website_id, old, new, user_id, via)
    touch_website(conn, website_id)
    log_event(
        logger,
        logging.INFO,
        "website_components_replaced",
        website_id=website_id,
        types=",".join(components_by_type),
        added=summary.added,
        removed=summary.removed,
        updated=summary.updated,
    )
    return summary
