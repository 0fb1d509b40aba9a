from __future__ import annotations

import logging
from typing import Any

from ..errors import AuthError, ForbiddenError, NotFoundError, ValidationError
from ..geoip import GeoIPLookup
from ..models import ChangeSummary, InstalledComponent, User, Website
from ..normalize import is_valid_domain
from ..storage import (
    DB_SERVER_TYPES,
    create_website,
    delete_file_issues,
    get_ecosystem_by_slug,
    get_security_event_type,
    get_setting,
    get_user,
    get_website_by_domain,
    insert_security_event,
    list_website_components,
    update_website,
    update_website_versions,
    upsert_file_issue,
)
from ..utils import log_event, parse_iso, to_utc_iso
from .reconcile import replace_website_components

logger = logging.getLogger("vulnz.websites")

# Request keys that carry a whole component type.
LEGACY_COMPONENT_KEYS = {
    "wordpress-plugins": "wordpress-plugin",
    "wordpress-themes": "wordpress-theme",
}
ISSUE_SEVERITIES = ("error", "warning", "info")
VERSION_FIELDS = ("wordpress_version", "php_version", "db_server_type", "db_server_version")


def website_url(website: Website) -> str:
    return f"{'https' if website.is_ssl else 'http'}://{website.domain}"


def _component_view(item: InstalledComponent) -> dict[str, object]:
    return {
        "id": item.component_id,
        "release_id": item.release_id,
        "slug": item.slug,
        "type": item.component_type_slug,
        "title": item.title,
        "version": item.version,
        "has_vulnerabilities": item.has_vulnerabilities,
        "vulnerabilities": list(item.vulnerabilities),
    }


def website_view(conn: Any, website: Website, username: str | None = None) -> dict[str, object]:
    installed = list_website_components(conn, website.id)
    by_type: dict[str, list[dict[str, object]]] = {key: [] for key in LEGACY_COMPONENT_KEYS}
    components = []
    for item in installed:
        view = _component_view(item)
        components.append(view)
        for key, type_slug in LEGACY_COMPONENT_KEYS.items():
            if item.component_type_slug == type_slug:
                by_type[key].append(view)
    if username is None:
        owner = get_user(conn, website.user_id)
        username = owner.username if owner else None
    return {
        "id": website.id,
        "user_id": website.user_id,
        "username": username,
        "domain": website.domain,
        "title": website.title,
        "url": website_url(website),
        "is_ssl": website.is_ssl,
        "is_dev": website.is_dev,
        "meta": website.meta,
        "ecosystem_id": website.ecosystem_id,
        "platform_metadata": website.platform_metadata or None,
        "wordpress_version": website.wordpress_version,
        "php_version": website.php_version,
        "db_server_type": website.db_server_type or "unknown",
        "db_server_version": website.db_server_version,
        "versions_last_checked_at": website.versions_last_checked_at,
        "created_at": website.created_at,
        "updated_at": website.updated_at,
        "vulnerability_count": sum(1 for item in installed if item.has_vulnerabilities),
        "components": components,
        **by_type,
    }


def accessible_website(conn: Any, domain: str, user: User) -> Website:
    website = get_website_by_domain(conn, domain, prefer_user_id=user.id)
    if website is None:
        raise NotFoundError("Website not found")
    if website.user_id != user.id and not user.is_admin:
        raise AuthError("Unauthorized")
    return website


def _ecosystem_id(conn: Any, slug: object) -> int | None:
    if slug in (None, ""):
        return None
    ecosystem = get_ecosystem_by_slug(conn, str(slug))
    if ecosystem is None:
        raise ValidationError(f"Unknown ecosystem: {slug}")
    return ecosystem.id


def add_website(conn: Any, user: User, payload: dict[str, Any]) -> Website:
    domain = payload.get("domain")
    if not domain:
        raise ValidationError("The domain property must be specified.")
    if not is_valid_domain(domain):
        raise ValidationError("The domain property is not a valid website hostname.")
    owner_id = user.id
    if user.is_admin and payload.get("user_id"):
        owner_id = int(payload["user_id"])
    website = create_website(
        conn,
        owner_id,
        str(domain),
        str(payload.get("title") or domain),
        is_dev=bool(payload.get("is_dev", False)),
        meta=payload.get("meta") or None,
        ecosystem_id=_ecosystem_id(conn, payload.get("ecosystem")),
        platform_metadata=payload.get("platform") or None,
    )
    log_event(logger, logging.INFO, "website_created", website_id=website.id, domain=website.domain, user_id=owner_id)
    return website


def _components_by_type(payload: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for key, type_slug in LEGACY_COMPONENT_KEYS.items():
        items = payload.get(key)
        if items is None:
            continue
        if not isinstance(items, list):
            raise ValidationError(f"{key} must be an array")
        grouped[type_slug] = items
    components = payload.get("components")
    if components is not None:
        if not isinstance(components, list):
            raise ValidationError("components must be an array")
        for item in components:
            if not isinstance(item, dict) or not item.get("slug") or not item.get("version") or not item.get("type"):
                raise ValidationError("Each component must have slug, version, and type")
        # wordpress-plugins / wordpress-themes win over typed entries of the same type.
        legacy_types = set(grouped)
        for item in components:
            if item["type"] in legacy_types:
                continue
            grouped.setdefault(str(item["type"]), []).append(item)
    return grouped


def edit_website(conn: Any, user: User, website: Website, payload: dict[str, Any]) -> ChangeSummary | None:
    """Apply a PUT payload; returns the component change summary when components were sent."""
    fields: dict[str, object] = {}
    if payload.get("title"):
        fields["title"] = payload["title"]
    if "is_dev" in payload:
        fields["is_dev"] = bool(payload["is_dev"])
    if payload.get("meta"):
        fields["meta"] = payload["meta"]
    if "ecosystem" in payload:
        fields["ecosystem_id"] = _ecosystem_id(conn, payload["ecosystem"])
    if "platform" in payload:
        fields["platform_metadata"] = payload["platform"]
    if "user_id" in payload:
        if not user.is_admin:
            raise ForbiddenError("Only administrators can change website ownership")
        if payload["user_id"] in (None, ""):
            raise ValidationError("user_id cannot be null or empty")
        if get_user(conn, int(payload["user_id"])) is None:
            raise NotFoundError("Target user not found")
        fields["user_id"] = int(payload["user_id"])

    grouped = _components_by_type(payload)
    versions = payload.get("versions")
    if versions is not None and not isinstance(versions, dict):
        raise ValidationError("versions must be an object")

    if fields:
        update_website(conn, website.id, fields)
    summary = None
    if grouped:
        track = bool(get_setting(conn, "feature.component_change_tracking", True))
        summary = replace_website_components(conn, website.id, grouped, user.id, "api", track_changes=track)
    if versions:
        update_website_versions(conn, website.id, versions)
    return summary


def record_versions(conn: Any, website: Website, payload: dict[str, Any]) -> None:
    versions = {key: payload[key] for key in VERSION_FIELDS if key in payload}
    if not any(versions.values()):
        raise ValidationError("At least one version field must be provided")
    if versions.get("db_server_type") and versions["db_server_type"] not in DB_SERVER_TYPES:
        raise ValidationError(f"db_server_type must be one of: {', '.join(DB_SERVER_TYPES)}")
    update_website_versions(conn, website.id, versions)
    log_event(logger, logging.INFO, "website_versions_updated", website_id=website.id, **versions)


def record_security_events(
    conn: Any,
    website: Website,
    events: object,
    geoip: GeoIPLookup | None = None,
) -> dict[str, object]:
    if not isinstance(events, list) or not events:
        raise ValidationError("Events array is required and must not be empty")
    limit = get_setting(conn, "batch.security_events_max", 1000)
    if isinstance(limit, int) and len(events) > limit:
        raise ValidationError(f"A maximum of {limit} events can be submitted at once")
    if not get_setting(conn, "feature.geoip_enabled", True):
        geoip = None

    prepared = []
    types: dict[str, Any] = {}
    for event in events:
        if not isinstance(event, dict) or not all(
            event.get(field) for field in ("event_type", "source_ip", "event_datetime")
        ):
            raise ValidationError("Each event must have event_type, source_ip, and event_datetime")
        slug = str(event["event_type"])
        if slug not in types:
            event_type = get_security_event_type(conn, slug)
            if event_type is None:
                raise ValidationError(f"Unknown event type: {slug}")
            types[slug] = event_type
        if not types[slug].enabled:
            continue
        try:
            occurred = to_utc_iso(parse_iso(str(event["event_datetime"])))
        except ValueError as exc:
            raise ValidationError(f"Invalid event_datetime: {event['event_datetime']}") from exc
        continent, country = geoip.lookup(str(event["source_ip"])) if geoip else (None, None)
        prepared.append((types[slug].id, str(event["source_ip"]), occurred, continent, country, event.get("details")))

    if not prepared:
        raise ValidationError("No valid events to record")
    created = 0
    for event_type_id, source_ip, occurred, continent, country, details in prepared:
        if insert_security_event(conn, website.id, event_type_id, source_ip, occurred, continent, country, details):
            created += 1
    duplicates = len(prepared) - created
    log_event(
        logger,
        logging.INFO,
        "security_events_recorded",
        website_id=website.id,
        created=created,
        duplicates=duplicates,
    )
    return {"success": True, "events_created": created, "events_duplicate": duplicates}


def apply_security_scan(conn: Any, website: Website, files: object) -> dict[str, object]:
    """Store static-analysis results; a file reported with no issues is cleared."""
    if not isinstance(files, list):
        raise ValidationError("Files array is required")
    result: dict[str, Any] = {
        "processed": 0,
        "issues_created": 0,
        "issues_updated": 0,
        "issues_deleted": 0,
        "summary": {severity: 0 for severity in ISSUE_SEVERITIES},
    }
    for entry in files:
        if not isinstance(entry, dict) or not entry.get("path"):
            continue
        path = str(entry["path"])
        result["processed"] += 1
        issues = entry.get("issues") or []
        if not issues:
            result["issues_deleted"] += delete_file_issues(conn, website.id, path)
            continue
        for issue in issues:
            if not isinstance(issue, dict) or not issue.get("type"):
                raise ValidationError(f"Each issue in {path} must have a type")
            severity = issue.get("severity") or "warning"
            if severity not in ISSUE_SEVERITIES:
                raise ValidationError(f"severity must be one of: {', '.join(ISSUE_SEVERITIES)}")
            existed = upsert_file_issue(
                conn,
                website.id,
                path,
                int(issue.get("line") or 0),
                str(issue["type"]),
                severity,
                issue.get("message"),
            )
            result["issues_updated" if existed else "issues_created"] += 1
            result["summary"][severity] += 1
    log_event(
        logger,
        logging.INFO,
        "security_scan_recorded",
        website_id=website.id,
        processed=result["processed"],
        created=result["issues_created"],
        updated=result["issues_updated"],
        deleted=result["issues_deleted"],
    )
    return {"success": True, **result}
