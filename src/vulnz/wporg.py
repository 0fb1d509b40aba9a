from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .config import WporgConfig
from .normalize import strip_all
from .storage import list_components_for_wporg_sync, mark_wporg_synced
from .utils import log_event, utc_now_iso

logger = logging.getLogger("vulnz.wporg")

PLUGIN_PAGE_BASE = "https://wordpress.org/plugins/"
DESCRIPTION_MAX = 4096

_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATETIME = re.compile(r"^(\d{4}-\d{2}-\d{2})\s+(\d{1,2}):(\d{2})(am|pm)", re.IGNORECASE)

FetchResult = tuple[int | None, bytes | None, str | None]
Fetcher = Callable[[str, dict[str, str], int], FetchResult]


def fetch_url(url: str, headers: dict[str, str], timeout: int) -> FetchResult:
    try:
        request = Request(url, headers=headers)
        with urlopen(request, timeout=timeout) as response:
            return response.getcode(), response.read(), None
    except HTTPError as exc:
        return exc.code, None, str(exc)
    except URLError as exc:
        return None, None, str(exc)


def parse_wporg_date(value: object) -> str | None:
    if isinstance(value, str) and _DATE.fullmatch(value):
        return value
    return None


def parse_wporg_datetime(value: object) -> str | None:
    """Convert wordpress.org's ``2024-03-01 4:05pm GMT`` to ``2024-03-01 16:05:00``."""
    if not isinstance(value, str):
        return None
    match = _DATETIME.match(value.strip())
    if not match:
        return None
    day, hour_text, minute, meridiem = match.groups()
    hour = int(hour_text) % 12
    if meridiem.lower() == "pm":
        hour += 12
    return f"{day} {hour:02d}:{minute}:00"


def plugin_metadata(slug: str, data: dict[str, Any]) -> dict[str, object]:
    metadata: dict[str, object] = {
        "url": f"{PLUGIN_PAGE_BASE}{slug}/",
        "added": parse_wporg_date(data.get("added")),
        "last_updated": parse_wporg_datetime(data.get("last_updated")),
        "requires_php": data.get("requires_php") or None,
        "tested": data.get("tested") or None,
    }
    if isinstance(data.get("name"), str):
        metadata["title"] = strip_all(data["name"])
    sections = data.get("sections")
    if isinstance(sections, dict) and isinstance(sections.get("description"), str):
        metadata["description"] = strip_all(sections["description"])[:DESCRIPTION_MAX]
    return metadata


def sync_next_plugins(conn: Any, cfg: WporgConfig, fetch: Fetcher = fetch_url) -> dict[str, int]:
    """Refresh metadata for the plugins that have gone longest without a sync.

    A 404 still marks the component synced so unknown plugins are not
    retried every tick. Per-plugin failures are logged and skipped.
    """
    result = {"checked": 0, "found": 0, "not_found": 0, "errors": 0}
    if not cfg.enabled:
        return result
    headers = {"User-Agent": cfg.user_agent}
    for component in list_components_for_wporg_sync(conn, cfg.batch_size):
        result["checked"] += 1
        url = f"{cfg.base_url.rstrip('/')}{cfg.endpoint}{component.slug}.json"
        status, body, error = fetch(url, headers, cfg.timeout_seconds)
        if status == 404:
            mark_wporg_synced(conn, component.id, utc_now_iso())
            result["not_found"] += 1
            log_event(logger, logging.INFO, "wporg_plugin_not_found", slug=component.slug)
            continue
        if status != 200 or body is None:
            result["errors"] += 1
            log_event(logger, logging.WARNING, "wporg_fetch_failed", slug=component.slug, status=status, error=error)
            continue
        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            result["errors"] += 1
            log_event(logger, logging.WARNING, "wporg_invalid_payload", slug=component.slug, error=str(exc))
            continue
        # The plugins info API answers unknown slugs with a 200 and a null body.
        metadata = plugin_metadata(component.slug, data) if isinstance(data, dict) else {}
        mark_wporg_synced(conn, component.id, utc_now_iso(), metadata)
        result["found" if metadata else "not_found"] += 1
        log_event(logger, logging.INFO, "wporg_plugin_synced", slug=component.slug, found=bool(metadata))
    return result
