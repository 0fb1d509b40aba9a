from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Callable
from urllib.request import Request, urlopen

from .config import Config
from .errors import VulnzError
from .storage import cast_setting, get_setting_row, set_setting
from .utils import log_event

logger = logging.getLogger("vulnz.reference")

TIMEOUT_SECONDS = 5
_VERSION = re.compile(r"^\d+\.\d+(\.\d+)?$")


class ReferenceDataError(VulnzError):
    pass


def is_valid_version(value: object) -> bool:
    return isinstance(value, str) and bool(_VERSION.fullmatch(value))


def fetch_from_url(url: str) -> dict[str, Any]:
    request = Request(url, headers={"Accept": "application/json"})
    with urlopen(request, timeout=TIMEOUT_SECONDS) as response:
        status = response.getcode()
        if status != 200:
            raise ReferenceDataError(f"HTTP {status}")
        raw = response.read()
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ReferenceDataError(f"Invalid JSON: {exc}") from exc


def fetch_from_file(path: str, base_dir: str) -> dict[str, Any]:
    full_path = path if os.path.isabs(path) else os.path.join(base_dir, path)
    try:
        with open(full_path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise ReferenceDataError(f"Failed to read file: {exc}") from exc


def apply_reference_settings(conn: Any, reference: object) -> dict[str, Any]:
    """Overwrite known settings with reference values.

    Keys the database does not already hold are counted as unknown and
    never created. Version keys must look like ``8.1`` or ``6.4.2``.
    """
    if not isinstance(reference, dict) or not isinstance(reference.get("app_settings"), dict):
        raise ReferenceDataError("Invalid reference data format: missing app_settings")
    summary: dict[str, Any] = {"updated": 0, "skipped": 0, "invalid": 0, "unknown": 0, "errors": []}
    for key, value in reference["app_settings"].items():
        existing = get_setting_row(conn, key)
        if existing is None:
            summary["unknown"] += 1
            log_event(logger, logging.WARNING, "reference_unknown_setting", key=key)
            continue
        if "version" in key and not is_valid_version(value):
            summary["invalid"] += 1
            summary["errors"].append(f"{key}: invalid version format")
            continue
        if cast_setting(existing.setting_value, existing.value_type) == value:
            summary["skipped"] += 1
            continue
        try:
            set_setting(
                conn,
                key,
                value,
                existing.value_type,
                existing.description,
                existing.category,
                existing.is_system,
            )
        except VulnzError as exc:
            summary["errors"].append(f"{key}: {exc.message}")
            continue
        summary["updated"] += 1
        log_event(logger, logging.INFO, "reference_setting_updated", key=key, old=existing.setting_value, new=value)
    return summary


def update_from_reference(
    conn: Any,
    cfg: Config,
    fetch_url: Callable[[str], dict[str, Any]] = fetch_from_url,
) -> dict[str, Any]:
    method = cfg.reference.method
    if method == "disabled":
        return {"updated": 0, "skipped": 0, "method": "disabled"}
    location = cfg.reference.location
    if not location:
        log_event(logger, logging.ERROR, "reference_location_missing")
        return {"error": "reference location not configured", "method": method}
    try:
        if method == "url":
            reference = fetch_url(location)
        else:
            reference = fetch_from_file(location, cfg.paths.data_dir)
        summary = apply_reference_settings(conn, reference)
    except (ReferenceDataError, OSError) as exc:
        log_event(logger, logging.ERROR, "reference_update_failed", method=method, error=str(exc))
        return {"error": str(exc), "method": method}
    log_event(
        logger,
        logging.INFO,
        "reference_update_complete",
        method=method,
        updated=summary["updated"],
        skipped=summary["skipped"],
        unknown=summary["unknown"],
        invalid=summary["invalid"],
    )
    return dict(summary, method=method)
