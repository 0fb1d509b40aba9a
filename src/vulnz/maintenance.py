from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from .storage import get_settings, purge_expired_sessions, purge_older_than
from .utils import log_event, to_utc_iso, utc_now, utc_now_iso

logger = logging.getLogger("vulnz.maintenance")

# table -> retention setting
RETENTION_SETTINGS = {
    "api_call_logs": "retention.api_logs_days",
    "email_logs": "retention.email_logs_days",
    "security_events": "retention.security_events_days",
    "file_security_issues": "retention.file_security_issues_days",
    "component_changes": "retention.component_changes_days",
}


def run_retention(conn: Any) -> dict[str, int]:
    """Delete rows older than their configured retention window."""
    now = utc_now()
    days_by_key = get_settings(conn, RETENTION_SETTINGS.values())
    removed = {"sessions": purge_expired_sessions(conn, utc_now_iso())}
    for table, key in RETENTION_SETTINGS.items():
        days = days_by_key.get(key)
        if not isinstance(days, int) or days <= 0:
            continue
        cutoff = to_utc_iso(now - timedelta(days=days))
        removed[table] = purge_older_than(conn, table, cutoff)
    log_event(logger, logging.INFO, "retention_complete", **removed)
    return removed
