from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from ..config import Config
from ..mailer import render_email
from ..models import User
from ..normalize import version_lt
from ..storage import (
    count_security_events,
    count_users_due_for_report,
    file_issue_summary,
    get_settings,
    insert_email_log,
    list_users_due_for_report,
    list_website_components,
    list_websites,
    mark_summary_sent,
    security_events_by_type,
    summarize_changes,
    top_event_countries,
    top_issue_files,
)
from ..utils import log_event, to_utc_iso, utc_now
from ..validation import WEEKDAYS, is_valid_email

logger = logging.getLogger("vulnz.reporting")

REPORT_EMAIL_TYPE = "vulnerability_report"
REPORT_WINDOW_DAYS = 7
# Due users still waiting at or after this local time are reported as missed.
END_OF_DAY_CHECK = time(23, 45)

REPORT_SETTING_KEYS = (
    "wordpress.minimum_version",
    "php.minimum_version",
    "report.include_security_events",
    "report.include_version_status",
    "report.include_component_changes",
    "report.include_static_analysis",
    "report.security_event_limit",
)


class MailSender(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> None: ...


def local_now(cfg: Config, now: datetime | None = None) -> datetime:
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(cfg.app.timezone))


def weekday_code(value: datetime) -> str:
    # datetime.weekday() counts from Monday.
    return WEEKDAYS[(value.weekday() + 1) % 7]


def day_start_iso(value: datetime) -> str:
    start = value.replace(hour=0, minute=0, second=0, microsecond=0)
    return to_utc_iso(start)


def report_recipient(user: User) -> str:
    if user.reporting_email and is_valid_email(user.reporting_email):
        return user.reporting_email
    return user.username


def build_summary(conn: Any, user: User, settings: dict[str, object], now: datetime) -> dict[str, object]:
    """Collect everything the weekly report shows for one user.

    Administrators see every website, everyone else only their own.
    """
    scope = None if user.is_admin else user.id
    websites = list_websites(conn, scope, limit=-1, offset=0)
    website_ids = [website.id for website in websites]
    period_end = to_utc_iso(now)
    period_start = to_utc_iso(now - timedelta(days=REPORT_WINDOW_DAYS))

    vulnerable_websites = []
    for website in websites:
        vulnerable = [item for item in list_website_components(conn, website.id) if item.has_vulnerabilities]
        if not vulnerable:
            continue
        vulnerable_websites.append(
            {
                "domain": website.domain,
                "title": website.title,
                "components": [
                    {
                        "title": item.title or item.slug,
                        "slug": item.slug,
                        "version": item.version,
                        "vulnerabilities": item.vulnerabilities,
                    }
                    for item in vulnerable
                ],
            }
        )

    summary: dict[str, object] = {
        "username": user.username,
        "period_start": period_start,
        "period_end": period_end,
        "website_count": len(websites),
        "vulnerable_website_count": len(vulnerable_websites),
        "vulnerable_websites": vulnerable_websites,
        "security_events": None,
        "version_status": None,
        "static_analysis": None,
        "component_changes": None,
    }

    if settings.get("report.include_security_events", True):
        limit = int(settings.get("report.security_event_limit") or 50)
        summary["security_events"] = {
            "total": count_security_events(conn, website_ids, period_start, period_end),
            "by_type": security_events_by_type(conn, website_ids, period_start, period_end, limit),
            "top_countries": top_event_countries(conn, website_ids, period_start, period_end),
        }

    if settings.get("report.include_version_status", True):
        wp_minimum = str(settings.get("wordpress.minimum_version") or "")
        php_minimum = str(settings.get("php.minimum_version") or "")
        summary["version_status"] = {
            "wordpress_minimum": wp_minimum,
            "php_minimum": php_minimum,
            "outdated_wordpress": [
                {"domain": website.domain, "version": website.wordpress_version}
                for website in websites
                if website.wordpress_version and wp_minimum and version_lt(website.wordpress_version, wp_minimum)
            ],
            "outdated_php": [
                {"domain": website.domain, "version": website.php_version}
                for website in websites
                if website.php_version and php_minimum and version_lt(website.php_version, php_minimum)
            ],
        }

    if settings.get("report.include_static_analysis", True):
        summary["static_analysis"] = {
            "websites": file_issue_summary(conn, website_ids),
            "top_files": top_issue_files(conn, website_ids),
        }

    if settings.get("report.include_component_changes", True):
        summary["component_changes"] = summarize_changes(conn, website_ids, period_start, period_end)

    return summary


def send_summary_email(
    conn: Any,
    cfg: Config,
    user: User,
    mailer: MailSender,
    now: datetime | None = None,
) -> str:
    """Build, render and send one report; returns the recipient.

    Every attempt lands in email_logs. Send failures are re-raised after
    they are logged.
    """
    now = now or utc_now()
    recipient = report_recipient(user)
    settings = get_settings(conn, REPORT_SETTING_KEYS)
    summary = build_summary(conn, user, settings, now)
    html, text = render_email(
        REPORT_EMAIL_TYPE,
        {"app_name": cfg.app.name, "base_url": cfg.app.base_url, "summary": summary},
    )
    subject = f"{cfg.app.name} weekly vulnerability report"
    try:
        mailer.send(recipient, subject, html, text)
    except Exception as exc:
        insert_email_log(conn, recipient, REPORT_EMAIL_TYPE, "error", str(exc))
        log_event(logger, logging.ERROR, "report_send_failed", user_id=user.id, to=recipient, error=str(exc))
        raise
    insert_email_log(conn, recipient, REPORT_EMAIL_TYPE, "sent")
    log_event(
        logger,
        logging.INFO,
        "report_sent",
        user_id=user.id,
        to=recipient,
        websites=summary["website_count"],
        vulnerable=summary["vulnerable_website_count"],
    )
    return recipient


def send_weekly_reports(
    conn: Any,
    cfg: Config,
    mailer: MailSender,
    now: datetime | None = None,
) -> dict[str, int]:
    """One reporting tick: send to the next batch of users due today."""
    result = {"sent": 0, "failed": 0, "remaining": 0}
    if not cfg.reporting.enabled:
        return result
    now = now or utc_now()
    local = local_now(cfg, now)
    if local.hour < cfg.reporting.hour:
        return result

    weekday = weekday_code(local)
    since = day_start_iso(local)
    users = list_users_due_for_report(conn, weekday, since, cfg.reporting.batch_size)
    for user in users:
        try:
            send_summary_email(conn, cfg, user, mailer, now)
        except Exception as exc:  # noqa: BLE001
            result["failed"] += 1
            log_event(logger, logging.ERROR, "report_batch_error", user_id=user.id, error=str(exc))
            continue
        mark_summary_sent(conn, user.id, to_utc_iso(now))
        result["sent"] += 1

    result["remaining"] = count_users_due_for_report(conn, weekday, since)
    if local.time() >= END_OF_DAY_CHECK and result["remaining"] > 0:
        log_event(
            logger,
            logging.CRITICAL,
            "reports_unsent_end_of_day",
            weekday=weekday,
            remaining=result["remaining"],
        )
    if users:
        log_event(logger, logging.INFO, "report_batch_complete", weekday=weekday, **result)
    return result
