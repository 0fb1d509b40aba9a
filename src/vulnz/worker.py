from __future__ import annotations

import argparse
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import Config, ConfigError, get_state_db_path, load_config
from .db import DBConn, connect_db
from .mailer import Mailer
from .maintenance import run_retention
from .reference_data import update_from_reference
from .services.reporting import MailSender, send_weekly_reports
from .storage import get_setting, set_setting
from .utils import configure_logging, log_event, parse_iso, to_utc_iso, utc_now
from .wporg import sync_next_plugins

RETENTION_INTERVAL_MINUTES = 24 * 60


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    interval_minutes: Callable[[Config], int]
    run: Callable[[DBConn, Config, MailSender], dict[str, Any]]

    @property
    def setting_key(self) -> str:
        return f"worker.{self.name}.last_run_at"


JOBS = [
    ScheduledJob(
        "reporting",
        lambda cfg: cfg.reporting.interval_minutes,
        lambda conn, cfg, mailer: send_weekly_reports(conn, cfg, mailer),
    ),
    ScheduledJob(
        "wporg_sync",
        lambda cfg: cfg.wporg.interval_minutes,
        lambda conn, cfg, mailer: sync_next_plugins(conn, cfg.wporg),
    ),
    ScheduledJob(
        "reference_data",
        lambda cfg: cfg.reference.interval_minutes,
        lambda conn, cfg, mailer: update_from_reference(conn, cfg),
    ),
    ScheduledJob(
        "retention",
        lambda cfg: RETENTION_INTERVAL_MINUTES,
        lambda conn, cfg, mailer: run_retention(conn),
    ),
]


def _setup_logging() -> logging.Logger:
    return configure_logging("vulnz.worker")


def _is_due(conn: DBConn, job: ScheduledJob, cfg: Config, now: datetime) -> bool:
    last_run = get_setting(conn, job.setting_key, None)
    if not isinstance(last_run, str):
        return True
    return parse_iso(last_run) + timedelta(minutes=job.interval_minutes(cfg)) <= now


def run_due_jobs(
    conn: DBConn,
    cfg: Config,
    mailer: MailSender,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, dict[str, Any]]:
    """Run every scheduled job whose interval has elapsed.

    The last run time is recorded even when a job fails so a broken job
    waits out its interval instead of retrying every poll.
    """
    logger = logger or logging.getLogger("vulnz.worker")
    now = now or utc_now()
    results: dict[str, dict[str, Any]] = {}
    for job in JOBS:
        if not _is_due(conn, job, cfg, now):
            continue
        try:
            results[job.name] = job.run(conn, cfg, mailer)
        except Exception as exc:  # noqa: BLE001
            results[job.name] = {"error": str(exc)}
            log_event(logger, logging.ERROR, "job_failed", job=job.name, error=str(exc))
        set_setting(
            conn,
            job.setting_key,
            to_utc_iso(now),
            "string",
            f"Last run of the {job.name} job",
            "system",
            True,
        )
        log_event(logger, logging.DEBUG, "job_ran", job=job.name)
    return results


def run_once(cfg: Config | None = None, mailer: MailSender | None = None) -> int:
    logger = _setup_logging()
    if cfg is None:
        try:
            cfg = load_config()
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            return 1
    if cfg.app.instance != 0:
        log_event(logger, logging.DEBUG, "worker_skipped", instance=cfg.app.instance)
        return 0
    conn = connect_db(get_state_db_path(cfg))
    try:
        run_due_jobs(conn, cfg, mailer or Mailer(cfg.smtp), logger=logger)
    finally:
        conn.close()
    return 0


def run_loop(sleep_seconds: int, cfg: Config | None = None) -> int:
    logger = _setup_logging()
    if cfg is None:
        try:
            cfg = load_config()
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            return 1
    mailer = Mailer(cfg.smtp)
    log_event(logger, logging.INFO, "worker_started", instance=cfg.app.instance, sleep=sleep_seconds)
    while True:
        run_once(cfg, mailer)
        time.sleep(sleep_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vulnz-worker")
    parser.add_argument("--once", action="store_true", help="Run due jobs once and exit")
    parser.add_argument("--sleep", type=int, default=60, help="Sleep seconds between polls")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return run_once()
    return run_loop(args.sleep)


if __name__ == "__main__":
    raise SystemExit(main())
