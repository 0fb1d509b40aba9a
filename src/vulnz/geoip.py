from __future__ import annotations

import logging
import os
from typing import Any

import maxminddb

from .utils import log_event

logger = logging.getLogger("vulnz.geoip")

DATABASE_FILES = ("GeoLite2-City.mmdb", "GeoLite2-Country.mmdb")


class GeoIPLookup:
    """Continent and country lookups against the first GeoLite2 database found."""

    def __init__(self, reader: Any | None = None) -> None:
        self._reader = reader

    @classmethod
    def open(cls, database_dir: str) -> "GeoIPLookup":
        if not database_dir:
            return cls()
        for name in DATABASE_FILES:
            path = os.path.join(database_dir, name)
            if not os.path.exists(path):
                continue
            try:
                reader = maxminddb.open_database(path)
            except (OSError, maxminddb.InvalidDatabaseError) as exc:
                log_event(logger, logging.WARNING, "geoip_open_failed", path=path, error=str(exc))
                continue
            log_event(logger, logging.INFO, "geoip_loaded", path=path)
            return cls(reader)
        log_event(logger, logging.WARNING, "geoip_unavailable", directory=database_dir)
        return cls()

    @property
    def enabled(self) -> bool:
        return self._reader is not None

    def lookup(self, ip: str) -> tuple[str | None, str | None]:
        if self._reader is None:
            return None, None
        try:
            record = self._reader.get(ip)
        except ValueError:
            return None, None
        if not isinstance(record, dict):
            return None, None
        continent = record.get("continent") or {}
        country = record.get("country") or {}
        return continent.get("code"), country.get("iso_code")

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
