from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations

_MIGRATED_PATHS: set[str] = set()


class DBConn:
    """Thin wrapper over a sqlite3 connection with row access by name."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def execute(self, sql: str, params: tuple | list | None = None) -> sqlite3.Cursor:
        cursor = self._conn.cursor()
        cursor.execute(sql, params or ())
        return cursor

    def executemany(self, sql: str, seq_of_params) -> sqlite3.Cursor:
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    @property
    def raw(self) -> sqlite3.Connection:
        return self._conn

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


def connect_db(path: str, *, migrate: bool = True) -> DBConn:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    raw.row_factory = sqlite3.Row
    raw.execute("PRAGMA foreign_keys=ON")
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    key = os.path.abspath(path)
    if migrate and key not in _MIGRATED_PATHS:
        apply_migrations(raw)
        _MIGRATED_PATHS.add(key)
    return DBConn(raw)


@contextmanager
def transaction(conn: DBConn) -> Iterator[DBConn]:
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    conn.commit()
