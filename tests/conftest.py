from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient

from vulnz.admin import create_app
from vulnz.config import get_state_db_path, load_config
from vulnz.db import connect_db
from vulnz.security.passwords import generate_token, hash_password
from vulnz.storage import create_user, insert_api_key


class RecordingMailer:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail = fail

    def send(self, to: str, subject: str, html: str, text: str) -> None:
        if self.fail:
            raise OSError("smtp unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})


def make_config(tmp_path, **sections):
    overrides = {
        "paths": {
            "data_dir": str(tmp_path / "data"),
            "state_db": str(tmp_path / "data" / "vulnz.sqlite3"),
        },
        "smtp": {"host": "mail.invalid"},
    }
    for section, values in sections.items():
        overrides.setdefault(section, {}).update(values)
    return load_config(env={}, overrides=overrides)


def add_user(conn, username: str, roles=None, **fields):
    return create_user(conn, username, hash_password("Secret123"), roles or ["user"], **fields)


@pytest.fixture
def cfg(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def conn(cfg):
    conn = connect_db(get_state_db_path(cfg))
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture(autouse=True)
def _drop_added_log_handlers():
    root = logging.getLogger()
    before = list(root.handlers)
    yield
    for handler in list(root.handlers):
        if handler not in before and type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()


def api_headers(conn, user) -> dict[str, str]:
    return {"X-API-Key": insert_api_key(conn, user.id, generate_token()).api_key}


@pytest.fixture
def client(cfg, mailer):
    app = create_app(cfg)
    app.state.mailer = mailer
    return TestClient(app)
