import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path

from vulnz.models import ApiKey
from vulnz.utils import json_dumps, json_loads, to_jsonable


class Severity(Enum):
    ERROR = "error"


@dataclass
class Payload:
    value: str


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "enum": Severity.ERROR,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/vulnz"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["enum"] == "error"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/vulnz"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_json_loads_default_on_bad_input():
    assert json_loads(None, {}) == {}
    assert json_loads("{broken", []) == []
    assert json_loads('{"a": 1}') == {"a": 1}


def test_to_jsonable_flattens_models():
    keys = [ApiKey(id=1, api_key="abc", user_id=2, created_at="2026-10-18T00:00:00+00:00")]
    assert to_jsonable(keys) == [
        {"id": 1, "api_key": "abc", "user_id": 2, "created_at": "2026-10-18T00:00:00+00:00"}
    ]
