from __future__ import annotations

import re
from typing import Any

from .config import PasswordConfig

_EMAIL = re.compile(
    r"^(([^<>()\[\]\\.,;:\s@\"]+(\.[^<>()\[\]\\.,;:\s@\"]+)*)|(\".+\"))@"
    r"((\[[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\])|(([a-zA-Z\-0-9]+\.)+[a-zA-Z]{2,}))$"
)

WEEKDAYS = ("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT")


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(_EMAIL.fullmatch(value))


def validate_username(username: Any) -> list[str]:
    if is_valid_email(username):
        return []
    return ["Username must be a valid email address."]


def validate_password(password: str, rules: PasswordConfig) -> list[str]:
    errors: list[str] = []
    if len(password) < rules.min_length:
        errors.append(f"Password must be at least {rules.min_length} characters long.")
    if len(re.findall(r"[a-zA-Z]", password)) < rules.min_alpha:
        errors.append(f"Password must contain at least {rules.min_alpha} alphabetic characters.")
    if len(re.findall(r"[^a-zA-Z0-9]", password)) < rules.min_symbols:
        errors.append(f"Password must contain at least {rules.min_symbols} symbols.")
    if len(re.findall(r"[0-9]", password)) < rules.min_numeric:
        errors.append(f"Password must contain at least {rules.min_numeric} numbers.")
    if len(re.findall(r"[A-Z]", password)) < rules.min_uppercase:
        errors.append(f"Password must contain at least {rules.min_uppercase} uppercase letters.")
    if len(re.findall(r"[a-z]", password)) < rules.min_lowercase:
        errors.append(f"Password must contain at least {rules.min_lowercase} lowercase letters.")
    return errors


def normalize_weekday(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or value.upper() not in WEEKDAYS:
        return None
    return value.upper()
