from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Any, Iterable, TypeVar

from bs4 import BeautifulSoup

T = TypeVar("T")

_VERSION_SUFFIX = re.compile(r"[^0-9.]+[a-z]+[0-9]+")
_VERSION_JUNK = re.compile(r"[^0-9.]")
_SEARCH_JUNK = re.compile(r"[^a-zA-Z0-9\-_ ]")
_URL = re.compile(r"^(ftp|http|https)://[^\s\"]+$")
_EMAILS = re.compile(r"[\w.-]+@[\w.-]+\.\w+")
_WHITESPACE = re.compile(r"\s+")
_DOMAIN = re.compile(r"^(?!-)[A-Za-z0-9\-_]+([\-.][a-z0-9\-_]+)*\.[A-Za-z]{2,}$")


def sanitize_version(version: Any) -> str:
    """Reduce a version string to dotted digits.

    Pre-release suffixes such as ``-beta2`` are dropped entirely, so
    ``1.2.3-beta`` and ``1.2.3`` compare equal.
    """
    if not isinstance(version, str):
        return "0"
    sanitized = _VERSION_SUFFIX.sub("", version)
    sanitized = _VERSION_JUNK.sub("", sanitized)
    if sanitized.startswith("."):
        sanitized = f"0{sanitized}"
    if sanitized.endswith("."):
        sanitized = f"{sanitized}0"
    return sanitized or "0"


def compare_versions(left: str, right: str) -> int:
    left_parts = _version_parts(left)
    right_parts = _version_parts(right)
    for index in range(max(len(left_parts), len(right_parts))):
        a = left_parts[index] if index < len(left_parts) else 0
        b = right_parts[index] if index < len(right_parts) else 0
        if a > b:
            return 1
        if a < b:
            return -1
    return 0


def version_lt(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return compare_versions(sanitize_version(left), sanitize_version(right)) < 0


def sort_by_version(items: Iterable[T], key=lambda item: item, descending: bool = True) -> list[T]:
    def _cmp(a: T, b: T) -> int:
        return compare_versions(sanitize_version(key(a)), sanitize_version(key(b)))

    return sorted(items, key=cmp_to_key(_cmp), reverse=descending)


def _version_parts(value: str) -> list[int]:
    parts = []
    for part in value.split("."):
        parts.append(int(part) if part.isdigit() else 0)
    return parts


def sanitize_search_query(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(_SEARCH_JUNK.sub(" ", value).split())


def is_url(value: Any) -> bool:
    return isinstance(value, str) and bool(_URL.fullmatch(value))


def is_valid_domain(value: Any) -> bool:
    return isinstance(value, str) and bool(_DOMAIN.fullmatch(value))


def strip_all(value: Any) -> str:
    """Plain text of an HTML fragment with scripts and email addresses removed."""
    if not isinstance(value, str):
        return ""
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = _EMAILS.sub("", soup.get_text(" ", strip=True))
    return _WHITESPACE.sub(" ", text).strip()
