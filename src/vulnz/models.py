from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class User:
    id: int
    username: str
    roles: list[str]
    reporting_weekday: str | None
    reporting_email: str | None
    max_api_keys: int | None
    blocked: bool
    paused: bool
    last_summary_sent_at: str | None
    created_at: str

    @property
    def is_admin(self) -> bool:
        return "administrator" in self.roles


@dataclass(frozen=True)
class ApiKey:
    id: int
    api_key: str
    user_id: int
    created_at: str


@dataclass(frozen=True)
class Ecosystem:
    id: int
    slug: str
    name: str
    description: str | None
    data: dict[str, object]
    active: bool


@dataclass(frozen=True)
class ComponentType:
    slug: str
    title: str
    ecosystem_id: int | None


@dataclass(frozen=True)
class Component:
    id: int
    slug: str
    component_type_slug: str
    title: str | None
    url: str | None
    description: str | None
    synced_from_wporg: bool
    synced_from_wporg_at: str | None


@dataclass(frozen=True)
class Release:
    id: int
    component_id: int
    version: str
    release_date: str | None


@dataclass(frozen=True)
class Vulnerability:
    id: int
    release_id: int
    url: str


@dataclass(frozen=True)
class Website:
    id: int
    user_id: int
    domain: str
    title: str
    is_ssl: bool
    is_dev: bool
    meta: dict[str, object]
    wordpress_version: str | None
    php_version: str | None
    db_server_type: str | None
    db_server_version: str | None
    versions_last_checked_at: str | None
    ecosystem_id: int | None
    platform_metadata: dict[str, object]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class InstalledComponent:
    """A component release attached to a website."""

    component_id: int
    release_id: int
    slug: str
    component_type_slug: str
    title: str | None
    version: str
    has_vulnerabilities: bool = False
    vulnerabilities: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ChangeSummary:
    added: int = 0
    removed: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.added + self.removed + self.updated

    def as_dict(self) -> dict[str, int]:
        return {
            "added": self.added,
            "removed": self.removed,
            "updated": self.updated,
            "total": self.total,
        }


@dataclass(frozen=True)
class SecurityEventType:
    id: int
    slug: str
    title: str
    description: str | None
    severity: str
    enabled: bool


@dataclass(frozen=True)
class FileSecurityIssue:
    id: int
    website_id: int
    file_path: str
    line_number: int
    issue_type: str
    severity: str
    message: str | None
    created_at: str
    last_seen_at: str


@dataclass(frozen=True)
class AppSetting:
    setting_key: str
    setting_value: str | None
    value_type: str
    description: str | None
    category: str | None
    is_system: bool
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class EmailLog:
    id: int
    recipient_email: str
    email_type: str
    status: str
    error: str | None
    sent_at: str


@dataclass(frozen=True)
class ApiCallLog:
    id: int
    user_id: int | None
    username: str | None
    method: str
    path: str
    status_code: int
    created_at: str
