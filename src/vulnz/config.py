from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    base_url: str
    timezone: str
    instance: int
    registration_enabled: bool
    setup_mode: bool


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class AuthConfig:
    session_days: int
    reset_token_seconds: int
    max_api_keys_per_user: int
    cookie_name: str


@dataclass(frozen=True)
class PasswordConfig:
    min_length: int
    min_alpha: int
    min_numeric: int
    min_symbols: int
    min_uppercase: int
    min_lowercase: int


@dataclass(frozen=True)
class ReportingConfig:
    enabled: bool
    hour: int
    batch_size: int
    interval_minutes: int


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    secure: bool
    user: str
    password: str
    sender: str


@dataclass(frozen=True)
class WporgConfig:
    enabled: bool
    base_url: str
    endpoint: str
    batch_size: int
    interval_minutes: int
    timeout_seconds: int
    user_agent: str


@dataclass(frozen=True)
class ReferenceConfig:
    method: str
    location: str
    interval_minutes: int


@dataclass(frozen=True)
class GeoipConfig:
    database_path: str


@dataclass(frozen=True)
class ApiConfig:
    list_page_size: int
    search_limit_per_second: int
    login_limit: int
    login_window_minutes: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    auth: AuthConfig
    password: PasswordConfig
    reporting: ReportingConfig
    smtp: SmtpConfig
    wporg: WporgConfig
    reference: ReferenceConfig
    geoip: GeoipConfig
    api: ApiConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "VULNZ",
        "base_url": "http://localhost:8000",
        "timezone": "UTC",
        "instance": 0,
        "registration_enabled": True,
        "setup_mode": False,
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "",
    },
    "auth": {
        "session_days": 7,
        "reset_token_seconds": 3600,
        "max_api_keys_per_user": 5,
        "cookie_name": "vulnz_session",
    },
    "password": {
        "min_length": 8,
        "min_alpha": 1,
        "min_numeric": 1,
        "min_symbols": 0,
        "min_uppercase": 0,
        "min_lowercase": 0,
    },
    "reporting": {
        "enabled": True,
        "hour": 9,
        "batch_size": 10,
        "interval_minutes": 10,
    },
    "smtp": {
        "host": "localhost",
        "port": 25,
        "secure": False,
        "user": "",
        "password": "",
        "sender": "vulnz@localhost",
    },
    "wporg": {
        "enabled": True,
        "base_url": "https://api.wordpress.org",
        "endpoint": "/plugins/info/1.0/",
        "batch_size": 1,
        "interval_minutes": 1,
        "timeout_seconds": 5,
        "user_agent": "VULNZ/1.0",
    },
    "reference": {
        "method": "disabled",
        "location": "",
        "interval_minutes": 1440,
    },
    "geoip": {
        "database_path": "",
    },
    "api": {
        "list_page_size": 50,
        "search_limit_per_second": 10,
        "login_limit": 100,
        "login_window_minutes": 15,
    },
}

# Environment variables mapped onto config paths. Values are coerced to the
# type of the matching default.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "VZ_APP_NAME": ("app", "name"),
    "VZ_BASE_URL": ("app", "base_url"),
    "VZ_TIMEZONE": ("app", "timezone"),
    "VZ_APP_INSTANCE": ("app", "instance"),
    "VZ_REGISTRATION_ENABLED": ("app", "registration_enabled"),
    "VZ_SETUP_MODE": ("app", "setup_mode"),
    "VZ_DATA_DIR": ("paths", "data_dir"),
    "VZ_STATE_DB": ("paths", "state_db"),
    "VZ_SESSION_DAYS": ("auth", "session_days"),
    "VZ_MAX_API_KEYS": ("auth", "max_api_keys_per_user"),
    "VZ_PASSWORD_MIN_LENGTH": ("password", "min_length"),
    "VZ_PASSWORD_MIN_ALPHA": ("password", "min_alpha"),
    "VZ_PASSWORD_MIN_NUMERIC": ("password", "min_numeric"),
    "VZ_PASSWORD_MIN_SYMBOLS": ("password", "min_symbols"),
    "VZ_PASSWORD_MIN_UPPERCASE": ("password", "min_uppercase"),
    "VZ_PASSWORD_MIN_LOWERCASE": ("password", "min_lowercase"),
    "VZ_REPORTING_ENABLED": ("reporting", "enabled"),
    "VZ_REPORTING_HOUR": ("reporting", "hour"),
    "VZ_REPORTING_BATCH_SIZE": ("reporting", "batch_size"),
    "VZ_SMTP_HOST": ("smtp", "host"),
    "VZ_SMTP_PORT": ("smtp", "port"),
    "VZ_SMTP_SECURE": ("smtp", "secure"),
    "VZ_SMTP_USER": ("smtp", "user"),
    "VZ_SMTP_PASSWORD": ("smtp", "password"),
    "VZ_SMTP_FROM": ("smtp", "sender"),
    "VZ_WPORG_ENABLED": ("wporg", "enabled"),
    "VZ_WPORG_BASE_URL": ("wporg", "base_url"),
    "VZ_WPORG_TIMEOUT": ("wporg", "timeout_seconds"),
    "VZ_REFERENCE_METHOD": ("reference", "method"),
    "VZ_REFERENCE_LOCATION": ("reference", "location"),
    "VZ_GEOIP_DATABASE": ("geoip", "database_path"),
    "VZ_LIST_PAGE_SIZE": ("api", "list_page_size"),
    "VZ_UNAUTH_SEARCH_LIMIT_PER_SECOND": ("api", "search_limit_per_second"),
    "VZ_LOGIN_LIMIT": ("api", "login_limit"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}
REFERENCE_METHODS = {"disabled", "url", "file"}


def get_state_db_path(cfg: Config) -> str:
    if cfg.paths.state_db:
        return cfg.paths.state_db
    return os.path.join(cfg.paths.data_dir, "vulnz.sqlite3")


def load_config(
    path: str | None = None,
    env: Mapping[str, str] | None = None,
    overrides: dict[str, Any] | None = None,
) -> Config:
    """Build the immutable runtime config.

    Defaults are layered with an optional YAML file (``path`` or
    ``VZ_CONFIG_PATH``), then ``VZ_*`` environment variables, then any
    explicit ``overrides`` mapping (used by tests and the CLI).
    """
    env = os.environ if env is None else env
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or env.get("VZ_CONFIG_PATH") or None
    if path:
        cfg = _merge(cfg, _read_yaml(path), "config")
    _apply_env(cfg, env)
    if overrides:
        cfg = _merge(cfg, overrides, "config")
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    reporting = cfg["reporting"]
    if not 0 <= reporting["hour"] <= 23:
        errors.append("config.reporting.hour must be between 0 and 23")
    if reporting["batch_size"] < 1:
        errors.append("config.reporting.batch_size must be at least 1")
    if cfg["wporg"]["timeout_seconds"] < 1:
        errors.append("config.wporg.timeout_seconds must be at least 1")
    if cfg["reference"]["method"] not in REFERENCE_METHODS:
        errors.append("config.reference.method must be one of disabled, url, file")
    if cfg["api"]["list_page_size"] < 1:
        errors.append("config.api.list_page_size must be at least 1")
    for key in ("search_limit_per_second", "login_limit"):
        if cfg["api"][key] < 0:
            errors.append(f"config.api.{key} must not be negative")
    if cfg["api"]["login_window_minutes"] < 1:
        errors.append("config.api.login_window_minutes must be at least 1")
    for key, value in cfg["password"].items():
        if value < 0:
            errors.append(f"config.password.{key} must not be negative")
    return errors


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file is not valid YAML: {path}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a mapping")
    return data


def _merge(base: dict[str, Any], extra: dict[str, Any], path: str) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value, f"{path}.{key}")
        else:
            merged[key] = value
    return merged


def _apply_env(cfg: dict[str, Any], env: Mapping[str, str]) -> None:
    for name, (section, key) in ENV_OVERRIDES.items():
        if name not in env:
            continue
        default = DEFAULT_CONFIG[section][key]
        cfg[section][key] = _coerce_env(name, env[name], default)


def _coerce_env(name: str, raw: str, default: Any) -> Any:
    value = raw.strip()
    if isinstance(default, bool):
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigError(f"{name} must be a boolean")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc
    return raw


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    auth_cfg = cfg["auth"]
    password_cfg = cfg["password"]
    reporting_cfg = cfg["reporting"]
    smtp_cfg = cfg["smtp"]
    wporg_cfg = cfg["wporg"]
    reference_cfg = cfg["reference"]

    app = AppConfig(
        name=str(app_cfg["name"]),
        base_url=str(app_cfg["base_url"]).rstrip("/"),
        timezone=str(app_cfg["timezone"]),
        instance=int(app_cfg["instance"]),
        registration_enabled=bool(app_cfg["registration_enabled"]),
        setup_mode=bool(app_cfg["setup_mode"]),
    )
    paths = PathsConfig(
        data_dir=str(paths_cfg["data_dir"]),
        state_db=str(paths_cfg["state_db"]),
    )
    auth = AuthConfig(
        session_days=int(auth_cfg["session_days"]),
        reset_token_seconds=int(auth_cfg["reset_token_seconds"]),
        max_api_keys_per_user=int(auth_cfg["max_api_keys_per_user"]),
        cookie_name=str(auth_cfg["cookie_name"]),
    )
    password = PasswordConfig(**{key: int(value) for key, value in password_cfg.items()})
    reporting = ReportingConfig(
        enabled=bool(reporting_cfg["enabled"]),
        hour=int(reporting_cfg["hour"]),
        batch_size=int(reporting_cfg["batch_size"]),
        interval_minutes=int(reporting_cfg["interval_minutes"]),
    )
    smtp = SmtpConfig(
        host=str(smtp_cfg["host"]),
        port=int(smtp_cfg["port"]),
        secure=bool(smtp_cfg["secure"]),
        user=str(smtp_cfg["user"]),
        password=str(smtp_cfg["password"]),
        sender=str(smtp_cfg["sender"]),
    )
    wporg = WporgConfig(
        enabled=bool(wporg_cfg["enabled"]),
        base_url=str(wporg_cfg["base_url"]).rstrip("/"),
        endpoint=str(wporg_cfg["endpoint"]),
        batch_size=int(wporg_cfg["batch_size"]),
        interval_minutes=int(wporg_cfg["interval_minutes"]),
        timeout_seconds=int(wporg_cfg["timeout_seconds"]),
        user_agent=str(wporg_cfg["user_agent"]),
    )
    reference = ReferenceConfig(
        method=str(reference_cfg["method"]),
        location=str(reference_cfg["location"]),
        interval_minutes=int(reference_cfg["interval_minutes"]),
    )
    return Config(
        app=app,
        paths=paths,
        auth=auth,
        password=password,
        reporting=reporting,
        smtp=smtp,
        wporg=wporg,
        reference=reference,
        geoip=GeoipConfig(database_path=str(cfg["geoip"]["database_path"])),
        api=ApiConfig(
            list_page_size=int(cfg["api"]["list_page_size"]),
            search_limit_per_second=int(cfg["api"]["search_limit_per_second"]),
            login_limit=int(cfg["api"]["login_limit"]),
            login_window_minutes=int(cfg["api"]["login_window_minutes"]),
        ),
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
