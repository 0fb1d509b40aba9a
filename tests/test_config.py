import pytest
import yaml

from vulnz.config import ConfigError, get_state_db_path, load_config


def test_defaults_load_without_file():
    cfg = load_config(env={})
    assert cfg.app.instance == 0
    assert cfg.reference.method == "disabled"
    assert get_state_db_path(cfg) == "/data/vulnz.sqlite3"


def test_yaml_then_env_layering(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump({"app": {"name": "FromFile"}, "reporting": {"hour": 6}}),
        encoding="utf-8",
    )
    cfg = load_config(
        env={
            "VZ_CONFIG_PATH": str(path),
            "VZ_REPORTING_HOUR": "7",
            "VZ_SMTP_SECURE": "true",
            "VZ_STATE_DB": str(tmp_path / "state.sqlite3"),
        }
    )
    assert cfg.app.name == "FromFile"
    assert cfg.reporting.hour == 7
    assert cfg.smtp.secure is True
    assert get_state_db_path(cfg) == str(tmp_path / "state.sqlite3")


def test_config_is_frozen():
    cfg = load_config(env={})
    with pytest.raises(AttributeError):
        cfg.app.name = "changed"


def test_unknown_key_rejected():
    with pytest.raises(ConfigError) as excinfo:
        load_config(env={}, overrides={"app": {"colour": "blue"}})
    assert "unknown config.app.colour" in str(excinfo.value)


def test_bad_env_value_rejected():
    with pytest.raises(ConfigError):
        load_config(env={"VZ_REPORTING_HOUR": "nine"})


def test_reporting_hour_range():
    with pytest.raises(ConfigError) as excinfo:
        load_config(env={}, overrides={"reporting": {"hour": 24}})
    assert "between 0 and 23" in str(excinfo.value)


def test_missing_file_is_an_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.yml"), env={})


def test_rate_limits_from_env():
    cfg = load_config(env={"VZ_UNAUTH_SEARCH_LIMIT_PER_SECOND": "0", "VZ_LOGIN_LIMIT": "5"})
    assert cfg.api.search_limit_per_second == 0
    assert cfg.api.login_limit == 5
    assert cfg.api.login_window_minutes == 15
    with pytest.raises(ConfigError):
        load_config(env={}, overrides={"api": {"login_limit": -1}})
