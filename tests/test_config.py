import pytest

from config import Settings, get_defaults, set_config, validate_policy
from errors import ValidationError


def test_builtin_defaults(db):
    assert get_defaults(db) == {"max_retries": 3, "backoff_base": 2}


def test_env_defaults_used_when_table_empty(db, monkeypatch):
    monkeypatch.setenv("MAX_RETRIES", "7")
    monkeypatch.setenv("BACKOFF_BASE", "1.5")

    assert get_defaults(db) == {"max_retries": 7, "backoff_base": 1.5}


def test_config_table_overrides_env(db, monkeypatch):
    monkeypatch.setenv("MAX_RETRIES", "7")

    defaults = set_config(db, "max-retries", "5")

    assert defaults["max_retries"] == 5
    assert get_defaults(db)["max_retries"] == 5


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("timeout", "5"),
        ("max_retries", "-1"),
        ("max_retries", "2.5"),
        ("max_retries", "many"),
        ("backoff_base", "0"),
        ("backoff_base", "inf"),
    ],
)
def test_set_config_rejects_bad_input(db, key, value):
    with pytest.raises(ValidationError):
        set_config(db, key, value)
    assert db.list_config() == []


def test_validate_policy_keeps_whole_numbers_integral():
    assert validate_policy("backoff_base", "3") == 3
    assert isinstance(validate_policy("backoff_base", 3.0), int)
    assert validate_policy("backoff_base", "2.5") == 2.5


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("QUEUECTL_DB_PATH", "/tmp/q.db")
    monkeypatch.setenv("QUEUECTL_HEARTBEAT_STALE_AFTER", "30")

    settings = Settings.from_env()

    assert settings.db_path == "/tmp/q.db"
    assert settings.heartbeat_stale_after == 30.0
    assert settings.job_runtime_threshold == 60.0
    assert Settings.from_env(db_path="other.db").db_path == "other.db"
