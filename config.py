"""Runtime configuration: process settings from the environment, job defaults from the config table."""

import logging
import math
import os
from dataclasses import dataclass

from errors import ValidationError

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2

CONFIG_KEYS = ("max_retries", "backoff_base")


@dataclass
class Settings:
    db_path: str = "queue.db"
    poll_interval: float = 0.25
    heartbeat_interval: float = 2.0
    supervisor_interval: float = 10.0
    job_runtime_threshold: float = 60.0
    heartbeat_stale_after: float = 15.0
    audit_dir: str = "audit"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path=None):
        return cls(
            db_path=db_path or os.getenv("QUEUECTL_DB_PATH", "queue.db"),
            poll_interval=float(os.getenv("QUEUECTL_POLL_INTERVAL", "0.25")),
            heartbeat_interval=float(os.getenv("QUEUECTL_HEARTBEAT_INTERVAL", "2")),
            supervisor_interval=float(os.getenv("QUEUECTL_SUPERVISOR_INTERVAL", "10")),
            job_runtime_threshold=float(os.getenv("QUEUECTL_JOB_RUNTIME_THRESHOLD", "60")),
            heartbeat_stale_after=float(os.getenv("QUEUECTL_HEARTBEAT_STALE_AFTER", "15")),
            audit_dir=os.getenv("QUEUECTL_AUDIT_DIR", "audit"),
            log_level=os.getenv("QUEUECTL_LOG_LEVEL", "INFO"),
        )


def get_defaults(storage):
    """Job policy defaults: config table first, then MAX_RETRIES/BACKOFF_BASE env, then built-ins."""
    max_retries = storage.get_config(
        "max_retries", os.getenv("MAX_RETRIES", str(DEFAULT_MAX_RETRIES))
    )
    backoff_base = storage.get_config(
        "backoff_base", os.getenv("BACKOFF_BASE", str(DEFAULT_BACKOFF_BASE))
    )
    return {
        "max_retries": validate_policy("max_retries", max_retries),
        "backoff_base": validate_policy("backoff_base", backoff_base),
    }


def normalize_key(key):
    return key.strip().replace("-", "_")


def validate_policy(key, value):
    """Parse and range-check a max_retries/backoff_base value; raises ValidationError."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number, got {value!r}")
    if not math.isfinite(number) or number < 0:
        raise ValidationError(f"{key} must be a non-negative number")

    if key == "max_retries":
        if number != int(number):
            raise ValidationError("max_retries must be a whole number")
        return int(number)
    if number <= 0:
        raise ValidationError("backoff_base must be greater than zero")
    return int(number) if number == int(number) else number


def set_config(storage, key, value):
    key = normalize_key(key)
    if key not in CONFIG_KEYS:
        raise ValidationError(f"Unknown config key: {key}")
    storage.set_config(key, validate_policy(key, value))
    return get_defaults(storage)


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
