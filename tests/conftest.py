"""Shared test fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from storage import Storage


class FakeClock:
    """Manually advanced UTC clock injected into Storage."""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "queue.db"


@pytest.fixture()
def db(db_path, clock):
    storage = Storage(db_path, clock=clock)
    yield storage
    storage.close()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in ("MAX_RETRIES", "BACKOFF_BASE", "QUEUECTL_DB_PATH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("QUEUECTL_AUDIT_DIR", str(tmp_path / "audit"))
