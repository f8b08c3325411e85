"""Pytest configuration and fixtures."""

import os
import threading
import time
from typing import List, Optional

import pytest

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("TIMEZONE", "UTC")

from config.settings import Settings
from kiyoshi.core import deadline as deadline_module
from kiyoshi.models.task import CleanupTask, RunEvent, SafeModePolicy
from kiyoshi.repository.gateway import DatabaseGateway
from kiyoshi.services.notifier import Notifier

RETENTION_SAFE_TEMPLATE = (
    "DELETE FROM {{ table_name }} "
    "WHERE created_at < DATE_SUB('{{ data_interval_end }}', INTERVAL 30 DAY) "
    "LIMIT {{ batch_size }}"
)


class FakeGateway(DatabaseGateway):
    """Scripted gateway: each call pops the next result (row count or exception)."""

    def __init__(self, results: Optional[list] = None, default: int = 0):
        self.results = list(results or [])
        self.default = default
        self.calls: List[str] = []
        self.healthy = True
        self._lock = threading.Lock()

    def execute(self, sql, deadline=None):
        with self._lock:
            self.calls.append(sql)
            result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result

    def ping(self):
        return self.healthy


class BlockingGateway(DatabaseGateway):
    """Gateway whose statements hang until released or cancelled by the deadline."""

    def __init__(self, rows: int = 0, max_wait: float = 30.0):
        self.rows = rows
        self.max_wait = max_wait
        self.started = threading.Event()
        self.release = threading.Event()
        self.cancelled = threading.Event()
        self.calls = 0

    def execute(self, sql, deadline=None):
        self.calls += 1
        if deadline is not None:
            deadline.add_cancel_callback(self._cancel)
        self.started.set()
        self.release.wait(self.max_wait)
        return self.rows

    def _cancel(self):
        self.cancelled.set()
        self.release.set()


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.events: List[RunEvent] = []
        self.fail = fail
        self._lock = threading.Lock()

    def notify(self, event):
        with self._lock:
            self.events.append(event)
        if self.fail:
            raise RuntimeError("notifier down")


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_task(name: str = "cleanup_old_records", **overrides) -> CleanupTask:
    data = {
        "name": name,
        "cron_schedule": "0 0 * * * *",
        "template_query": RETENTION_SAFE_TEMPLATE,
        "parameters": {"table_name": "validation_runs"},
        "batch_size": 1000,
        "retry_attempts": 3,
        "retry_delay_seconds": 5,
        "query_interval_seconds": 0,
        "task_timeout_seconds": 60,
    }
    data.update(overrides)
    return CleanupTask(**data)


@pytest.fixture
def settings():
    return Settings(TIMEZONE="UTC", MAX_WORKERS=4, MISFIRE_GRACE_TIME=60, DB_UNHEALTHY_AFTER_SECONDS=300)


@pytest.fixture
def policy():
    return SafeModePolicy(enabled=True, retention_days=30)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def blocking_gateway():
    gw = BlockingGateway()
    yield gw
    gw.release.set()


@pytest.fixture
def instant_sleep(monkeypatch):
    """Make retry and inter-batch waits return immediately, recording the requested delays."""
    delays = []

    def fake_sleep(self, seconds):
        delays.append(seconds)
        return not self.expired

    monkeypatch.setattr(deadline_module.Deadline, "sleep", fake_sleep)
    return delays
