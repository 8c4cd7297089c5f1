"""Pytest configuration and fixtures.

Every test runs with the environment variables that resque-pool reads removed
and with the settings singleton reset, so tests neither see the developer's
configuration nor leak configuration into each other.
"""

import logging
import os
from unittest.mock import MagicMock

import pytest

from resque_pool import config as config_module
from resque_pool.errors import SpawnError
from resque_pool.workers.worker_executor import ExitedWorker, WorkerExecutor

POOL_ENV_VARS = ("RACK_ENV", "RESQUE_ENV", "RESQUE_POOL_CONFIG")


def pytest_configure(config):
    """Register custom markers and keep application logs quiet by default."""
    config.addinivalue_line("markers", "integration: tests that spawn real subprocesses")
    logging.getLogger("resque_pool").setLevel(logging.WARNING)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Remove pool related environment variables and reset cached settings."""
    for var in POOL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("RESQUE_POOL_"):
            monkeypatch.delenv(var, raising=False)

    monkeypatch.setattr(config_module, "_settings", None)
    yield
    config_module._settings = None


@pytest.fixture
def isolated_settings_dirs(tmp_path, monkeypatch):
    """Point the user settings directory to a temp dir and chdir into another."""
    user_dir = tmp_path / "user-config"
    project_dir = tmp_path / "project"
    user_dir.mkdir()
    project_dir.mkdir()

    monkeypatch.setattr(
        config_module.platformdirs, "user_config_dir", lambda *args, **kwargs: str(user_dir)
    )
    monkeypatch.chdir(project_dir)
    return {"user": user_dir, "project": project_dir}


class FakeExecutor(WorkerExecutor):
    """In-memory executor handing out increasing pids.

    Workers "exit" when a test calls ``exit``; ``reap`` then reports them.
    Queue specs in ``failing`` raise SpawnError.
    """

    def __init__(self, first_pid: int = 1000):
        self.next_pid = first_pid
        self.running: dict[int, str] = {}
        self.exited: list[ExitedWorker] = []
        self.failing: set[str] = set()
        self.started: list[tuple[int, str]] = []
        self.stops: list[tuple[int, bool]] = []
        self.signals: list[tuple[int, int]] = []

    def start_worker(self, queue_spec: str) -> int:
        if queue_spec in self.failing:
            raise SpawnError(queue_spec, "command not found")
        pid = self.next_pid
        self.next_pid += 1
        self.running[pid] = queue_spec
        self.started.append((pid, queue_spec))
        return pid

    def signal_worker(self, pid: int, signum: int) -> bool:
        self.signals.append((pid, signum))
        return pid in self.running

    def stop_worker(self, pid: int, graceful: bool = True) -> bool:
        self.stops.append((pid, graceful))
        return pid in self.running

    def reap(self) -> list[ExitedWorker]:
        exited, self.exited = self.exited, []
        return exited

    def is_worker_running(self, pid: int) -> bool:
        return pid in self.running

    def exit(self, pid: int, returncode: int = 0) -> None:
        del self.running[pid]
        self.exited.append(ExitedWorker(pid=pid, returncode=returncode))

    def exit_all(self) -> None:
        for pid in list(self.running):
            self.exit(pid)


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def mock_source():
    """Custom config source recording its calls."""
    source = MagicMock()
    source.retrieve_config.return_value = {"foo": 1}
    return source
