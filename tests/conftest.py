# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from mdtasks.core.state import WorkspaceContext
from mdtasks.sync.engine import SyncEngine
from mdtasks.sync.retry import RetryPolicy
from mdtasks.tasks.repository import TaskRepository

from .fakes import FakeTransport, RecordingSleep

REMOTE_URL = "https://dav.example.com/remote.php/dav/files/me/Tasks"


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the bootstrap helpers.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the environment and any local .env.
    """
    return SimpleNamespace(
        app_name="mdtasks",
        log_level="INFO",
        # Paths (tmp per test run)
        config_dir=tmp_path / "config",
        log_dir=tmp_path / "config" / "logs",
        # Transport
        transport_timeout_seconds=5.0,
        connect_timeout_seconds=1.0,
        # Retry / backoff
        retry_base_seconds=1.0,
        retry_factor=2.0,
        retry_cap_seconds=30.0,
        retry_max_attempts=5,
        # Background sync
        sync_interval_seconds=300.0,
    )


@pytest.fixture()
def context(tmp_path: Path) -> WorkspaceContext:
    return WorkspaceContext(name="test", root=tmp_path / "ws", remote_url=REMOTE_URL)


@pytest.fixture()
def repo(context: WorkspaceContext) -> TaskRepository:
    """Initialized workspace with the default list."""
    return TaskRepository.init(context)


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def engine(
    context: WorkspaceContext,
    repo: TaskRepository,
    transport: FakeTransport,
    sleeps: RecordingSleep,
) -> SyncEngine:
    """
    SyncEngine over the fake transport.

    Backoff sleeps are recorded instead of awaited, so retry paths run instantly.
    """
    return SyncEngine(
        context,
        repo,
        transport,
        policy=RetryPolicy(timeout_seconds=5.0),
        sleep=sleeps,
    )


@pytest.fixture()
def default_list_id(repo: TaskRepository) -> str:
    return repo.find_list_by_name("My Tasks")
