# src/mdtasks/cli/bootstrap.py

"""
Composition root.

- loads settings once,
- ensures the local config directory exists,
- resolves the workspace to work on (explicit name or the registry's current one),
- wires concrete implementations (repository, credential store, WebDAV
  transport, sync engine, background runner) into AppState.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path

from ..config import get_settings
from ..core.credentials import FileCredentialStore, credential_key_for_url
from ..core.ports import CredentialStore, Transport
from ..core.state import AppState, WorkspaceContext
from ..errors import ConfigError, StorageError
from ..logging_setup import setup_logging
from ..sync.engine import SYNC_DB_NAME, SyncEngine
from ..sync.retry import RetryPolicy
from ..sync.runner import start_sync_in_background
from ..sync.sync_store import SyncStateStore
from ..sync.webdav import WebDavTransport
from ..tasks.repository import TaskRepository
from ..workspace.registry import WorkspaceRegistry

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    try:
        Path(settings.config_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StorageError(f"failed to create config dir {settings.config_dir}: {e}") from e


def configure_logging(settings=None) -> Path:
    if settings is None:
        settings = get_settings()
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    return setup_logging(log_dir=settings.log_dir, console_level=console_level)


def load_registry(settings=None) -> WorkspaceRegistry:
    if settings is None:
        settings = get_settings()
    _ensure_local_dirs(settings)
    return WorkspaceRegistry(Path(settings.config_dir) / "config.json")


def open_workspace(settings=None, name: str | None = None, *, registry: WorkspaceRegistry | None = None) -> WorkspaceContext:
    """Context for `name`, or for the current workspace when no name is given."""
    registry = registry or load_registry(settings)
    ws = registry.get(name) if name else registry.current()
    return ws.context()


def create_repository(context: WorkspaceContext) -> TaskRepository:
    return TaskRepository(context)


def create_credential_store(settings=None) -> FileCredentialStore:
    if settings is None:
        settings = get_settings()
    return FileCredentialStore(Path(settings.config_dir) / "credentials.json")


def create_transport(settings, context: WorkspaceContext, credentials: CredentialStore) -> WebDavTransport:
    if not context.remote_url:
        raise ConfigError(f"workspace {context.name} has no remote configured")

    key = context.credential_key or credential_key_for_url(context.remote_url)
    password = credentials.get(key)
    if context.username and password is None:
        raise ConfigError(f"no stored credentials for {key}")

    return WebDavTransport(
        context.remote_url,
        context.username,
        password,
        timeout_seconds=float(settings.transport_timeout_seconds),
        connect_timeout_seconds=float(settings.connect_timeout_seconds),
    )


def create_sync_engine(
    settings,
    context: WorkspaceContext,
    repository: TaskRepository,
    *,
    registry: WorkspaceRegistry | None = None,
    transport: Transport | None = None,
    credentials: CredentialStore | None = None,
) -> SyncEngine | None:
    """SyncEngine for the workspace, or None when it has no remote."""
    if transport is None:
        if not context.has_remote:
            return None
        transport = create_transport(settings, context, credentials or create_credential_store(settings))

    on_synced = None
    if registry is not None:
        on_synced = partial(registry.record_sync, context.name)

    return SyncEngine(
        context,
        repository,
        transport,
        store=SyncStateStore(context.sync_dir / SYNC_DB_NAME),
        policy=RetryPolicy.from_settings(settings),
        on_synced=on_synced,
    )


def create_initial_state(*, settings=None, workspace: str | None = None, start_sync: bool = False) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    registry = load_registry(settings)
    context = open_workspace(settings, workspace, registry=registry)
    repository = create_repository(context)
    engine = create_sync_engine(settings, context, repository, registry=registry)

    state = AppState(
        settings=settings,
        registry=registry,
        context=context,
        repository=repository,
        sync_engine=engine,
    )
    if start_sync and engine is not None:
        state.sync_runner = start_sync_in_background(engine, settings.sync_interval_seconds)

    logger.info(
        "Workspace opened name=%s root=%s remote=%s",
        context.name,
        context.root,
        context.remote_url or "-",
    )
    return state


def shutdown(state: AppState, *, timeout: float = 10.0) -> None:
    """Stop background sync and release the transport."""
    if state.sync_runner is not None:
        state.sync_runner.stop()
        state.sync_runner.join(timeout=timeout)
        state.sync_runner = None
    elif state.sync_engine is not None:
        # The runner closes the transport on its own loop; otherwise close it here.
        asyncio.run(state.sync_engine.aclose())
