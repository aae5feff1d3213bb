# tests/test_bootstrap.py

from __future__ import annotations

import logging
from pathlib import Path
from types import SimpleNamespace

import pytest

from mdtasks.cli.bootstrap import (
    create_credential_store,
    create_initial_state,
    create_sync_engine,
    create_transport,
    load_registry,
    shutdown,
)
from mdtasks.config import Settings, get_settings
from mdtasks.core.credentials import FileCredentialStore, credential_key_for_url
from mdtasks.errors import ConfigError, UnknownWorkspace, ValidationError
from mdtasks.logging_setup import _ConsoleNoiseFilter, setup_logging
from mdtasks.sync.webdav import WebDavTransport

from .fakes import MemoryCredentialStore

DAV_URL = "https://dav.example.com/remote.php/dav/files/me/Tasks"


def test_initial_state_without_remote(settings: SimpleNamespace, tmp_path: Path) -> None:
    load_registry(settings).init_workspace("personal", tmp_path / "personal")

    state = create_initial_state(settings=settings)

    assert state.context.name == "personal"
    assert state.sync_engine is None
    assert [tl.title for tl in state.repository.get_lists()] == ["My Tasks"]
    shutdown(state)


def test_initial_state_requires_a_workspace(settings: SimpleNamespace) -> None:
    with pytest.raises(UnknownWorkspace):
        create_initial_state(settings=settings)


def test_initial_state_with_remote_wires_webdav(settings: SimpleNamespace, tmp_path: Path) -> None:
    registry = load_registry(settings)
    registry.init_workspace("personal", tmp_path / "personal")
    registry.init_workspace("work", tmp_path / "work")
    registry.set_remote("work", DAV_URL, username="me")
    create_credential_store(settings).set(credential_key_for_url(DAV_URL), "secret")

    state = create_initial_state(settings=settings, workspace="work")

    assert state.context.name == "work"
    assert state.sync_engine is not None
    assert isinstance(state.sync_engine.transport, WebDavTransport)
    assert (tmp_path / "work" / ".sync" / "state.sqlite3").exists()
    shutdown(state)


def test_transport_needs_stored_password(settings: SimpleNamespace, tmp_path: Path) -> None:
    registry = load_registry(settings)
    registry.init_workspace("work", tmp_path / "work")
    ws = registry.set_remote("work", DAV_URL, username="me")

    with pytest.raises(ConfigError):
        create_transport(settings, ws.context(), MemoryCredentialStore())


def test_sync_engine_is_none_without_remote(settings: SimpleNamespace, tmp_path: Path) -> None:
    registry = load_registry(settings)
    ws = registry.init_workspace("personal", tmp_path / "personal")
    state = create_initial_state(settings=settings)

    assert create_sync_engine(settings, ws.context(), state.repository) is None


def test_credential_key_for_url() -> None:
    assert credential_key_for_url(DAV_URL) == "mdtasks.webdav.dav.example.com"
    with pytest.raises(ValidationError):
        credential_key_for_url("/just/a/path")


def test_file_credential_store(tmp_path: Path) -> None:
    store = FileCredentialStore(tmp_path / "creds" / "credentials.json")
    assert store.get("k") is None

    store.set("k", "s3cret")
    assert FileCredentialStore(store.path).get("k") == "s3cret"
    assert store.path.stat().st_mode & 0o077 == 0

    store.delete("k")
    assert store.get("k") is None


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MDTASKS_CONFIG_DIR", str(tmp_path / "cfg"))
    monkeypatch.setenv("MDTASKS_RETRY_MAX_ATTEMPTS", "0")
    monkeypatch.setenv("MDTASKS_RETRY_CAP_SECONDS", "not-a-number")
    monkeypatch.setenv("MDTASKS_SYNC_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("MDTASKS_TRANSPORT_TIMEOUT_SECONDS", "0")
    monkeypatch.delenv("MDTASKS_LOG_DIR", raising=False)

    s = Settings.from_env()

    assert s.config_dir == tmp_path / "cfg"
    assert s.log_dir == tmp_path / "cfg" / "logs"
    assert s.retry_max_attempts == 1
    assert s.retry_cap_seconds == 30.0
    assert s.sync_interval_seconds == 60.0
    assert s.transport_timeout_seconds == 20.0


def test_get_settings_is_cached(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()


@pytest.mark.parametrize(
    "name, level, shown",
    [
        ("mdtasks.tasks.repository", logging.DEBUG, True),
        ("mdtasks.sync.runner", logging.INFO, False),
        ("mdtasks.sync.runner", logging.WARNING, True),
        ("httpx", logging.INFO, False),
        ("httpcore.http11", logging.WARNING, True),
        ("py.warnings", logging.WARNING, False),
        ("urllib3", logging.WARNING, False),
        ("urllib3", logging.ERROR, True),
    ],
)
def test_console_noise_filter(name: str, level: int, shown: bool) -> None:
    record = logging.LogRecord(name, level, __file__, 1, "msg", None, None)
    assert _ConsoleNoiseFilter().filter(record) is shown


def test_setup_logging_writes_log_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_file = setup_logging(log_dir=tmp_path / "logs")
        logging.getLogger("mdtasks.test").debug("hello from test")
        for h in root.handlers:
            h.flush()
        assert log_file == tmp_path / "logs" / "mdtasks.log"
        assert "hello from test" in log_file.read_text("utf-8")
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved_handlers:
            root.addHandler(h)
        root.setLevel(saved_level)
        logging.captureWarnings(False)
