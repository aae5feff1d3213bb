# src/mdtasks/workspace/registry.py

"""
Workspace registry: named workspaces and which one is current.

Persisted as a JSON object in <config_dir>/config.json:

    {
      "workspaces": {
        "personal": {"path": "...", "webdav_url": "...", "credential_key": "...",
                     "username": "...", "last_sync": "2024-05-01T09:00:00Z"}
      },
      "current_workspace": "personal"
    }

Every mutation rewrites the file atomically.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ..core.state import WorkspaceContext
from ..errors import (
    ConfigError,
    DuplicateWorkspace,
    InvalidPath,
    StorageError,
    UnknownWorkspace,
    ValidationError,
)
from ..tasks.repository import TaskRepository
from ..tasks.task_codec import atomic_write, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"


@dataclass(slots=True)
class Workspace:
    name: str
    root_path: Path
    remote_url: str | None = None
    credential_key: str | None = None
    username: str | None = None
    last_sync: datetime | None = None

    def context(self) -> WorkspaceContext:
        return WorkspaceContext.from_workspace(self)


@dataclass(slots=True)
class AppConfig:
    workspaces: dict[str, Workspace] = field(default_factory=dict)
    current: str | None = None


def _workspace_from_json(name: str, raw: Any, path: Path) -> Workspace:
    if not isinstance(raw, dict) or not isinstance(raw.get("path"), str):
        raise ConfigError(f"{path}: workspace {name!r} has no path")

    last_sync = None
    if raw.get("last_sync"):
        try:
            last_sync = parse_timestamp(str(raw["last_sync"]), key="last_sync")
        except ValidationError as e:
            raise ConfigError(f"{path}: workspace {name!r}: {e}") from e

    return Workspace(
        name=name,
        root_path=Path(raw["path"]),
        remote_url=raw.get("webdav_url") or None,
        credential_key=raw.get("credential_key") or None,
        username=raw.get("username") or None,
        last_sync=last_sync,
    )


def _workspace_to_json(ws: Workspace) -> dict[str, Any]:
    out: dict[str, Any] = {"path": str(ws.root_path)}
    if ws.remote_url:
        out["webdav_url"] = ws.remote_url
    if ws.credential_key:
        out["credential_key"] = ws.credential_key
    if ws.username:
        out["username"] = ws.username
    if ws.last_sync is not None:
        out["last_sync"] = format_timestamp(ws.last_sync)
    return out


def _ensure_writable_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InvalidPath(f"cannot create {path}: {e}") from e
    if not path.is_dir():
        raise InvalidPath(f"not a directory: {path}")
    if not os.access(path, os.W_OK | os.X_OK):
        raise InvalidPath(f"directory is not writable: {path}")


def _files_under(root: Path) -> list[Path]:
    return sorted(p.relative_to(root) for p in root.rglob("*") if p.is_file())


class WorkspaceRegistry:
    def __init__(self, config_path: str | Path) -> None:
        self._path = Path(config_path)
        self._config = self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def config(self) -> AppConfig:
        return self._config

    # ---- persistence ----

    def _load(self) -> AppConfig:
        try:
            raw = self._path.read_text("utf-8")
        except FileNotFoundError:
            return AppConfig()
        except OSError as e:
            raise StorageError(f"failed to read {self._path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{self._path}: invalid JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("workspaces", {}), dict):
            raise ConfigError(f"{self._path}: expected an object with a 'workspaces' mapping")

        workspaces = {
            str(name): _workspace_from_json(str(name), entry, self._path)
            for name, entry in data.get("workspaces", {}).items()
        }
        current = data.get("current_workspace")
        if current is not None and current not in workspaces:
            logger.warning("Registry current workspace %r is not registered; cleared", current)
            current = None

        logger.debug("Workspace registry loaded path=%s workspaces=%d", self._path, len(workspaces))
        return AppConfig(workspaces=workspaces, current=current)

    def _save(self) -> None:
        payload = {
            "workspaces": {name: _workspace_to_json(ws) for name, ws in self._config.workspaces.items()},
            "current_workspace": self._config.current,
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"failed to create {self._path.parent}: {e}") from e
        atomic_write(self._path, (json.dumps(payload, ensure_ascii=False, indent=2) + "\n").encode("utf-8"))

    # ---- queries ----

    def get(self, name: str) -> Workspace:
        ws = self._config.workspaces.get(name)
        if ws is None:
            raise UnknownWorkspace(f"unknown workspace: {name}")
        return ws

    def current(self) -> Workspace:
        if self._config.current is None:
            raise UnknownWorkspace("no current workspace")
        return self.get(self._config.current)

    def names(self) -> list[str]:
        return sorted(self._config.workspaces)

    # ---- mutations ----

    def add(
        self,
        name: str,
        path: str | Path,
        *,
        remote_url: str | None = None,
        credential_key: str | None = None,
        username: str | None = None,
    ) -> Workspace:
        if not name or not name.strip():
            raise ValidationError("workspace name is required")
        if name in self._config.workspaces:
            raise DuplicateWorkspace(f"workspace already exists: {name}")

        root = Path(path).expanduser()
        _ensure_writable_dir(root)

        ws = Workspace(
            name=name,
            root_path=root,
            remote_url=remote_url,
            credential_key=credential_key,
            username=username,
        )
        self._config.workspaces[name] = ws
        if self._config.current is None:
            self._config.current = name
        self._save()
        logger.info("Workspace added name=%s path=%s", name, root)
        return ws

    def init_workspace(self, name: str, path: str | Path, **kwargs: Any) -> Workspace:
        """add() plus workspace metadata and the default list."""
        ws = self.add(name, path, **kwargs)
        TaskRepository.init(ws.context())
        return ws

    def switch(self, name: str) -> Workspace:
        ws = self.get(name)
        if self._config.current != name:
            self._config.current = name
            self._save()
        return ws

    def retarget(self, name: str, new_path: str | Path) -> Workspace:
        ws = self.get(name)
        ws.root_path = Path(new_path).expanduser()
        self._save()
        logger.info("Workspace retargeted name=%s path=%s", name, ws.root_path)
        return ws

    def migrate(self, name: str, new_path: str | Path) -> Workspace:
        """
        Move a workspace's files to `new_path`.

        Files are copied and verified (same set, same sizes) before the registry
        entry is retargeted; the old tree is removed last. Any failure before
        the retarget removes the partial copy and leaves the entry untouched.
        """
        ws = self.get(name)
        src = ws.root_path
        dst = Path(new_path).expanduser()

        if not src.is_dir():
            raise InvalidPath(f"workspace folder does not exist: {src}")
        if dst.exists() and any(dst.iterdir()):
            raise InvalidPath(f"destination is not empty: {dst}")

        try:
            shutil.copytree(src, dst, dirs_exist_ok=True)
            expected = _files_under(src)
            if _files_under(dst) != expected:
                raise StorageError(f"copy of {src} to {dst} is incomplete")
            for rel in expected:
                if (src / rel).stat().st_size != (dst / rel).stat().st_size:
                    raise StorageError(f"size mismatch after copy: {rel}")
        except (OSError, StorageError) as e:
            with contextlib.suppress(OSError):
                shutil.rmtree(dst)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"failed to copy {src} to {dst}: {e}") from e

        self.retarget(name, dst)
        try:
            shutil.rmtree(src)
        except OSError as e:
            logger.warning("Migrated workspace %s but could not remove old folder %s: %s", name, src, e)
        logger.info("Workspace migrated name=%s %s -> %s", name, src, dst)
        return ws

    def remove(self, name: str) -> None:
        """Forget a workspace; its files stay on disk."""
        self.get(name)
        if self._config.current == name:
            raise ValidationError(f"cannot remove the current workspace: {name}")
        del self._config.workspaces[name]
        self._save()
        logger.info("Workspace removed name=%s", name)

    def destroy(self, name: str) -> None:
        """Forget a workspace and delete its folder."""
        ws = self.get(name)
        if ws.root_path.exists():
            try:
                shutil.rmtree(ws.root_path)
            except OSError as e:
                raise StorageError(f"failed to delete {ws.root_path}: {e}") from e

        del self._config.workspaces[name]
        if self._config.current == name:
            self._config.current = next(iter(sorted(self._config.workspaces)), None)
        self._save()
        logger.info("Workspace destroyed name=%s path=%s", name, ws.root_path)

    def set_remote(
        self,
        name: str,
        url: str | None,
        *,
        credential_key: str | None = None,
        username: str | None = None,
    ) -> Workspace:
        ws = self.get(name)
        ws.remote_url = url or None
        ws.credential_key = credential_key
        ws.username = username
        self._save()
        return ws

    def record_sync(self, name: str, when: datetime) -> None:
        ws = self.get(name)
        ws.last_sync = when
        self._save()
