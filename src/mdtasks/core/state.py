# src/mdtasks/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..sync.engine import SyncEngine
    from ..sync.runner import SyncBackgroundRunner
    from ..tasks.repository import TaskRepository
    from ..workspace.registry import Workspace, WorkspaceRegistry

SYNC_DIR_NAME = ".sync"


@dataclass(frozen=True, slots=True)
class WorkspaceContext:
    """
    The workspace an operation runs against.

    Passed explicitly into TaskRepository / SyncEngine constructors instead of
    reading a process-wide "current workspace".
    """

    name: str
    root: Path
    remote_url: str | None = None
    credential_key: str | None = None
    username: str | None = None
    last_sync: datetime | None = None

    @property
    def sync_dir(self) -> Path:
        return self.root / SYNC_DIR_NAME

    @property
    def has_remote(self) -> bool:
        return bool(self.remote_url)

    @classmethod
    def from_workspace(cls, workspace: Workspace) -> WorkspaceContext:
        return cls(
            name=workspace.name,
            root=Path(workspace.root_path),
            remote_url=workspace.remote_url,
            credential_key=workspace.credential_key,
            username=workspace.username,
            last_sync=workspace.last_sync,
        )


@dataclass
class AppState:
    # Settings object shared by every component built from this state.
    settings: Any

    registry: WorkspaceRegistry
    context: WorkspaceContext
    repository: TaskRepository

    sync_engine: SyncEngine | None = None
    sync_runner: SyncBackgroundRunner | None = None
