# src/mdtasks/tasks/task_models.py

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path

from ..errors import ValidationError

SCHEMA_VERSION = 1
GLOBAL_METADATA_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(StrEnum):
    BACKLOG = "backlog"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, raw: str | None) -> TaskStatus:
        """Strict parse; unknown values raise ValidationError."""
        value = (raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"unrecognized status: {raw!r}") from None


class SortOrder(StrEnum):
    MANUAL = "manual"
    BY_DUE_DATE = "by_due_date"

    @classmethod
    def parse(cls, raw: str | None) -> SortOrder:
        value = (raw or "").strip().lower()
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"unrecognized sort order: {raw!r}") from None


@dataclass(slots=True)
class Task:
    id: str
    title: str
    status: TaskStatus
    created_at: datetime
    updated_at: datetime

    notes: str = ""
    due_date: datetime | None = None
    parent_id: str | None = None

    schema_version: int = SCHEMA_VERSION
    # Unknown frontmatter keys -> raw source text, re-emitted verbatim.
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        title: str,
        *,
        notes: str = "",
        due_date: datetime | None = None,
        parent_id: str | None = None,
    ) -> Task:
        now = utc_now()
        return cls(
            id=new_id(),
            title=title,
            status=TaskStatus.BACKLOG,
            created_at=now,
            updated_at=now,
            notes=notes,
            due_date=due_date,
            parent_id=parent_id,
        )

    def touch(self) -> None:
        """Refresh updated_at; never moves it backwards."""
        now = utc_now()
        if now > self.updated_at:
            self.updated_at = now

    def complete(self) -> None:
        self.status = TaskStatus.COMPLETED
        self.touch()

    def uncomplete(self) -> None:
        self.status = TaskStatus.BACKLOG
        self.touch()


@dataclass(slots=True)
class ListMetadata:
    """Contents of a list folder's ordering file."""

    id: str
    created_at: datetime
    updated_at: datetime
    sort_order: SortOrder = SortOrder.MANUAL
    task_order: list[str] = field(default_factory=list)
    archived: bool = False

    @classmethod
    def new(cls, list_id: str | None = None) -> ListMetadata:
        now = utc_now()
        return cls(id=list_id or new_id(), created_at=now, updated_at=now)


@dataclass(slots=True)
class GlobalMetadata:
    """Contents of the workspace root metadata file."""

    version: int = GLOBAL_METADATA_VERSION
    list_order: list[str] = field(default_factory=list)
    last_opened_list: str | None = None


@dataclass(frozen=True, slots=True)
class TaskLoadError:
    """A task file that could not be loaded; reported, then skipped."""

    path: Path
    message: str
    # Best-effort id recovered from the raw text, if any.
    task_id: str | None = None


@dataclass(slots=True)
class TaskFile:
    """A decoded task together with the file it was read from."""

    path: Path
    task: Task


@dataclass(slots=True)
class TaskList:
    id: str
    title: str
    sort_order: SortOrder
    task_order: list[str]
    archived: bool
    position: int
    created_at: datetime
    updated_at: datetime

    # Effective sequence (task_order for manual lists, due-date order otherwise).
    tasks: list[Task] = field(default_factory=list)
    errors: list[TaskLoadError] = field(default_factory=list)
