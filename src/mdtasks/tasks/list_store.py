# src/mdtasks/tasks/list_store.py

"""
Ordering metadata for list folders and the workspace root.

Each list folder carries a hidden ordering file (.listdata.json). Loading a
list always reconciles its task_order against the task files actually on disk:
ids without a file are dropped, files missing from the order are appended by
on-disk creation time. A corrected order is written back immediately, so an
interrupted multi-step mutation heals on the next read.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import ConfigError, ListNotFound, StorageError, TaskNotFound, ValidationError
from .task_codec import atomic_write, decode, format_timestamp, is_task_filename, parse_timestamp, salvage_id, validate_title
from .task_models import GlobalMetadata, ListMetadata, SortOrder, Task, TaskFile, TaskLoadError, utc_now

logger = logging.getLogger(__name__)

LIST_METADATA_FILE = ".listdata.json"
GLOBAL_METADATA_FILE = ".metadata.json"

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _dump_json(path: Path, payload: dict[str, Any]) -> None:
    text = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    atomic_write(path, text.encode("utf-8"))


def _load_json(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        raise
    except OSError as e:
        raise StorageError(f"failed to read {path}: {e}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object")
    return data


def _creation_time(path: Path) -> float:
    try:
        st = path.stat()
    except OSError:
        return 0.0
    birth = getattr(st, "st_birthtime", None)
    return float(birth if birth is not None else st.st_ctime)


def _id_list(value: Any, path: Path, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{path}: {key} must be a list of ids")
    return list(value)


@dataclass(slots=True)
class ListScan:
    """Decoded task files of one folder plus the files that failed to load."""

    files: list[TaskFile] = field(default_factory=list)
    errors: list[TaskLoadError] = field(default_factory=list)

    @property
    def tasks(self) -> list[Task]:
        return [f.task for f in self.files]

    def find(self, task_id: str) -> TaskFile | None:
        for f in self.files:
            if f.task.id == task_id:
                return f
        return None


def effective_order(meta: ListMetadata, tasks: list[Task]) -> list[Task]:
    """
    Display sequence for a list.

    Manual lists follow task_order. Due-date lists sort a snapshot: earliest
    due first, undated last, ties by created_at. task_order is never touched
    here, so switching back to manual restores the previous arrangement.
    """
    if meta.sort_order == SortOrder.BY_DUE_DATE:
        return sorted(
            tasks,
            key=lambda t: (t.due_date is None, t.due_date or _FAR_FUTURE, t.created_at),
        )

    by_id = {t.id: t for t in tasks}
    ordered = [by_id[tid] for tid in meta.task_order if tid in by_id]
    known = set(meta.task_order)
    ordered.extend(t for t in tasks if t.id not in known)
    return ordered


class ListMetadataStore:
    """Reads, reconciles and writes one list folder's ordering file."""

    def __init__(self, folder: str | Path) -> None:
        self._folder = Path(folder)

    @property
    def folder(self) -> Path:
        return self._folder

    @property
    def path(self) -> Path:
        return self._folder / LIST_METADATA_FILE

    def exists(self) -> bool:
        return self.path.is_file()

    # ---- raw file access ----

    def create(self, list_id: str | None = None) -> ListMetadata:
        meta = ListMetadata.new(list_id)
        self.save(meta)
        return meta

    def read(self) -> ListMetadata:
        try:
            data = _load_json(self.path)
        except FileNotFoundError:
            raise ListNotFound(f"no list metadata in {self._folder}") from None

        try:
            if "sort_order" in data:
                sort_order = SortOrder.parse(data.get("sort_order"))
            else:
                # Older files stored a boolean grouping flag.
                legacy = bool(data.get("group_by_due_date", False))
                sort_order = SortOrder.BY_DUE_DATE if legacy else SortOrder.MANUAL
            return ListMetadata(
                id=str(data["id"]),
                created_at=parse_timestamp(str(data["created_at"]), key="created_at"),
                updated_at=parse_timestamp(str(data["updated_at"]), key="updated_at"),
                sort_order=sort_order,
                task_order=_id_list(data.get("task_order"), self.path, "task_order"),
                archived=bool(data.get("archived", False)),
            )
        except (KeyError, ValidationError) as e:
            raise ConfigError(f"{self.path}: invalid list metadata: {e}") from e

    def save(self, meta: ListMetadata) -> None:
        _dump_json(
            self.path,
            {
                "id": meta.id,
                "created_at": format_timestamp(meta.created_at),
                "updated_at": format_timestamp(meta.updated_at),
                "sort_order": meta.sort_order.value,
                "task_order": list(meta.task_order),
                "archived": meta.archived,
            },
        )

    # ---- task files ----

    def scan(self) -> ListScan:
        """
        Decode every task file in the folder.

        A corrupt file (or a second file claiming an id already seen) is logged
        and reported in `errors`; it never stops the rest of the list loading.
        Read failures of the folder itself propagate.
        """
        scan = ListScan()
        try:
            entries = sorted(self._folder.iterdir(), key=lambda p: p.name)
        except OSError as e:
            raise StorageError(f"failed to list {self._folder}: {e}") from e

        seen: dict[str, Path] = {}
        for path in entries:
            if not is_task_filename(path.name) or not path.is_file():
                continue
            try:
                data = path.read_bytes()
            except OSError as e:
                raise StorageError(f"failed to read {path}: {e}") from e

            try:
                task = decode(data, path.name)
                validate_title(task.title)
            except ValidationError as e:
                logger.warning("Skipping unreadable task file %s: %s", path, e)
                scan.errors.append(TaskLoadError(path=path, message=str(e), task_id=salvage_id(data)))
                continue

            if task.id in seen:
                msg = f"duplicate task id {task.id} (also in {seen[task.id].name})"
                logger.warning("Skipping task file %s: %s", path, msg)
                scan.errors.append(TaskLoadError(path=path, message=msg, task_id=task.id))
                continue

            seen[task.id] = path
            scan.files.append(TaskFile(path=path, task=task))
        return scan

    # ---- reconciliation ----

    @staticmethod
    def reconcile(meta: ListMetadata, scan: ListScan) -> bool:
        """Make task_order a permutation of the on-disk ids. Returns True if changed."""
        present: dict[str, Path] = {f.task.id: f.path for f in scan.files}
        for err in scan.errors:
            # Keep the slot of a temporarily unreadable file.
            if err.task_id and err.task_id not in present:
                present[err.task_id] = err.path

        kept: list[str] = []
        seen: set[str] = set()
        for tid in meta.task_order:
            if tid in present and tid not in seen:
                kept.append(tid)
                seen.add(tid)

        missing = [tid for tid in present if tid not in seen]
        missing.sort(key=lambda tid: (_creation_time(present[tid]), present[tid].name))

        new_order = kept + missing
        if new_order == meta.task_order:
            return False
        meta.task_order = new_order
        return True

    def load_with_scan(self) -> tuple[ListMetadata, ListScan]:
        meta = self.read()
        scan = self.scan()
        if self.reconcile(meta, scan):
            logger.info("Reconciled task order for %s (%d ids)", self._folder.name, len(meta.task_order))
            self.save(meta)
        return meta, scan

    def load(self) -> ListMetadata:
        return self.load_with_scan()[0]

    # ---- ordering operations ----

    def reorder(self, task_id: str, new_index: int) -> bool:
        """
        Move a task to `new_index` (clamped). Returns False, without writing,
        when the task is already there.
        """
        meta = self.load()
        if task_id not in meta.task_order:
            raise TaskNotFound(f"task {task_id} is not in list {meta.id}")

        target = max(0, min(int(new_index), len(meta.task_order) - 1))
        current = meta.task_order.index(task_id)
        if current == target:
            return False

        meta.task_order.pop(current)
        meta.task_order.insert(target, task_id)
        meta.updated_at = utc_now()
        self.save(meta)
        return True

    def set_sort_order(self, order: SortOrder) -> ListMetadata:
        meta = self.read()
        if meta.sort_order != order:
            meta.sort_order = order
            meta.updated_at = utc_now()
            self.save(meta)
        return meta

    def set_archived(self, archived: bool) -> ListMetadata:
        meta = self.read()
        if meta.archived != archived:
            meta.archived = archived
            meta.updated_at = utc_now()
            self.save(meta)
        return meta

    def append(self, task_id: str) -> None:
        meta = self.read()
        if task_id in meta.task_order:
            return
        meta.task_order.append(task_id)
        meta.updated_at = utc_now()
        self.save(meta)

    def extend(self, task_ids: list[str]) -> None:
        meta = self.read()
        new_ids = [tid for tid in task_ids if tid not in meta.task_order]
        if not new_ids:
            return
        meta.task_order.extend(new_ids)
        meta.updated_at = utc_now()
        self.save(meta)

    def remove(self, task_id: str) -> None:
        meta = self.read()
        if task_id not in meta.task_order:
            return
        meta.task_order = [tid for tid in meta.task_order if tid != task_id]
        meta.updated_at = utc_now()
        self.save(meta)


class WorkspaceMetadataStore:
    """The workspace root metadata file: list order and last opened list."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def path(self) -> Path:
        return self._root / GLOBAL_METADATA_FILE

    def read(self) -> GlobalMetadata:
        try:
            data = _load_json(self.path)
        except FileNotFoundError:
            return GlobalMetadata()

        last = data.get("last_opened_list")
        try:
            version = int(data.get("version", 1))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{self.path}: invalid version") from e
        return GlobalMetadata(
            version=version,
            list_order=_id_list(data.get("list_order"), self.path, "list_order"),
            last_opened_list=str(last) if last else None,
        )

    def save(self, meta: GlobalMetadata) -> None:
        _dump_json(
            self.path,
            {
                "version": meta.version,
                "list_order": list(meta.list_order),
                "last_opened_list": meta.last_opened_list,
            },
        )

    def reconcile(self, list_ids: list[str]) -> GlobalMetadata:
        """Align list_order with the lists on disk; writes only when it changed."""
        meta = self.read()
        present = set(list_ids)
        order = [lid for i, lid in enumerate(meta.list_order) if lid in present and lid not in meta.list_order[:i]]
        order.extend(lid for lid in list_ids if lid not in order)

        last = meta.last_opened_list
        if last is not None and last not in present:
            last = order[0] if order else None

        if order != meta.list_order or last != meta.last_opened_list or not self.path.exists():
            meta.list_order = order
            meta.last_opened_list = last
            self.save(meta)
        return meta
