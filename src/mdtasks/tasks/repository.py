# src/mdtasks/tasks/repository.py

"""
Task / TaskList repository for one workspace.

Layout on disk:

    <root>/.metadata.json              list order, last opened list
    <root>/<List title>/.listdata.json task order, sort order, archived flag
    <root>/<List title>/<Task title>.md

Concurrency:
- single writer per workspace; callers serialize mutating calls
- reads are always safe (every file replacement is atomic)

Multi-step mutations are ordered so an interruption leaves at worst an
ordering file that the next load reconciles; a task id is never lost or
duplicated.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..core.state import WorkspaceContext
from ..errors import ListNotFound, StorageError, TaskNotFound, TitleConflict, ValidationError
from .list_store import ListMetadataStore, ListScan, WorkspaceMetadataStore, effective_order
from .task_codec import RESERVED_PREFIX, atomic_write, decode, encode, title_to_filename, validate_title
from .task_models import SortOrder, Task, TaskFile, TaskList, TaskLoadError, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LIST_TITLE = "My Tasks"


@dataclass(slots=True)
class LocalTask:
    """A task as the sync engine sees it: list, relative path and content."""

    list_id: str
    rel_path: str
    path: Path
    task: Task


class TaskRepository:
    def __init__(self, context: WorkspaceContext) -> None:
        self._context = context
        self._root = Path(context.root)
        self._workspace_meta = WorkspaceMetadataStore(self._root)

    @classmethod
    def init(cls, context: WorkspaceContext, *, default_list: str | None = DEFAULT_LIST_TITLE) -> TaskRepository:
        """Create the workspace folder, its metadata file and a default list."""
        try:
            Path(context.root).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"failed to create workspace {context.root}: {e}") from e

        repo = cls(context)
        existing = repo._list_folders()
        repo._workspace_meta.reconcile(list(existing))
        if default_list and not existing:
            repo.create_list(default_list)
        logger.info("Workspace initialized name=%s root=%s", context.name, context.root)
        return repo

    @property
    def context(self) -> WorkspaceContext:
        return self._context

    @property
    def root(self) -> Path:
        return self._root

    # ---- low-level helpers ----

    def _list_folders(self) -> dict[str, Path]:
        """Map list id -> folder for every folder carrying an ordering file."""
        folders: dict[str, Path] = {}
        try:
            entries = sorted(self._root.iterdir(), key=lambda p: p.name)
        except FileNotFoundError:
            return folders
        except OSError as e:
            raise StorageError(f"failed to list {self._root}: {e}") from e

        for path in entries:
            if path.name.startswith(RESERVED_PREFIX) or not path.is_dir():
                continue
            store = ListMetadataStore(path)
            if not store.exists():
                continue
            list_id = store.read().id
            if list_id in folders:
                logger.warning("Duplicate list id %s in %s (already %s); ignored", list_id, path, folders[list_id])
                continue
            folders[list_id] = path
        return folders

    def _store(self, list_id: str) -> ListMetadataStore:
        folder = self._list_folders().get(list_id)
        if folder is None:
            raise ListNotFound(f"list not found: {list_id}")
        return ListMetadataStore(folder)

    def _locate(self, task_id: str) -> tuple[str, ListMetadataStore, TaskFile]:
        for list_id, folder in self._list_folders().items():
            store = ListMetadataStore(folder)
            found = store.scan().find(task_id)
            if found is not None:
                return list_id, store, found
        raise TaskNotFound(f"task not found: {task_id}")

    def _build_list(self, list_id: str, store: ListMetadataStore, position: int) -> TaskList:
        meta, scan = store.load_with_scan()
        return TaskList(
            id=list_id,
            title=store.folder.name,
            sort_order=meta.sort_order,
            task_order=list(meta.task_order),
            archived=meta.archived,
            position=position,
            created_at=meta.created_at,
            updated_at=meta.updated_at,
            tasks=effective_order(meta, scan.tasks),
            errors=list(scan.errors),
        )

    @staticmethod
    def _find_in(scan: ListScan, task_id: str) -> TaskFile:
        found = scan.find(task_id)
        if found is None:
            raise TaskNotFound(f"task not found: {task_id}")
        return found

    @staticmethod
    def _ensure_free(path: Path, *, owner_id: str | None = None) -> None:
        if not path.exists():
            return
        if owner_id is not None:
            with contextlib.suppress(OSError, ValidationError):
                if decode(path.read_bytes(), path.name).id == owner_id:
                    return
        raise TitleConflict(f"{path.name} already exists in {path.parent.name}")

    def _move_file(self, src: ListMetadataStore, task_file: TaskFile, dst: ListMetadataStore) -> Task:
        """
        Move one task file between list folders.

        The rename is atomic: if it fails the source is untouched. Order files
        are updated afterwards (destination first), reconciliation covers an
        interruption in between.
        """
        dst_path = dst.folder / task_file.path.name
        self._ensure_free(dst_path)

        try:
            os.replace(task_file.path, dst_path)
        except OSError as e:
            raise StorageError(f"failed to move {task_file.path} to {dst.folder}: {e}") from e

        task = task_file.task
        task.touch()
        try:
            atomic_write(dst_path, encode(task))
        except StorageError:
            with contextlib.suppress(OSError):
                os.replace(dst_path, task_file.path)
            raise

        dst.append(task.id)
        src.remove(task.id)
        logger.debug("Task moved id=%s %s -> %s", task.id, src.folder.name, dst.folder.name)
        return task

    # ---- lists ----

    def create_list(self, title: str) -> TaskList:
        validate_title(title)
        folder = self._root / title
        if folder.exists():
            raise TitleConflict(f"list already exists: {title}")

        try:
            folder.mkdir(parents=True)
        except OSError as e:
            raise StorageError(f"failed to create list folder {folder}: {e}") from e

        meta = ListMetadataStore(folder).create()

        gmeta = self._workspace_meta.read()
        gmeta.list_order.append(meta.id)
        if gmeta.last_opened_list is None:
            gmeta.last_opened_list = meta.id
        self._workspace_meta.save(gmeta)

        logger.info("List created id=%s title=%s", meta.id, title)
        return self.get_list(meta.id)

    def get_lists(self, *, include_archived: bool = True) -> list[TaskList]:
        folders = self._list_folders()
        gmeta = self._workspace_meta.reconcile(list(folders))
        out: list[TaskList] = []
        for position, list_id in enumerate(gmeta.list_order):
            tl = self._build_list(list_id, ListMetadataStore(folders[list_id]), position)
            if tl.archived and not include_archived:
                continue
            out.append(tl)
        return out

    def get_list(self, list_id: str) -> TaskList:
        folders = self._list_folders()
        if list_id not in folders:
            raise ListNotFound(f"list not found: {list_id}")
        gmeta = self._workspace_meta.reconcile(list(folders))
        return self._build_list(list_id, ListMetadataStore(folders[list_id]), gmeta.list_order.index(list_id))

    def open_list(self, list_id: str) -> TaskList:
        """get_list() that also records the list as last opened."""
        tl = self.get_list(list_id)
        gmeta = self._workspace_meta.read()
        if gmeta.last_opened_list != list_id:
            gmeta.last_opened_list = list_id
            self._workspace_meta.save(gmeta)
        return tl

    def last_opened_list(self) -> str | None:
        return self._workspace_meta.reconcile(list(self._list_folders())).last_opened_list

    def find_list_by_name(self, title: str) -> str:
        for list_id, folder in self._list_folders().items():
            if folder.name == title:
                return list_id
        raise ListNotFound(f"list not found: {title}")

    def ensure_list(self, title: str) -> str:
        try:
            return self.find_list_by_name(title)
        except ListNotFound:
            return self.create_list(title).id

    def delete_list(self, list_id: str) -> None:
        store = self._store(list_id)
        try:
            shutil.rmtree(store.folder)
        except OSError as e:
            raise StorageError(f"failed to delete list folder {store.folder}: {e}") from e
        self._workspace_meta.reconcile(list(self._list_folders()))
        logger.info("List deleted id=%s title=%s", list_id, store.folder.name)

    def rename_list(self, list_id: str, new_title: str) -> TaskList:
        store = self._store(list_id)
        validate_title(new_title)
        target = self._root / new_title
        if target == store.folder:
            return self.get_list(list_id)
        if target.exists():
            raise TitleConflict(f"list already exists: {new_title}")
        try:
            store.folder.rename(target)
        except OSError as e:
            raise StorageError(f"failed to rename {store.folder} to {target}: {e}") from e
        logger.info("List renamed id=%s %s -> %s", list_id, store.folder.name, new_title)
        return self.get_list(list_id)

    def archive_list(self, list_id: str, archived: bool = True) -> TaskList:
        self._store(list_id).set_archived(archived)
        return self.get_list(list_id)

    def reorder_list(self, list_id: str, new_position: int) -> None:
        folders = self._list_folders()
        if list_id not in folders:
            raise ListNotFound(f"list not found: {list_id}")
        gmeta = self._workspace_meta.reconcile(list(folders))
        order = [lid for lid in gmeta.list_order if lid != list_id]
        order.insert(max(0, min(int(new_position), len(order))), list_id)
        if order != gmeta.list_order:
            gmeta.list_order = order
            self._workspace_meta.save(gmeta)

    def set_sort_order(self, list_id: str, order: SortOrder | str) -> TaskList:
        self._store(list_id).set_sort_order(SortOrder.parse(order))
        return self.get_list(list_id)

    def reorder_task(self, list_id: str, task_id: str, new_index: int) -> bool:
        return self._store(list_id).reorder(task_id, new_index)

    def merge_lists(self, src_list_id: str, dst_list_id: str, *, delete_source: bool = False) -> TaskList:
        """
        Move every task of `src` into `dst`, keeping src's relative order at the
        end of dst's order. The source folder is removed only if asked.
        """
        if src_list_id == dst_list_id:
            raise ValidationError("cannot merge a list into itself")

        src = self._store(src_list_id)
        dst = self._store(dst_list_id)
        meta, scan = src.load_with_scan()

        if delete_source and scan.errors:
            names = ", ".join(e.path.name for e in scan.errors)
            raise ValidationError(f"source list has unreadable task files: {names}")
        for f in scan.files:
            self._ensure_free(dst.folder / f.path.name)

        for task_id in meta.task_order:
            task_file = scan.find(task_id)
            if task_file is not None:
                self._move_file(src, task_file, dst)

        if delete_source:
            try:
                shutil.rmtree(src.folder)
            except OSError as e:
                raise StorageError(f"failed to delete list folder {src.folder}: {e}") from e
            self._workspace_meta.reconcile(list(self._list_folders()))

        logger.info(
            "Merged list %s into %s (%d tasks, delete_source=%s)",
            src_list_id,
            dst_list_id,
            len(scan.files),
            delete_source,
        )
        return self.get_list(dst_list_id)

    # ---- tasks ----

    def create_task(
        self,
        list_id: str,
        title: str,
        *,
        notes: str = "",
        due_date: datetime | None = None,
        parent_id: str | None = None,
    ) -> Task:
        store = self._store(list_id)
        path = store.folder / title_to_filename(title)
        self._ensure_free(path)
        if parent_id is not None:
            try:
                self._locate(parent_id)
            except TaskNotFound:
                raise ValidationError(f"unknown parent task: {parent_id}") from None

        task = Task.new(title, notes=notes, due_date=due_date, parent_id=parent_id)
        # File first: a crash before the order update is healed on next load.
        atomic_write(path, encode(task))
        store.append(task.id)
        logger.debug("Task created id=%s list=%s title=%s", task.id, list_id, title)
        return task

    def get_task(self, list_id: str, task_id: str) -> Task:
        return self._find_in(self._store(list_id).scan(), task_id).task

    def find_task(self, task_id: str) -> tuple[str, Task]:
        list_id, _, found = self._locate(task_id)
        return list_id, found.task

    def list_tasks(self, list_id: str) -> list[Task]:
        return self.get_list(list_id).tasks

    def update_task(self, list_id: str, task: Task) -> Task:
        """
        Persist `task`. A changed title renames the file; id and created_at are
        kept from disk and updated_at never moves backwards.
        """
        store = self._store(list_id)
        current = self._find_in(store.scan(), task.id)

        new_path = store.folder / title_to_filename(task.title)
        if new_path != current.path:
            self._ensure_free(new_path)

        task.created_at = current.task.created_at
        task.updated_at = max(utc_now(), current.task.updated_at)

        if new_path != current.path:
            try:
                os.replace(current.path, new_path)
            except OSError as e:
                raise StorageError(f"failed to rename {current.path} to {new_path}: {e}") from e
        atomic_write(new_path, encode(task))
        return task

    def delete_task(self, list_id: str, task_id: str) -> None:
        store = self._store(list_id)
        found = self._find_in(store.scan(), task_id)
        try:
            found.path.unlink()
        except OSError as e:
            raise StorageError(f"failed to delete {found.path}: {e}") from e
        store.remove(task_id)
        logger.debug("Task deleted id=%s list=%s", task_id, list_id)

    def complete_task(self, list_id: str, task_id: str) -> Task:
        task = self.get_task(list_id, task_id)
        task.complete()
        return self.update_task(list_id, task)

    def uncomplete_task(self, list_id: str, task_id: str) -> Task:
        task = self.get_task(list_id, task_id)
        task.uncomplete()
        return self.update_task(list_id, task)

    def move_task(self, task_id: str, destination_list: str) -> Task:
        src_list_id, src, found = self._locate(task_id)
        if src_list_id == destination_list:
            return found.task
        return self._move_file(src, found, self._store(destination_list))

    # ---- raw access for sync ----

    def local_tasks(self) -> list[LocalTask]:
        out: list[LocalTask] = []
        for list_id, folder in self._list_folders().items():
            for f in ListMetadataStore(folder).scan().files:
                out.append(
                    LocalTask(
                        list_id=list_id,
                        rel_path=f"{folder.name}/{f.path.name}",
                        path=f.path,
                        task=f.task,
                    )
                )
        return out

    def local_task_errors(self) -> list[TaskLoadError]:
        out: list[TaskLoadError] = []
        for folder in self._list_folders().values():
            out.extend(ListMetadataStore(folder).scan().errors)
        return out

    def read_bytes(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"failed to read {path}: {e}") from e

    def store_task_bytes(self, rel_path: str, data: bytes) -> LocalTask:
        """
        Write a task file received from elsewhere (e.g. the remote store).

        The bytes are validated with the codec, then written verbatim. A task
        with the same id at another local path is moved there first.
        """
        list_title, sep, filename = rel_path.partition("/")
        if not sep or "/" in filename:
            raise ValidationError(f"expected <list>/<task>.md, got {rel_path!r}")
        validate_title(list_title)
        task = decode(data, filename)
        validate_title(task.title)

        list_id = self.ensure_list(list_title)
        dst = self._store(list_id)
        path = dst.folder / filename

        try:
            old_list_id, old_store, existing = self._locate(task.id)
        except TaskNotFound:
            existing = None

        if existing is not None and existing.path != path:
            self._ensure_free(path)
            try:
                os.replace(existing.path, path)
            except OSError as e:
                raise StorageError(f"failed to move {existing.path} to {path}: {e}") from e
            if old_list_id != list_id:
                dst.append(task.id)
                old_store.remove(task.id)
        else:
            self._ensure_free(path, owner_id=task.id)

        atomic_write(path, data)
        dst.append(task.id)
        return LocalTask(list_id=list_id, rel_path=f"{dst.folder.name}/{filename}", path=path, task=task)

    def remove_task_file(self, task_id: str) -> None:
        list_id, _, _ = self._locate(task_id)
        self.delete_task(list_id, task_id)
