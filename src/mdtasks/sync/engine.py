# src/mdtasks/sync/engine.py

"""
Last-write-wins synchronization between a workspace folder and a remote store.

Remote layout mirrors the local one: "<List title>/<Task title>.md". Ordering
files are local-only.

pull():
- remote files whose cursor still matches the listing are skipped unfetched
- remote newer than local updated_at (strictly) -> local file replaced
- equal timestamps but different content -> Conflict, nothing written
- same bytes on both sides -> cursor refreshed only
- remote missing locally -> downloaded (unless deleted locally since last sync)
- remote deleted, local unchanged since last sync -> local file removed

push():
- replays the offline queue first, oldest first
- uploads tasks that are new, changed since their cursor, or moved/renamed
- deletes remote copies of tasks removed locally

Transient transport errors are retried with backoff, then the operation is
queued and the engine goes offline. Auth failures always propagate.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..core.ports import RemoteEntry, Transport
from ..core.state import WorkspaceContext
from ..errors import (
    AuthFailure,
    ConflictError,
    RemoteNotFound,
    TransportError,
    ValidationError,
)
from ..tasks.repository import LocalTask, TaskRepository
from ..tasks.task_codec import decode, format_timestamp, is_task_filename, parse_timestamp
from ..tasks.task_models import Task, utc_now
from .retry import RetryPolicy, SleepFn, call_with_retry
from .sync_store import DeadLetter, OpKind, PendingOperation, SyncCursor, SyncStateStore

logger = logging.getLogger(__name__)


SYNC_DB_NAME = "state.sqlite3"
_LAST_SYNC_KEY = "last_sync"


class SyncState(StrEnum):
    IDLE = "idle"
    PULLING = "pulling"
    PUSHING = "pushing"
    CONFLICTED = "conflicted"
    OFFLINE = "offline"


class KeepSide(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(slots=True)
class Conflict:
    """Both sides changed with identical timestamps; needs resolve_conflict()."""

    task_id: str
    path: str
    local: Task
    remote: Task
    local_bytes: bytes
    remote_bytes: bytes
    remote_modified: datetime | None
    remote_etag: str | None = None


@dataclass(slots=True)
class SyncResult:
    uploaded: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    deleted_local: list[str] = field(default_factory=list)
    deleted_remote: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    # Per-file problems that did not stop the run (bad remote file, title clash).
    errors: list[str] = field(default_factory=list)
    unchanged: int = 0
    cancelled: bool = False

    @property
    def total_changes(self) -> int:
        return len(self.uploaded) + len(self.downloaded) + len(self.deleted_local) + len(self.deleted_remote)


@dataclass(frozen=True, slots=True)
class SyncStatus:
    state: SyncState
    remote_url: str | None
    last_sync: datetime | None
    pending_operations: int
    dead_letters: int
    local_changes: int
    conflicts: int


class _Cancelled(Exception):
    pass


def _list_folder(rel_path: str) -> str:
    return rel_path.partition("/")[0]


def _is_remote_task(entry: RemoteEntry) -> bool:
    if entry.is_collection:
        return False
    parts = entry.path.strip("/").split("/")
    return len(parts) == 2 and not parts[0].startswith(".") and is_task_filename(parts[1])


def _unchanged_since(cursor: SyncCursor, entry: RemoteEntry) -> bool:
    """True when the listing shows the same remote version the cursor recorded."""
    if entry.etag is not None and cursor.remote_etag is not None and entry.etag != cursor.remote_etag:
        return False
    if entry.modified is None:
        # No server timestamp: only a matching etag proves nothing changed.
        return entry.etag is not None and entry.etag == cursor.remote_etag
    return cursor.remote_modified == entry.modified


class SyncEngine:
    def __init__(
        self,
        context: WorkspaceContext,
        repository: TaskRepository,
        transport: Transport,
        *,
        store: SyncStateStore | None = None,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
        on_synced: Callable[[datetime], None] | None = None,
    ) -> None:
        self._context = context
        self._repo = repository
        self._transport = transport
        self._store = store or SyncStateStore(context.sync_dir / SYNC_DB_NAME)
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._on_synced = on_synced

        self._state = SyncState.IDLE
        self._offline = False
        self._cancel = threading.Event()
        self._lock = asyncio.Lock()

        self._conflicts: dict[str, Conflict] = {}
        self._collections: set[str] = set()
        # Tasks pull decided the local side wins for, even without a newer updated_at.
        self._force_upload: set[str] = set()
        # Remote path -> task id, as learned by the last pull.
        self._remote_owner: dict[str, str] = {}

    # ---- introspection ----

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def store(self) -> SyncStateStore:
        return self._store

    @property
    def conflicts(self) -> list[Conflict]:
        return list(self._conflicts.values())

    @property
    def transport(self) -> Transport:
        return self._transport

    def cancel(self) -> None:
        """Stop the running operation at the next file boundary."""
        self._cancel.set()

    async def aclose(self) -> None:
        await self._transport.aclose()

    def last_sync(self) -> datetime | None:
        raw = self._store.get_meta(_LAST_SYNC_KEY)
        return parse_timestamp(raw, key=_LAST_SYNC_KEY) if raw else self._context.last_sync

    def status(self) -> SyncStatus:
        cursors = self._store.list_cursors()
        local = self._repo.local_tasks()
        local_ids = {lt.task.id for lt in local}
        changes = sum(1 for lt in local if self._upload_kind(lt, cursors.get(lt.task.id)) is not None)
        changes += sum(1 for tid in cursors if tid not in local_ids)
        return SyncStatus(
            state=self._state,
            remote_url=self._context.remote_url,
            last_sync=self.last_sync(),
            pending_operations=self._store.count_pending(),
            dead_letters=self._store.count_dead_letters(),
            local_changes=changes,
            conflicts=len(self._conflicts),
        )

    def take_unreported_dead_letters(self) -> list[DeadLetter]:
        return self._store.take_unreported_dead_letters()

    # ---- helpers ----

    def _begin(self) -> None:
        self._cancel.clear()
        self._offline = False

    def _finish(self) -> None:
        if self._conflicts:
            self._state = SyncState.CONFLICTED
        elif self._offline:
            self._state = SyncState.OFFLINE
        else:
            self._state = SyncState.IDLE

    def _check_cancel(self) -> None:
        if self._cancel.is_set():
            raise _Cancelled()

    def _go_offline(self, err: TransportError) -> None:
        if not self._offline:
            logger.warning("Remote unreachable, working offline: %s", err)
        self._offline = True

    async def _call(self, fn: Callable[[], Any], describe: str) -> Any:
        return await call_with_retry(fn, policy=self._policy, sleep=self._sleep, describe=describe)

    def _local_by_id(self) -> dict[str, LocalTask]:
        return {lt.task.id: lt for lt in self._repo.local_tasks()}

    def _upload_kind(self, lt: LocalTask, cursor: SyncCursor | None) -> OpKind | None:
        if cursor is None:
            return OpKind.CREATE
        if cursor.path != lt.rel_path:
            return OpKind.MOVE
        if lt.task.updated_at > cursor.synced_at or lt.task.id in self._force_upload:
            return OpKind.UPDATE
        return None

    def _protected_ids(self, cursors: Iterable[SyncCursor]) -> set[str]:
        """Cursored ids whose local file exists but cannot be read right now."""
        protected: set[str] = set()
        bad_paths: set[str] = set()
        for err in self._repo.local_task_errors():
            if err.task_id:
                protected.add(err.task_id)
            bad_paths.add(f"{err.path.parent.name}/{err.path.name}")
        protected.update(c.task_id for c in cursors if c.path in bad_paths)
        return protected

    async def _ensure_collection(self, folder: str) -> None:
        if folder in self._collections:
            return
        await self._call(lambda: self._transport.make_collection(folder), f"mkcol {folder}")
        self._collections.add(folder)

    async def _upload(self, lt: LocalTask, result: SyncResult) -> None:
        data = self._repo.read_bytes(lt.path)
        await self._ensure_collection(_list_folder(lt.rel_path))
        entry = await self._call(lambda: self._transport.put(lt.rel_path, data), f"put {lt.rel_path}")

        cursor = self._store.get_cursor(lt.task.id)
        if cursor is not None and cursor.path != lt.rel_path:
            try:
                await self._call(lambda: self._transport.delete(cursor.path), f"delete {cursor.path}")
            except RemoteNotFound:
                pass
            self._remote_owner.pop(cursor.path, None)

        self._store.upsert_cursor(
            SyncCursor(
                task_id=lt.task.id,
                path=lt.rel_path,
                synced_at=lt.task.updated_at,
                remote_modified=entry.modified if entry is not None else None,
                remote_etag=entry.etag if entry is not None else None,
            )
        )
        self._remote_owner[lt.rel_path] = lt.task.id
        self._force_upload.discard(lt.task.id)
        result.uploaded.append(lt.rel_path)
        logger.debug("Uploaded %s id=%s", lt.rel_path, lt.task.id)

    async def _delete_remote(self, task_id: str, path: str, result: SyncResult) -> None:
        try:
            await self._call(lambda: self._transport.delete(path), f"delete {path}")
        except RemoteNotFound:
            pass
        self._store.delete_cursor(task_id)
        self._remote_owner.pop(path, None)
        result.deleted_remote.append(path)
        logger.debug("Deleted remote %s id=%s", path, task_id)

    async def _apply_op(self, op: PendingOperation, result: SyncResult) -> bool:
        """Carry out one queued operation against current local state. False = keep queued."""
        local = self._local_by_id().get(op.task_id)

        if op.kind == OpKind.DELETE:
            if local is None:
                await self._delete_remote(op.task_id, op.path, result)
            return True

        if local is None:
            # Deleted since; a later DELETE op (or push) takes care of it.
            return True
        if op.task_id in self._conflicts:
            return False
        await self._upload(local, result)
        return True

    def _dead_letter(self, op: PendingOperation, err: TransportError) -> None:
        self._store.dead_letter(op, f"{type(err).__name__}: {err}")

    # ---- queue ----

    async def _replay_queue(self, result: SyncResult) -> None:
        for op in self._store.pending_ops():
            self._check_cancel()
            try:
                done = await self._apply_op(op, result)
            except AuthFailure:
                raise
            except TransportError as e:
                if e.transient:
                    self._store.mark_op_failed(op.seq, str(e))
                    self._go_offline(e)
                    return
                self._dead_letter(op, e)
                continue
            if done:
                self._store.complete_op(op.seq)

    def _enqueue(self, result: SyncResult, *, task_id: str, kind: OpKind, path: str, **kwargs: Any) -> None:
        self._store.enqueue(task_id=task_id, kind=kind, path=path, **kwargs)
        result.queued.append(path)

    async def _push_one(self, lt: LocalTask, kind: OpKind, cursor: SyncCursor | None, result: SyncResult) -> None:
        old_path = cursor.path if cursor is not None and kind == OpKind.MOVE else None
        if self._offline:
            self._enqueue(result, task_id=lt.task.id, kind=kind, path=lt.rel_path, list_id=lt.list_id, old_path=old_path)
            return
        try:
            await self._upload(lt, result)
        except AuthFailure:
            raise
        except TransportError as e:
            if e.transient:
                self._go_offline(e)
                self._enqueue(
                    result,
                    task_id=lt.task.id,
                    kind=kind,
                    path=lt.rel_path,
                    list_id=lt.list_id,
                    old_path=old_path,
                    error=str(e),
                )
                return
            seq = self._store.enqueue(
                task_id=lt.task.id, kind=kind, path=lt.rel_path, list_id=lt.list_id, old_path=old_path, error=str(e)
            )
            op = next((o for o in self._store.pending_ops() if o.seq == seq), None)
            if op is not None:
                self._dead_letter(op, e)
            result.errors.append(f"{lt.rel_path}: {e}")

    async def _push_delete(self, cursor: SyncCursor, result: SyncResult) -> None:
        if self._offline:
            self._store.mark_deleted_local(cursor.task_id)
            self._enqueue(result, task_id=cursor.task_id, kind=OpKind.DELETE, path=cursor.path)
            return
        try:
            await self._delete_remote(cursor.task_id, cursor.path, result)
        except AuthFailure:
            raise
        except TransportError as e:
            if not e.transient:
                result.errors.append(f"{cursor.path}: {e}")
                return
            self._go_offline(e)
            self._store.mark_deleted_local(cursor.task_id)
            self._enqueue(result, task_id=cursor.task_id, kind=OpKind.DELETE, path=cursor.path, error=str(e))

    # ---- pull ----

    async def _pull(self, result: SyncResult) -> None:
        self._state = SyncState.PULLING
        try:
            entries = await self._call(lambda: self._transport.list(""), "list")
        except RemoteNotFound:
            entries = []
        except TransportError as e:
            if not e.transient:
                raise
            self._go_offline(e)
            return

        self._collections.update(e.path.strip("/") for e in entries if e.is_collection)
        remote = sorted((e for e in entries if _is_remote_task(e)), key=lambda e: e.path)

        local = self._local_by_id()
        cursors = self._store.list_cursors()
        cursor_by_path = {c.path: c for c in cursors.values()}
        seen_ids: set[str] = set()
        self._remote_owner = {}

        for entry in remote:
            self._check_cancel()
            path = entry.path.strip("/")
            cursor = cursor_by_path.get(path)
            if cursor is not None and _unchanged_since(cursor, entry):
                seen_ids.add(cursor.task_id)
                self._remote_owner[path] = cursor.task_id
                result.unchanged += 1
                continue

            try:
                data, _ = await self._call(lambda: self._transport.get(path), f"get {path}")
            except RemoteNotFound:
                logger.info("Remote file vanished during pull: %s", path)
                continue
            except TransportError as e:
                if not e.transient:
                    raise
                self._go_offline(e)
                return

            try:
                remote_task = decode(data, path.rpartition("/")[2])
            except ValidationError as e:
                logger.warning("Skipping unreadable remote file %s: %s", path, e)
                result.errors.append(f"{path}: {e}")
                if cursor is not None:
                    # Still present remotely; keep the local copy and its cursor.
                    seen_ids.add(cursor.task_id)
                    self._remote_owner[path] = cursor.task_id
                continue

            seen_ids.add(remote_task.id)
            self._remote_owner[path] = remote_task.id
            self._pull_one(path, entry, data, remote_task, local.get(remote_task.id), cursors, result)

        self._apply_remote_deletions(seen_ids, local, cursors, result)

    def _pull_one(
        self,
        path: str,
        entry: RemoteEntry,
        data: bytes,
        remote_task: Task,
        lt: LocalTask | None,
        cursors: dict[str, SyncCursor],
        result: SyncResult,
    ) -> None:
        cursor = cursors.get(remote_task.id)

        def remember(synced_at: datetime, local_path: str) -> None:
            self._store.upsert_cursor(
                SyncCursor(
                    task_id=remote_task.id,
                    path=local_path,
                    synced_at=synced_at,
                    remote_modified=entry.modified,
                    remote_etag=entry.etag,
                )
            )

        if lt is None:
            if cursor is not None and cursor.deleted_local:
                # Deleted here and the removal is queued; keep it deleted.
                return
            self._download(path, data, remote_task, remember, result)
            return

        local_bytes = self._repo.read_bytes(lt.path)
        if local_bytes == data and lt.rel_path == path:
            remember(lt.task.updated_at, lt.rel_path)
            result.unchanged += 1
            return

        # Servers that report no modification time are compared by the remote file's own updated_at.
        remote_time = entry.modified if entry.modified is not None else remote_task.updated_at
        if remote_time > lt.task.updated_at:
            self._download(path, data, remote_task, remember, result)
        elif remote_time == lt.task.updated_at:
            conflict = Conflict(
                task_id=remote_task.id,
                path=path,
                local=lt.task,
                remote=remote_task,
                local_bytes=local_bytes,
                remote_bytes=data,
                remote_modified=entry.modified,
                remote_etag=entry.etag,
            )
            self._conflicts[remote_task.id] = conflict
            result.conflicts.append(conflict)
            logger.warning("Sync conflict on %s id=%s (identical timestamps)", path, remote_task.id)
        else:
            # Local wins; make sure push sends it even if the cursor says synced.
            self._force_upload.add(remote_task.id)

    def _download(
        self,
        path: str,
        data: bytes,
        remote_task: Task,
        remember: Callable[[datetime, str], None],
        result: SyncResult,
    ) -> None:
        try:
            stored = self._repo.store_task_bytes(path, data)
        except ValidationError as e:
            logger.warning("Cannot apply remote file %s: %s", path, e)
            result.errors.append(f"{path}: {e}")
            return
        remember(remote_task.updated_at, stored.rel_path)
        self._conflicts.pop(remote_task.id, None)
        result.downloaded.append(path)
        logger.debug("Downloaded %s id=%s", path, remote_task.id)

    def _apply_remote_deletions(
        self,
        seen_ids: set[str],
        local: dict[str, LocalTask],
        cursors: dict[str, SyncCursor],
        result: SyncResult,
    ) -> None:
        for task_id, cursor in cursors.items():
            if task_id in seen_ids or cursor.deleted_local:
                continue
            lt = local.get(task_id)
            self._store.delete_cursor(task_id)
            if lt is None:
                continue
            if lt.task.updated_at > cursor.synced_at:
                # Changed locally after the last exchange; push re-creates it.
                continue
            self._repo.remove_task_file(task_id)
            result.deleted_local.append(lt.rel_path)
            logger.debug("Removed %s (deleted remotely) id=%s", lt.rel_path, task_id)

    # ---- push ----

    async def _push(self, result: SyncResult) -> None:
        self._state = SyncState.PUSHING
        if not self._offline:
            await self._replay_queue(result)

        local = self._repo.local_tasks()
        cursors = self._store.list_cursors()
        dead_at = self._store.dead_letter_times()
        for lt in local:
            self._check_cancel()
            if lt.task.id in self._conflicts:
                continue
            cursor = cursors.get(lt.task.id)
            kind = self._upload_kind(lt, cursor)
            if kind is None:
                continue
            failed_at = dead_at.get(lt.task.id)
            if failed_at is not None and lt.task.updated_at.timestamp() <= failed_at:
                # Rejected for good; retried only after the next local edit.
                logger.debug("Skipping dead-lettered task %s id=%s", lt.rel_path, lt.task.id)
                continue
            owner = self._remote_owner.get(lt.rel_path)
            if owner is not None and owner != lt.task.id:
                msg = f"{lt.rel_path}: remote file belongs to another task ({owner})"
                logger.warning("Not uploading %s", msg)
                result.errors.append(msg)
                continue
            await self._push_one(lt, kind, cursor, result)

        local_ids = {lt.task.id for lt in local}
        protected = self._protected_ids(cursors.values())
        for task_id, cursor in cursors.items():
            if task_id in local_ids or task_id in protected:
                continue
            self._check_cancel()
            await self._push_delete(cursor, result)

    # ---- public operations ----

    async def _run(self, *steps: Callable[[SyncResult], Any]) -> SyncResult:
        async with self._lock:
            self._begin()
            result = SyncResult()
            try:
                for step in steps:
                    await step(result)
            except _Cancelled:
                result.cancelled = True
                logger.info("Sync cancelled")
            finally:
                self._finish()
            return result

    async def pull(self) -> SyncResult:
        return await self._run(self._pull)

    async def push(self) -> SyncResult:
        return await self._run(self._push)

    async def sync(self) -> SyncResult:
        """Full pull, then full push."""
        result = await self._run(self._pull, self._push)
        if not result.cancelled and not self._offline:
            now = utc_now()
            self._store.set_meta(_LAST_SYNC_KEY, format_timestamp(now))
            if self._on_synced is not None:
                self._on_synced(now)
        logger.info(
            "Sync finished state=%s up=%d down=%d del_local=%d del_remote=%d queued=%d conflicts=%d",
            self._state,
            len(result.uploaded),
            len(result.downloaded),
            len(result.deleted_local),
            len(result.deleted_remote),
            len(result.queued),
            len(result.conflicts),
        )
        return result

    async def record_local_change(self, list_id: str | None, task_id: str, kind: OpKind | str) -> SyncResult:
        """
        Hook for local mutations: queue the change, then replay the queue
        right away unless the remote is known to be unreachable.
        """
        kind = OpKind(kind)
        result = SyncResult()

        if kind == OpKind.DELETE:
            cursor = self._store.get_cursor(task_id)
            if cursor is None:
                # Never reached the remote; nothing to delete there.
                return result
            self._store.mark_deleted_local(task_id)
            self._enqueue(result, task_id=task_id, kind=kind, path=cursor.path, list_id=list_id)
        else:
            lt = self._local_by_id().get(task_id)
            if lt is None:
                return result
            cursor = self._store.get_cursor(task_id)
            old_path = cursor.path if cursor is not None and cursor.path != lt.rel_path else None
            self._enqueue(result, task_id=task_id, kind=kind, path=lt.rel_path, list_id=lt.list_id, old_path=old_path)

        if self._state == SyncState.OFFLINE:
            return result

        async with self._lock:
            self._cancel.clear()
            self._offline = False
            try:
                await self._replay_queue(result)
            except _Cancelled:
                result.cancelled = True
            finally:
                self._finish()
        if not self._offline:
            result.queued.clear()
        return result

    async def resolve_conflict(self, task_id: str, keep: KeepSide | str) -> SyncResult:
        conflict = self._conflicts.get(task_id)
        if conflict is None:
            raise ConflictError(f"no unresolved conflict for task {task_id}")
        try:
            keep = KeepSide(keep)
        except ValueError:
            raise ValidationError(f"keep must be 'local' or 'remote', got {keep!r}") from None

        result = SyncResult()
        async with self._lock:
            self._offline = False
            try:
                if keep == KeepSide.REMOTE:
                    stored = self._repo.store_task_bytes(conflict.path, conflict.remote_bytes)
                    self._store.upsert_cursor(
                        SyncCursor(
                            task_id=task_id,
                            path=stored.rel_path,
                            synced_at=conflict.remote.updated_at,
                            remote_modified=conflict.remote_modified,
                            remote_etag=conflict.remote_etag,
                        )
                    )
                    del self._conflicts[task_id]
                    result.downloaded.append(conflict.path)
                else:
                    del self._conflicts[task_id]
                    self._force_upload.add(task_id)
                    lt = self._local_by_id().get(task_id)
                    if lt is not None:
                        await self._push_one(lt, OpKind.UPDATE, self._store.get_cursor(task_id), result)
            finally:
                self._finish()
        logger.info("Conflict resolved id=%s keep=%s", task_id, keep)
        return result
