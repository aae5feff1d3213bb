# tests/test_sync_store.py

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from mdtasks.sync.sync_store import OpKind, SyncCursor, SyncStateStore

T0 = datetime(2024, 5, 1, 9, 0, 0, 123456, tzinfo=timezone.utc)


def test_cursor_upsert_get_delete(tmp_path: Path) -> None:
    store = SyncStateStore(tmp_path / "state.sqlite3")
    assert store.get_cursor("t1") is None

    store.upsert_cursor(SyncCursor(task_id="t1", path="L/A.md", synced_at=T0, remote_modified=T0, remote_etag='"e1"'))
    store.upsert_cursor(SyncCursor(task_id="t1", path="L/B.md", synced_at=T0, remote_modified=None))

    cur = store.get_cursor("t1")
    assert cur is not None
    assert cur.path == "L/B.md"
    assert cur.synced_at == T0
    assert cur.remote_modified is None
    assert cur.deleted_local is False

    store.mark_deleted_local("t1")
    assert store.list_cursors()["t1"].deleted_local is True

    store.delete_cursor("t1")
    assert store.count_cursors() == 0


def test_queue_is_fifo_and_survives_reopen(tmp_path: Path) -> None:
    db = tmp_path / "state.sqlite3"
    store = SyncStateStore(db)
    store.enqueue(task_id="b", kind=OpKind.CREATE, path="L/B.md", list_id="L")
    store.enqueue(task_id="a", kind=OpKind.CREATE, path="L/A.md", list_id="L")

    reopened = SyncStateStore(db)
    ops = reopened.pending_ops()
    assert [op.task_id for op in ops] == ["b", "a"]
    assert ops[0].list_id == "L"
    assert ops[0].enqueued_at > 0

    reopened.complete_op(ops[0].seq)
    assert [op.task_id for op in reopened.pending_ops()] == ["a"]


def test_enqueue_coalesces_only_against_newest_op_for_task(tmp_path: Path) -> None:
    store = SyncStateStore(tmp_path / "state.sqlite3")

    first = store.enqueue(task_id="t", kind=OpKind.UPDATE, path="L/T.md")
    assert store.enqueue(task_id="t", kind=OpKind.UPDATE, path="L/T.md") == first
    assert store.count_pending() == 1

    store.enqueue(task_id="t", kind=OpKind.DELETE, path="L/T.md")
    store.enqueue(task_id="t", kind=OpKind.UPDATE, path="L/T.md")
    assert [op.kind for op in store.pending_ops()] == [OpKind.UPDATE, OpKind.DELETE, OpKind.UPDATE]

    store.enqueue(task_id="t", kind=OpKind.MOVE, path="M/T.md", old_path="L/T.md")
    store.enqueue(task_id="t", kind=OpKind.MOVE, path="M/T.md", old_path="L/T.md")
    assert store.count_pending() == 4


def test_mark_failed_and_dead_letter(tmp_path: Path) -> None:
    store = SyncStateStore(tmp_path / "state.sqlite3")
    seq = store.enqueue(task_id="t", kind=OpKind.CREATE, path="L/T.md")
    assert seq is not None

    store.mark_op_failed(seq, "timed out")
    store.mark_op_failed(seq, "timed out again")
    (op,) = store.pending_ops()
    assert op.retry_count == 2
    assert op.last_error == "timed out again"

    store.dead_letter(op, "RemoteServerError: HTTP 409")
    assert store.count_pending() == 0
    assert store.count_dead_letters() == 1

    (dead,) = store.take_unreported_dead_letters()
    assert dead.op.path == "L/T.md"
    assert dead.op.retry_count == 2
    assert dead.reason == "RemoteServerError: HTTP 409"
    assert store.take_unreported_dead_letters() == []
    assert store.count_dead_letters() == 1


def test_meta_values(tmp_path: Path) -> None:
    store = SyncStateStore(tmp_path / "state.sqlite3")
    assert store.get_meta("last_sync") is None
    store.set_meta("last_sync", "2024-05-01T09:00:00Z")
    store.set_meta("last_sync", "2024-05-02T09:00:00Z")
    assert store.get_meta("last_sync") == "2024-05-02T09:00:00Z"


def test_old_schema_gets_missing_columns(tmp_path: Path) -> None:
    db = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(db)
    conn.execute("CREATE TABLE cursors (task_id TEXT PRIMARY KEY, path TEXT NOT NULL, synced_at TEXT NOT NULL)")
    conn.execute("INSERT INTO cursors VALUES ('t1', 'L/A.md', '2024-05-01T09:00:00Z')")
    conn.commit()
    conn.close()

    store = SyncStateStore(db)

    cur = store.get_cursor("t1")
    assert cur is not None
    assert cur.remote_etag is None
    assert cur.deleted_local is False
    store.upsert_cursor(SyncCursor(task_id="t1", path="L/A.md", synced_at=T0, remote_etag='"x"'))
    assert store.get_cursor("t1").remote_etag == '"x"'
