# src/mdtasks/sync/sync_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from ..errors import StorageError
from ..tasks.task_codec import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


class OpKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MOVE = "move"


@dataclass(slots=True)
class SyncCursor:
    """What was exchanged with the remote for one task at the last success."""

    task_id: str
    path: str
    # Task updated_at at the last successful exchange.
    synced_at: datetime
    remote_modified: datetime | None = None
    remote_etag: str | None = None
    # Removed locally; remote copy still to be deleted.
    deleted_local: bool = False


@dataclass(slots=True)
class PendingOperation:
    seq: int
    task_id: str
    kind: OpKind
    path: str
    list_id: str | None = None
    old_path: str | None = None
    enqueued_at: float = 0.0
    retry_count: int = 0
    last_error: str | None = None


@dataclass(slots=True)
class DeadLetter:
    op: PendingOperation
    failed_at: float
    reason: str
    reported: bool = False


def _ts(value: str | None) -> datetime | None:
    return parse_timestamp(value, key="sync timestamp") if value else None


class SyncStateStore:
    """
    SQLite store for per-workspace sync state: cursors, the offline queue and
    dead letters.

    The schema follows the usual migration-safe pattern:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"failed to create {self._db_path.parent}: {e}") from e
        self._ensure_schema()
        logger.info(
            "SyncStateStore ready db=%s cursors=%s pending=%s",
            self._db_path,
            self.count_cursors(),
            self.count_pending(),
        )

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        except sqlite3.Error as e:
            raise StorageError(f"failed to open {self._db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS cursors (
                    task_id TEXT PRIMARY KEY,
                    path TEXT NOT NULL,
                    synced_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_ops (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    path TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS dead_letters (
                    seq INTEGER PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    path TEXT NOT NULL
                )
                """
            )
            cur.execute("CREATE TABLE IF NOT EXISTS sync_meta (key TEXT PRIMARY KEY, value TEXT)")

            def add_cols(table: str, wanted: list[tuple[str, str]]) -> None:
                cur.execute(f"PRAGMA table_info({table})")
                cols = {row["name"] for row in cur.fetchall()}
                for name, decl in wanted:
                    if name in cols:
                        continue
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                    logger.info("SyncStateStore migration: added column %s.%s", table, name)

            add_cols(
                "cursors",
                [
                    ("remote_modified", "TEXT"),
                    ("remote_etag", "TEXT"),
                    ("deleted_local", "INTEGER NOT NULL DEFAULT 0"),
                ],
            )
            op_cols = [
                ("list_id", "TEXT"),
                ("old_path", "TEXT"),
                ("enqueued_at", "REAL NOT NULL DEFAULT 0"),
                ("retry_count", "INTEGER NOT NULL DEFAULT 0"),
                ("last_error", "TEXT"),
            ]
            add_cols("pending_ops", op_cols)
            add_cols(
                "dead_letters",
                op_cols
                + [
                    ("failed_at", "REAL NOT NULL DEFAULT 0"),
                    ("reason", "TEXT NOT NULL DEFAULT ''"),
                    ("reported", "INTEGER NOT NULL DEFAULT 0"),
                ],
            )

            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"failed to prepare {self._db_path}: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _row_to_cursor(row: sqlite3.Row) -> SyncCursor:
        return SyncCursor(
            task_id=str(row["task_id"]),
            path=str(row["path"]),
            synced_at=parse_timestamp(row["synced_at"], key="synced_at"),
            remote_modified=_ts(row["remote_modified"]),
            remote_etag=row["remote_etag"],
            deleted_local=bool(row["deleted_local"]),
        )

    @staticmethod
    def _row_to_op(row: sqlite3.Row) -> PendingOperation:
        return PendingOperation(
            seq=int(row["seq"]),
            task_id=str(row["task_id"]),
            kind=OpKind(row["kind"]),
            path=str(row["path"]),
            list_id=row["list_id"],
            old_path=row["old_path"],
            enqueued_at=float(row["enqueued_at"] or 0.0),
            retry_count=int(row["retry_count"] or 0),
            last_error=row["last_error"],
        )

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        conn = self._get_conn()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"sync state query failed: {e}") from e
        finally:
            conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        conn = self._get_conn()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount
        except sqlite3.Error as e:
            raise StorageError(f"sync state update failed: {e}") from e
        finally:
            conn.close()

    # ---- cursors ----

    def count_cursors(self) -> int:
        (row,) = self._query("SELECT COUNT(*) AS n FROM cursors")
        return int(row["n"])

    def get_cursor(self, task_id: str) -> SyncCursor | None:
        rows = self._query("SELECT * FROM cursors WHERE task_id = ?", (task_id,))
        return self._row_to_cursor(rows[0]) if rows else None

    def list_cursors(self) -> dict[str, SyncCursor]:
        return {c.task_id: c for c in map(self._row_to_cursor, self._query("SELECT * FROM cursors"))}

    def upsert_cursor(self, cursor: SyncCursor) -> None:
        self._execute(
            """
            INSERT INTO cursors(task_id, path, synced_at, remote_modified, remote_etag, deleted_local)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(task_id) DO UPDATE SET
                path = excluded.path,
                synced_at = excluded.synced_at,
                remote_modified = excluded.remote_modified,
                remote_etag = excluded.remote_etag,
                deleted_local = excluded.deleted_local
            """,
            (
                cursor.task_id,
                cursor.path,
                format_timestamp(cursor.synced_at),
                format_timestamp(cursor.remote_modified) if cursor.remote_modified else None,
                cursor.remote_etag,
                int(cursor.deleted_local),
            ),
        )

    def mark_deleted_local(self, task_id: str) -> None:
        self._execute("UPDATE cursors SET deleted_local = 1 WHERE task_id = ?", (task_id,))

    def delete_cursor(self, task_id: str) -> None:
        self._execute("DELETE FROM cursors WHERE task_id = ?", (task_id,))

    # ---- offline queue ----

    def enqueue(
        self,
        *,
        task_id: str,
        kind: OpKind,
        path: str,
        list_id: str | None = None,
        old_path: str | None = None,
        error: str | None = None,
    ) -> int | None:
        """
        Append an operation to the FIFO queue.

        When the newest waiting operation for the task is identical, nothing is
        queued and its seq is returned.
        """
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT seq, kind, path, old_path FROM pending_ops WHERE task_id = ? ORDER BY seq DESC LIMIT 1",
                (task_id,),
            )
            row = cur.fetchone()
            if (
                row is not None
                and row["kind"] == kind.value
                and row["path"] == path
                and (row["old_path"] or None) == (old_path or None)
            ):
                return int(row["seq"])

            cur.execute(
                """
                INSERT INTO pending_ops(task_id, kind, path, list_id, old_path, enqueued_at, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (task_id, kind.value, path, list_id, old_path, time.time(), error),
            )
            conn.commit()
            seq = cur.lastrowid
            logger.debug("Sync op queued seq=%s kind=%s task=%s path=%s", seq, kind.value, task_id, path)
            return int(seq) if seq is not None else None
        except sqlite3.Error as e:
            raise StorageError(f"failed to queue sync operation: {e}") from e
        finally:
            conn.close()

    def pending_ops(self) -> list[PendingOperation]:
        return [self._row_to_op(r) for r in self._query("SELECT * FROM pending_ops ORDER BY seq ASC")]

    def count_pending(self) -> int:
        (row,) = self._query("SELECT COUNT(*) AS n FROM pending_ops")
        return int(row["n"])

    def complete_op(self, seq: int) -> None:
        self._execute("DELETE FROM pending_ops WHERE seq = ?", (int(seq),))

    def mark_op_failed(self, seq: int, error: str) -> None:
        self._execute(
            "UPDATE pending_ops SET retry_count = retry_count + 1, last_error = ? WHERE seq = ?",
            (error, int(seq)),
        )

    # ---- dead letters ----

    def dead_letter(self, op: PendingOperation, reason: str) -> None:
        """Move a queued operation out of the queue for good."""
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT OR REPLACE INTO dead_letters(
                    seq, task_id, kind, path, list_id, old_path,
                    enqueued_at, retry_count, last_error, failed_at, reason, reported
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    op.seq,
                    op.task_id,
                    op.kind.value,
                    op.path,
                    op.list_id,
                    op.old_path,
                    op.enqueued_at,
                    op.retry_count,
                    op.last_error,
                    time.time(),
                    reason,
                ),
            )
            conn.execute("DELETE FROM pending_ops WHERE seq = ?", (op.seq,))
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"failed to dead-letter sync operation: {e}") from e
        finally:
            conn.close()
        logger.warning("Sync op dead-lettered seq=%s kind=%s task=%s: %s", op.seq, op.kind.value, op.task_id, reason)

    def count_dead_letters(self) -> int:
        (row,) = self._query("SELECT COUNT(*) AS n FROM dead_letters")
        return int(row["n"])

    def dead_letter_times(self) -> dict[str, float]:
        """task_id -> time of its most recent dead letter."""
        rows = self._query("SELECT task_id, MAX(failed_at) AS failed_at FROM dead_letters GROUP BY task_id")
        return {str(r["task_id"]): float(r["failed_at"] or 0.0) for r in rows}

    def take_unreported_dead_letters(self) -> list[DeadLetter]:
        """Return dead letters not yet reported and mark them reported."""
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM dead_letters WHERE reported = 0 ORDER BY seq ASC").fetchall()
            if rows:
                conn.execute("UPDATE dead_letters SET reported = 1 WHERE reported = 0")
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"failed to read dead letters: {e}") from e
        finally:
            conn.close()

        return [
            DeadLetter(
                op=self._row_to_op(r),
                failed_at=float(r["failed_at"] or 0.0),
                reason=str(r["reason"] or ""),
                reported=False,
            )
            for r in rows
        ]

    # ---- key/value ----

    def get_meta(self, key: str) -> str | None:
        rows = self._query("SELECT value FROM sync_meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_meta(self, key: str, value: str | None) -> None:
        self._execute(
            "INSERT INTO sync_meta(key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
