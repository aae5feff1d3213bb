# src/mdtasks/tasks/task_codec.py

"""
Task file codec.

A task file is UTF-8 text:

    ---
    id: 5d0c...
    schema: 1
    status: backlog
    due: 2024-05-01T09:00:00Z
    created: 2024-04-01T10:00:00Z
    updated: 2024-04-02T11:30:00.250000Z
    parent: 9a1f...
    <unknown keys, verbatim>
    ---

    <notes>

The file name (minus ".md") is the task title. Names starting with "." are
reserved for metadata/temp files and are never enumerated as tasks.

Frontmatter is read with PyYAML's BaseLoader so every scalar stays text; the
codec parses ids/statuses/timestamps itself. Unknown top-level keys keep their
source lines verbatim and are re-emitted untouched after the canonical keys.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import tempfile
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

import yaml

from ..errors import ParseError, StorageError, ValidationError
from .task_models import SCHEMA_VERSION, Task, TaskStatus

logger = logging.getLogger(__name__)

TASK_SUFFIX = ".md"
RESERVED_PREFIX = "."
DELIMITER = "---"

_KNOWN_KEYS = frozenset({"id", "schema", "status", "due", "created", "updated", "parent"})
_PLAIN_SCALAR = re.compile(r"[A-Za-z0-9_.:+\-]+")
_SALVAGE_ID = re.compile(r"^id:\s*['\"]?([^'\"\s]+)", re.MULTILINE)
_FORBIDDEN_TITLE_CHARS = ("/", "\\", "\x00")


# ---- titles / file names ----


def is_task_filename(name: str) -> bool:
    return name.endswith(TASK_SUFFIX) and not name.startswith(RESERVED_PREFIX)


def title_from_filename(filename: str) -> str:
    name = Path(filename).name
    if name.endswith(TASK_SUFFIX):
        name = name[: -len(TASK_SUFFIX)]
    return name


def validate_title(title: str) -> str:
    """Return the title unchanged or raise ValidationError."""
    if not title or not title.strip():
        raise ValidationError("title is required")
    if title.startswith(RESERVED_PREFIX):
        raise ValidationError(f"title must not start with {RESERVED_PREFIX!r}: {title!r}")
    for ch in _FORBIDDEN_TITLE_CHARS:
        if ch in title:
            raise ValidationError(f"title contains an illegal character {ch!r}: {title!r}")
    return title


def title_to_filename(title: str) -> str:
    return validate_title(title) + TASK_SUFFIX


# ---- timestamps ----


def parse_timestamp(raw: str, *, key: str = "timestamp", filename: str | None = None) -> datetime:
    try:
        dt = datetime.fromisoformat(raw.strip())
    except (ValueError, AttributeError):
        raise ParseError(f"{key} is not a recognized timestamp: {raw!r}", filename=filename) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    timespec = "microseconds" if dt.microsecond else "seconds"
    return dt.isoformat(timespec=timespec).replace("+00:00", "Z")


# ---- decode ----


def _split_document(text: str, filename: str | None) -> tuple[str, str]:
    """Return (frontmatter_text, body)."""
    head = DELIMITER + "\n"
    if not text.startswith(head):
        raise ParseError("missing frontmatter block", filename=filename)

    rest = text[len(head):]
    if rest.startswith(head) or rest == DELIMITER:
        raise ParseError("empty frontmatter block", filename=filename)

    idx = rest.find("\n" + head)
    if idx != -1:
        fm_text = rest[: idx + 1]
        body = rest[idx + 1 + len(head):]
    elif rest.endswith("\n" + DELIMITER):
        fm_text = rest[: -len(DELIMITER)]
        body = ""
    else:
        raise ParseError("unterminated frontmatter block", filename=filename)

    if body.startswith("\n"):
        body = body[1:]
    if body.endswith("\n"):
        body = body[:-1]
    return fm_text, body


def _split_chunks(fm_text: str) -> list[str]:
    """
    Cut the frontmatter into top-level entries, one raw text chunk per key.

    Indented lines, indentless sequence items, comments and blank lines belong
    to the entry above them (lines before the first entry go with it).
    """
    chunks: list[str] = []
    leading = ""
    for line in fm_text.splitlines(keepends=True):
        starts_entry = bool(line.strip()) and line[0] not in " \t#-" and ":" in line
        if starts_entry:
            chunks.append(leading + line)
            leading = ""
        elif chunks:
            chunks[-1] += line
        else:
            leading += line
    return chunks


def _load_yaml(text: str, filename: str | None) -> Any:
    try:
        return yaml.load(text, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        raise ParseError(f"malformed frontmatter: {e}", filename=filename) from e


def _unknown_entries(fm_text: str, filename: str | None) -> dict[str, str]:
    extra: dict[str, str] = {}
    for chunk in _split_chunks(fm_text):
        parsed = _load_yaml(chunk, filename)
        if not isinstance(parsed, dict) or len(parsed) != 1:
            raise ParseError("unsupported frontmatter layout", filename=filename)
        key = str(next(iter(parsed)))
        if key in _KNOWN_KEYS:
            continue
        extra[key] = chunk if chunk.endswith("\n") else chunk + "\n"
    return extra


def _scalar_field(fields: dict[str, Any], key: str, filename: str | None) -> str | None:
    value = fields.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(f"{key} must be a scalar value", filename=filename)
    value = value.strip()
    return value or None


def decode(data: bytes, filename: str) -> Task:
    """Parse a task file. Raises ParseError on any malformed input."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"not valid UTF-8: {e}", filename=filename) from e
    text = text.replace("\r\n", "\n")

    fm_text, body = _split_document(text, filename)
    fields = _load_yaml(fm_text, filename)
    if not isinstance(fields, dict):
        raise ParseError("frontmatter is not a key/value mapping", filename=filename)

    task_id = _scalar_field(fields, "id", filename)
    if not task_id:
        raise ParseError("frontmatter is missing id", filename=filename)

    raw_status = _scalar_field(fields, "status", filename)
    try:
        status = TaskStatus.parse(raw_status)
    except ValidationError as e:
        raise ParseError(str(e), filename=filename) from None

    raw_schema = _scalar_field(fields, "schema", filename)
    schema_version = SCHEMA_VERSION
    if raw_schema is not None:
        try:
            schema_version = int(raw_schema)
        except ValueError:
            raise ParseError(f"schema must be an integer: {raw_schema!r}", filename=filename) from None
        if schema_version > SCHEMA_VERSION:
            logger.warning(
                "Task file %s uses newer schema %s (known=%s); unknown keys preserved",
                filename,
                schema_version,
                SCHEMA_VERSION,
            )

    timestamps: dict[str, datetime | None] = {}
    for key in ("due", "created", "updated"):
        raw = _scalar_field(fields, key, filename)
        timestamps[key] = parse_timestamp(raw, key=key, filename=filename) if raw else None

    created_at = timestamps["created"]
    updated_at = timestamps["updated"]
    if created_at is None or updated_at is None:
        raise ParseError("frontmatter requires created and updated", filename=filename)

    return Task(
        id=task_id,
        title=title_from_filename(filename),
        status=status,
        created_at=created_at,
        updated_at=updated_at,
        notes=body,
        due_date=timestamps["due"],
        parent_id=_scalar_field(fields, "parent", filename),
        schema_version=schema_version,
        extra=_unknown_entries(fm_text, filename),
    )


def salvage_id(data: bytes) -> str | None:
    """Best-effort id lookup in a file that failed to decode."""
    text = data.decode("utf-8", errors="replace")
    m = _SALVAGE_ID.search(text)
    return m.group(1) if m else None


# ---- encode ----


def _scalar(value: str) -> str:
    if _PLAIN_SCALAR.fullmatch(value):
        return value
    # JSON strings are valid YAML double-quoted scalars.
    return json.dumps(value, ensure_ascii=False)


def encode(task: Task) -> bytes:
    lines = [
        DELIMITER,
        f"id: {_scalar(task.id)}",
        f"schema: {task.schema_version}",
        f"status: {task.status.value}",
    ]
    if task.due_date is not None:
        lines.append(f"due: {format_timestamp(task.due_date)}")
    lines.append(f"created: {format_timestamp(task.created_at)}")
    lines.append(f"updated: {format_timestamp(task.updated_at)}")
    if task.parent_id:
        lines.append(f"parent: {_scalar(task.parent_id)}")

    text = "\n".join(lines) + "\n"
    for raw in task.extra.values():
        text += raw if raw.endswith("\n") else raw + "\n"
    text += f"{DELIMITER}\n\n{task.notes}\n"
    return text.encode("utf-8")


# ---- atomic file operations ----


@contextlib.contextmanager
def atomic_open(path: str | Path) -> Iterator[IO[bytes]]:
    """
    Yield a temp file in the destination directory; on clean exit it is
    flushed, fsync'd and renamed over `path`. On error the temp file is removed
    and the destination is left as it was.
    """
    path = Path(path)
    tmp_name: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=path.parent,
            prefix=f"{RESERVED_PREFIX}{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as fh:
            tmp_name = fh.name
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise StorageError(f"failed to write {path}: {e}") from e
    finally:
        if tmp_name is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)


def atomic_write(path: str | Path, data: bytes) -> None:
    with atomic_open(path) as fh:
        fh.write(data)


def read_task(path: Path) -> Task:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise StorageError(f"failed to read {path}: {e}") from e
    return decode(data, path.name)


def write_task(folder: Path, task: Task) -> Path:
    path = folder / title_to_filename(task.title)
    atomic_write(path, encode(task))
    logger.debug("Task written id=%s path=%s", task.id, path)
    return path
