# src/mdtasks/errors.py

"""
Error taxonomy.

Every error raised by the package derives from MdTasksError so front ends can
catch one base class. Local file-system failures are wrapped in StorageError
(raised "from" the original OSError) and always propagate; transport failures
are classified so the sync engine can decide between retry, queue and surface.
"""

from __future__ import annotations


class MdTasksError(Exception):
    """Base class for all package errors."""


# ---- validation ----


class ValidationError(MdTasksError):
    """Malformed input to an operation."""


class ParseError(ValidationError):
    """A task file could not be decoded."""

    def __init__(self, message: str, *, filename: str | None = None) -> None:
        self.filename = filename
        if filename:
            message = f"{filename}: {message}"
        super().__init__(message)


class TitleConflict(ValidationError):
    """Another task (or list) already uses this title."""


class InvalidPath(ValidationError):
    """A workspace path cannot be created or is not writable."""


class DuplicateWorkspace(ValidationError):
    """A workspace with this name is already registered."""


# ---- lookup ----


class NotFoundError(MdTasksError):
    """Unknown task, list or workspace."""


class TaskNotFound(NotFoundError):
    pass


class ListNotFound(NotFoundError):
    pass


class UnknownWorkspace(NotFoundError):
    pass


# ---- storage / config ----


class StorageError(MdTasksError):
    """File-system failure while reading or writing workspace data."""


class ConfigError(MdTasksError):
    """The workspace registry or a metadata file is corrupt."""


# ---- sync ----


class ConflictError(MdTasksError):
    """Local and remote copies diverged and need an explicit resolution."""


class TransportError(MdTasksError):
    """Base class for remote store failures."""

    #: Transient errors are retried and then queued; others are not.
    transient: bool = False


class RemoteNotFound(TransportError):
    pass


class AuthFailure(TransportError):
    """Credentials were rejected. Never retried."""


class RemoteConnectionError(TransportError):
    """Connectivity problem or timeout."""

    transient = True


class RemoteServerError(TransportError):
    """The server answered with an error status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:  # type: ignore[override]
        return self.status_code is None or self.status_code >= 500
