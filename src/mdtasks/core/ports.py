# src/mdtasks/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The sync engine depends on Protocols instead of concrete implementations.
This keeps the remote store and the secret storage swappable and makes testing
easier (see tests/fakes.py).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True, slots=True)
class RemoteEntry:
    """One resource in the remote store, addressed relative to the store root."""

    path: str
    # None when the server reports no modification time.
    modified: datetime | None = None
    etag: str | None = None
    is_collection: bool = False
    size: int | None = None


class Transport(Protocol):
    """
    Abstract remote object store.

    Paths are "/"-separated and relative to the configured root, e.g.
    "My Tasks/Buy milk.md". Every call raises a TransportError subclass on
    failure: RemoteNotFound, AuthFailure, RemoteConnectionError or
    RemoteServerError.
    """

    async def list(self, path: str = "") -> list[RemoteEntry]:
        """Every resource under `path`, recursively."""
        ...

    async def get(self, path: str) -> tuple[bytes, datetime | None]: ...

    async def put(self, path: str, data: bytes) -> RemoteEntry | None:
        """Store `data`; returns the new entry when the server reports it."""
        ...

    async def delete(self, path: str) -> None: ...

    async def make_collection(self, path: str) -> None:
        """Create a folder; an existing folder is not an error."""
        ...

    async def aclose(self) -> None: ...


class CredentialStore(Protocol):
    """Secret storage keyed by an opaque string (see credential_key_for_url)."""

    def get(self, key: str) -> str | None: ...
    def set(self, key: str, secret: str) -> None: ...
    def delete(self, key: str) -> None: ...
