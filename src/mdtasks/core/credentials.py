# src/mdtasks/core/credentials.py

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from urllib.parse import urlsplit

from ..errors import ConfigError, StorageError, ValidationError
from ..tasks.task_codec import atomic_write

logger = logging.getLogger(__name__)

CREDENTIAL_SERVICE = "mdtasks.webdav"


def credential_key_for_url(url: str) -> str:
    """Keychain-style key for a WebDAV server: one entry per host."""
    host = urlsplit(url.strip()).hostname
    if not host:
        raise ValidationError(f"remote URL has no host: {url!r}")
    return f"{CREDENTIAL_SERVICE}.{host}"


class FileCredentialStore:
    """
    CredentialStore backed by a private JSON file (mode 0600).

    Stand-in for a platform keychain: the file lives in the config dir and
    must never be committed or synced.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        try:
            raw = self._path.read_text("utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageError(f"failed to read {self._path}: {e}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{self._path}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{self._path}: expected a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"failed to create {self._path.parent}: {e}") from e
        atomic_write(self._path, (json.dumps(data, indent=2, sort_keys=True) + "\n").encode("utf-8"))
        # Best-effort: not supported on every file system.
        with contextlib.suppress(OSError):
            os.chmod(self._path, 0o600)

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, secret: str) -> None:
        data = self._read()
        data[key] = secret
        self._write(data)
        logger.info("Credential stored key=%s", key)

    def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)
            logger.info("Credential deleted key=%s", key)
