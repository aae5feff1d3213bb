# src/mdtasks/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time (WebDAV passwords live in the credential store).
- Every knob has a sane default; MDTASKS_* variables override them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "MDTASKS"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_positive_float(name: str, default: float) -> float:
    v = _env_float(name, default)
    return v if v > 0 else default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local paths ----
    config_dir: Path
    log_dir: Path

    # ---- Transport ----
    transport_timeout_seconds: float
    connect_timeout_seconds: float

    # ---- Retry / backoff ----
    retry_base_seconds: float
    retry_factor: float
    retry_cap_seconds: float
    retry_max_attempts: int

    # ---- Background sync ----
    sync_interval_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "mdtasks") or "mdtasks"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        config_dir = _env_path(_k("CONFIG_DIR"), Path("~/.config/mdtasks").expanduser())
        log_dir = _env_path(_k("LOG_DIR"), config_dir / "logs")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            config_dir=config_dir,
            log_dir=log_dir,
            transport_timeout_seconds=_env_positive_float(_k("TRANSPORT_TIMEOUT_SECONDS"), 20.0),
            connect_timeout_seconds=_env_positive_float(_k("CONNECT_TIMEOUT_SECONDS"), 5.0),
            retry_base_seconds=_env_float(_k("RETRY_BASE_SECONDS"), 1.0),
            retry_factor=_env_float(_k("RETRY_FACTOR"), 2.0),
            retry_cap_seconds=_env_float(_k("RETRY_CAP_SECONDS"), 30.0),
            retry_max_attempts=max(1, _env_int(_k("RETRY_MAX_ATTEMPTS"), 5)),
            sync_interval_seconds=_env_float(_k("SYNC_INTERVAL_SECONDS"), 300.0),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Local .env never overrides variables already set in the environment.
    load_dotenv(override=False)
    return Settings.from_env()
