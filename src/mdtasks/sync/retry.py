# src/mdtasks/sync/retry.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from ..errors import RemoteConnectionError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_TIMEOUT_SECONDS = 20.0


def _positive(value: Any, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return v if v > 0 else default


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff for transient transport failures."""

    base_seconds: float = 1.0
    factor: float = 2.0
    cap_seconds: float = 30.0
    max_attempts: int = 5
    # Hard limit for every single transport call.
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not self.timeout_seconds or self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {self.timeout_seconds!r}")

    @classmethod
    def from_settings(cls, settings: Any) -> RetryPolicy:
        return cls(
            base_seconds=float(getattr(settings, "retry_base_seconds", 1.0)),
            factor=float(getattr(settings, "retry_factor", 2.0)),
            cap_seconds=float(getattr(settings, "retry_cap_seconds", 30.0)),
            max_attempts=max(1, int(getattr(settings, "retry_max_attempts", 5))),
            timeout_seconds=_positive(getattr(settings, "transport_timeout_seconds", None), DEFAULT_TIMEOUT_SECONDS),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the `attempt`-th failure (1-based)."""
        return min(self.base_seconds * (self.factor ** (attempt - 1)), self.cap_seconds)

    def delays(self) -> list[float]:
        return [self.delay_for(i) for i in range(1, self.max_attempts)]


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    sleep: SleepFn = asyncio.sleep,
    describe: str = "transport call",
) -> T:
    """
    Await `fn()` with a timeout, retrying transient failures.

    Timeouts count as RemoteConnectionError. Non-transient errors (auth, not
    found, 4xx) are raised on first sight. After the last attempt the final
    transient error is raised for the caller to queue.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(fn(), timeout=policy.timeout_seconds)
        except TimeoutError as e:
            err: TransportError = RemoteConnectionError(f"{describe}: timed out after {policy.timeout_seconds}s")
            err.__cause__ = e
        except TransportError as e:
            if not e.transient:
                raise
            err = e

        if attempt >= policy.max_attempts:
            logger.warning("%s failed after %d attempts: %s", describe, attempt, err)
            raise err

        delay = policy.delay_for(attempt)
        logger.info(
            "%s failed (attempt %d/%d), retrying in %.1fs: %s",
            describe,
            attempt,
            policy.max_attempts,
            delay,
            err,
        )
        await sleep(delay)
