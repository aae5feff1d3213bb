# tests/test_retry.py

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from mdtasks.errors import AuthFailure, RemoteConnectionError, RemoteNotFound, RemoteServerError
from mdtasks.sync.retry import RetryPolicy, call_with_retry

from .fakes import RecordingSleep


def test_backoff_doubles_and_is_capped() -> None:
    assert RetryPolicy().delays() == [1.0, 2.0, 4.0, 8.0]
    assert RetryPolicy(max_attempts=8).delays() == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_policy_from_settings() -> None:
    settings = SimpleNamespace(
        retry_base_seconds=0.5,
        retry_factor=3,
        retry_cap_seconds=10,
        retry_max_attempts=0,
        transport_timeout_seconds=7.5,
    )
    policy = RetryPolicy.from_settings(settings)
    assert policy.max_attempts == 1
    assert policy.timeout_seconds == 7.5
    assert policy.delay_for(3) == 4.5


@pytest.mark.parametrize("raw", [0, -1, None, "soon"])
def test_timeout_cannot_be_switched_off(raw) -> None:
    policy = RetryPolicy.from_settings(SimpleNamespace(transport_timeout_seconds=raw))
    assert policy.timeout_seconds == 20.0

    with pytest.raises(ValueError):
        RetryPolicy(timeout_seconds=0)


def test_error_classification() -> None:
    assert RemoteConnectionError("x").transient
    assert RemoteServerError("x", status_code=503).transient
    assert not RemoteServerError("x", status_code=409).transient
    assert not AuthFailure("x").transient
    assert not RemoteNotFound("x").transient


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success() -> None:
    sleeps = RecordingSleep()
    attempts: list[int] = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise RemoteServerError("HTTP 502", status_code=502)
        return "ok"

    assert await call_with_retry(flaky, policy=RetryPolicy(), sleep=sleeps) == "ok"
    assert len(attempts) == 3
    assert sleeps.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    sleeps = RecordingSleep()

    async def down() -> None:
        raise RemoteConnectionError("unreachable")

    with pytest.raises(RemoteConnectionError):
        await call_with_retry(down, policy=RetryPolicy(), sleep=sleeps)
    assert sleeps.delays == [1.0, 2.0, 4.0, 8.0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [AuthFailure("HTTP 401"), RemoteNotFound("gone"), RemoteServerError("HTTP 400", status_code=400)],
)
async def test_permanent_errors_are_not_retried(error: Exception) -> None:
    sleeps = RecordingSleep()

    async def fail() -> None:
        raise error

    with pytest.raises(type(error)):
        await call_with_retry(fail, policy=RetryPolicy(), sleep=sleeps)
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_timeout_counts_as_connection_error() -> None:
    sleeps = RecordingSleep()

    async def hang() -> None:
        await asyncio.sleep(10)

    policy = RetryPolicy(max_attempts=2, timeout_seconds=0.01)
    with pytest.raises(RemoteConnectionError) as exc:
        await call_with_retry(hang, policy=policy, sleep=sleeps, describe="get A.md")

    assert isinstance(exc.value.__cause__, TimeoutError)
    assert "get A.md" in str(exc.value)
    assert sleeps.delays == [1.0]
