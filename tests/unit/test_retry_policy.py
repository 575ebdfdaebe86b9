"""Tests for the async RetryPolicy and the sqlite lock retry decorator"""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from swipeq.infrastructure.database import retry_on_db_lock
from swipeq.infrastructure.retry import RetryPolicy, WorkerAPIError
from swipeq.observability.telemetry import counter


class FlakyCall:
    def __init__(self, *errors: WorkerAPIError, result: str = "ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def make_policy(delays: list[float], **kwargs) -> RetryPolicy:
    async def record(delay: float) -> None:
        delays.append(delay)

    return RetryPolicy(stage="test", jitter=0.0, sleep_fn=record, **kwargs)


def test_retries_server_errors_then_succeeds():
    delays: list[float] = []
    call = FlakyCall(WorkerAPIError("boom", 503), WorkerAPIError("boom", 502))

    result = asyncio.run(make_policy(delays).execute(call))

    assert result == "ok"
    assert call.calls == 3
    assert delays == [1.0, 2.0]
    assert counter("retry_count", 0) == 2


def test_retries_when_no_response_received():
    call = FlakyCall(WorkerAPIError("connection refused"))
    assert asyncio.run(make_policy([]).execute(call)) == "ok"
    assert call.calls == 2


@pytest.mark.parametrize("status", [408, 429])
def test_retries_timeout_and_rate_limit(status):
    call = FlakyCall(WorkerAPIError("slow down", status))
    assert asyncio.run(make_policy([]).execute(call)) == "ok"


@pytest.mark.parametrize("status", [400, 401, 404, 422])
def test_client_errors_are_not_retried(status):
    delays: list[float] = []
    call = FlakyCall(WorkerAPIError("bad", status))

    with pytest.raises(WorkerAPIError) as exc_info:
        asyncio.run(make_policy(delays).execute(call))

    assert exc_info.value.status_code == status
    assert call.calls == 1
    assert delays == []


def test_gives_up_after_max_attempts_with_last_error():
    call = FlakyCall(
        WorkerAPIError("first", 500), WorkerAPIError("second", 500), WorkerAPIError("third", 503)
    )

    with pytest.raises(WorkerAPIError, match="third"):
        asyncio.run(make_policy([]).execute(call))
    assert call.calls == 3


def test_backoff_is_capped():
    delays: list[float] = []
    call = FlakyCall(*[WorkerAPIError("down", 503) for _ in range(4)])

    asyncio.run(make_policy(delays, max_attempts=5, base_delay=1.0, max_delay=3.0).execute(call))

    assert delays == [1.0, 2.0, 3.0, 3.0]


def test_error_flags():
    assert WorkerAPIError("x", 404).is_not_found
    assert WorkerAPIError("x", 429).is_client_error
    assert not WorkerAPIError("x", 500).is_client_error
    assert not WorkerAPIError("x").is_client_error


def test_db_lock_retry_recovers():
    attempts = {"n": 0}

    @retry_on_db_lock(max_retries=3)
    def write():
        attempts["n"] += 1
        if attempts["n"] < 2:
            raise sqlite3.OperationalError("database is locked")
        return "written"

    assert write() == "written"
    assert attempts["n"] == 2
    assert counter("database.lock_retry", 0) == 1


def test_db_lock_retry_ignores_other_errors():
    attempts = {"n": 0}

    @retry_on_db_lock(max_retries=3)
    def write():
        attempts["n"] += 1
        raise sqlite3.OperationalError("no such table: kv_store")

    with pytest.raises(sqlite3.OperationalError, match="no such table"):
        write()
    assert attempts["n"] == 1
