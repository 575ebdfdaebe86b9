"""
Async retry helper with exponential backoff and jitter for worker API calls.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from swipeq.observability.telemetry import counter, log_event

T = TypeVar("T")


class WorkerAPIError(RuntimeError):
    """Failure talking to the automation worker.

    ``status_code`` is None when no HTTP response was received (DNS, refused
    connection, timeout).
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


@dataclass
class RetryPolicy:
    stage: str
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.25
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def execute(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Await ``func`` until it succeeds, a non-retryable error occurs,
        or attempts run out. The last error is re-raised."""
        attempt = 0
        last_error: Exception | None = None

        while attempt < self.max_attempts:
            attempt += 1
            try:
                return await func(*args, **kwargs)
            except WorkerAPIError as exc:
                if not self._should_retry(exc):
                    log_event(
                        "stage_error",
                        stage=self.stage,
                        error=str(exc),
                        status=exc.status_code,
                        attempt=attempt,
                    )
                    raise
                last_error = exc
                log_event(
                    "stage_error",
                    stage=self.stage,
                    error=str(exc),
                    status=exc.status_code,
                    attempt=attempt,
                )

            if attempt >= self.max_attempts:
                break

            await self._backoff(attempt)

        assert last_error is not None
        raise last_error

    def _should_retry(self, exc: WorkerAPIError) -> bool:
        status = exc.status_code
        if status is None:
            return True
        return bool(status in (408, 429) or 500 <= status < 600)

    async def _backoff(self, attempt: int) -> None:
        counter("retry_count")
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        delay += random.uniform(0, self.jitter)
        log_event("retry_scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
        await self.sleep_fn(delay)
