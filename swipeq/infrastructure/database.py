"""Local SQLite plumbing for durable client state.

The swipe queue keeps exactly one small database per session (the path comes
from ``STATE_DB_PATH`` unless a test passes ``":memory:"``). A session owns a
single connection; there is no pool because the queue runs on one event loop.

Provides:
- Connection creation with WAL and integrity checking
- ``retry_on_db_lock`` decorator (tenacity) for SQLITE_BUSY contention
- ``db_transaction`` context manager with commit/rollback
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from swipeq.config import (
    DB_CONNECT_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
)
from swipeq.observability.logging import get_logger
from swipeq.observability.telemetry import counter

F = TypeVar("F", bound=Callable[..., Any])

logger = get_logger(__name__)

MEMORY_DB = ":memory:"


def _is_lock_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _log_lock_retry(retry_state: Any) -> None:
    counter("database.lock_retry")
    logger.warning(
        "Database locked (attempt %d/%d), retrying: %s",
        retry_state.attempt_number,
        DB_RETRY_MAX,
        retry_state.outcome.exception() if retry_state.outcome else None,
    )


def retry_on_db_lock(max_retries: int = DB_RETRY_MAX) -> Callable[[F], F]:
    """
    Retry a database operation on SQLITE_BUSY / "database is locked".

    Any other OperationalError propagates immediately.

    Usage:
        @retry_on_db_lock()
        def write_value(conn, key, value):
            ...
    """
    return retry(
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=DB_RETRY_BASE_DELAY, max=DB_RETRY_MAX_DELAY),
        retry=retry_if_exception(_is_lock_error),
        before_sleep=_log_lock_retry,
        reraise=True,
    )


def create_connection(db_path: str | Path) -> sqlite3.Connection:
    """
    Open a SQLite connection with the settings the state store relies on.

    Side Effects:
        - Creates parent directory of a file-backed database
        - Executes PRAGMA statements (quick_check, journal_mode, synchronous)

    Raises:
        RuntimeError: If database corruption is detected
    """
    target = str(db_path)
    if target != MEMORY_DB:
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(target, timeout=DB_CONNECT_TIMEOUT)

    try:
        result = conn.execute("PRAGMA quick_check(1)").fetchone()
    except sqlite3.DatabaseError as e:
        conn.close()
        logger.critical("Database corruption or error during integrity check: %s", e)
        counter("database.corruption_detected")
        raise RuntimeError(f"Database corruption detected: {e}") from e
    if result[0] != "ok":
        conn.close()
        logger.critical("Database corruption detected: %s", result[0])
        counter("database.corruption_detected")
        raise RuntimeError(f"Database corruption detected: {result[0]}")

    if target != MEMORY_DB:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def db_transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """
    Commit on success, roll back on any exception.

    Side Effects:
        - Commits or rolls back the connection's current transaction
    """
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
