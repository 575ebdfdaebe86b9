"""
SwipeSession - explicit owner of all swipe queue state.

Nothing in swipeq is a module-level singleton: the store, the HTTP client,
the snapshot cache, the queue manager and the profile guard all hang off one
session with a defined init/teardown, so tests can run isolated sessions side
by side.

Usage:
    async with SwipeSession(db_path="state.db") as session:
        await session.select_profile("profile-1", "Backend roles")
        session.swipe(SwipeEvent(job_id="j1", apply_url="https://...", title="..."))
        await session.flush()
"""

from __future__ import annotations

from pathlib import Path

import httpx

from swipeq.config import (
    DEBOUNCE_MS,
    MAX_BATCH_AGE_SECONDS,
    MAX_BATCH_SIZE,
    MAX_JOB_RETRIES,
    SNAPSHOT_CACHE_CAPACITY,
    STATE_DB_PATH,
    SYNC_ENTRY_DELAY_SECONDS,
    WORKER_API_TOKEN,
    WORKER_API_URL,
)
from swipeq.infrastructure.retry import RetryPolicy
from swipeq.observability.logging import get_logger
from swipeq.queue.accumulator import BatchAccumulator, BatchErrorCallback, BatchSentCallback
from swipeq.queue.client import WorkerClient
from swipeq.queue.manager import QueueManager
from swipeq.queue.models import FlushResult, ResumeSettings, SwipeEvent, SyncSummary
from swipeq.queue.profile_guard import ProfileScopeGuard
from swipeq.queue.snapshot_cache import SnapshotCache
from swipeq.storage import KeyValueStore

logger = get_logger(__name__)


class SessionNotInitializedError(RuntimeError):
    """Raised when a session component is used before init()."""


class SwipeSession:
    def __init__(
        self,
        db_path: str | Path = STATE_DB_PATH,
        base_url: str = WORKER_API_URL,
        token: str | None = WORKER_API_TOKEN,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
        on_batch_sent: BatchSentCallback | None = None,
        on_batch_error: BatchErrorCallback | None = None,
        debounce_seconds: float = DEBOUNCE_MS / 1000,
        max_batch_size: int = MAX_BATCH_SIZE,
        max_batch_age: float = MAX_BATCH_AGE_SECONDS,
        max_job_retries: int = MAX_JOB_RETRIES,
        snapshot_capacity: int = SNAPSHOT_CACHE_CAPACITY,
        sync_delay: float = SYNC_ENTRY_DELAY_SECONDS,
    ):
        self.db_path = db_path
        self.base_url = base_url
        self.on_batch_sent = on_batch_sent
        self.on_batch_error = on_batch_error

        self._token = token
        self._transport = transport
        self._retry_policy = retry_policy
        self._debounce = debounce_seconds
        self._max_batch_size = max_batch_size
        self._max_batch_age = max_batch_age
        self._max_job_retries = max_job_retries
        self._snapshot_capacity = snapshot_capacity
        self._sync_delay = sync_delay

        self._store: KeyValueStore | None = None
        self._client: WorkerClient | None = None
        self._cache: SnapshotCache | None = None
        self._manager: QueueManager | None = None
        self._guard: ProfileScopeGuard | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> SwipeSession:
        """
        Open local state and hydrate caches. Idempotent.

        Side Effects:
            - Opens the SQLite state store
            - Creates the worker HTTP client
            - Loads cached automations, pending URLs and job snapshots
            - Drops snapshots older than 30 days
        """
        if self._guard is not None:
            return self

        self._store = KeyValueStore(self.db_path)
        self._store.open()
        self._client = WorkerClient(self.base_url, token=self._token, transport=self._transport)
        self._manager = QueueManager(
            self._store,
            self._client,
            retry_policy=self._retry_policy,
            sync_delay=self._sync_delay,
            max_retries=self._max_job_retries,
        )
        self._manager.initialize()
        self._cache = SnapshotCache(self._store, capacity=self._snapshot_capacity)
        self._cache.ensure_cache_loaded()
        self._cache.cleanup_old_entries()
        self._guard = ProfileScopeGuard(self._make_accumulator, on_error=self._on_error)
        logger.info("Swipe session ready (db=%s, worker=%s)", self.db_path, self.base_url)
        return self

    async def teardown(self, flush: bool = True) -> FlushResult | None:
        """
        Release everything init() acquired.

        With ``flush`` the active batch is submitted first; jobs that fail
        stay persisted and are restored by the next session.
        """
        result = None
        if self._guard is not None:
            if flush:
                result = await self._guard.flush()
            self._guard.close()
        if self._client is not None:
            await self._client.aclose()
        if self._store is not None:
            self._store.close()

        self._guard = None
        self._manager = None
        self._cache = None
        self._client = None
        self._store = None
        logger.info("Swipe session closed")
        return result

    async def __aenter__(self) -> SwipeSession:
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.teardown(flush=exc_type is None)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def store(self) -> KeyValueStore:
        return _require(self._store, "store")

    @property
    def manager(self) -> QueueManager:
        return _require(self._manager, "manager")

    @property
    def snapshot_cache(self) -> SnapshotCache:
        return _require(self._cache, "snapshot_cache")

    @property
    def guard(self) -> ProfileScopeGuard:
        return _require(self._guard, "guard")

    def _make_accumulator(self, profile_id: str, profile_name: str | None) -> BatchAccumulator:
        return BatchAccumulator(
            profile_id,
            self.manager,
            self.snapshot_cache,
            self.store,
            profile_name=profile_name,
            on_batch_sent=self._on_sent,
            on_batch_error=self._on_error,
            debounce_seconds=self._debounce,
            max_batch_size=self._max_batch_size,
            max_batch_age=self._max_batch_age,
            max_job_retries=self._max_job_retries,
        )

    def _on_sent(self, automation, job_count: int) -> None:
        if self.on_batch_sent is not None:
            self.on_batch_sent(automation, job_count)

    def _on_error(self, error) -> None:
        if self.on_batch_error is not None:
            self.on_batch_error(error)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    async def select_profile(self, profile_id: str | None, profile_name: str | None = None):
        return await self.guard.switch_profile(profile_id, profile_name)

    def swipe(self, event: SwipeEvent) -> bool:
        return self.guard.add_swiped_job(event)

    def set_resume_settings(self, settings: ResumeSettings | None) -> None:
        self.guard.update_resume_settings(settings)

    async def flush(self) -> FlushResult:
        return await self.guard.flush()

    async def sync(self) -> SyncSummary:
        return await self.manager.sync_pending_urls()


def _require(component, name: str):
    if component is None:
        raise SessionNotInitializedError(f"SwipeSession.{name} used before init()")
    return component
