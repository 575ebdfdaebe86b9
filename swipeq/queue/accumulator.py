"""
Batch accumulator - debounces right-swipes into one submission per quiet period.

One instance per profile. ``add_swiped_job`` is synchronous and never touches
the network; the debounce timer and explicit flushes converge on a single
in-flight flush task.

Triggers for a flush:
    - debounce window elapsed with no new swipe
    - batch reached MAX_BATCH_SIZE jobs
    - batch armed for MAX_BATCH_AGE_SECONDS (timer delay is capped, so
      continuous swiping cannot postpone it)
    - explicit flush_and_reset() (profile switch, teardown)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from swipeq.config import DEBOUNCE_MS, MAX_BATCH_AGE_SECONDS, MAX_BATCH_SIZE, MAX_JOB_RETRIES
from swipeq.observability.logging import get_logger
from swipeq.observability.telemetry import counter, log_event
from swipeq.queue.errors import ErrorKind, QueueError
from swipeq.queue.manager import QueueManager
from swipeq.queue.models import (
    Automation,
    FlushResult,
    JobSnapshot,
    PendingBatch,
    PendingJob,
    ResumeSettings,
    Settlement,
    SwipeDirection,
    SwipeEvent,
    is_valid_id,
)
from swipeq.queue.snapshot_cache import SnapshotCache
from swipeq.storage import KeyValueStore

logger = get_logger(__name__)

BATCH_KEY_PREFIX = "swipe_batch_pending_jobs:"

BatchSentCallback = Callable[[Automation | None, int], Any]
BatchErrorCallback = Callable[[QueueError], Any]


def batch_key(profile_id: str) -> str:
    return f"{BATCH_KEY_PREFIX}{profile_id}"


class BatchAccumulator:
    """
    Per-profile pending batch with debounce, safety valves and retry bookkeeping.

    Failed jobs:
        - NO_PROFILE / INVALID_URL: dropped, reported once
        - NETWORK_ERROR: ``attempts`` incremented, job retained ahead of newer
          jobs; dropped and reported once attempts reach ``max_job_retries``

    Callbacks are reporting only. An exception raised by one is logged and
    does not affect the batch.
    """

    def __init__(
        self,
        profile_id: str,
        manager: QueueManager,
        snapshot_cache: SnapshotCache,
        store: KeyValueStore,
        profile_name: str | None = None,
        resume_settings: ResumeSettings | None = None,
        on_batch_sent: BatchSentCallback | None = None,
        on_batch_error: BatchErrorCallback | None = None,
        debounce_seconds: float = DEBOUNCE_MS / 1000,
        max_batch_size: int = MAX_BATCH_SIZE,
        max_batch_age: float = MAX_BATCH_AGE_SECONDS,
        max_job_retries: int = MAX_JOB_RETRIES,
    ):
        self.profile_id = profile_id
        self.profile_name = profile_name
        self.resume_settings = resume_settings
        self.on_batch_sent = on_batch_sent
        self.on_batch_error = on_batch_error

        self._manager = manager
        self._cache = snapshot_cache
        self._store = store
        self._debounce = debounce_seconds
        self._max_batch_size = max_batch_size
        self._max_batch_age = max_batch_age
        self._max_job_retries = max_job_retries

        self._batch = PendingBatch(profile_id=profile_id)
        self._inflight_jobs: list[PendingJob] = []
        self._inflight: asyncio.Future[FlushResult] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Future[Any]] = set()
        self._last_error: QueueError | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pending_jobs(self) -> list[PendingJob]:
        return list(self._batch.jobs)

    @property
    def is_sending(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def last_error(self) -> QueueError | None:
        return self._last_error

    def time_until_batch(self) -> float | None:
        """Seconds until the armed timer fires, or None when idle."""
        if self._timer is None:
            return None
        loop = asyncio.get_running_loop()
        return max(0.0, self._timer.when() - loop.time())

    # ------------------------------------------------------------------
    # Swipe path (synchronous)
    # ------------------------------------------------------------------

    def add_swiped_job(self, event: SwipeEvent) -> bool:
        """
        Record a right-swipe. Returns True when the job joined the batch.

        Left swipes are ignored. Duplicates (same URL already in the batch)
        refresh the snapshot but are otherwise silent.
        """
        if event.direction != SwipeDirection.RIGHT:
            return False

        if not is_valid_id(self.profile_id):
            self._report_error(QueueError.no_profile().with_url(event.resolved_url()))
            return False

        try:
            job = PendingJob.from_event(event)
        except QueueError as e:
            counter("accumulator.invalid_url")
            self._report_error(e)
            return False

        self._cache.put(JobSnapshot.from_event(event))

        if self._batch.has_url(job.url) or any(j.url == job.url for j in self._inflight_jobs):
            counter("accumulator.duplicate_swipe")
            logger.debug("Ignoring duplicate swipe for %s", job.url)
            return False

        self._batch.add(job)
        if self._batch.armed_at is None:
            self._batch.armed_at = time.time()
        self._persist()
        counter("accumulator.job_added")

        if len(self._batch.jobs) >= self._max_batch_size:
            logger.info(
                "Batch for profile %s reached %d jobs, flushing", self.profile_id, len(self._batch.jobs)
            )
            self._schedule_flush(0)
        else:
            self._arm_timer()
        return True

    def clear_pending_jobs(self) -> None:
        self._cancel_timer()
        self._batch = PendingBatch(profile_id=self.profile_id)
        self._persist()

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush_and_reset(self) -> FlushResult:
        """
        Submit the batch as it is right now and clear it.

        An empty batch returns an empty FlushResult without network or
        callbacks. A call made while a flush is running awaits that flush.
        """
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            return await asyncio.shield(inflight)

        self._cancel_timer()
        jobs = self._batch.jobs
        if not jobs:
            return FlushResult(profile_id=self.profile_id)

        self._batch = PendingBatch(profile_id=self.profile_id)
        self._inflight_jobs = jobs
        self._inflight = asyncio.ensure_future(self._submit(jobs, self.resume_settings))
        return await asyncio.shield(self._inflight)

    async def drain(self) -> FlushResult:
        """
        Flush until every job in the batch has been submitted at least once.

        Unlike flush_and_reset(), joining a running flush is not the end:
        jobs swiped while it was in flight are flushed afterwards. Jobs that
        were retained stay in the batch. The returned result covers every
        flush this call awaited.
        """
        attempted: set[str] = set()
        total = FlushResult(profile_id=self.profile_id)
        while self.is_sending or any(job.url not in attempted for job in self._batch.jobs):
            if self.is_sending:
                attempted.update(job.url for job in self._inflight_jobs)
            else:
                attempted.update(job.url for job in self._batch.jobs)
            total.absorb(await self.flush_and_reset())
        return total

    async def _submit(
        self, jobs: list[PendingJob], settings: ResumeSettings | None
    ) -> FlushResult:
        result = FlushResult(profile_id=self.profile_id)
        log_event("accumulator.flush_started", profile_id=self.profile_id, jobs=len(jobs))

        try:
            for job in jobs:
                settled = self._manager.settlement(self.profile_id, job.url) if job.attempts else None
                if settled is Settlement.ACKNOWLEDGED:
                    # accepted through sync_pending_urls since the last attempt
                    result.sent.append(job)
                    continue
                if settled is Settlement.ABANDONED:
                    self._give_up(job, result, "Abandoned after repeated failed syncs")
                    continue

                outcome = await self._manager.add_job_to_queue(
                    self.profile_id,
                    job.url,
                    job.details(),
                    self.profile_name,
                    settings,
                )
                if outcome.success:
                    result.sent.append(job)
                    continue

                error = outcome.error or QueueError.network("Unknown submission failure")
                self._last_error = error
                if error.is_permanent:
                    result.dropped.append(job)
                    result.errors.append(error)
                    continue

                job.attempts += 1
                if job.attempts >= self._max_job_retries:
                    self._manager.discard_pending(self.profile_id, job.url)
                    self._give_up(
                        job,
                        result,
                        f"Gave up after {job.attempts} attempts: {error.message}",
                        status_code=error.status_code,
                    )
                else:
                    result.retained.append(job)
        finally:
            self._inflight_jobs = []
            self._merge_retained(jobs, result)

        result.automation = self._manager.get_automation_for_profile(self.profile_id)
        counter("accumulator.flush")
        log_event(
            "accumulator.flush_finished",
            profile_id=self.profile_id,
            sent=len(result.sent),
            retained=len(result.retained),
            dropped=len(result.dropped),
        )

        if result.sent:
            self._notify(self.on_batch_sent, result.automation, result.job_count)
        for error in result.errors:
            self._notify(self.on_batch_error, error)
        return result

    def _give_up(
        self,
        job: PendingJob,
        result: FlushResult,
        message: str,
        status_code: int | None = None,
    ) -> None:
        result.dropped.append(job)
        result.errors.append(
            QueueError(ErrorKind.NETWORK_ERROR, message, job_url=job.url, status_code=status_code)
        )
        counter("accumulator.job_dropped")

    def _merge_retained(self, submitted: list[PendingJob], result: FlushResult) -> None:
        # jobs never reached because the flush was interrupted are retained too
        done = {id(job) for job in result.sent + result.retained + result.dropped}
        retained = result.retained + [job for job in submitted if id(job) not in done]

        if retained:
            retained_urls = {job.url for job in retained}
            newer = [job for job in self._batch.jobs if job.url not in retained_urls]
            self._batch.jobs = retained + newer
            self._batch.armed_at = self._batch.armed_at or time.time()
        self._persist()
        if self._batch.jobs:
            self._arm_timer()

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _arm_timer(self, delay: float | None = None) -> None:
        if delay is None:
            delay = self._debounce
            if self._batch.armed_at is not None:
                remaining_age = self._batch.armed_at + self._max_batch_age - time.time()
                delay = min(delay, max(0.0, remaining_age))
        self._schedule_flush(delay)

    def _schedule_flush(self, delay: float) -> None:
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; batch for %s flushes on restore", self.profile_id)
            return
        self._timer = loop.call_later(delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if not self._batch.jobs or self.is_sending:
            return
        task = asyncio.ensure_future(self.flush_and_reset())
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Future[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background flush for %s failed: %s", self.profile_id, exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        inflight_urls = {job.url for job in self._inflight_jobs}
        jobs = self._inflight_jobs + [job for job in self._batch.jobs if job.url not in inflight_urls]
        if not jobs:
            self._store.remove_item(batch_key(self.profile_id))
            return
        snapshot = PendingBatch(
            profile_id=self.profile_id, jobs=jobs, armed_at=self._batch.armed_at
        )
        self._store.set_json(batch_key(self.profile_id), snapshot.model_dump(mode="json"))

    def restore(self) -> int:
        """
        Rehydrate the persisted batch after a restart.

        The timer is re-armed for what is left of the debounce window since
        the last swipe; an elapsed window flushes right away.

        Returns:
            Number of jobs restored
        """
        raw = self._store.get_json(batch_key(self.profile_id))
        if not raw:
            return 0
        try:
            stored = PendingBatch.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable batch for profile %s: %s", self.profile_id, e)
            self._store.remove_item(batch_key(self.profile_id))
            return 0

        restored = 0
        for job in stored.jobs:
            if self._batch.add(job):
                restored += 1
        if not self._batch.jobs:
            return 0
        if self._batch.armed_at is None:
            self._batch.armed_at = stored.armed_at or time.time()

        last_swipe = self._batch.last_swiped_at() or time.time()
        remaining = self._debounce - (time.time() - last_swipe)
        remaining_age = self._batch.armed_at + self._max_batch_age - time.time()
        delay = max(0.0, min(remaining, remaining_age))
        self._schedule_flush(delay)
        self._persist()

        log_event(
            "accumulator.restored",
            profile_id=self.profile_id,
            jobs=restored,
            flush_in=round(delay, 3),
        )
        return restored

    def close(self) -> None:
        """Cancel the timer. The batch stays persisted for restore()."""
        self._cancel_timer()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _report_error(self, error: QueueError) -> None:
        self._last_error = error
        log_event("accumulator.error", kind=error.kind.value, url=error.job_url, error=error.message)
        self._notify(self.on_batch_error, error)

    def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Batch callback %r raised", callback)
