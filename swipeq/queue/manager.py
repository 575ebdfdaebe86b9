"""
Queue manager - profile-scoped automations and idempotent URL submission.

Owns the automation-by-profile map and the list of URLs handed over but not
yet acknowledged by the worker. Both survive restarts through the KV store.

Submission flow for one URL:
    1. Record it as pending (deduplicated by profile + URL)
    2. Cached automation -> POST /automations/{id}/urls
       (a 404 drops the stale reference and falls through)
    3. No automation -> adopt an active direct_urls automation of the profile,
       otherwise create one seeded with the URL
    4. Acknowledged -> remove the pending entry, stamp last sync
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

from cachetools import LRUCache
from pydantic import ValidationError

from swipeq.config import (
    API_RETRY_BASE_DELAY,
    API_RETRY_JITTER,
    API_RETRY_MAX_ATTEMPTS,
    API_RETRY_MAX_DELAY,
    MAX_JOB_RETRIES,
    SETTLEMENT_MEMORY_SIZE,
    SYNC_ENTRY_DELAY_SECONDS,
)
from swipeq.infrastructure.retry import RetryPolicy, WorkerAPIError
from swipeq.observability.logging import get_logger
from swipeq.observability.telemetry import counter, log_event
from swipeq.queue.client import WorkerClient, job_details_payload
from swipeq.queue.errors import ErrorKind, QueueError
from swipeq.queue.models import (
    AddJobResult,
    Automation,
    JobDetails,
    PendingUrlEntry,
    QueueEntry,
    QueueStats,
    ResumeSettings,
    Settlement,
    SyncSummary,
    UrlStatus,
    is_valid_id,
    utc_now,
)
from swipeq.storage import KeyValueStore

logger = get_logger(__name__)

PROFILE_MAP_KEY = "automation_profile_map"
PENDING_URLS_KEY = "automation_pending_urls"
LAST_SYNC_KEY = "automation_last_sync"


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        stage="worker_api",
        max_attempts=API_RETRY_MAX_ATTEMPTS,
        base_delay=API_RETRY_BASE_DELAY,
        max_delay=API_RETRY_MAX_DELAY,
        jitter=API_RETRY_JITTER,
    )


class QueueManager:
    """
    Translates accumulated jobs into queue entries on the automation worker.

    Single-writer: meant to be driven from one event loop. Creation of a
    profile's automation is serialized per profile so two concurrent
    submissions never create two automations.
    """

    def __init__(
        self,
        store: KeyValueStore,
        client: WorkerClient,
        retry_policy: RetryPolicy | None = None,
        sync_delay: float = SYNC_ENTRY_DELAY_SECONDS,
        max_retries: int = MAX_JOB_RETRIES,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._client = client
        self._retry = retry_policy or default_retry_policy()
        self._sync_delay = sync_delay
        self._max_retries = max_retries
        self._sleep = sleep_fn

        self._automations: dict[str, Automation] = {}
        self._pending: list[PendingUrlEntry] = []
        self._settled: LRUCache[tuple[str, str], Settlement] = LRUCache(SETTLEMENT_MEMORY_SIZE)
        self._profile_locks: dict[str, asyncio.Lock] = {}
        self._sync_task: asyncio.Task[SyncSummary] | None = None
        self._initialized = False
        self.last_sync: datetime | None = None

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Load cached automations and pending URLs from the store. Idempotent.

        Entries with invalid ids (empty, "undefined", "null") are purged and
        the cleaned state is written back.
        """
        if self._initialized:
            return
        self._initialized = True

        purged = 0
        raw_map = self._store.get_json(PROFILE_MAP_KEY, {})
        for profile_id, data in (raw_map if isinstance(raw_map, dict) else {}).items():
            if not is_valid_id(profile_id):
                purged += 1
                continue
            try:
                automation = Automation.from_dict({**data, "jobProfileId": profile_id})
            except (ValidationError, TypeError):
                purged += 1
                continue
            self._automations[profile_id] = automation

        raw_pending = self._store.get_json(PENDING_URLS_KEY, [])
        for data in raw_pending if isinstance(raw_pending, list) else []:
            try:
                entry = PendingUrlEntry.model_validate(data)
            except ValidationError:
                purged += 1
                continue
            if not is_valid_id(entry.profile_id) or not entry.url:
                purged += 1
                continue
            self._pending.append(entry)

        last_sync = self._store.get_item(LAST_SYNC_KEY)
        if last_sync:
            try:
                self.last_sync = datetime.fromisoformat(last_sync)
            except ValueError:
                logger.warning("Ignoring unreadable last sync timestamp: %r", last_sync)

        if purged:
            counter("queue.purged_invalid", purged)
            logger.warning("Purged %d invalid cached automation/pending entries", purged)
            self._persist_automations()
            self._persist_pending()

        logger.info(
            "QueueManager initialized: %d automations, %d pending URLs",
            len(self._automations),
            len(self._pending),
        )

    # ------------------------------------------------------------------
    # Lookups (no network)
    # ------------------------------------------------------------------

    def get_automation_for_profile(self, profile_id: str) -> Automation | None:
        return self._automations.get(profile_id)

    @property
    def automations(self) -> dict[str, Automation]:
        return dict(self._automations)

    def get_pending_urls_count(self, profile_id: str | None = None) -> int:
        if profile_id is None:
            return len(self._pending)
        return sum(1 for entry in self._pending if entry.profile_id == profile_id)

    def get_pending_urls(self) -> list[PendingUrlEntry]:
        return list(self._pending)

    def is_pending(self, profile_id: str, job_url: str) -> bool:
        return self._find_pending(profile_id, job_url) is not None

    def settlement(self, profile_id: str, job_url: str) -> Settlement | None:
        """
        How ``job_url`` last left the pending list, if it did recently.

        ACKNOWLEDGED means the worker accepted it; ABANDONED means it was
        given up on (sync retry cap, stale profile) without reaching the
        worker. None when the URL is still pending or no longer remembered.
        """
        return self._settled.get((profile_id, job_url.strip()))

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def add_job_to_queue(
        self,
        profile_id: str | None,
        job_url: str | None,
        job_details: JobDetails | None = None,
        profile_name: str | None = None,
        resume_settings: ResumeSettings | None = None,
    ) -> AddJobResult:
        """
        Queue one URL for a profile, creating its automation on first use.

        Never raises for expected failures: NO_PROFILE and INVALID_URL are
        returned before any I/O, NETWORK_ERROR after the retry policy gives
        up. On NETWORK_ERROR the URL stays in the pending list for
        sync_pending_urls().
        """
        if not profile_id or not is_valid_id(profile_id):
            counter("queue.no_profile")
            return AddJobResult.failed(QueueError.no_profile().with_url(job_url or ""))
        url = (job_url or "").strip()
        if not url:
            counter("queue.invalid_url")
            return AddJobResult.failed(QueueError.invalid_url("Empty job URL"))

        details = job_details or JobDetails()
        self._settled.pop((profile_id, url), None)
        self._track_pending(
            PendingUrlEntry(
                profile_id=profile_id,
                profile_name=profile_name,
                url=url,
                job_details=details,
                resume_settings=resume_settings,
            )
        )

        try:
            async with self._lock_for(profile_id):
                automation, duplicate = await self._submit(
                    profile_id, url, details, profile_name, resume_settings
                )
        except WorkerAPIError as e:
            counter("queue.add_failed")
            logger.warning("Failed to queue %s for profile %s: %s", url, profile_id, e)
            error = QueueError.network(str(e), status_code=e.status_code).with_url(url)
            return AddJobResult.failed(error)

        self._untrack_pending(profile_id, url)
        self._settled[(profile_id, url)] = Settlement.ACKNOWLEDGED
        self._record_sync()
        counter("queue.duplicate" if duplicate else "queue.added")
        log_event(
            "queue.job_added",
            profile_id=profile_id,
            automation_id=automation.id,
            url=url,
            duplicate=duplicate,
        )
        return AddJobResult(success=True, automation_id=automation.id, duplicate=duplicate)

    async def _submit(
        self,
        profile_id: str,
        url: str,
        details: JobDetails,
        profile_name: str | None,
        resume_settings: ResumeSettings | None,
    ) -> tuple[Automation, bool]:
        job_details = [job_details_payload(url, details)]

        automation = self._automations.get(profile_id)
        if automation is not None:
            try:
                response = await self._retry.execute(
                    self._client.add_urls,
                    automation.id,
                    [url],
                    job_details=job_details,
                    profile_name=profile_name,
                    resume_settings=resume_settings,
                )
                return automation, _is_duplicate(response)
            except WorkerAPIError as e:
                if not e.is_not_found:
                    raise
                counter("queue.stale_automation")
                logger.warning(
                    "Automation %s for profile %s no longer exists, recreating",
                    automation.id,
                    profile_id,
                )
                self._forget_automation(profile_id)

        existing = await self._find_existing_automation(profile_id)
        if existing is not None:
            self._remember_automation(existing)
            response = await self._retry.execute(
                self._client.add_urls,
                existing.id,
                [url],
                job_details=job_details,
                profile_name=profile_name,
                resume_settings=resume_settings,
            )
            return existing, _is_duplicate(response)

        # Creation is not idempotent, so it gets a single attempt. A lost
        # response is reconciled by adoption on the next submission.
        created = await self._client.create_automation(
            profile_id,
            [url],
            profile_name=profile_name,
            job_details=job_details,
            resume_settings=resume_settings,
        )
        counter("queue.automation_created")
        self._remember_automation(created)
        return created, False

    async def _find_existing_automation(self, profile_id: str) -> Automation | None:
        automations = await self._retry.execute(self._client.list_automations)
        for automation in automations:
            if automation.profile_id == profile_id and automation.is_active:
                logger.info("Adopting existing automation %s for profile %s", automation.id, profile_id)
                counter("queue.automation_adopted")
                return automation
        return None

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    async def get_queue_stats(self, automation_id: str) -> QueueStats:
        """
        Fetch live counts from the worker. Never cached.

        Raises:
            QueueError: NETWORK_ERROR when the worker cannot be reached
        """
        try:
            return await self._retry.execute(self._client.get_queue_stats, automation_id)
        except WorkerAPIError as e:
            raise QueueError.network(str(e), status_code=e.status_code) from e

    async def get_urls(
        self, automation_id: str, status: UrlStatus | None = None
    ) -> list[QueueEntry]:
        try:
            return await self._retry.execute(self._client.get_urls, automation_id, status)
        except WorkerAPIError as e:
            raise QueueError.network(str(e), status_code=e.status_code) from e

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def sync_pending_urls(self) -> SyncSummary:
        """
        Resubmit every unacknowledged URL. Safe to call repeatedly.

        A call made while a sync is running awaits that sync instead of
        starting another.
        """
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.ensure_future(self._sync_pending())
        return await asyncio.shield(self._sync_task)

    async def _sync_pending(self) -> SyncSummary:
        summary = SyncSummary()
        entries = list(self._pending)
        if not entries:
            return summary

        log_event("queue.sync_started", pending=len(entries))
        for index, entry in enumerate(entries):
            current = self._find_pending(entry.profile_id, entry.url)
            if current is None:
                summary.skipped += 1
                continue

            if current.retry_count >= self._max_retries:
                self._abandon(current.profile_id, current.url)
                summary.dropped += 1
                counter("queue.pending_dropped")
                logger.warning(
                    "Dropping %s for profile %s after %d failed syncs",
                    current.url,
                    current.profile_id,
                    current.retry_count,
                )
                continue

            if index and self._sync_delay:
                await self._sleep(self._sync_delay)

            result = await self.add_job_to_queue(
                current.profile_id,
                current.url,
                current.job_details,
                current.profile_name,
                current.resume_settings,
            )
            if result.success:
                summary.submitted += 1
            elif result.error is not None and result.error.is_permanent:
                self._abandon(current.profile_id, current.url)
                summary.dropped += 1
            else:
                summary.failed += 1
                self._bump_retry(current.profile_id, current.url)

        summary.remaining = len(self._pending)
        log_event("queue.sync_finished", **summary.model_dump())
        return summary

    def discard_pending(self, profile_id: str, job_url: str) -> bool:
        """Forget an unacknowledged URL without submitting it."""
        return self._untrack_pending(profile_id, job_url)

    def cleanup_invalid_profiles(self, valid_profile_ids: Iterable[str]) -> int:
        """
        Remove cached automations and pending URLs of profiles not in
        ``valid_profile_ids``. Local only; no wire call.

        Returns:
            Number of automation references removed
        """
        valid = set(valid_profile_ids)
        stale = [profile_id for profile_id in self._automations if profile_id not in valid]
        for profile_id in stale:
            automation = self._automations.pop(profile_id)
            log_event(
                "queue.stale_profile",
                kind=ErrorKind.STALE_PROFILE.value,
                profile_id=profile_id,
                automation_id=automation.id,
            )

        kept = [entry for entry in self._pending if entry.profile_id in valid]
        dropped_pending = len(self._pending) - len(kept)
        for entry in self._pending:
            if entry.profile_id not in valid:
                self._settled[(entry.profile_id, entry.url)] = Settlement.ABANDONED

        if stale:
            self._persist_automations()
        if dropped_pending:
            self._pending = kept
            self._persist_pending()
        if stale or dropped_pending:
            logger.info(
                "Cleaned up %d stale automations and %d pending URLs",
                len(stale),
                dropped_pending,
            )
        return len(stale)

    def clear_cache(self) -> None:
        self._automations.clear()
        self._pending.clear()
        self._settled.clear()
        self.last_sync = None
        for key in (PROFILE_MAP_KEY, PENDING_URLS_KEY, LAST_SYNC_KEY):
            self._store.remove_item(key)
        logger.info("Cleared automation cache")

    # ------------------------------------------------------------------
    # Internal state
    # ------------------------------------------------------------------

    def _lock_for(self, profile_id: str) -> asyncio.Lock:
        lock = self._profile_locks.get(profile_id)
        if lock is None:
            lock = self._profile_locks[profile_id] = asyncio.Lock()
        return lock

    def _remember_automation(self, automation: Automation) -> None:
        self._automations[automation.profile_id] = automation
        self._persist_automations()

    def _forget_automation(self, profile_id: str) -> None:
        if self._automations.pop(profile_id, None) is not None:
            self._persist_automations()

    def _find_pending(self, profile_id: str, job_url: str) -> PendingUrlEntry | None:
        for entry in self._pending:
            if entry.matches(profile_id, job_url):
                return entry
        return None

    def _track_pending(self, entry: PendingUrlEntry) -> None:
        existing = self._find_pending(entry.profile_id, entry.url)
        if existing is not None:
            # refresh details, keep retry history
            entry = entry.model_copy(update={"retry_count": existing.retry_count})
            self._pending[self._pending.index(existing)] = entry
        else:
            self._pending.append(entry)
        self._persist_pending()

    def _untrack_pending(self, profile_id: str, job_url: str) -> bool:
        existing = self._find_pending(profile_id, job_url)
        if existing is None:
            return False
        self._pending.remove(existing)
        self._persist_pending()
        return True

    def _abandon(self, profile_id: str, job_url: str) -> None:
        if self._untrack_pending(profile_id, job_url):
            self._settled[(profile_id, job_url)] = Settlement.ABANDONED

    def _bump_retry(self, profile_id: str, job_url: str) -> None:
        existing = self._find_pending(profile_id, job_url)
        if existing is not None:
            existing.retry_count += 1
            self._persist_pending()

    def _record_sync(self) -> None:
        self.last_sync = utc_now()
        self._store.set_item(LAST_SYNC_KEY, self.last_sync.isoformat())

    def _persist_automations(self) -> None:
        self._store.set_json(
            PROFILE_MAP_KEY,
            {profile_id: automation.to_dict() for profile_id, automation in self._automations.items()},
        )

    def _persist_pending(self) -> None:
        self._store.set_json(
            PENDING_URLS_KEY, [entry.model_dump(mode="json") for entry in self._pending]
        )


def _is_duplicate(response: dict[str, Any]) -> bool:
    return not response.get("added") and bool(response.get("duplicates"))
