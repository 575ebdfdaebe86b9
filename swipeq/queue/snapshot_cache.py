"""
Snapshot cache - local job metadata keyed by job URL.

Written at swipe time so dashboards can show title/company before the worker
has returned anything. Advisory only: any non-empty server field replaces the
cached one.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any

from cachetools import FIFOCache
from pydantic import ValidationError

from swipeq.config import SNAPSHOT_CACHE_CAPACITY, SNAPSHOT_MAX_AGE_DAYS
from swipeq.observability.logging import get_logger
from swipeq.observability.telemetry import counter
from swipeq.queue.models import JobSnapshot
from swipeq.storage import KeyValueStore

logger = get_logger(__name__)

CACHE_KEY = "swiped_jobs_cache"

_SECONDS_PER_DAY = 86400


class _EvictingFIFOCache(FIFOCache):
    """FIFOCache that counts capacity evictions."""

    def popitem(self):
        key, value = super().popitem()
        counter("snapshot_cache.evicted")
        logger.debug("Evicted snapshot for %s", key)
        return key, value


class SnapshotCache:
    """
    Capacity-bounded job snapshots with write-through persistence.

    Eviction is oldest-first by write order. Every mutation rewrites the
    ``swiped_jobs_cache`` key so a restart sees the same contents.
    """

    def __init__(self, store: KeyValueStore, capacity: int = SNAPSHOT_CACHE_CAPACITY):
        self._store = store
        self._cache: FIFOCache = _EvictingFIFOCache(maxsize=capacity)
        self._loaded = False

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def capacity(self) -> int:
        return int(self._cache.maxsize)

    def ensure_cache_loaded(self) -> None:
        """Hydrate from the store once per instance; later calls are no-ops."""
        if self._loaded:
            return
        self._loaded = True

        raw = self._store.get_json(CACHE_KEY, {})
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed snapshot cache payload (%s)", type(raw).__name__)
            return

        snapshots = []
        for url, data in raw.items():
            try:
                snapshots.append(JobSnapshot.model_validate({**data, "job_url": url}))
            except (ValidationError, TypeError):
                counter("snapshot_cache.invalid_entry")
                logger.warning("Skipping unreadable snapshot for %s", url)

        # insert oldest first so FIFO order matches age
        for snapshot in sorted(snapshots, key=lambda s: s.cached_at):
            self._cache[snapshot.job_url] = snapshot
        logger.info("Loaded %d cached job snapshots", len(self._cache))

    def get_all_cached_jobs(self) -> dict[str, JobSnapshot]:
        self.ensure_cache_loaded()
        return dict(self._cache.items())

    def get_cached_job(self, job_url: str) -> JobSnapshot | None:
        self.ensure_cache_loaded()
        return self._cache.get(job_url)

    def put(self, snapshot: JobSnapshot) -> None:
        self.put_many([snapshot])

    def put_many(self, snapshots: Iterable[JobSnapshot]) -> int:
        self.ensure_cache_loaded()
        written = 0
        for snapshot in snapshots:
            if not snapshot.job_url:
                continue
            self._refresh(snapshot)
            written += 1
        if written:
            self._persist()
        return written

    def merge_server(self, job_url: str, fields: dict[str, Any]) -> JobSnapshot:
        """Overlay server-provided fields; creates the snapshot if absent."""
        self.ensure_cache_loaded()
        current = self._cache.get(job_url) or JobSnapshot(job_url=job_url)
        merged = current.merge_server(fields)
        if merged is current and job_url in self._cache:
            return current
        self._refresh(merged)
        self._persist()
        return merged

    def cleanup_old_entries(self, max_age_days: int = SNAPSHOT_MAX_AGE_DAYS) -> int:
        """Drop snapshots older than ``max_age_days``. Returns how many were removed."""
        self.ensure_cache_loaded()
        cutoff = time.time() - max_age_days * _SECONDS_PER_DAY
        stale = [url for url, snapshot in self._cache.items() if snapshot.cached_at < cutoff]
        for url in stale:
            del self._cache[url]
        if stale:
            self._persist()
            logger.info("Removed %d job snapshots older than %d days", len(stale), max_age_days)
        return len(stale)

    def clear(self) -> None:
        self._cache.clear()
        self._loaded = True
        self._store.remove_item(CACHE_KEY)

    def _refresh(self, snapshot: JobSnapshot) -> None:
        # move to the tail so eviction order follows cached_at, as after a reload
        self._cache.pop(snapshot.job_url, None)
        self._cache[snapshot.job_url] = snapshot

    def _persist(self) -> None:
        payload = {
            url: snapshot.model_dump(mode="json", exclude={"job_url"})
            for url, snapshot in self._cache.items()
        }
        self._store.set_json(CACHE_KEY, payload)
