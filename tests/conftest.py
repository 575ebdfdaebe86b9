"""
Pytest configuration for swipeq tests

Provides an in-process fake of the automation worker (served through
httpx.MockTransport) and fixtures for the store, client and queue manager.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from swipeq.infrastructure.database import MEMORY_DB
from swipeq.infrastructure.retry import RetryPolicy
from swipeq.observability.telemetry import reset_counters, reset_latencies
from swipeq.queue.client import AUTOMATIONS_PATH, WorkerClient
from swipeq.queue.manager import QueueManager
from swipeq.queue.models import SwipeDirection, SwipeEvent
from swipeq.queue.snapshot_cache import SnapshotCache
from swipeq.storage import KeyValueStore

WORKER_BASE_URL = "http://worker.test"


class FakeWorker:
    """
    Minimal automation worker.

    Deduplicates URLs per automation like the real one. Failures are injected
    with ``fail_next`` (HTTP statuses consumed one per request) or ``offline``
    (connection refused).
    """

    def __init__(self):
        self.automations: dict[str, dict[str, Any]] = {}
        self.entries: dict[str, list[dict[str, Any]]] = {}
        self.requests: list[tuple[str, str, Any]] = []
        self.fail_next: list[int] = []
        self.offline = False
        self._ids = itertools.count(1)

    # -- inspection helpers --

    def urls_for(self, automation_id: str) -> list[str]:
        return [entry["url"] for entry in self.entries.get(automation_id, [])]

    def all_urls(self) -> list[str]:
        return [url for automation_id in self.entries for url in self.urls_for(automation_id)]

    def calls(self, method: str, suffix: str = "") -> list[tuple[str, str, Any]]:
        return [r for r in self.requests if r[0] == method and r[1].endswith(suffix)]

    def add_automation(self, profile_id: str, urls: list[str] | None = None, active: bool = True) -> str:
        automation_id = f"auto-{next(self._ids)}"
        self.automations[automation_id] = {
            "id": automation_id,
            "jobProfileId": profile_id,
            "name": f"{profile_id} queue",
            "applicationMode": "direct_urls",
            "isActive": active,
            "createdAt": datetime.now(UTC).isoformat(),
        }
        self.entries[automation_id] = []
        self._append(automation_id, urls or [], [])
        return automation_id

    # -- transport --

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append((request.method, path, body))

        if self.offline:
            raise httpx.ConnectError("worker offline", request=request)
        if self.fail_next:
            return httpx.Response(self.fail_next.pop(0), json={"error": "injected failure"})

        if path == AUTOMATIONS_PATH:
            if request.method == "POST":
                return self._create(body)
            return httpx.Response(
                200, json={"data": [a for a in self.automations.values() if a["isActive"]]}
            )

        parts = path[len(AUTOMATIONS_PATH) + 1 :].split("/")
        automation_id = parts[0]
        if automation_id not in self.automations:
            return httpx.Response(404, json={"error": "Automation not found"})

        if len(parts) == 1:
            return httpx.Response(404, json={"error": "Unknown route"})
        if parts[1] == "urls" and request.method == "POST":
            added, duplicates = self._append(
                automation_id, body["jobUrls"], body.get("jobDetails") or []
            )
            return httpx.Response(
                200, json={"added": added, "duplicates": duplicates, "urls": body["jobUrls"]}
            )
        if parts[1] == "urls":
            status = request.url.params.get("status")
            rows = [e for e in self.entries[automation_id] if status is None or e["status"] == status]
            return httpx.Response(200, json={"data": rows})
        if parts[1] == "queue-stats":
            return httpx.Response(200, json={"success": True, "data": self._stats(automation_id)})
        return httpx.Response(404, json={"error": "Unknown route"})

    def _create(self, body: dict[str, Any]) -> httpx.Response:
        if not body.get("jobUrls"):
            return httpx.Response(400, json={"error": "direct_urls requires jobUrls"})
        automation_id = self.add_automation(body["jobProfileId"])
        self.automations[automation_id]["name"] = body["name"]
        self._append(automation_id, body["jobUrls"], body.get("jobDetails") or [])
        return httpx.Response(201, json={"success": True, "data": self.automations[automation_id]})

    def _append(self, automation_id: str, urls: list[str], details: list[dict[str, Any]]) -> tuple[int, int]:
        by_url = {d.get("url"): d for d in details}
        existing = set(self.urls_for(automation_id))
        added = duplicates = 0
        for url in urls:
            if url in existing:
                duplicates += 1
                continue
            existing.add(url)
            detail = by_url.get(url, {})
            self.entries[automation_id].append(
                {
                    "id": f"entry-{next(self._ids)}",
                    "url": url,
                    "jobTitle": detail.get("jobTitle"),
                    "company": detail.get("company"),
                    "platform": detail.get("platform"),
                    "status": "pending",
                    "createdAt": datetime.now(UTC).isoformat(),
                }
            )
            added += 1
        return added, duplicates

    def _stats(self, automation_id: str) -> dict[str, int]:
        counts = {s: 0 for s in ("pending", "processing", "completed", "failed", "skipped")}
        for entry in self.entries[automation_id]:
            counts[entry["status"]] += 1
        counts["total"] = len(self.entries[automation_id])
        return counts


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _reset_telemetry():
    reset_counters()
    reset_latencies()
    yield
    reset_counters()
    reset_latencies()


@pytest.fixture
def worker() -> FakeWorker:
    return FakeWorker()


@pytest.fixture
def transport(worker) -> httpx.MockTransport:
    return httpx.MockTransport(worker.handler)


@pytest.fixture
def client(transport):
    worker_client = WorkerClient(WORKER_BASE_URL, token="test-token", transport=transport)
    yield worker_client
    asyncio.run(worker_client.aclose())


@pytest.fixture
def store():
    kv = KeyValueStore(MEMORY_DB)
    kv.open()
    yield kv
    kv.close()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(stage="test", max_attempts=3, sleep_fn=_no_sleep)


@pytest.fixture
def manager(store, client, retry_policy) -> QueueManager:
    queue_manager = QueueManager(store, client, retry_policy=retry_policy, sync_delay=0)
    queue_manager.initialize()
    return queue_manager


@pytest.fixture
def snapshot_cache(store) -> SnapshotCache:
    return SnapshotCache(store, capacity=50)


@pytest.fixture
def make_swipe() -> Callable[..., SwipeEvent]:
    def _make(job_id: str, url: str | None = None, **overrides: Any) -> SwipeEvent:
        fields: dict[str, Any] = {
            "job_id": job_id,
            "apply_url": url if url is not None else f"https://jobs.lever.co/acme/{job_id}",
            "title": f"Engineer {job_id}",
            "company": "Acme",
            "source": "lever",
            "direction": SwipeDirection.RIGHT,
        }
        fields.update(overrides)
        return SwipeEvent(**fields)

    return _make
