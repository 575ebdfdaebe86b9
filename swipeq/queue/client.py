"""
Automation worker API client.

Thin async wrapper over the worker's REST API. It raises WorkerAPIError for
every transport or HTTP failure and leaves retry policy and error taxonomy
to QueueManager.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from swipeq.config import (
    API_LIST_LIMIT,
    API_TIMEOUT_SECONDS,
    AUTOMATION_MAX_APPLICATIONS_PER_DAY,
    AUTOMATION_SCHEDULE_TIME,
    WORKER_API_TOKEN,
    WORKER_API_URL,
)
from swipeq.infrastructure.retry import WorkerAPIError
from swipeq.observability.logging import get_logger
from swipeq.observability.telemetry import counter, time_block
from swipeq.queue.models import (
    Automation,
    JobDetails,
    QueueEntry,
    QueueStats,
    ResumeSettings,
    UrlStatus,
)

logger = get_logger(__name__)

AUTOMATIONS_PATH = "/api/v1/automations"


def automation_name(profile_name: str | None) -> str:
    if profile_name:
        return f"{profile_name} - Mobile Swipe Queue"
    return f"Mobile Swipe Queue - {datetime.now().strftime('%Y-%m-%d')}"


def _unwrap(body: Any) -> Any:
    """Strip the ``{"success": ..., "data": ...}`` envelope some routes use."""
    if isinstance(body, dict) and "success" in body and "data" in body:
        return body["data"]
    return body


class WorkerClient:
    """
    Async client for the remote automation worker.

    Pass ``transport`` (for example ``httpx.MockTransport``) to run against an
    in-process fake instead of the network.
    """

    def __init__(
        self,
        base_url: str = WORKER_API_URL,
        token: str | None = WORKER_API_TOKEN,
        timeout: float = API_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        logger.info("WorkerClient initialized for %s", base_url)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            with time_block("worker.request.latency"):
                response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            counter("worker.timeout")
            raise WorkerAPIError(f"{method} {path} timed out") from e
        except httpx.RequestError as e:
            counter("worker.request_error")
            raise WorkerAPIError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            counter(f"worker.http_{response.status_code}")
            detail = response.text[:200]
            raise WorkerAPIError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        return _unwrap(response.json())

    async def create_automation(
        self,
        profile_id: str,
        job_urls: list[str],
        profile_name: str | None = None,
        job_details: list[dict[str, Any]] | None = None,
        resume_settings: ResumeSettings | None = None,
    ) -> Automation:
        """
        Create a direct_urls automation seeded with ``job_urls``.

        The worker rejects a direct_urls automation without at least one URL,
        so creation always carries the first job.

        Real: POST /api/v1/automations
        """
        payload: dict[str, Any] = {
            "name": automation_name(profile_name),
            "jobProfileId": profile_id,
            "applicationMode": "direct_urls",
            "scheduleType": "daily",
            "scheduleTime": AUTOMATION_SCHEDULE_TIME,
            "isActive": True,
            "maxApplicationsPerDay": AUTOMATION_MAX_APPLICATIONS_PER_DAY,
            "jobUrls": job_urls,
        }
        if job_details:
            payload["jobDetails"] = job_details
        payload.update((resume_settings or ResumeSettings()).to_payload())

        data = await self._request("POST", AUTOMATIONS_PATH, json=payload)
        if not isinstance(data, dict):
            raise WorkerAPIError("Create automation returned no body", status_code=502)
        data.setdefault("jobProfileId", profile_id)
        try:
            automation = Automation.model_validate(data)
        except ValueError as e:
            raise WorkerAPIError(f"Created automation has invalid id: {data.get('id')!r}") from e

        logger.info("Created automation %s for profile %s", automation.id, profile_id)
        return automation

    async def list_automations(
        self,
        application_mode: str = "direct_urls",
        is_active: bool = True,
        limit: int = API_LIST_LIMIT,
    ) -> list[Automation]:
        """Real: GET /api/v1/automations"""
        params = {
            "applicationMode": application_mode,
            "isActive": str(is_active).lower(),
            "limit": limit,
        }
        data = await self._request("GET", AUTOMATIONS_PATH, params=params)
        rows = data.get("data", []) if isinstance(data, dict) else data or []

        automations: list[Automation] = []
        for row in rows:
            try:
                automations.append(Automation.model_validate(row))
            except ValueError:
                logger.warning("Skipping automation with invalid id: %r", row.get("id"))
        return automations

    async def add_urls(
        self,
        automation_id: str,
        job_urls: list[str],
        job_details: list[dict[str, Any]] | None = None,
        profile_name: str | None = None,
        resume_settings: ResumeSettings | None = None,
    ) -> dict[str, Any]:
        """
        Append URLs to an automation's queue.

        The worker ignores URLs already queued for the automation and reports
        them under ``duplicates``.

        Real: POST /api/v1/automations/{id}/urls
        Returns: {"added": int, "duplicates": int, "urls": [...]}
        """
        payload: dict[str, Any] = {"jobUrls": job_urls}
        if job_details:
            payload["jobDetails"] = job_details
        if profile_name:
            payload["profileName"] = profile_name
        if resume_settings is not None:
            payload.update(resume_settings.to_payload())

        data = await self._request("POST", f"{AUTOMATIONS_PATH}/{automation_id}/urls", json=payload)
        return data or {"added": 0, "duplicates": 0, "urls": []}

    async def get_urls(
        self, automation_id: str, status: UrlStatus | None = None
    ) -> list[QueueEntry]:
        """Real: GET /api/v1/automations/{id}/urls"""
        params = {"status": status.value} if status else None
        data = await self._request("GET", f"{AUTOMATIONS_PATH}/{automation_id}/urls", params=params)
        rows = data.get("data", []) if isinstance(data, dict) else data or []
        entries = []
        for row in rows:
            row.setdefault("automationId", automation_id)
            entries.append(QueueEntry.model_validate(row))
        return entries

    async def get_queue_stats(self, automation_id: str) -> QueueStats:
        """Real: GET /api/v1/automations/{id}/queue-stats"""
        data = await self._request("GET", f"{AUTOMATIONS_PATH}/{automation_id}/queue-stats")
        return QueueStats.model_validate(data or {})


def job_details_payload(url: str, details: JobDetails | None) -> dict[str, Any]:
    return (details or JobDetails()).to_payload(url)
