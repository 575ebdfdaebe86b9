"""
Swipe queue domain models.

Covers the transient swipe event, the client-side pending batch, the
server-owned automation and queue entries, and the advisory job snapshot.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from swipeq.queue.errors import QueueError

_INVALID_IDS = frozenset({"", "undefined", "null", "none"})

# host fragment -> platform name; first match wins
_PLATFORM_HOSTS: tuple[tuple[str, str], ...] = (
    ("rippling.com", "rippling"),
    ("ashbyhq.com", "ashby"),
    ("workable.com", "workable"),
    ("greenhouse.io", "greenhouse"),
    ("lever.co", "lever"),
    ("workday.com", "workday"),
    ("myworkdayjobs.com", "workday"),
    ("linkedin.com", "linkedin"),
    ("indeed.com", "indeed"),
)


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def is_valid_id(value: str | None) -> bool:
    """Reject empty ids and the stringified nulls older clients persisted."""
    return bool(value) and str(value).strip().lower() not in _INVALID_IDS


def detect_platform(url: str) -> str:
    """Best-effort ATS detection from the job URL host."""
    host = (urlparse(url).netloc or url).lower()
    for fragment, platform in _PLATFORM_HOSTS:
        if fragment in host:
            return platform
    return "other"


class SwipeDirection(str, Enum):
    LEFT = "left"
    RIGHT = "right"


class UrlStatus(str, Enum):
    """Server-owned lifecycle of one queued URL."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Settlement(str, Enum):
    """How a URL left the local pending list."""

    ACKNOWLEDGED = "acknowledged"
    ABANDONED = "abandoned"


class SwipeEvent(BaseModel):
    """A single swipe emitted by the card deck (or synthesized by voice)."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    job_url: str = ""
    apply_url: str | None = None
    listing_url: str | None = None
    title: str = ""
    company: str = ""
    source: str = "unknown"
    location: str | None = None
    salary: str | None = None
    direction: SwipeDirection = SwipeDirection.RIGHT
    profile_id: str | None = None
    timestamp: float = Field(default_factory=time.time)

    def resolved_url(self) -> str:
        """Apply URL preferred, listing URL as fallback."""
        for candidate in (self.apply_url, self.listing_url, self.job_url):
            if candidate and candidate.strip():
                return candidate.strip()
        return ""


class ResumeSettings(BaseModel):
    """Resume options attached uniformly to every job of one flush."""

    model_config = ConfigDict(frozen=True)

    use_tailored_resume: bool = False
    resume_type: Literal["pdf", "docx"] | None = None
    resume_template: str | None = None

    def to_payload(self) -> dict[str, Any]:
        if not self.use_tailored_resume:
            return {"useTailoredResume": False}
        payload: dict[str, Any] = {"useTailoredResume": True}
        if self.resume_type:
            payload["resumeType"] = self.resume_type
        if self.resume_template:
            payload["resumeTemplate"] = self.resume_template
        return payload


class JobDetails(BaseModel):
    title: str | None = None
    company: str | None = None
    platform: str | None = None

    def to_payload(self, url: str) -> dict[str, Any]:
        return {
            "url": url,
            "jobTitle": self.title,
            "company": self.company,
            "platform": self.platform or detect_platform(url),
        }


class PendingJob(BaseModel):
    """One right-swiped job waiting in a batch."""

    job_id: str
    url: str
    title: str = ""
    company: str = ""
    source: str = "unknown"
    swiped_at: float = Field(default_factory=time.time)
    attempts: int = 0

    @classmethod
    def from_event(cls, event: SwipeEvent) -> PendingJob:
        url = event.resolved_url()
        if not url:
            raise QueueError.invalid_url(f"Job {event.job_id} has no apply or listing URL")
        return cls(
            job_id=event.job_id,
            url=url,
            title=event.title,
            company=event.company,
            source=event.source,
            swiped_at=event.timestamp,
        )

    def details(self) -> JobDetails:
        platform = self.source if self.source != "unknown" else None
        return JobDetails(title=self.title, company=self.company, platform=platform)


class PendingBatch(BaseModel):
    """Jobs accumulated for one profile; URLs are unique within a batch."""

    profile_id: str
    jobs: list[PendingJob] = Field(default_factory=list)
    armed_at: float | None = None

    def has_url(self, url: str) -> bool:
        return any(job.url == url for job in self.jobs)

    def add(self, job: PendingJob) -> bool:
        if self.has_url(job.url):
            return False
        self.jobs.append(job)
        return True

    def last_swiped_at(self) -> float | None:
        return max((job.swiped_at for job in self.jobs), default=None)


class Automation(BaseModel):
    """Cached reference to the server-side aggregate for one profile."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    profile_id: str = Field(alias="jobProfileId")
    name: str = ""
    application_mode: str = Field(default="direct_urls", alias="applicationMode")
    is_active: bool = Field(default=True, alias="isActive")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")

    @field_validator("id")
    @classmethod
    def _id_must_be_real(cls, value: str) -> str:
        if not is_valid_id(value):
            raise ValueError(f"invalid automation id: {value!r}")
        return value

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Automation:
        return cls.model_validate(data)


class QueueEntry(BaseModel):
    """A URL tracked inside an automation; status is only ever read."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    automation_id: str = Field(default="", alias="automationId")
    job_url: str = Field(alias="url")
    job_title: str | None = Field(default=None, alias="jobTitle")
    company: str | None = None
    platform: str | None = None
    status: UrlStatus = UrlStatus.PENDING
    enqueued_at: datetime | None = Field(default=None, alias="createdAt")


class QueueStats(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0


class JobSnapshot(BaseModel):
    """Advisory job metadata for UI continuity; server data always wins."""

    job_url: str
    title: str = ""
    company: str = ""
    location: str | None = None
    salary: str | None = None
    platform: str = "unknown"
    cached_at: float = Field(default_factory=time.time)

    @classmethod
    def from_event(cls, event: SwipeEvent) -> JobSnapshot:
        return cls(
            job_url=event.resolved_url(),
            title=event.title,
            company=event.company,
            location=event.location,
            salary=event.salary,
            platform=event.source,
            cached_at=event.timestamp,
        )

    def merge_server(self, fields: dict[str, Any]) -> JobSnapshot:
        """Overlay any non-empty server-provided field onto this snapshot."""
        updates = {
            key: value
            for key, value in fields.items()
            if key in type(self).model_fields and key != "job_url" and value not in (None, "")
        }
        if not updates:
            return self
        updates["cached_at"] = time.time()
        return self.model_copy(update=updates)


class PendingUrlEntry(BaseModel):
    """A URL handed to the queue manager but not yet acknowledged."""

    profile_id: str
    profile_name: str | None = None
    url: str
    job_details: JobDetails = Field(default_factory=JobDetails)
    resume_settings: ResumeSettings | None = None
    timestamp: float = Field(default_factory=time.time)
    retry_count: int = 0

    def matches(self, profile_id: str, url: str) -> bool:
        return self.profile_id == profile_id and self.url == url


class AddJobResult(BaseModel):
    """Outcome of submitting one URL; ``error`` is set exactly when ``success`` is False."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    automation_id: str | None = None
    error: QueueError | None = None
    duplicate: bool = False

    @classmethod
    def failed(cls, error: QueueError) -> AddJobResult:
        return cls(success=False, error=error)


class SyncSummary(BaseModel):
    submitted: int = 0
    failed: int = 0
    dropped: int = 0
    skipped: int = 0
    remaining: int = 0


class FlushResult(BaseModel):
    """Outcome of one flush: what was acknowledged, kept, and dropped."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    profile_id: str | None = None
    automation: Automation | None = None
    sent: list[PendingJob] = Field(default_factory=list)
    retained: list[PendingJob] = Field(default_factory=list)
    dropped: list[PendingJob] = Field(default_factory=list)
    errors: list[QueueError] = Field(default_factory=list)

    def absorb(self, later: FlushResult) -> None:
        """Fold a follow-up flush of the same batch into this result."""
        self.sent.extend(later.sent)
        self.dropped.extend(later.dropped)
        self.errors.extend(later.errors)
        self.retained = list(later.retained)
        self.automation = later.automation or self.automation

    @property
    def ok(self) -> bool:
        return not self.errors and not self.retained

    @property
    def job_count(self) -> int:
        return len(self.sent)

    @property
    def is_empty(self) -> bool:
        return not (self.sent or self.retained or self.dropped or self.errors)
