"""
Error taxonomy for the swipe queue.

Permanent errors (NO_PROFILE, INVALID_URL) are reported once and the job is
dropped. NETWORK_ERROR is transient and retried up to a cap. STALE_PROFILE
is resolved by cleanup and only logged.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NO_PROFILE = "NO_PROFILE"
    INVALID_URL = "INVALID_URL"
    NETWORK_ERROR = "NETWORK_ERROR"
    STALE_PROFILE = "STALE_PROFILE"


PERMANENT_KINDS = frozenset({ErrorKind.NO_PROFILE, ErrorKind.INVALID_URL})


class QueueError(Exception):
    """Base exception for swipe queue errors."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        job_url: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.job_url = job_url
        self.status_code = status_code

    @property
    def is_permanent(self) -> bool:
        return self.kind in PERMANENT_KINDS

    def with_url(self, job_url: str) -> QueueError:
        return type(self)(self.kind, self.message, job_url=job_url, status_code=self.status_code)

    def __repr__(self) -> str:
        return f"QueueError({self.kind.value}, {self.message!r}, job_url={self.job_url!r})"

    @classmethod
    def no_profile(cls, message: str = "No profile selected") -> QueueError:
        return cls(ErrorKind.NO_PROFILE, message)

    @classmethod
    def invalid_url(cls, message: str = "Job has no apply or listing URL") -> QueueError:
        return cls(ErrorKind.INVALID_URL, message)

    @classmethod
    def network(cls, message: str, status_code: int | None = None) -> QueueError:
        return cls(ErrorKind.NETWORK_ERROR, message, status_code=status_code)
