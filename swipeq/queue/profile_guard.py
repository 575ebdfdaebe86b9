"""
Profile scope guard - keeps every job attributed to the profile it was swiped under.

A profile switch drains the previous profile's accumulator before the new
profile accepts swipes. This covers a batch still inside its debounce window
and swipes that arrived while a timer flush was running. Swipes made during
the switch are held and replayed onto the new profile once the drain ends.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from swipeq.observability.logging import get_logger
from swipeq.observability.telemetry import counter, log_event
from swipeq.queue.accumulator import BatchAccumulator, BatchErrorCallback
from swipeq.queue.errors import QueueError
from swipeq.queue.models import FlushResult, ResumeSettings, SwipeDirection, SwipeEvent

logger = get_logger(__name__)

AccumulatorFactory = Callable[[str, str | None], BatchAccumulator]


class ProfileScopeGuard:
    def __init__(
        self,
        accumulator_factory: AccumulatorFactory,
        resume_settings: ResumeSettings | None = None,
        on_error: BatchErrorCallback | None = None,
    ):
        self._factory = accumulator_factory
        self._resume_settings = resume_settings
        self._on_error = on_error

        self._profile_id: str | None = None
        self._profile_name: str | None = None
        self._accumulator: BatchAccumulator | None = None
        self._held: list[SwipeEvent] | None = None
        self._switch_lock = asyncio.Lock()

    @property
    def active_profile_id(self) -> str | None:
        return self._profile_id

    @property
    def accumulator(self) -> BatchAccumulator | None:
        return self._accumulator

    @property
    def resume_settings(self) -> ResumeSettings | None:
        return self._resume_settings

    @property
    def is_switching(self) -> bool:
        return self._held is not None

    async def switch_profile(
        self, profile_id: str | None, profile_name: str | None = None
    ) -> FlushResult | None:
        """
        Make ``profile_id`` the active profile.

        Returns the FlushResult of the previous profile's batch, or None when
        nothing had to be flushed (first selection, or re-selecting the
        active profile).
        """
        async with self._switch_lock:
            if profile_id == self._profile_id:
                if profile_name and self._accumulator is not None:
                    self._profile_name = profile_name
                    self._accumulator.profile_name = profile_name
                return None

            previous = self._accumulator
            previous_id = self._profile_id
            self._accumulator = None
            self._held = []
            log_event("guard.switch_started", previous=previous_id, next=profile_id)

            result: FlushResult | None = None
            try:
                if previous is not None:
                    result = await previous.drain()
                    previous.close()
                    counter("guard.switch_flush")
            finally:
                self._profile_id = profile_id or None
                self._profile_name = profile_name
                if self._profile_id is not None:
                    self._accumulator = self._factory(self._profile_id, profile_name)
                    self._accumulator.resume_settings = self._resume_settings
                    self._accumulator.restore()
                held, self._held = self._held, None
                for event in held:
                    self.add_swiped_job(event)

            logger.info("Active profile switched from %s to %s", previous_id, self._profile_id)
            return result

    def add_swiped_job(self, event: SwipeEvent) -> bool:
        """Route a swipe to the active profile. Held while a switch is in progress."""
        if self._held is not None:
            self._held.append(event)
            counter("guard.swipe_held")
            return True
        if event.direction != SwipeDirection.RIGHT:
            return False
        if self._accumulator is None:
            error = QueueError.no_profile().with_url(event.resolved_url())
            log_event("guard.no_profile", url=error.job_url)
            if self._on_error is not None:
                try:
                    self._on_error(error)
                except Exception:
                    logger.exception("Error callback raised")
            return False
        return self._accumulator.add_swiped_job(event)

    def update_resume_settings(self, settings: ResumeSettings | None) -> None:
        """Applies to the whole pending batch at its next flush."""
        self._resume_settings = settings
        if self._accumulator is not None:
            self._accumulator.resume_settings = settings

    async def flush(self) -> FlushResult:
        if self._accumulator is None:
            return FlushResult(profile_id=self._profile_id)
        return await self._accumulator.drain()

    def close(self) -> None:
        if self._accumulator is not None:
            self._accumulator.close()
