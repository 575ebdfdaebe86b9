"""End-to-end swipe queue scenarios through SwipeSession

Each scenario runs inside one event loop against the in-process FakeWorker.
Debounce windows are scaled down from 120s to fractions of a second.
"""

from __future__ import annotations

import asyncio

import pytest

from swipeq.queue.accumulator import batch_key
from swipeq.queue.errors import ErrorKind
from swipeq.session import SessionNotInitializedError, SwipeSession

WINDOW = 0.2


@pytest.fixture
def make_session(tmp_path, transport, retry_policy):
    sent: list[tuple[object, int]] = []
    errors: list = []

    def _make(**kwargs):
        kwargs.setdefault("debounce_seconds", WINDOW)
        return SwipeSession(
            db_path=tmp_path / "state.db",
            base_url="http://worker.test",
            transport=transport,
            retry_policy=retry_policy,
            on_batch_sent=lambda automation, count: sent.append((automation, count)),
            on_batch_error=errors.append,
            sync_delay=0,
            **kwargs,
        )

    _make.sent = sent
    _make.errors = errors
    return _make


def lever(n) -> str:
    return f"https://jobs.lever.co/acme/{n}"


def test_burst_within_window_flushes_once(make_session, make_swipe, worker):
    async def run():
        async with make_session() as session:
            await session.select_profile("p1", "Backend")
            for n in range(5):
                session.swipe(make_swipe(str(n)))
            session.swipe(make_swipe("0-dup", url=lever(0)))
            await asyncio.sleep(WINDOW * 3)

    asyncio.run(run())

    assert make_session.sent == [(make_session.sent[0][0], 5)]
    assert sorted(worker.all_urls()) == sorted(lever(n) for n in range(5))


def test_two_swipes_then_quiet_period(make_session, make_swipe, worker):
    async def run():
        async with make_session() as session:
            await session.select_profile("p1")
            session.swipe(make_swipe("J1"))
            await asyncio.sleep(WINDOW / 3)
            session.swipe(make_swipe("J2"))
            assert worker.requests == []
            await asyncio.sleep(WINDOW * 3)
            return session.manager.get_pending_urls_count()

    pending_count = asyncio.run(run())

    assert pending_count == 0
    assert len(make_session.sent) == 1
    assert make_session.sent[0][1] == 2
    automation_id = make_session.sent[0][0].id
    assert worker.urls_for(automation_id) == [lever("J1"), lever("J2")]


def test_profile_switch_flushes_old_batch_first(make_session, make_swipe, worker):
    async def run():
        async with make_session(debounce_seconds=60) as session:
            await session.select_profile("P1")
            session.swipe(make_swipe("J3"))
            result = await session.select_profile("P2")
            requests_at_switch = len(worker.requests)
            session.swipe(make_swipe("J4"))
            return result, requests_at_switch

    result, requests_at_switch = asyncio.run(run())

    assert [j.job_id for j in result.sent] == ["J3"]
    assert result.automation.profile_id == "P1"
    assert requests_at_switch > 0
    p1_automation = worker.automations[result.automation.id]
    assert p1_automation["jobProfileId"] == "P1"
    assert worker.urls_for(result.automation.id) == [lever("J3")]
    # J4 went out at teardown under P2
    p2_ids = [a["id"] for a in worker.automations.values() if a["jobProfileId"] == "P2"]
    assert [worker.urls_for(i) for i in p2_ids] == [[lever("J4")]]


def test_transient_failure_then_sync_submits_exactly_once(make_session, make_swipe, worker):
    async def run():
        async with make_session(debounce_seconds=60) as session:
            await session.select_profile("p1")
            session.swipe(make_swipe("1"))
            session.swipe(make_swipe("2"))
            worker.offline = True
            failed = await session.flush()
            worker.offline = False

            summary = await session.sync()
            again = await session.sync()
            retry_flush = await session.flush()
            return failed, summary, again, retry_flush, session.manager.get_pending_urls_count()

    failed, summary, again, retry_flush, pending = asyncio.run(run())

    assert [j.job_id for j in failed.retained] == ["1", "2"]
    assert summary.submitted == 2
    assert again.submitted == 0
    assert [j.job_id for j in retry_flush.sent] == ["1", "2"]
    assert pending == 0
    assert sorted(worker.all_urls()) == [lever(1), lever(2)]


def test_batch_survives_restart(make_session, make_swipe, worker):
    async def first_run():
        session = await make_session(debounce_seconds=60).init()
        await session.select_profile("p1")
        session.swipe(make_swipe("1"))
        await session.teardown(flush=False)

    async def second_run():
        async with make_session(debounce_seconds=60) as session:
            await session.select_profile("p1")
            restored = session.guard.accumulator.pending_jobs
            result = await session.flush()
            return restored, result

    asyncio.run(first_run())
    assert worker.requests == []

    restored, result = asyncio.run(second_run())

    assert [j.job_id for j in restored] == ["1"]
    assert result.job_count == 1
    assert worker.all_urls() == [lever(1)]


def test_snapshot_written_at_swipe_time_and_persisted(make_session, make_swipe):
    async def run():
        async with make_session(debounce_seconds=60) as session:
            accepted = session.swipe(make_swipe("1"))  # no profile yet
            await session.select_profile("p1")
            session.swipe(make_swipe("2", company="Globex"))
            snapshot = session.snapshot_cache.get_cached_job(lever(2))
            session.guard.accumulator.clear_pending_jobs()
            return accepted, snapshot

    accepted, snapshot = asyncio.run(run())

    assert not accepted
    assert make_session.errors[0].kind == ErrorKind.NO_PROFILE
    assert snapshot.company == "Globex"

    async def reopen():
        async with make_session() as session:
            return session.snapshot_cache.get_cached_job(lever(2))

    assert asyncio.run(reopen()).company == "Globex"


def test_cleanup_invalid_profiles_after_profile_deletion(make_session, make_swipe, worker):
    async def run():
        async with make_session(debounce_seconds=60) as session:
            for profile in ("p1", "p2"):
                await session.select_profile(profile)
                session.swipe(make_swipe(profile))
                await session.flush()
            removed = session.manager.cleanup_invalid_profiles(["p2"])
            return removed, session.manager.automations

    removed, automations = asyncio.run(run())

    assert removed == 1
    assert list(automations) == ["p2"]


def test_teardown_flushes_active_batch(make_session, make_swipe, worker):
    async def run():
        session = make_session(debounce_seconds=60)
        await session.init()
        await session.select_profile("p1")
        session.swipe(make_swipe("1"))
        result = await session.teardown()
        return session, result

    session, result = asyncio.run(run())

    assert result.job_count == 1
    assert worker.all_urls() == [lever(1)]
    with pytest.raises(SessionNotInitializedError):
        session.manager


def test_unsent_batch_key_cleared_after_flush(make_session, make_swipe):
    async def run():
        async with make_session(debounce_seconds=60) as session:
            await session.select_profile("p1")
            session.swipe(make_swipe("1"))
            before = session.store.get_json(batch_key("p1"))
            await session.flush()
            after = session.store.get_json(batch_key("p1"))
            return before, after

    before, after = asyncio.run(run())

    assert len(before["jobs"]) == 1
    assert after is None
