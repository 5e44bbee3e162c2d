"""
Test suite for infrastructure/repositories/job_store.py

Coverage targets:
- FIFO claiming per lane and lane isolation
- Delayed jobs and retry backoff scheduling
- Exclusive claims and claim-loss detection
- Stall recovery and the stall limit
- Listing and counts
- Retention of finished jobs
"""

import pytest

from core.exceptions import ClaimLostError
from feedback_hub.jobs.models import BackoffPolicy, BackoffType, Job, JobStatus, Lane
from infrastructure.repositories.job_store import (
    STALLED_ERROR,
    STALLED_LIMIT_ERROR,
    InMemoryJobStore,
)


def make_job(clock, lane=Lane.SEND_EMAIL, **kwargs):
    kwargs.setdefault("created_at", clock())
    return Job(lane=lane, payload={"n": kwargs.pop("n", 0)}, **kwargs)


class TestClaim:
    """Claiming ready jobs."""

    @pytest.mark.asyncio
    async def test_fifo_within_lane(self, store, clock):
        first = await store.add(make_job(clock, n=1))
        clock.advance(0.001)
        second = await store.add(make_job(clock, n=2))

        claimed_a = await store.claim(Lane.SEND_EMAIL, "w1", 30)
        claimed_b = await store.claim(Lane.SEND_EMAIL, "w2", 30)

        assert claimed_a.job_id == first.job_id
        assert claimed_b.job_id == second.job_id

    @pytest.mark.asyncio
    async def test_claim_marks_active_and_counts_attempt(self, store, clock):
        job = await store.add(make_job(clock))

        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)

        assert claimed.status == JobStatus.ACTIVE
        assert claimed.attempts_made == 1
        assert claimed.locked_by == "w1"
        assert claimed.lease_expires_at == clock() + 30
        stored = await store.get(job.job_id)
        assert stored.status == JobStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_job_claimed_once(self, store, clock):
        await store.add(make_job(clock))

        assert await store.claim(Lane.SEND_EMAIL, "w1", 30) is not None
        assert await store.claim(Lane.SEND_EMAIL, "w2", 30) is None

    @pytest.mark.asyncio
    async def test_lanes_are_isolated(self, store, clock):
        await store.add(make_job(clock, lane=Lane.ANALYTICS))

        assert await store.claim(Lane.SEND_EMAIL, "w1", 30) is None
        assert (await store.claim(Lane.ANALYTICS, "w1", 30)).lane == Lane.ANALYTICS

    @pytest.mark.asyncio
    async def test_delayed_job_waits_for_run_at(self, store, clock):
        await store.add(make_job(clock, run_at=clock() + 5))

        assert await store.claim(Lane.SEND_EMAIL, "w1", 30) is None
        clock.advance(5)
        assert await store.claim(Lane.SEND_EMAIL, "w1", 30) is not None

    @pytest.mark.asyncio
    async def test_returned_jobs_are_copies(self, store, clock):
        job = await store.add(make_job(clock))
        job.payload["n"] = 99

        stored = await store.get(job.job_id)
        assert stored.payload["n"] == 0


class TestFail:
    """Retry scheduling and permanent failure."""

    @pytest.mark.asyncio
    async def test_retry_uses_backoff(self, store, clock):
        job = await store.add(
            make_job(clock, backoff=BackoffPolicy(BackoffType.EXPONENTIAL, 1000))
        )
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)

        failed = await store.fail(claimed, "w1", "boom")

        assert failed.status == JobStatus.PENDING
        assert failed.error == "boom"
        assert failed.run_at == pytest.approx(clock() + 1.0)
        assert failed.locked_by is None

        # Not claimable before the backoff elapses
        assert await store.claim(Lane.SEND_EMAIL, "w1", 30) is None
        clock.advance(1.0)
        again = await store.claim(Lane.SEND_EMAIL, "w1", 30)
        assert again.job_id == job.job_id
        assert again.attempts_made == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail_permanently(self, store, clock):
        await store.add(make_job(clock, max_attempts=1))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)

        failed = await store.fail(claimed, "w1", "boom")

        assert failed.status == JobStatus.FAILED
        assert failed.completed_at == clock()

    @pytest.mark.asyncio
    async def test_no_retry_fails_immediately(self, store, clock):
        await store.add(make_job(clock, max_attempts=5))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)

        failed = await store.fail(claimed, "w1", "bad payload", retry=False)

        assert failed.status == JobStatus.FAILED
        assert failed.attempts_made == 1

    @pytest.mark.asyncio
    async def test_fixed_backoff_zero_requeues_immediately(self, store, clock):
        await store.add(make_job(clock, backoff=BackoffPolicy(BackoffType.FIXED, 0)))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)
        await store.fail(claimed, "w1", "boom")

        assert await store.claim(Lane.SEND_EMAIL, "w1", 30) is not None


class TestClaimOwnership:
    """Operations by a worker that does not hold the claim."""

    @pytest.mark.asyncio
    async def test_complete_by_other_worker(self, store, clock):
        await store.add(make_job(clock))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)

        with pytest.raises(ClaimLostError):
            await store.complete(claimed, "w2", {})

    @pytest.mark.asyncio
    async def test_complete_twice(self, store, clock):
        await store.add(make_job(clock))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)
        await store.complete(claimed, "w1", {"ok": True})

        with pytest.raises(ClaimLostError):
            await store.fail(claimed, "w1", "late")

    @pytest.mark.asyncio
    async def test_heartbeat_and_progress(self, store, clock):
        await store.add(make_job(clock))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)
        clock.advance(20)

        assert await store.heartbeat(claimed, "w1", 30) is True
        assert claimed.lease_expires_at == clock() + 30
        assert await store.heartbeat(claimed, "w2", 30) is False

        assert await store.update_progress(claimed, "w1", {"delivered": ["a"]}) is True
        assert (await store.get(claimed.job_id)).progress == {"delivered": ["a"]}
        assert await store.update_progress(claimed, "w2", {"x": 1}) is False


class TestReapStalled:
    """Recovery of expired claims."""

    @pytest.mark.asyncio
    async def test_live_lease_not_reaped(self, store, clock):
        await store.add(make_job(clock))
        await store.claim(Lane.SEND_EMAIL, "w1", 30)
        clock.advance(10)

        assert await store.reap_stalled(Lane.SEND_EMAIL) == []

    @pytest.mark.asyncio
    async def test_expired_claim_requeued(self, store, clock):
        job = await store.add(make_job(clock))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)
        clock.advance(31)

        recovered = await store.reap_stalled(Lane.SEND_EMAIL)

        assert [j.job_id for j in recovered] == [job.job_id]
        assert recovered[0].status == JobStatus.PENDING
        assert recovered[0].error == STALLED_ERROR
        assert recovered[0].stalled_count == 1

        # The original worker lost its claim; another worker picks it up
        with pytest.raises(ClaimLostError):
            await store.complete(claimed, "w1", {})
        reclaimed = await store.claim(Lane.SEND_EMAIL, "w2", 30)
        assert reclaimed.attempts_made == 2

    @pytest.mark.asyncio
    async def test_stall_on_last_attempt_fails(self, store, clock):
        await store.add(make_job(clock, max_attempts=1))
        await store.claim(Lane.SEND_EMAIL, "w1", 30)
        clock.advance(31)

        recovered = await store.reap_stalled(Lane.SEND_EMAIL)

        assert recovered[0].status == JobStatus.FAILED
        assert recovered[0].error == STALLED_LIMIT_ERROR
        assert await store.claim(Lane.SEND_EMAIL, "w2", 30) is None


class TestListing:
    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(self, store, clock):
        old = await store.add(make_job(clock))
        clock.advance(1)
        new = await store.add(make_job(clock))
        clock.advance(1)
        other = await store.add(make_job(clock, lane=Lane.ANALYTICS))

        listed = await store.list_jobs(lane=Lane.SEND_EMAIL)
        assert [j.job_id for j in listed] == [new.job_id, old.job_id]

        assert [j.job_id for j in await store.list_jobs(limit=1)] == [other.job_id]

        await store.claim(Lane.SEND_EMAIL, "w1", 30)
        active = await store.list_jobs(status=JobStatus.ACTIVE)
        assert [j.job_id for j in active] == [old.job_id]

    @pytest.mark.asyncio
    async def test_counts(self, store, clock):
        await store.add(make_job(clock))
        await store.add(make_job(clock))
        claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)
        await store.complete(claimed, "w1", {})

        counts = await store.counts()

        assert counts["send-email"] == {"pending": 1, "active": 0, "completed": 1, "failed": 0}
        assert counts["analytics"]["pending"] == 0

    @pytest.mark.asyncio
    async def test_get_unknown(self, store):
        assert await store.get("missing") is None


class TestRetention:
    @pytest.mark.asyncio
    async def test_oldest_finished_jobs_dropped(self, clock):
        store = InMemoryJobStore(clock=clock, max_finished=2)
        jobs = [await store.add(make_job(clock, n=i)) for i in range(3)]
        pending = await store.add(make_job(clock, n=99))

        for _ in jobs:
            claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)
            await store.complete(claimed, "w1", {})

        assert await store.get(jobs[0].job_id) is None
        assert (await store.get(jobs[2].job_id)).status == JobStatus.COMPLETED
        assert (await store.get(pending.job_id)).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_permanent_failures_count_as_finished(self, clock):
        store = InMemoryJobStore(clock=clock, max_finished=1)
        first = await store.add(make_job(clock, n=1))
        second = await store.add(make_job(clock, n=2))

        for _ in range(2):
            claimed = await store.claim(Lane.SEND_EMAIL, "w1", 30)
            await store.fail(claimed, "w1", "boom", retry=False)

        assert await store.get(first.job_id) is None
        assert (await store.get(second.job_id)).status == JobStatus.FAILED
