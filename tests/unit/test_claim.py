"""
Unit tests for the claim protocol.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from jobqueue.config import Settings
from jobqueue.constants import JobStatus
from jobqueue.core.claim import ClaimProtocol
from jobqueue.core.lifecycle import LifecycleManager
from jobqueue.errors import StoreError
from jobqueue.store.memory import MemoryJobStore


class FlakyStore(MemoryJobStore):
    """Memory store whose ready index fails a number of times first."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def pop_ready(self, now: datetime) -> str | None:
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreError("connection reset")
        return await super().pop_ready(now)


class TestClaimOrdering:
    """Tests for which job a claim returns."""

    async def test_priority_order_then_fifo(self, lifecycle: LifecycleManager):
        """Test that priorities [5, -2, 5, 0] are claimed as jobs 0, 2, 3, 1."""
        jobs = [await lifecycle.submit("echo", {"i": i}, priority=p) for i, p in enumerate([5, -2, 5, 0])]

        claimed = [await lifecycle.claim("w1") for _ in jobs]

        assert [job.id for job in claimed] == [jobs[0].id, jobs[2].id, jobs[3].id, jobs[1].id]
        assert await lifecycle.claim("w1") is None

    async def test_empty_queue_returns_none(self, lifecycle: LifecycleManager):
        assert await lifecycle.claim("w1") is None

    async def test_delayed_job_not_claimable(self, lifecycle: LifecycleManager):
        await lifecycle.submit("echo", delay_ms=1000)

        assert await lifecycle.claim("w1") is None


class TestClaimLease:
    """Tests for the lease set by a claim."""

    async def test_claim_sets_lease_and_attempt(
        self,
        lifecycle: LifecycleManager,
        test_settings: Settings,
        clock,
    ):
        job = await lifecycle.submit("echo")

        claimed = await lifecycle.claim("worker-a")

        assert claimed.id == job.id
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.attempt == 1
        assert claimed.lease_owner == "worker-a"
        assert claimed.lease_started_at == clock()
        assert claimed.lease_expires_at == clock() + timedelta(
            seconds=test_settings.worker_lease_duration_seconds
        )

    async def test_canceled_job_is_skipped(self, lifecycle: LifecycleManager):
        first = await lifecycle.submit("echo", priority=5)
        second = await lifecycle.submit("echo")
        await lifecycle.cancel(first.id)

        claimed = await lifecycle.claim("w1")

        assert claimed.id == second.id


class TestConcurrentClaims:
    """Tests for racing claimers."""

    async def test_each_job_claimed_exactly_once(self, lifecycle: LifecycleManager):
        jobs = [await lifecycle.submit("echo", {"i": i}) for i in range(12)]

        async def claim_all(worker_id: str) -> list[str]:
            claimed = []
            while (job := await lifecycle.claim(worker_id)) is not None:
                claimed.append(job.id)
            return claimed

        results = await asyncio.gather(*(claim_all(f"w{i}") for i in range(4)))

        claimed_ids = [job_id for worker_claims in results for job_id in worker_claims]
        assert sorted(claimed_ids) == sorted(job.id for job in jobs)
        assert len(set(claimed_ids)) == len(claimed_ids)


class TestClaimStoreErrors:
    """Tests for store outages during a claim."""

    async def test_transient_store_errors_are_retried(self, test_settings: Settings, clock):
        store = FlakyStore(failures=2)
        lifecycle = LifecycleManager(store, settings=test_settings, clock=clock)
        job = await lifecycle.submit("echo")

        claimed = await ClaimProtocol(store, settings=test_settings, clock=clock).claim("w1")

        assert claimed.id == job.id
        assert store.calls == 3

    async def test_persistent_store_errors_surface(self, test_settings: Settings, clock):
        store = FlakyStore(failures=10)
        claims = ClaimProtocol(store, settings=test_settings, clock=clock)

        with pytest.raises(StoreError):
            await claims.claim("w1")

        assert store.calls == test_settings.store_retry_attempts
