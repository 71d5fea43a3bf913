"""
Unit tests for the lifecycle manager.

Runs against both job stores through the ``lifecycle`` fixture.
"""

import asyncio
import time
from datetime import timedelta
from typing import Any

import pytest

from jobqueue.config import Settings
from jobqueue.constants import CANCELED_ERROR, LEASE_EXPIRED_ERROR, JobStatus
from jobqueue.core.lifecycle import LifecycleManager
from jobqueue.core.notifications import NotificationDispatcher
from jobqueue.errors import ConflictError, NotFoundError, StoreError, ValidationError
from jobqueue.store.base import JobStore
from jobqueue.store.memory import MemoryJobStore


class IndexOutageStore(MemoryJobStore):
    """Memory store whose index removal fails a number of times first."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.remove_calls = 0

    async def remove_from_indexes(self, job_id: str) -> None:
        self.remove_calls += 1
        if self.remove_calls <= self.failures:
            raise StoreError("connection reset")
        await super().remove_from_indexes(job_id)


class TestSubmit:
    """Tests for job submission."""

    async def test_submit_then_get_round_trip(
        self,
        lifecycle: LifecycleManager,
        sample_job_payload: dict[str, Any],
        clock,
    ):
        """Test that a submitted job reads back with the same fields."""
        job = await lifecycle.submit("send_email", sample_job_payload, priority=3)

        fetched = await lifecycle.get_status(job.id)

        assert fetched == job
        assert fetched.type == "send_email"
        assert fetched.payload == sample_job_payload
        assert fetched.priority == 3
        assert fetched.status == JobStatus.WAITING
        assert fetched.attempt == 0
        assert fetched.available_at == clock()
        assert fetched.created_at == clock()
        assert fetched.completed_at is None
        assert fetched.result is None and fetched.error is None

    async def test_default_retry_policy_from_settings(
        self,
        lifecycle: LifecycleManager,
        test_settings: Settings,
    ):
        job = await lifecycle.submit("echo")

        assert job.retry_policy.max_attempts == test_settings.default_max_attempts
        assert job.retry_policy.backoff_base_ms == test_settings.default_backoff_base_ms

    async def test_explicit_retry_policy_and_webhook(
        self,
        lifecycle: LifecycleManager,
        webhook: dict[str, Any],
    ):
        job = await lifecycle.submit(
            "echo",
            retry={"max_attempts": 5, "backoff_base_ms": 200},
            webhook=webhook,
        )

        fetched = await lifecycle.get_status(job.id)
        assert fetched.retry_policy.max_attempts == 5
        assert fetched.retry_policy.backoff_base_ms == 200
        assert str(fetched.webhook.url) == webhook["url"]
        assert fetched.webhook.headers == webhook["headers"]

    async def test_delayed_submission(self, lifecycle: LifecycleManager, clock):
        job = await lifecycle.submit("echo", delay_ms=1500)

        assert job.status == JobStatus.DELAYED
        assert job.available_at == clock() + timedelta(milliseconds=1500)

    async def test_ids_are_unique(self, lifecycle: LifecycleManager):
        jobs = [await lifecycle.submit("echo") for _ in range(5)]

        assert len({job.id for job in jobs}) == 5

    @pytest.mark.parametrize(
        ("job_type", "options"),
        [
            ("bad type!", {}),
            ("", {}),
            ("echo", {"priority": 11}),
            ("echo", {"priority": -11}),
            ("echo", {"delay_ms": -1}),
            ("echo", {"delay_ms": 86_400_001}),
            ("echo", {"retry": {"max_attempts": 0}}),
            ("echo", {"retry": {"backoff_base_ms": 50}}),
            ("echo", {"webhook": {"url": "not-a-url"}}),
        ],
    )
    async def test_invalid_parameters_rejected(
        self,
        lifecycle: LifecycleManager,
        job_type: str,
        options: dict[str, Any],
    ):
        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.submit(job_type, **options)

        assert exc_info.value.errors
        _, total = await lifecycle.list_jobs()
        assert total == 0

    async def test_get_unknown_job(self, lifecycle: LifecycleManager):
        with pytest.raises(NotFoundError):
            await lifecycle.get_status("00000000-0000-0000-0000-000000000000")


class TestCancel:
    """Tests for cancellation."""

    async def test_cancel_waiting_job(
        self,
        lifecycle: LifecycleManager,
        notifier,
        webhook: dict[str, Any],
        clock,
    ):
        job = await lifecycle.submit("echo", webhook=webhook)

        canceled = await lifecycle.cancel(job.id)
        await lifecycle.dispatcher.drain()

        assert canceled.status == JobStatus.CANCELED
        assert canceled.error == CANCELED_ERROR
        assert canceled.completed_at == clock()
        assert await lifecycle.claim("w1") is None
        assert [n.status for n in notifier.for_job(job.id)] == [JobStatus.CANCELED]

    async def test_cancel_delayed_job(self, lifecycle: LifecycleManager):
        job = await lifecycle.submit("echo", delay_ms=1000)

        canceled = await lifecycle.cancel(job.id)

        assert canceled.status == JobStatus.CANCELED

    async def test_cancel_processing_job_conflicts(self, lifecycle: LifecycleManager):
        job = await lifecycle.submit("echo")
        await lifecycle.claim("w1")

        with pytest.raises(ConflictError) as exc_info:
            await lifecycle.cancel(job.id)

        assert exc_info.value.current_status == JobStatus.PROCESSING.value
        assert (await lifecycle.get_status(job.id)).status == JobStatus.PROCESSING

    async def test_cancel_terminal_job_conflicts(self, lifecycle: LifecycleManager):
        job = await lifecycle.submit("echo")
        await lifecycle.cancel(job.id)

        with pytest.raises(ConflictError):
            await lifecycle.cancel(job.id)

    async def test_cancel_unknown_job(self, lifecycle: LifecycleManager):
        with pytest.raises(NotFoundError):
            await lifecycle.cancel("00000000-0000-0000-0000-000000000000")

    async def test_cancel_claim_race_has_one_winner(self, lifecycle: LifecycleManager):
        """Test that a concurrent cancel and claim never both succeed."""
        job = await lifecycle.submit("echo")

        canceled, claimed = await asyncio.gather(
            lifecycle.cancel(job.id),
            lifecycle.claim("w1"),
            return_exceptions=True,
        )

        final = await lifecycle.get_status(job.id)
        if isinstance(canceled, ConflictError):
            assert claimed is not None and claimed.id == job.id
            assert final.status == JobStatus.PROCESSING
        else:
            assert canceled.status == JobStatus.CANCELED
            assert claimed is None
            assert final.status == JobStatus.CANCELED

    async def test_index_outage_after_cancel_commits(
        self,
        dispatcher: NotificationDispatcher,
        notifier,
        webhook: dict[str, Any],
        test_settings: Settings,
        clock,
    ):
        """Test that a store error while leaving the indexes does not undo a cancel."""
        store = IndexOutageStore(failures=1)
        lifecycle = LifecycleManager(store, dispatcher=dispatcher, settings=test_settings, clock=clock)
        job = await lifecycle.submit("echo", webhook=webhook)

        canceled = await lifecycle.cancel(job.id)
        await dispatcher.drain()

        assert canceled.status == JobStatus.CANCELED
        assert store.remove_calls == 2
        assert [n.status for n in notifier.for_job(job.id)] == [JobStatus.CANCELED]
        assert await lifecycle.claim("w1") is None


class TestReports:
    """Tests for worker reports."""

    async def test_report_success(
        self,
        lifecycle: LifecycleManager,
        notifier,
        webhook: dict[str, Any],
        clock,
    ):
        job = await lifecycle.submit("echo", webhook=webhook)
        await lifecycle.claim("w1")
        clock.advance(milliseconds=250)

        completed = await lifecycle.report_success(job.id, "w1", {"sent": True})
        await lifecycle.dispatcher.drain()

        assert completed.status == JobStatus.COMPLETED
        assert completed.result == {"sent": True}
        assert completed.completed_at == clock()
        assert completed.lease_owner is None
        assert completed.is_terminal

        notifications = notifier.for_job(job.id)
        assert len(notifications) == 1
        payload = notifications[0].to_payload()
        assert payload["jobId"] == job.id
        assert payload["status"] == "completed"
        assert payload["type"] == "echo"
        assert payload["result"] == {"sent": True}
        assert "error" not in payload
        assert payload["completedAt"] is not None

    async def test_success_without_output_stores_empty_result(
        self,
        lifecycle: LifecycleManager,
        notifier,
        webhook: dict[str, Any],
    ):
        job = await lifecycle.submit("echo", webhook=webhook)
        await lifecycle.claim("w1")

        completed = await lifecycle.report_success(job.id, "w1", None)
        await lifecycle.dispatcher.drain()

        assert completed.result == {}
        assert completed.error is None
        assert (await lifecycle.get_status(job.id)).result == {}
        assert notifier.for_job(job.id)[0].to_payload()["result"] == {}

    async def test_terminal_jobs_carry_exactly_one_of_result_and_error(
        self,
        lifecycle: LifecycleManager,
    ):
        succeeded = await lifecycle.submit("echo")
        failed = await lifecycle.submit("failing_job", retry={"max_attempts": 1})
        canceled = await lifecycle.submit("echo", delay_ms=1000)

        await lifecycle.claim("w1")
        await lifecycle.report_success(succeeded.id, "w1", None)
        await lifecycle.claim("w1")
        await lifecycle.report_failure(failed.id, "w1", "boom")
        await lifecycle.cancel(canceled.id)

        for job_id in (succeeded.id, failed.id, canceled.id):
            job = await lifecycle.get_status(job_id)
            assert job.is_terminal
            assert (job.result is None) != (job.error is None)

    async def test_report_from_wrong_worker_conflicts(self, lifecycle: LifecycleManager):
        job = await lifecycle.submit("echo")
        await lifecycle.claim("w1")

        with pytest.raises(ConflictError):
            await lifecycle.report_success(job.id, "w2", None)
        with pytest.raises(ConflictError):
            await lifecycle.report_failure(job.id, "w2", "boom")

        assert (await lifecycle.get_status(job.id)).status == JobStatus.PROCESSING

    async def test_report_on_unclaimed_job_conflicts(self, lifecycle: LifecycleManager):
        job = await lifecycle.submit("echo")

        with pytest.raises(ConflictError):
            await lifecycle.report_success(job.id, "w1", None)

    async def test_second_report_conflicts(self, lifecycle: LifecycleManager, notifier, webhook):
        job = await lifecycle.submit("echo", webhook=webhook)
        await lifecycle.claim("w1")
        await lifecycle.report_success(job.id, "w1", "done")

        with pytest.raises(ConflictError):
            await lifecycle.report_success(job.id, "w1", "again")
        await lifecycle.dispatcher.drain()

        assert len(notifier.for_job(job.id)) == 1

    async def test_report_unknown_job(self, lifecycle: LifecycleManager):
        with pytest.raises(NotFoundError):
            await lifecycle.report_failure("00000000-0000-0000-0000-000000000000", "w1", "boom")

    async def test_retry_backoff_trace(
        self,
        lifecycle: LifecycleManager,
        notifier,
        webhook: dict[str, Any],
        clock,
    ):
        """Test a job that fails every attempt with max_attempts=3 and a 100ms base."""
        job = await lifecycle.submit(
            "failing_job",
            retry={"max_attempts": 3, "backoff_base_ms": 100},
            webhook=webhook,
        )

        # Attempt 1 fails: retried after 100ms
        await lifecycle.claim("w1")
        failed_at = clock()
        retried = await lifecycle.report_failure(job.id, "w1", "error 1")
        assert retried.status == JobStatus.DELAYED
        assert retried.attempt == 1
        assert retried.last_error == "error 1"
        assert retried.available_at == failed_at + timedelta(milliseconds=100)
        assert retried.completed_at is None

        clock.advance(milliseconds=99)
        assert await lifecycle.promote_due_delayed() == []
        clock.advance(milliseconds=1)
        assert await lifecycle.promote_due_delayed() == [job.id]

        # Attempt 2 fails: retried after 200ms
        claimed = await lifecycle.claim("w1")
        assert claimed.attempt == 2
        failed_at = clock()
        retried = await lifecycle.report_failure(job.id, "w1", "error 2")
        assert retried.status == JobStatus.DELAYED
        assert retried.available_at == failed_at + timedelta(milliseconds=200)

        clock.advance(milliseconds=200)
        await lifecycle.promote_due_delayed()

        # Attempt 3 fails: attempts exhausted
        claimed = await lifecycle.claim("w1")
        assert claimed.attempt == 3
        failed = await lifecycle.report_failure(job.id, "w1", "error 3")
        await lifecycle.dispatcher.drain()

        assert failed.status == JobStatus.FAILED
        assert failed.attempt == 3
        assert failed.error == "error 3"
        assert failed.completed_at == clock()
        assert await lifecycle.claim("w1") is None

        notifications = notifier.for_job(job.id)
        assert len(notifications) == 1
        payload = notifications[0].to_payload()
        assert payload["status"] == "failed"
        assert payload["error"] == "error 3"
        assert "result" not in payload

    async def test_retry_keeps_priority_position(self, lifecycle: LifecycleManager, clock):
        retried = await lifecycle.submit("echo", priority=1, retry={"backoff_base_ms": 100})
        clock.advance(milliseconds=10)
        newer = await lifecycle.submit("echo", priority=1)

        await lifecycle.claim("w1")
        await lifecycle.report_failure(retried.id, "w1", "boom")
        clock.advance(milliseconds=100)
        await lifecycle.promote_due_delayed()

        assert (await lifecycle.claim("w2")).id == retried.id
        assert (await lifecycle.claim("w2")).id == newer.id


class TestLeases:
    """Tests for lease extension and expired-lease recovery."""

    async def test_extend_lease(
        self,
        lifecycle: LifecycleManager,
        test_settings: Settings,
        clock,
    ):
        job = await lifecycle.submit("echo")
        await lifecycle.claim("w1")
        clock.advance(seconds=20)

        extended = await lifecycle.extend_lease(job.id, "w1")

        assert extended.status == JobStatus.PROCESSING
        assert extended.lease_expires_at == clock() + timedelta(
            seconds=test_settings.worker_lease_duration_seconds
        )

    async def test_extend_lease_wrong_worker(self, lifecycle: LifecycleManager):
        job = await lifecycle.submit("echo")
        await lifecycle.claim("w1")

        with pytest.raises(ConflictError):
            await lifecycle.extend_lease(job.id, "w2")

    async def test_live_lease_not_recovered(self, lifecycle: LifecycleManager, clock):
        await lifecycle.submit("echo")
        await lifecycle.claim("w1")
        clock.advance(seconds=29)

        assert await lifecycle.recover_expired_leases() == []

    async def test_expired_lease_is_retried(self, lifecycle: LifecycleManager, clock):
        job = await lifecycle.submit("echo", retry={"max_attempts": 3, "backoff_base_ms": 100})
        await lifecycle.claim("crashed-worker")
        clock.advance(seconds=30)

        recovered = await lifecycle.recover_expired_leases()

        assert recovered == [job.id]
        refreshed = await lifecycle.get_status(job.id)
        assert refreshed.status == JobStatus.DELAYED
        assert refreshed.last_error == LEASE_EXPIRED_ERROR
        assert refreshed.lease_owner is None
        assert refreshed.available_at == clock() + timedelta(milliseconds=100)

        # The crashed worker's late report is rejected
        with pytest.raises(ConflictError):
            await lifecycle.report_success(job.id, "crashed-worker", "late")

    async def test_expired_lease_on_last_attempt_fails(
        self,
        lifecycle: LifecycleManager,
        notifier,
        webhook: dict[str, Any],
        clock,
    ):
        job = await lifecycle.submit("echo", retry={"max_attempts": 1}, webhook=webhook)
        await lifecycle.claim("w1")
        clock.advance(seconds=31)

        await lifecycle.recover_expired_leases()
        await lifecycle.dispatcher.drain()

        failed = await lifecycle.get_status(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == LEASE_EXPIRED_ERROR
        assert len(notifier.for_job(job.id)) == 1

    async def test_sweep_and_report_race_notifies_once(
        self,
        lifecycle: LifecycleManager,
        notifier,
        webhook: dict[str, Any],
        clock,
    ):
        """Test that a late report racing the sweep produces exactly one notification."""
        job = await lifecycle.submit("echo", retry={"max_attempts": 1}, webhook=webhook)
        await lifecycle.claim("w1")
        clock.advance(seconds=31)

        report, recovered = await asyncio.gather(
            lifecycle.report_success(job.id, "w1", "done"),
            lifecycle.recover_expired_leases(),
            return_exceptions=True,
        )
        await lifecycle.dispatcher.drain()

        final = await lifecycle.get_status(job.id)
        if isinstance(report, ConflictError):
            assert recovered == [job.id]
            assert final.status == JobStatus.FAILED
        else:
            assert recovered == []
            assert final.status == JobStatus.COMPLETED
        assert len(notifier.for_job(job.id)) == 1


class TestQueries:
    """Tests for listing and statistics."""

    async def test_stats_cover_every_status(self, lifecycle: LifecycleManager):
        await lifecycle.submit("echo")
        await lifecycle.submit("echo", delay_ms=1000)
        urgent = await lifecycle.submit("echo", priority=5)
        assert (await lifecycle.claim("w1")).id == urgent.id

        stats = await lifecycle.stats()

        assert stats == {
            "waiting": 1,
            "delayed": 1,
            "processing": 1,
            "completed": 0,
            "failed": 0,
            "canceled": 0,
        }

    async def test_list_jobs_with_status_filter(self, lifecycle: LifecycleManager):
        waiting = await lifecycle.submit("echo")
        await lifecycle.submit("echo", delay_ms=1000)

        jobs, total = await lifecycle.list_jobs(status=JobStatus.WAITING)

        assert total == 1
        assert [job.id for job in jobs] == [waiting.id]


class TestRealTime:
    """Tests that run on the wall clock."""

    async def test_delay_is_honored(
        self,
        store: JobStore,
        dispatcher: NotificationDispatcher,
        test_settings: Settings,
    ):
        """Test that a job submitted with delay_ms=200 is not claimable before 200ms."""
        lifecycle = LifecycleManager(store, dispatcher=dispatcher, settings=test_settings)
        started = time.monotonic()
        job = await lifecycle.submit("echo", delay_ms=200)

        await lifecycle.promote_due_delayed()
        assert await lifecycle.claim("w1") is None

        claimed = None
        while claimed is None:
            await asyncio.sleep(0.02)
            await lifecycle.promote_due_delayed()
            claimed = await lifecycle.claim("w1")

        assert claimed.id == job.id
        assert time.monotonic() - started >= 0.2
