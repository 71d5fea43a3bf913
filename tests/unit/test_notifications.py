"""
Unit tests for the notification dispatcher.
"""

from datetime import UTC, datetime

from jobqueue.constants import JobStatus
from jobqueue.core.notifications import NotificationDispatcher, Notifier
from jobqueue.types.job import Job, WebhookConfig

NOW = datetime(2026, 1, 1, tzinfo=UTC)


def terminal_job(webhook: WebhookConfig | None) -> Job:
    return Job(
        id="job-1",
        type="echo",
        status=JobStatus.COMPLETED,
        available_at=NOW,
        webhook=webhook,
        created_at=NOW,
        updated_at=NOW,
        completed_at=NOW,
        result="ok",
    )


class ExplodingNotifier(Notifier):
    async def notify(self, notification, webhook):
        raise RuntimeError("endpoint unreachable")


class TestNotificationDispatcher:
    """Tests for NotificationDispatcher.emit and drain."""

    async def test_emit_delivers_in_background(self, notifier):
        dispatcher = NotificationDispatcher(notifier)
        hook = WebhookConfig(url="https://hooks.example.com/jobs")

        dispatcher.emit(terminal_job(hook))
        assert dispatcher.pending == 1
        await dispatcher.drain()

        assert dispatcher.pending == 0
        assert len(notifier.sent) == 1
        notification, sent_to = notifier.sent[0]
        assert notification.job_id == "job-1"
        assert notification.result == "ok"
        assert sent_to == hook

    async def test_job_without_webhook_is_ignored(self, notifier):
        dispatcher = NotificationDispatcher(notifier)

        dispatcher.emit(terminal_job(None))
        await dispatcher.drain()

        assert notifier.sent == []

    async def test_delivery_errors_are_contained(self):
        dispatcher = NotificationDispatcher(ExplodingNotifier())

        dispatcher.emit(terminal_job(WebhookConfig(url="https://hooks.example.com/jobs")))
        await dispatcher.drain()

        assert dispatcher.pending == 0
