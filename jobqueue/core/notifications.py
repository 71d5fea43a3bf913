"""
Terminal-state notifications.

The lifecycle manager hands a job to the dispatcher only after winning the
compare-and-set that made it terminal, so each terminal transition is
delivered once. Delivery runs in the background and never affects job
status.
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.types.events import JobNotification
from jobqueue.types.job import Job, WebhookConfig


class Notifier(ABC):
    """Delivers a notification to a job's webhook."""

    @abstractmethod
    async def notify(self, notification: JobNotification, webhook: WebhookConfig) -> object:
        """Deliver one notification."""

    async def aclose(self) -> None:
        """Release notifier resources."""


class NotificationDispatcher:
    """
    Fire-and-forget fan-out of terminal notifications.

    Keeps a reference to every in-flight delivery so shutdown can wait for
    them with ``drain``.
    """

    def __init__(
        self,
        notifier: Notifier | None,
        metrics: MetricsCollector | None = None,
        logger: logging.Logger | None = None,
    ):
        self._notifier = notifier
        self._metrics = metrics or get_metrics()
        self._logger = logger or logging.getLogger(__name__)
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def emit(self, job: Job) -> None:
        """
        Schedule delivery of a terminal job's notification.

        Jobs without a webhook are ignored.
        """
        if job.webhook is None or self._notifier is None:
            return

        notification = JobNotification.from_job(job)
        self._metrics.record_notification(job.status.value)

        task = asyncio.create_task(self._deliver(notification, job.webhook))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for all in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, notification: JobNotification, webhook: WebhookConfig) -> None:
        try:
            await self._notifier.notify(notification, webhook)
        except Exception:
            self._logger.exception(
                "Notification delivery failed",
                extra={"job_id": notification.job_id, "url": str(webhook.url)},
            )
