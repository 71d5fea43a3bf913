"""
Webhook delivery for terminal-state notifications.

Delivery is best effort: failures are logged and reported in the returned
``DeliveryResult`` but never change job status.
"""

import logging

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from jobqueue.config import Settings, get_settings
from jobqueue.core.notifications import Notifier
from jobqueue.types.events import JobNotification
from jobqueue.types.job import WebhookConfig

logger = logging.getLogger(__name__)


class DeliveryResult(BaseModel):
    """Outcome of a webhook delivery."""

    success: bool
    status_code: int | None = None
    attempts: int = 0
    error: str | None = None


class ServerErrorResponse(Exception):
    """A 5xx response; the delivery is retried."""

    def __init__(self, status_code: int):
        super().__init__(f"Webhook endpoint returned HTTP {status_code}")
        self.status_code = status_code


class WebhookNotifier(Notifier):
    """
    POSTs notification JSON to a job's webhook URL.

    Retries server errors, timeouts and network failures with exponential
    backoff; client errors (4xx) are not retried.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the notifier.

        Args:
            settings: Application settings.
            client: Optional HTTP client. One is created (and owned) if omitted.
        """
        self._settings = settings or get_settings()
        self._timeout = httpx.Timeout(self._settings.webhook_timeout_seconds)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self._settings.webhook_max_attempts)),
            wait=wait_exponential(multiplier=self._settings.webhook_base_delay_ms / 1000),
            retry=retry_if_exception_type((ServerErrorResponse, httpx.TransportError)),
            reraise=True,
        )

    async def notify(
        self,
        notification: JobNotification,
        webhook: WebhookConfig,
    ) -> DeliveryResult:
        """
        Deliver a notification.

        Args:
            notification: The terminal-state notification.
            webhook: Target URL and extra headers.

        Returns:
            DeliveryResult describing the final attempt.
        """
        url = str(webhook.url)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.webhook_user_agent,
            **webhook.headers,
        }
        payload = notification.to_payload()

        attempts = 0
        status_code: int | None = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    status_code = None
                    response = await self._client.post(
                        url, json=payload, headers=headers, timeout=self._timeout
                    )
                    status_code = response.status_code
                    if response.status_code >= 500:
                        raise ServerErrorResponse(response.status_code)
        except (ServerErrorResponse, httpx.TransportError) as e:
            logger.warning(
                "Webhook delivery failed",
                extra={
                    "job_id": notification.job_id,
                    "url": url,
                    "attempts": attempts,
                    "error": str(e),
                },
            )
            return DeliveryResult(
                success=False, status_code=status_code, attempts=attempts, error=str(e)
            )

        if not response.is_success:
            logger.warning(
                "Webhook rejected notification",
                extra={
                    "job_id": notification.job_id,
                    "url": url,
                    "status_code": status_code,
                },
            )
            return DeliveryResult(
                success=False,
                status_code=status_code,
                attempts=attempts,
                error=f"Webhook endpoint returned HTTP {status_code}",
            )

        logger.info(
            "Webhook delivered",
            extra={
                "job_id": notification.job_id,
                "status": notification.status.value,
                "attempts": attempts,
            },
        )
        return DeliveryResult(success=True, status_code=status_code, attempts=attempts)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
