"""
Retry and backoff policy.

Pure decision logic: given a job that just failed an attempt, decide
whether it goes back to the delay index or becomes terminally failed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from jobqueue.constants import RetryAction
from jobqueue.types.job import Job


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of ``RetryPolicy.on_failure``."""

    action: RetryAction
    next_available_at: datetime | None = None

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


def backoff_delay_ms(backoff_base_ms: int, attempt: int) -> int:
    """
    Calculate the exponential backoff delay for a failed attempt.

    Args:
        backoff_base_ms: Base delay in milliseconds.
        attempt: The attempt that just failed (1-based).

    Returns:
        Delay in milliseconds: ``base * 2 ** (attempt - 1)``.
    """
    return backoff_base_ms * 2 ** max(attempt - 1, 0)


class RetryPolicy:
    """
    Exponential backoff retry policy.

    A job whose ``attempt`` is below its ``max_attempts`` is retried after
    ``backoff_base_ms * 2 ** (attempt - 1)`` milliseconds; otherwise it fails.
    """

    def on_failure(self, job: Job, error: str, now: datetime) -> RetryDecision:
        """
        Decide what happens to a job after a failed attempt.

        Args:
            job: The job as it was while processing (``attempt`` already counts
                the failed claim).
            error: The failure description. Not used by the decision itself.
            now: The failure time.

        Returns:
            RetryDecision with the next availability time when retrying.
        """
        if job.attempt < job.retry_policy.max_attempts:
            delay = backoff_delay_ms(job.retry_policy.backoff_base_ms, job.attempt)
            return RetryDecision(
                action=RetryAction.RETRY,
                next_available_at=now + timedelta(milliseconds=delay),
            )
        return RetryDecision(action=RetryAction.FAIL)
