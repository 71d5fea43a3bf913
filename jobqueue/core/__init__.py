"""
Queue core.
Contains the scheduler, claim protocol, retry policy and lifecycle manager.
"""

from jobqueue.core.claim import ClaimProtocol
from jobqueue.core.lifecycle import LifecycleManager
from jobqueue.core.notifications import NotificationDispatcher, Notifier
from jobqueue.core.retry import RetryDecision, RetryPolicy, backoff_delay_ms
from jobqueue.core.scheduler import Scheduler

__all__ = [
    "ClaimProtocol",
    "LifecycleManager",
    "NotificationDispatcher",
    "Notifier",
    "RetryDecision",
    "RetryPolicy",
    "backoff_delay_ms",
    "Scheduler",
]
