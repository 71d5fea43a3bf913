"""
Process wiring.

Builds the job store, notifier and lifecycle manager from settings. The API,
worker and reaper processes all start from ``open_runtime``.
"""

import logging
from dataclasses import dataclass

from jobqueue.config import Settings, get_settings
from jobqueue.core.lifecycle import LifecycleManager
from jobqueue.core.notifications import NotificationDispatcher, Notifier
from jobqueue.db.connection import create_engine
from jobqueue.db.repository import SqlJobStore
from jobqueue.notify.webhook import WebhookNotifier
from jobqueue.observability.tracing import instrument_sqlalchemy
from jobqueue.store.base import JobStore
from jobqueue.store.memory import MemoryJobStore

logger = logging.getLogger(__name__)


@dataclass
class QueueRuntime:
    """Everything a queue process needs, with a single shutdown hook."""

    settings: Settings
    store: JobStore
    lifecycle: LifecycleManager
    dispatcher: NotificationDispatcher
    notifier: Notifier | None

    async def aclose(self) -> None:
        """Wait for in-flight notifications, then release the store and notifier."""
        await self.dispatcher.drain()
        if self.notifier is not None:
            await self.notifier.aclose()
        await self.store.close()
        logger.info("Queue runtime closed")


async def create_store(settings: Settings) -> JobStore:
    """
    Create the configured job store.

    The SQL store's schema is created if missing.
    """
    if settings.store_backend == "memory":
        logger.info("Using in-memory job store")
        return MemoryJobStore()

    engine = create_engine(settings)
    if settings.tracing_enabled:
        instrument_sqlalchemy(engine.sync_engine)

    store = SqlJobStore(engine)
    await store.create_schema()
    return store


async def open_runtime(
    settings: Settings | None = None,
    *,
    store: JobStore | None = None,
    notifier: Notifier | None = None,
) -> QueueRuntime:
    """
    Open a queue runtime.

    Args:
        settings: Application settings.
        store: Use this store instead of creating one from settings.
        notifier: Use this notifier instead of the webhook notifier.

    Returns:
        QueueRuntime: The wired components.
    """
    settings = settings or get_settings()
    store = store or await create_store(settings)
    notifier = notifier or WebhookNotifier(settings)
    dispatcher = NotificationDispatcher(notifier)
    lifecycle = LifecycleManager(store, dispatcher=dispatcher, settings=settings)

    return QueueRuntime(
        settings=settings,
        store=store,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        notifier=notifier,
    )
