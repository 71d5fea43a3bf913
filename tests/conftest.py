"""
Pytest configuration and shared fixtures.
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from jobqueue.api.main import create_app
from jobqueue.bootstrap import QueueRuntime, open_runtime
from jobqueue.config import Settings
from jobqueue.core.lifecycle import LifecycleManager
from jobqueue.core.notifications import NotificationDispatcher, Notifier
from jobqueue.db.connection import create_engine
from jobqueue.db.repository import SqlJobStore
from jobqueue.store.base import JobStore
from jobqueue.store.memory import MemoryJobStore
from jobqueue.types.events import JobNotification
from jobqueue.types.job import WebhookConfig

WEBHOOK = {"url": "https://hooks.example.com/jobs", "headers": {"X-Token": "secret"}}


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, milliseconds: float = 0, seconds: float = 0) -> datetime:
        self.now += timedelta(milliseconds=milliseconds, seconds=seconds)
        return self.now


class RecordingNotifier(Notifier):
    """Notifier that records deliveries instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[JobNotification, WebhookConfig]] = []
        self.closed = False

    async def notify(self, notification: JobNotification, webhook: WebhookConfig) -> None:
        self.sent.append((notification, webhook))

    async def aclose(self) -> None:
        self.closed = True

    def for_job(self, job_id: str) -> list[JobNotification]:
        return [notification for notification, _ in self.sent if notification.job_id == job_id]


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        store_backend="memory",
        database_url=sqlite_url(tmp_path / "jobs.db"),
        log_level="DEBUG",
        log_format="console",
        worker_id="test-worker",
        worker_lease_duration_seconds=30,
        worker_poll_interval_seconds=0.01,
        worker_heartbeat_interval_seconds=0.05,
        worker_shutdown_timeout_seconds=2,
        scheduler_tick_interval_seconds=0.01,
        reaper_interval_seconds=0.05,
        store_retry_attempts=3,
        store_retry_wait_seconds=0,
        webhook_base_delay_ms=1,
        webhook_timeout_seconds=1,
    )


@pytest.fixture
def clock() -> FakeClock:
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Create a recording notifier."""
    return RecordingNotifier()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, test_settings: Settings, tmp_path: Path) -> AsyncGenerator[JobStore]:
    """Job store under test: in-memory and SQL (SQLite file)."""
    if request.param == "memory":
        job_store: JobStore = MemoryJobStore()
    else:
        engine = create_engine(test_settings, sqlite_url(tmp_path / "store.db"))
        job_store = SqlJobStore(engine)
        await job_store.create_schema()

    yield job_store

    await job_store.close()


@pytest.fixture
def dispatcher(notifier: RecordingNotifier) -> NotificationDispatcher:
    """Create a dispatcher that delivers to the recording notifier."""
    return NotificationDispatcher(notifier)


@pytest.fixture
def lifecycle(
    store: JobStore,
    dispatcher: NotificationDispatcher,
    test_settings: Settings,
    clock: FakeClock,
) -> LifecycleManager:
    """Create a lifecycle manager driven by the fake clock."""
    return LifecycleManager(store, dispatcher=dispatcher, settings=test_settings, clock=clock)


@pytest_asyncio.fixture
async def runtime(
    test_settings: Settings,
    notifier: RecordingNotifier,
) -> AsyncGenerator[QueueRuntime]:
    """Open an in-memory queue runtime on the real clock."""
    queue_runtime = await open_runtime(test_settings, notifier=notifier)
    yield queue_runtime
    await queue_runtime.aclose()


@pytest.fixture
def app(runtime: QueueRuntime) -> FastAPI:
    """Create a FastAPI app bound to the test runtime."""
    return create_app(runtime)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def webhook() -> dict[str, Any]:
    """Webhook configuration as passed to submit."""
    return dict(WEBHOOK)


@pytest.fixture
def sample_job_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"to": "user@example.com", "subject": "Welcome"}
