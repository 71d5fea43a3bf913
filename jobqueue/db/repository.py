"""
SQL job store.
Implements the job store contract on top of SQLAlchemy.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobqueue.clock import utcnow
from jobqueue.constants import JobStatus
from jobqueue.db.connection import create_session_factory
from jobqueue.db.models import Base, JobRecord
from jobqueue.errors import ConflictError, NotFoundError, StoreError
from jobqueue.store.base import Guard, JobStore, Mutator, apply_transition
from jobqueue.types.job import Job, RetryPolicyConfig, WebhookConfig

logger = logging.getLogger(__name__)


def _to_job(record: JobRecord) -> Job:
    """Convert a database row to a Job snapshot."""
    return Job(
        id=record.id,
        type=record.type,
        payload=record.payload or {},
        priority=record.priority,
        status=JobStatus(record.status),
        available_at=record.available_at,
        attempt=record.attempt,
        retry_policy=RetryPolicyConfig(
            max_attempts=record.max_attempts,
            backoff_base_ms=record.backoff_base_ms,
        ),
        webhook=WebhookConfig.model_validate(record.webhook) if record.webhook else None,
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
        result=record.result,
        error=record.error,
        last_error=record.last_error,
        lease_owner=record.lease_owner,
        lease_started_at=record.lease_started_at,
        lease_expires_at=record.lease_expires_at,
        seq=record.seq,
        version=record.version,
    )


def _to_values(job: Job) -> dict[str, Any]:
    """Convert a Job snapshot to column values (everything except seq)."""
    return {
        "id": job.id,
        "type": job.type,
        "payload": job.payload,
        "priority": job.priority,
        "status": job.status,
        "available_at": job.available_at,
        "attempt": job.attempt,
        "max_attempts": job.retry_policy.max_attempts,
        "backoff_base_ms": job.retry_policy.backoff_base_ms,
        "webhook": job.webhook.model_dump(mode="json") if job.webhook else None,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "completed_at": job.completed_at,
        "result": job.result,
        "error": job.error,
        "last_error": job.last_error,
        "lease_owner": job.lease_owner,
        "lease_started_at": job.lease_started_at,
        "lease_expires_at": job.lease_expires_at,
        "version": job.version,
    }


class SqlJobStore(JobStore):
    """
    Job store backed by a relational database.

    Implements:
    - Compare-and-set as a conditional UPDATE guarded on status and version
    - Ready/delay indexes as ordered SELECTs over the status columns
    - Lease expiry lookups for the recovery sweep

    Index pushes and removals are no-ops: a row's status decides which
    index it belongs to. Driver errors surface as ``StoreError``.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Initialize the store.

        Args:
            engine: The async database engine.
            session_factory: Optional session factory; created from the engine if omitted.
        """
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)

    async def create_schema(self) -> None:
        """Create the jobs table and its indexes if they do not exist."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StoreError(f"Could not create schema: {e}") from e
        logger.info("Job store schema ready")

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(
                "Job store operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StoreError(f"Job store unavailable during {operation}: {e}") from e

    async def put(self, job: Job) -> Job:
        values = _to_values(job)
        try:
            async with self._transaction("put") as session:
                record = JobRecord(**values)
                session.add(record)
                await session.flush()
                seq = record.seq
        except IntegrityError as e:
            raise ConflictError(f"Job '{job.id}' already exists", job_id=job.id) from e

        return job.model_copy(update={"seq": seq})

    async def get(self, job_id: str) -> Job:
        async with self._transaction("get") as session:
            record = await self._fetch(session, job_id)
            return _to_job(record)

    async def compare_and_set_status(
        self,
        job_id: str,
        expected: JobStatus,
        new: JobStatus,
        mutator: Mutator | None = None,
        *,
        when: Guard | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        async with self._transaction("compare_and_set_status") as session:
            current = _to_job(await self._fetch(session, job_id))
            if current.status != expected:
                return None
            if when is not None and not when(current):
                return None

            updated = apply_transition(current, new, mutator, now or utcnow())
            values = _to_values(updated)
            values.pop("id")

            stmt = (
                update(JobRecord)
                .where(
                    JobRecord.id == job_id,
                    JobRecord.status == expected,
                    JobRecord.version == current.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                logger.debug(
                    "Compare-and-set lost to a concurrent writer",
                    extra={"job_id": job_id, "expected": expected.value},
                )
                return None

        logger.debug(
            "Job status transition",
            extra={"job_id": job_id, "from": expected.value, "to": new.value},
        )
        return updated

    async def push_ready(self, job: Job) -> None:
        return None

    async def pop_ready(self, now: datetime) -> str | None:
        stmt = (
            select(JobRecord.id)
            .where(
                JobRecord.status == JobStatus.WAITING,
                JobRecord.available_at <= now,
            )
            .order_by(
                JobRecord.priority.desc(),
                JobRecord.created_at.asc(),
                JobRecord.seq.asc(),
            )
            .limit(1)
        )
        async with self._transaction("pop_ready") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def push_delayed(self, job: Job) -> None:
        return None

    async def pop_due_delayed(self, now: datetime, limit: int) -> list[str]:
        stmt = (
            select(JobRecord.id)
            .where(
                JobRecord.status == JobStatus.DELAYED,
                JobRecord.available_at <= now,
            )
            .order_by(JobRecord.available_at.asc(), JobRecord.seq.asc())
            .limit(limit)
        )
        async with self._transaction("pop_due_delayed") as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def remove_from_indexes(self, job_id: str) -> None:
        return None

    async def expired_leases(self, now: datetime, limit: int) -> list[Job]:
        stmt = (
            select(JobRecord)
            .where(
                JobRecord.status == JobStatus.PROCESSING,
                JobRecord.lease_expires_at <= now,
            )
            .order_by(JobRecord.lease_expires_at.asc())
            .limit(limit)
        )
        async with self._transaction("expired_leases") as session:
            result = await session.execute(stmt)
            return [_to_job(record) for record in result.scalars().all()]

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        count_stmt = select(func.count()).select_from(JobRecord)
        stmt = select(JobRecord).order_by(JobRecord.created_at.desc(), JobRecord.seq.desc())
        if status is not None:
            count_stmt = count_stmt.where(JobRecord.status == status)
            stmt = stmt.where(JobRecord.status == status)
        stmt = stmt.limit(limit).offset(offset)

        async with self._transaction("list_jobs") as session:
            total = (await session.execute(count_stmt)).scalar() or 0
            result = await session.execute(stmt)
            jobs = [_to_job(record) for record in result.scalars().all()]

        return jobs, total

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(JobRecord.status, func.count()).group_by(JobRecord.status)
        async with self._transaction("count_by_status") as session:
            result = await session.execute(stmt)
            return {JobStatus(status).value: count for status, count in result.all()}

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("Database connection closed")

    @staticmethod
    async def _fetch(session: AsyncSession, job_id: str) -> JobRecord:
        result = await session.execute(select(JobRecord).where(JobRecord.id == job_id))
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"Job with ID '{job_id}' not found.", job_id=job_id)
        return record
