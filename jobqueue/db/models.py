"""
SQLAlchemy database models.
Defines the jobs table backing the SQL job store.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import JobStatus


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    PostgreSQL stores ``timestamptz``; SQLite has no timezone support, so
    values are written as naive UTC and re-tagged as UTC on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


JSONColumn = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobRecord(Base):
    """
    Persisted job record.

    This is the authoritative source of truth for job state. The status and
    scheduling columns double as the ready and delay indexes:

    - ready: status = 'waiting' ordered by (priority desc, created_at, seq)
    - delayed: status = 'delayed' ordered by available_at
    - leases: status = 'processing' ordered by lease_expires_at
    """

    __tablename__ = "jobs"

    # Submission order; also breaks ties between equal created_at values
    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    type: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONColumn, nullable=False, default=dict)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Retry tracking
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_base_ms: Mapped[int] = mapped_column(Integer, nullable=False)

    webhook: Mapped[dict[str, Any] | None] = mapped_column(JSONColumn, nullable=True)

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Outcome
    result: Mapped[Any] = mapped_column(JSONColumn, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optimistic concurrency token, bumped by every compare-and-set
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_jobs_ready", "status", "priority", "created_at", "seq"),
        Index("ix_jobs_delayed", "status", "available_at"),
        Index("ix_jobs_lease_expiry", "status", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, type={self.type}, "
            f"status={self.status}, attempt={self.attempt}/{self.max_attempts})"
        )
