"""Job queue model for the durable, database-backed queue.

Rows are claimed by workers using SELECT ... FOR UPDATE SKIP LOCKED on
PostgreSQL so several worker processes can share one table safely.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hookrelay.db.models.base import (
    Base,
    JobStatus,
    JSONDict,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class JobRecord(Base):
    """Persisted queue job.

    Retries never mutate a failed row: the retry wrapper enqueues a new row
    whose payload carries the retry metadata under the "_retry" key.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    # Handler routing key, e.g. 'github_push', 'linear_issue'
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    data: Mapped[JSONDict]

    # Lock tracking for concurrent workers
    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    processed_at: Mapped[OptionalTimestampTZ]
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Actual duration in milliseconds (for metrics)
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        # Primary query for workers: pending jobs in arrival order
        Index("ix_jobs_status_created_at", "status", "created_at"),
        Index("ix_jobs_name", "name"),
        Index("ix_jobs_processed_at", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<JobRecord {self.job_id} {self.name} {self.status.value}>"
