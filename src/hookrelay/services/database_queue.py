"""Durable, database-backed job queue.

Jobs are rows in the `jobs` table. add() inserts a PENDING row and returns
immediately; a worker (hookrelay.worker.main.Worker, or the in-process loop
started by the API) calls poll_once() to claim and execute jobs.

Key features:
- Atomic job claiming with SELECT ... FOR UPDATE SKIP LOCKED
  (no duplicate processing across worker processes on PostgreSQL)
- Only jobs with a registered handler are claimed
- Stale lock cleanup for workers that died mid-job
- Health tracking: any database error flips is_healthy() to False until
  the next successful operation or ping()

Retries are not handled here: a failed job stays FAILED and the retry
wrapper enqueues a successor row.

Usage:
    queue = DatabaseJobQueue(session_factory)
    queue.process("github_push", handle_push)
    await queue.add("github_push", {"repository": "o/r"})
    while await queue.poll_once("worker-1"):
        pass
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import SQLAlchemyError

from hookrelay.db.models.base import JobStatus
from hookrelay.db.models.jobs import JobRecord
from hookrelay.services.job_queue import JobQueue, JobStats, QueueJob, QueueUnavailableError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def _to_queue_job(record: JobRecord) -> QueueJob:
    return QueueJob(
        id=str(record.job_id),
        name=record.name,
        data=dict(record.data or {}),
        status=record.status,
        created_at=record.created_at,
        processed_at=record.processed_at,
        error=record.error,
    )


def _parse_job_id(job_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(job_id))
    except ValueError:
        return None


class DatabaseJobQueue(JobQueue):
    """SQL-backed queue with deferred execution.

    Attributes:
        session_factory: Factory producing AsyncSession instances.
    """

    mode = "database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the queue.

        Args:
            session_factory: Factory producing AsyncSession instances.
        """
        super().__init__()
        self.session_factory = session_factory
        self._healthy = True
        self._closed = False

    def _mark_unavailable(self, operation: str, error: Exception) -> QueueUnavailableError:
        self._healthy = False
        logger.error("Database queue %s failed: %s", operation, error)
        return QueueUnavailableError(f"Failed to {operation}: {error}")

    async def add(self, name: str, data: dict[str, Any]) -> str:
        if self._closed:
            msg = "Database queue is closed"
            raise QueueUnavailableError(msg)

        record = JobRecord(
            job_id=uuid.uuid4(),
            name=name,
            status=JobStatus.PENDING,
            data=dict(data),
            created_at=datetime.now(UTC),
        )

        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise self._mark_unavailable("enqueue job", e) from e

        self._healthy = True
        logger.info("Job enqueued: job_id=%s, name=%s", record.job_id, name)
        return str(record.job_id)

    async def poll_once(self, worker_id: str) -> bool:
        """Claim and execute the next pending job.

        Args:
            worker_id: Identifier recorded in the row lock.

        Returns:
            True if a job was processed (successfully or not), False if idle.

        Raises:
            QueueUnavailableError: If the database cannot be reached.
        """
        names = self.registered_names
        if not names:
            return False

        now = datetime.now(UTC)
        try:
            async with self.session_factory() as session:
                stmt = (
                    select(JobRecord)
                    .where(
                        JobRecord.status == JobStatus.PENDING,
                        JobRecord.name.in_(names),
                    )
                    .order_by(JobRecord.created_at)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                result = await session.execute(stmt)
                record = result.scalar_one_or_none()

                if record is None:
                    self._healthy = True
                    return False

                record.status = JobStatus.PROCESSING
                record.locked_at = now
                record.locked_by = worker_id
                record.started_at = now
                job = _to_queue_job(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise self._mark_unavailable("claim job", e) from e

        self._healthy = True
        logger.info("Job claimed: job_id=%s, name=%s, worker_id=%s", job.id, job.name, worker_id)

        handler = self._handlers.get(job.name)
        if handler is None:
            # Unregistered between claim and dispatch
            await self._finish(job, now, JobStatus.FAILED, f"No handler registered for {job.name}")
            return True

        try:
            await handler(job)
        except Exception as e:
            logger.warning("Job failed: job_id=%s, name=%s, error=%s", job.id, job.name, e)
            await self._finish(job, now, JobStatus.FAILED, str(e))
            return True

        await self._finish(job, now, JobStatus.COMPLETED, None)
        return True

    async def _finish(
        self,
        job: QueueJob,
        started_at: datetime,
        status: JobStatus,
        error: str | None,
    ) -> None:
        now = datetime.now(UTC)
        duration_ms = int((now - started_at).total_seconds() * 1000)

        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(JobRecord)
                    .where(JobRecord.job_id == uuid.UUID(job.id))
                    .values(
                        status=status,
                        processed_at=now,
                        error=error,
                        duration_ms=duration_ms,
                        locked_at=None,
                        locked_by=None,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise self._mark_unavailable("record job outcome", e) from e

        job.status = status
        job.processed_at = now
        job.error = error
        logger.info(
            "Job finished: job_id=%s, name=%s, status=%s, duration_ms=%d",
            job.id,
            job.name,
            status.value,
            duration_ms,
        )

    async def get_job(self, job_id: str) -> QueueJob | None:
        parsed = _parse_job_id(job_id)
        if parsed is None:
            return None

        try:
            async with self.session_factory() as session:
                result = await session.execute(select(JobRecord).where(JobRecord.job_id == parsed))
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._mark_unavailable("get job", e) from e

        return _to_queue_job(record) if record is not None else None

    async def get_stats(self) -> JobStats:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(JobRecord.status, func.count()).group_by(JobRecord.status)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            raise self._mark_unavailable("get stats", e) from e

        counts = {status: count for status, count in rows}
        return JobStats(
            pending=counts.get(JobStatus.PENDING, 0),
            processing=counts.get(JobStatus.PROCESSING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
        )

    async def get_failed_jobs(self, name: str | None = None, limit: int = 100) -> list[QueueJob]:
        """Retrieve the most recently failed jobs.

        Args:
            name: Optional job name to filter by.
            limit: Maximum number of jobs to return.
        """
        stmt = (
            select(JobRecord)
            .where(JobRecord.status == JobStatus.FAILED)
            .order_by(JobRecord.processed_at.desc())
            .limit(limit)
        )
        if name:
            stmt = stmt.where(JobRecord.name == name)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                records = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise self._mark_unavailable("list failed jobs", e) from e

        return [_to_queue_job(r) for r in records]

    async def cleanup_stale_jobs(self, stale_threshold_seconds: int = 600) -> int:
        """Reset jobs that have been processing too long (stale locks).

        Workers may crash while processing jobs. Rows locked longer than the
        threshold go back to PENDING, so the handler may run again: handlers
        must tolerate redelivery.

        Returns:
            Number of stale jobs reset.
        """
        threshold = datetime.now(UTC) - timedelta(seconds=stale_threshold_seconds)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(JobRecord)
                    .where(
                        JobRecord.status == JobStatus.PROCESSING,
                        JobRecord.locked_at < threshold,
                    )
                    .values(status=JobStatus.PENDING, locked_at=None, locked_by=None)
                    .returning(JobRecord.job_id)
                )
                stale_ids = list(result.scalars().all())
                await session.commit()
        except SQLAlchemyError as e:
            raise self._mark_unavailable("cleanup stale jobs", e) from e

        if stale_ids:
            logger.warning("Reset %d stale jobs: %s", len(stale_ids), stale_ids)
        return len(stale_ids)

    async def ping(self) -> bool:
        """Probe the database and refresh the health flag."""
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self._healthy = False
            logger.error("Database queue health check failed: %s", e)
            return False

        self._healthy = True
        return True

    def is_healthy(self) -> bool:
        return self._healthy and not self._closed

    async def close(self) -> None:
        self._closed = True
        logger.info("Database queue closed")
