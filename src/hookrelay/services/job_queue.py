"""Provider-agnostic job queue abstraction.

Producers (webhook routers) enqueue named jobs; consumers (event workers)
register one handler per job name. The queue only dispatches: retry is a
decorator applied to handlers at registration (see hookrelay.services.retry).

Backings:
- InMemoryJobQueue: process-local, runs the handler inline during add().
  Suitable for a single process; jobs are lost on restart.
- DatabaseJobQueue (hookrelay.services.database_queue): durable SQL table,
  execution deferred to a polling worker. Required for multi-process or
  multi-instance deployments.

Callers must not assume either timing: add() eventually leads to at most one
handler invocation per job.

Usage:
    queue = InMemoryJobQueue()

    async def handle_push(job: QueueJob) -> None:
        ...

    queue.process("github_push", handle_push)
    job_id = await queue.add("github_push", {"repository": "o/r"})
"""

from __future__ import annotations

import abc
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from hookrelay.db.models.base import JobStatus

logger = logging.getLogger(__name__)


class JobName(str, Enum):
    """Job names produced by the webhook routers.

    Each name corresponds to one handler in hookrelay.worker.handlers.
    """

    GITHUB_PUSH = "github_push"
    GITHUB_PULL_REQUEST = "github_pull_request"
    GITHUB_ISSUES = "github_issues"
    GITHUB_ISSUE_COMMENT = "github_issue_comment"
    LINEAR_ISSUE = "linear_issue"
    LINEAR_COMMENT = "linear_comment"
    LINEAR_PROJECT = "linear_project"


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class QueueUnavailableError(JobQueueError):
    """Raised when the backing transport cannot accept or serve jobs."""

    pass


@dataclass(slots=True)
class QueueJob:
    """A unit of asynchronous work.

    Attributes:
        id: Opaque identifier assigned at enqueue.
        name: Job type used to route to a handler.
        data: JSON-serializable payload.
        status: Lifecycle state.
        created_at: When the job was enqueued.
        processed_at: Set on the terminal transition only.
        error: Message of the failure that made the job FAILED.
    """

    id: str
    name: str
    data: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class JobStats:
    """Aggregate job counts by status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
        }


JobHandler = Callable[[QueueJob], Awaitable[None]]


class JobQueue(abc.ABC):
    """Interface shared by all queue backings.

    Handler registration is last-registration-wins: registering a second
    handler for a name replaces the first (logged as a warning). Two
    handlers never run for the same job.
    """

    mode: str = "abstract"

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def process(self, name: str, handler: JobHandler) -> None:
        """Register the handler for all jobs named `name`.

        Args:
            name: Job name to route.
            handler: Async callable receiving the QueueJob.
        """
        if name in self._handlers and self._handlers[name] is not handler:
            logger.warning("Replacing existing handler for job name=%s", name)
        self._handlers[name] = handler
        logger.debug("Registered handler for job name=%s (mode=%s)", name, self.mode)

    def get_handler(self, name: str) -> JobHandler | None:
        return self._handlers.get(name)

    @property
    def registered_names(self) -> list[str]:
        return sorted(self._handlers)

    @abc.abstractmethod
    async def add(self, name: str, data: dict[str, Any]) -> str:
        """Enqueue a job and return its id.

        Raises:
            QueueUnavailableError: If the backing transport is unreachable.
        """

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> QueueJob | None:
        """Look up a job by id for status inspection."""

    @abc.abstractmethod
    async def get_stats(self) -> JobStats:
        """Return aggregate counts by status."""

    @abc.abstractmethod
    def is_healthy(self) -> bool:
        """Report whether the backing transport is reachable and operating."""

    async def ping(self) -> bool:
        """Actively probe the backing and return the refreshed health flag."""
        return self.is_healthy()

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release backing resources."""


class InMemoryJobQueue(JobQueue):
    """Process-local queue that runs handlers inline.

    add() records the job and, when a handler is registered, awaits it before
    returning. Handler exceptions mark the job FAILED and are logged; they are
    never raised from add(). Jobs without a handler stay PENDING until one is
    registered and dispatch_pending() is called.

    Bounded: once max_jobs is exceeded the oldest completed or failed jobs
    are forgotten, so get_job() and get_stats() only cover retained jobs.
    Pending and processing jobs are never evicted.
    """

    mode = "memory"

    def __init__(self, max_jobs: int = 10_000) -> None:
        super().__init__()
        self.max_jobs = max_jobs
        self._jobs: dict[str, QueueJob] = {}
        self._closed = False

    async def add(self, name: str, data: dict[str, Any]) -> str:
        if self._closed:
            msg = "In-memory queue is closed"
            raise QueueUnavailableError(msg)

        job = QueueJob(id=str(uuid.uuid4()), name=name, data=dict(data))
        self._jobs[job.id] = job
        logger.info("Job enqueued: job_id=%s, name=%s", job.id, name)

        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("No handler registered for job name=%s; job left pending", name)
            self._evict()
            return job.id

        await self._run(job, handler)
        self._evict()
        return job.id

    async def dispatch_pending(self) -> int:
        """Run every pending job that now has a handler.

        Returns:
            Number of jobs dispatched.
        """
        dispatched = 0
        for job in list(self._jobs.values()):
            if job.status is not JobStatus.PENDING:
                continue
            handler = self._handlers.get(job.name)
            if handler is None:
                continue
            await self._run(job, handler)
            dispatched += 1
        self._evict()
        return dispatched

    def _evict(self) -> None:
        excess = len(self._jobs) - self.max_jobs
        if excess <= 0:
            return
        finished = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)
        ]
        for job_id in finished[:excess]:
            del self._jobs[job_id]

    async def _run(self, job: QueueJob, handler: JobHandler) -> None:
        job.status = JobStatus.PROCESSING
        try:
            await handler(job)
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.processed_at = datetime.now(UTC)
            logger.warning(
                "Job failed: job_id=%s, name=%s, error=%s",
                job.id,
                job.name,
                e,
            )
            return

        job.status = JobStatus.COMPLETED
        job.processed_at = datetime.now(UTC)
        logger.info("Job completed: job_id=%s, name=%s", job.id, job.name)

    async def get_job(self, job_id: str) -> QueueJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self, name: str | None = None) -> list[QueueJob]:
        """Return jobs in enqueue order, optionally filtered by name."""
        return [j for j in self._jobs.values() if name is None or j.name == name]

    async def get_stats(self) -> JobStats:
        counts = dict.fromkeys(JobStatus, 0)
        for job in self._jobs.values():
            counts[job.status] += 1
        return JobStats(
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
        )

    def is_healthy(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True
        logger.info("In-memory queue closed (jobs=%d)", len(self._jobs))
