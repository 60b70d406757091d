"""Bounded exponential-backoff retry for queue job handlers.

with_retry() decorates a handler without touching the queue or the handler:

- On success the retry chain is marked completed (recovery is logged when the
  job was itself a retry).
- On failure with budget left, a *new* job with the same name is enqueued
  after min(initial_delay_ms * backoff_multiplier**n, max_delay_ms). Its
  payload is the original data plus retry metadata under "_retry".
- On failure with the budget exhausted, the job is handed to a dead-letter
  sink and nothing further is scheduled.

In every failure case the original exception is re-raised so the current job
is recorded as failed by the queue.

Each attempt is a distinct queue job. The chain of attempts shares a stable
root_job_id (the id of the first attempt), tracked by RetryTracker, so the
outcome of a logical job can be looked up even though the first job id stays
failed.

Delayed re-enqueues run on RetryScheduler timers, keyed by root_job_id, which
can be cancelled individually or all at once on shutdown.

Usage:
    manager = RetryManager(queue, dead_letter=InMemoryDeadLetterStore())
    queue.process("github_push", manager.wrap(handle_push, STANDARD))
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from hookrelay.services.audit import AuditTrail
    from hookrelay.services.job_queue import JobHandler, JobQueue, QueueJob

logger = logging.getLogger(__name__)

RETRY_METADATA_KEY = "_retry"


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry budget and backoff curve.

    Attributes:
        max_retries: Retries after the first attempt (0 = fail fast).
        initial_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound for any delay.
        backoff_multiplier: Growth factor per retry (>= 1).
    """

    max_retries: int
    initial_delay_ms: int
    max_delay_ms: int
    backoff_multiplier: float

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            msg = f"max_retries must be >= 0, got {self.max_retries}"
            raise ValueError(msg)
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            msg = "Retry delays must be >= 0"
            raise ValueError(msg)
        if self.backoff_multiplier < 1:
            msg = f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            raise ValueError(msg)


AGGRESSIVE = RetryConfig(max_retries=5, initial_delay_ms=500, max_delay_ms=30_000, backoff_multiplier=2)
STANDARD = RetryConfig(max_retries=3, initial_delay_ms=1_000, max_delay_ms=60_000, backoff_multiplier=2)
CONSERVATIVE = RetryConfig(
    max_retries=2, initial_delay_ms=5_000, max_delay_ms=120_000, backoff_multiplier=3
)
NONE = RetryConfig(max_retries=0, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1)

DEFAULT_RETRY_CONFIG = STANDARD

RETRY_PRESETS: dict[str, RetryConfig] = {
    "aggressive": AGGRESSIVE,
    "standard": STANDARD,
    "conservative": CONSERVATIVE,
    "none": NONE,
}


def get_retry_preset(name: str) -> RetryConfig:
    """Look up a preset by name, case-insensitively.

    Raises:
        KeyError: If no preset has that name.
    """
    try:
        return RETRY_PRESETS[name.strip().lower()]
    except KeyError:
        msg = f"Unknown retry preset {name!r}; expected one of {sorted(RETRY_PRESETS)}"
        raise KeyError(msg) from None


def calculate_retry_delay(retry_count: int, config: RetryConfig) -> int:
    """Delay in milliseconds before retry number retry_count + 1.

    Args:
        retry_count: Retries already made (0 for the first failure).
        config: Retry configuration.

    Returns:
        min(initial_delay_ms * backoff_multiplier**retry_count, max_delay_ms)
    """
    if retry_count < 0:
        msg = f"retry_count must be >= 0, got {retry_count}"
        raise ValueError(msg)

    try:
        delay = config.initial_delay_ms * (config.backoff_multiplier**retry_count)
    except OverflowError:
        return config.max_delay_ms
    return int(min(delay, config.max_delay_ms))


# =============================================================================
# Retry metadata carried in job payloads
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryMetadata:
    """Metadata attached to a re-enqueued job under data["_retry"].

    Attributes:
        count: Retries already made when this job was enqueued.
        last_error: Message of the failure that caused this retry.
        previous_job_id: Id of the job this one supersedes.
        root_job_id: Id of the first attempt of the chain.
        next_retry_at: ISO timestamp this attempt was scheduled for.
    """

    count: int
    last_error: str | None = None
    previous_job_id: str | None = None
    root_job_id: str | None = None
    next_retry_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def get_retry_metadata(job: QueueJob) -> RetryMetadata | None:
    """Extract retry metadata from job data, if the job is a retry."""
    raw = job.data.get(RETRY_METADATA_KEY)
    if not isinstance(raw, dict):
        return None

    try:
        count = int(raw.get("count", 0))
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed retry metadata on job %s: %r", job.id, raw)
        return None

    return RetryMetadata(
        count=max(count, 0),
        last_error=raw.get("last_error"),
        previous_job_id=raw.get("previous_job_id"),
        root_job_id=raw.get("root_job_id"),
        next_retry_at=raw.get("next_retry_at"),
    )


# =============================================================================
# Dead-letter sinks
# =============================================================================


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """A job whose retry budget is exhausted."""

    job: QueueJob
    error: str
    attempts: int
    dead_lettered_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class DeadLetterSink(Protocol):
    """Terminal destination for permanently failed jobs."""

    async def dead_letter(self, job: QueueJob, error: str, attempts: int) -> None: ...


class LoggingDeadLetterSink:
    """Logs dead letters at ERROR level and keeps nothing."""

    async def dead_letter(self, job: QueueJob, error: str, attempts: int) -> None:
        logger.error(
            "DEAD LETTER: job_id=%s, name=%s, attempts=%d, error=%s",
            job.id,
            job.name,
            attempts,
            error,
        )


class InMemoryDeadLetterStore:
    """Keeps dead letters for inspection by operators and tests."""

    def __init__(self) -> None:
        self._letters: list[DeadLetter] = []

    async def dead_letter(self, job: QueueJob, error: str, attempts: int) -> None:
        self._letters.append(DeadLetter(job=job, error=error, attempts=attempts))
        logger.error(
            "Job dead-lettered: job_id=%s, name=%s, attempts=%d, error=%s",
            job.id,
            job.name,
            attempts,
            error,
        )

    @property
    def letters(self) -> list[DeadLetter]:
        return list(self._letters)

    def __len__(self) -> int:
        return len(self._letters)


class AuditDeadLetterSink:
    """Records dead letters in the audit trail."""

    def __init__(self, audit: AuditTrail) -> None:
        self.audit = audit

    async def dead_letter(self, job: QueueJob, error: str, attempts: int) -> None:
        logger.error(
            "Job dead-lettered: job_id=%s, name=%s, attempts=%d, error=%s",
            job.id,
            job.name,
            attempts,
            error,
        )
        await self.audit.record(
            agent="retry",
            action="dead_letter",
            input={"job_id": job.id, "name": job.name, "data": job.data},
            output={"status": "dead_lettered", "error": error, "attempts": attempts},
        )


# =============================================================================
# Scheduler
# =============================================================================

Sleep = Callable[[float], Awaitable[Any]]


class RetryHandle:
    """Cancellable reference to one scheduled retry."""

    def __init__(self, key: str, delay_ms: int) -> None:
        self.key = key
        self.delay_ms = delay_ms
        self.due_at = datetime.now(UTC) + timedelta(milliseconds=delay_ms)
        self.task: asyncio.Task[None] | None = None

    def cancel(self) -> bool:
        if self.task is None or self.task.done():
            return False
        return self.task.cancel()

    @property
    def cancelled(self) -> bool:
        return self.task is not None and self.task.cancelled()


class RetryScheduler:
    """Runs delayed callbacks on asyncio timers, one pending retry per key.

    Timers never block the caller. A retry that has not fired yet can be
    revoked with cancel(key); cancel_all() revokes everything, e.g. before
    the queue is torn down.
    """

    def __init__(self, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep
        self._pending: dict[str, RetryHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def schedule(
        self,
        key: str,
        delay_ms: int,
        callback: Callable[[], Awaitable[Any]],
    ) -> RetryHandle:
        """Run callback after delay_ms. Replaces a pending retry with the same key."""
        existing = self._pending.pop(key, None)
        if existing is not None:
            logger.warning("Replacing pending retry for key=%s", key)
            existing.cancel()

        handle = RetryHandle(key, delay_ms)

        async def _fire() -> None:
            try:
                await self._sleep(delay_ms / 1000)
            except asyncio.CancelledError:
                logger.info("Retry cancelled before firing: key=%s", key)
                raise
            finally:
                if self._pending.get(key) is handle:
                    del self._pending[key]

            try:
                await callback()
            except Exception:
                logger.exception("Scheduled retry callback failed: key=%s", key)

        task = asyncio.get_running_loop().create_task(_fire(), name=f"retry:{key}")
        handle.task = task
        self._pending[key] = handle
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    def cancel(self, key: str) -> bool:
        """Revoke the pending retry for key. Returns False if none is pending."""
        handle = self._pending.pop(key, None)
        if handle is None:
            return False
        return handle.cancel()

    def cancel_all(self) -> int:
        """Revoke every pending retry. Returns how many were revoked."""
        handles = list(self._pending.values())
        self._pending.clear()
        cancelled = sum(1 for h in handles if h.cancel())
        if cancelled:
            logger.warning("Cancelled %d pending retries", cancelled)
        return cancelled

    def is_scheduled(self, key: str) -> bool:
        return key in self._pending

    @property
    def pending_keys(self) -> list[str]:
        return list(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def join(self) -> None:
        """Wait until no retry timer or retry callback is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# =============================================================================
# Chain tracking
# =============================================================================


class RetryChainStatus(str, Enum):
    """Outcome of a logical job across all its attempts."""

    IN_PROGRESS = "in_progress"
    RETRYING = "retrying"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class RetryChain:
    """All attempts of one logical job."""

    root_job_id: str
    job_name: str
    job_ids: list[str] = field(default_factory=list)
    status: RetryChainStatus = RetryChainStatus.IN_PROGRESS
    last_error: str | None = None
    next_retry_at: str | None = None

    @property
    def attempts(self) -> int:
        return len(self.job_ids)


class RetryTracker:
    """Process-local index of retry chains keyed by root job id.

    Bounded: once max_chains is exceeded the oldest chains are forgotten.
    """

    def __init__(self, max_chains: int = 10_000) -> None:
        self.max_chains = max_chains
        self._chains: OrderedDict[str, RetryChain] = OrderedDict()
        self._roots: dict[str, str] = {}

    def record_attempt(self, root_job_id: str, job_name: str, job_id: str) -> RetryChain:
        chain = self._chains.get(root_job_id)
        if chain is None:
            chain = RetryChain(root_job_id=root_job_id, job_name=job_name)
            self._chains[root_job_id] = chain
            self._evict()
        if job_id not in chain.job_ids:
            chain.job_ids.append(job_id)
        chain.status = RetryChainStatus.IN_PROGRESS
        self._roots[job_id] = root_job_id
        return chain

    def _evict(self) -> None:
        while len(self._chains) > self.max_chains:
            _, oldest = self._chains.popitem(last=False)
            for job_id in oldest.job_ids:
                self._roots.pop(job_id, None)

    def _update(self, root_job_id: str, status: RetryChainStatus, error: str | None = None) -> None:
        chain = self._chains.get(root_job_id)
        if chain is None:
            return
        chain.status = status
        if error is not None:
            chain.last_error = error

    def mark_retry_scheduled(self, root_job_id: str, error: str, next_retry_at: str) -> None:
        self._update(root_job_id, RetryChainStatus.RETRYING, error)
        chain = self._chains.get(root_job_id)
        if chain is not None:
            chain.next_retry_at = next_retry_at

    def mark_completed(self, root_job_id: str) -> None:
        self._update(root_job_id, RetryChainStatus.COMPLETED)

    def mark_dead_lettered(self, root_job_id: str, error: str) -> None:
        self._update(root_job_id, RetryChainStatus.DEAD_LETTERED, error)

    def mark_cancelled(self, root_job_id: str) -> None:
        self._update(root_job_id, RetryChainStatus.CANCELLED)

    def get_chain(self, root_job_id: str) -> RetryChain | None:
        return self._chains.get(root_job_id)

    def find_chain(self, job_id: str) -> RetryChain | None:
        """Find the chain any attempt (first or later) belongs to."""
        root = self._roots.get(job_id)
        return self._chains.get(root) if root is not None else None


# =============================================================================
# Wrapper
# =============================================================================


class RetryingHandler:
    """Job handler decorated with retry semantics. Created by RetryManager.wrap()."""

    def __init__(self, handler: JobHandler, manager: RetryManager, config: RetryConfig) -> None:
        self.handler = handler
        self.manager = manager
        self.config = config

    async def __call__(self, job: QueueJob) -> None:
        metadata = get_retry_metadata(job)
        retry_count = metadata.count if metadata else 0
        root_job_id = (metadata.root_job_id if metadata else None) or job.id
        tracker = self.manager.tracker

        tracker.record_attempt(root_job_id, job.name, job.id)

        try:
            await self.handler(job)
        except Exception as e:
            error_message = str(e) or type(e).__name__

            if retry_count < self.config.max_retries:
                self._schedule_retry(job, root_job_id, retry_count, error_message)
            else:
                logger.error(
                    "Job %s (%s) failed permanently after %d retries. Final error: %s. "
                    "Job data: %s",
                    job.id,
                    job.name,
                    retry_count,
                    error_message,
                    json.dumps(job.data, default=str),
                )
                tracker.mark_dead_lettered(root_job_id, error_message)
                await self.manager.send_to_dead_letter(job, error_message, retry_count + 1)

            raise

        if retry_count > 0:
            logger.info(
                "Job %s (%s) succeeded after %d retries (root_job_id=%s)",
                job.id,
                job.name,
                retry_count,
                root_job_id,
            )
        tracker.mark_completed(root_job_id)

    def _schedule_retry(
        self,
        job: QueueJob,
        root_job_id: str,
        retry_count: int,
        error_message: str,
    ) -> None:
        next_retry_count = retry_count + 1
        delay_ms = calculate_retry_delay(retry_count, self.config)
        next_retry_at = (datetime.now(UTC) + timedelta(milliseconds=delay_ms)).isoformat()

        logger.warning(
            "Job %s (%s) failed (retry %d/%d): %s. Retrying in %dms at %s",
            job.id,
            job.name,
            next_retry_count,
            self.config.max_retries,
            error_message,
            delay_ms,
            next_retry_at,
        )

        data = {key: value for key, value in job.data.items() if key != RETRY_METADATA_KEY}
        data[RETRY_METADATA_KEY] = RetryMetadata(
            count=next_retry_count,
            last_error=error_message,
            previous_job_id=job.id,
            root_job_id=root_job_id,
            next_retry_at=next_retry_at,
        ).to_dict()

        async def _enqueue() -> None:
            self.manager.pending_failures.pop(root_job_id, None)
            await self.manager.enqueue_retry(job, root_job_id, data, next_retry_count)

        self.manager.tracker.mark_retry_scheduled(root_job_id, error_message, next_retry_at)
        self.manager.pending_failures[root_job_id] = DeadLetter(
            job=job, error=error_message, attempts=next_retry_count
        )
        self.manager.scheduler.schedule(root_job_id, delay_ms, _enqueue)


class RetryManager:
    """Shared state for retrying handlers registered on one queue.

    Attributes:
        queue: Queue that retries are re-enqueued on.
        scheduler: Timers for pending retries.
        dead_letter: Sink for jobs whose budget is exhausted.
        tracker: Retry chain index.
        default_config: Configuration used by wrap() when none is given.
        pending_failures: Last failed job of each chain with a retry pending,
            keyed by root_job_id.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        scheduler: RetryScheduler | None = None,
        dead_letter: DeadLetterSink | None = None,
        tracker: RetryTracker | None = None,
        default_config: RetryConfig = DEFAULT_RETRY_CONFIG,
    ) -> None:
        self.queue = queue
        self.default_config = default_config
        self.scheduler = scheduler or RetryScheduler()
        self.dead_letter = dead_letter or LoggingDeadLetterSink()
        self.tracker = tracker or RetryTracker()
        self.pending_failures: dict[str, DeadLetter] = {}

    def wrap(self, handler: JobHandler, config: RetryConfig | None = None) -> RetryingHandler:
        """Decorate handler with retry semantics (default_config when config is None)."""
        return RetryingHandler(
            handler, self, config if config is not None else self.default_config
        )

    async def enqueue_retry(
        self,
        job: QueueJob,
        root_job_id: str,
        data: dict[str, Any],
        retry_count: int,
    ) -> None:
        """Enqueue the successor of a failed job. Failures go to the dead-letter sink."""
        try:
            new_job_id = await self.queue.add(job.name, data)
        except Exception as e:
            error_message = f"Retry enqueue failed: {e}"
            logger.error(
                "Could not enqueue retry %d for job %s (%s): %s",
                retry_count,
                job.id,
                job.name,
                e,
            )
            self.tracker.mark_dead_lettered(root_job_id, error_message)
            await self.send_to_dead_letter(job, error_message, retry_count)
            return

        logger.info(
            "Retry %d enqueued: job_id=%s, previous_job_id=%s, name=%s",
            retry_count,
            new_job_id,
            job.id,
            job.name,
        )

    async def send_to_dead_letter(self, job: QueueJob, error: str, attempts: int) -> None:
        try:
            await self.dead_letter.dead_letter(job, error, attempts)
        except Exception:
            logger.exception("Dead-letter sink failed for job %s (%s)", job.id, job.name)

    def cancel(self, root_job_id: str) -> bool:
        """Cancel the pending retry of a chain, if any."""
        cancelled = self.scheduler.cancel(root_job_id)
        self.pending_failures.pop(root_job_id, None)
        if cancelled:
            self.tracker.mark_cancelled(root_job_id)
            logger.info("Pending retry cancelled: root_job_id=%s", root_job_id)
        return cancelled

    async def shutdown(self) -> int:
        """Cancel all pending retries, e.g. before the queue is closed.

        The last failed job of every cancelled chain is handed to the
        dead-letter sink, so no failure with budget left disappears on restart.

        Returns:
            Number of retries cancelled.
        """
        keys = self.scheduler.pending_keys
        cancelled = self.scheduler.cancel_all()

        for key in keys:
            self.tracker.mark_cancelled(key)
            failure = self.pending_failures.pop(key, None)
            if failure is None:
                continue
            await self.send_to_dead_letter(
                failure.job,
                f"Retry cancelled at shutdown. Last error: {failure.error}",
                failure.attempts,
            )
        return cancelled


def with_retry(
    handler: JobHandler,
    queue: JobQueue,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    *,
    scheduler: RetryScheduler | None = None,
    dead_letter: DeadLetterSink | None = None,
    tracker: RetryTracker | None = None,
) -> RetryingHandler:
    """Wrap a job handler with bounded exponential-backoff retry.

    Args:
        handler: Original async job handler.
        queue: Queue used to re-enqueue failed jobs.
        config: Retry configuration (defaults to STANDARD).
        scheduler: Timer owner; a private one is created if omitted.
        dead_letter: Sink for exhausted jobs; logs only if omitted.
        tracker: Retry chain index; a private one is created if omitted.

    Returns:
        Callable handler suitable for queue.process().
    """
    manager = RetryManager(queue, scheduler=scheduler, dead_letter=dead_letter, tracker=tracker)
    return manager.wrap(handler, config)
