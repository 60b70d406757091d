"""hookrelay worker service entry point.

Drains the durable job queue when the database backend is used:
- Polls DatabaseJobQueue for pending jobs with a registered handler
- Resets jobs left PROCESSING by workers that died
- Handles graceful shutdown via SIGTERM/SIGINT, cancelling pending retries

The same Worker runs inside the API process when
HOOKRELAY_QUEUE__RUN_WORKER_IN_PROCESS is true, or standalone via the
hookrelay-worker console script.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from hookrelay.core.config import QueueBackend
from hookrelay.db import create_engine_from_settings, create_session_factory
from hookrelay.services.audit import DatabaseAuditTrail
from hookrelay.services.database_queue import DatabaseJobQueue
from hookrelay.services.job_queue import QueueUnavailableError
from hookrelay.services.retry import AuditDeadLetterSink, RetryManager, get_retry_preset
from hookrelay.worker.handlers import register_all_webhook_workers

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from hookrelay.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for the worker loop.

    Attributes:
        worker_id: Unique identifier recorded on claimed rows.
        poll_interval: Seconds between polls when the queue is idle.
        batch_size: Maximum jobs processed per poll cycle.
        stale_job_threshold_seconds: How long before a PROCESSING job is considered stale.
        cleanup_interval: Seconds between stale job sweeps.
        shutdown_timeout: Seconds to wait for the current job on shutdown.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 1.0
    batch_size: int = 10
    stale_job_threshold_seconds: int = 600
    cleanup_interval: float = 60.0
    shutdown_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        """Build the loop configuration from application settings.

        WORKER_ID overrides the generated worker id.
        """
        config = cls(
            poll_interval=settings.queue.poll_interval,
            stale_job_threshold_seconds=settings.queue.stale_job_threshold_seconds,
        )
        worker_id = os.environ.get("WORKER_ID")
        if worker_id:
            config.worker_id = worker_id
        return config


class Worker:
    """Polls a DatabaseJobQueue and runs the registered handlers.

    Claiming uses SELECT ... FOR UPDATE SKIP LOCKED, so several workers
    (processes or API instances) can drain the same table.

    Example:
        queue = DatabaseJobQueue(session_factory)
        register_all_webhook_workers(queue, audit, retry)
        worker = Worker(queue, WorkerConfig(), retry=retry)
        await worker.start()
    """

    def __init__(
        self,
        queue: DatabaseJobQueue,
        config: WorkerConfig | None = None,
        retry: RetryManager | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            queue: Durable queue with handlers already registered.
            config: Loop settings.
            retry: Retry manager whose pending timers are cancelled on stop.
        """
        self.queue = queue
        self.config = config or WorkerConfig()
        self.retry = retry
        self._shutdown_event = asyncio.Event()
        self._started_at: datetime | None = None
        self._last_cleanup: float | None = None
        self._jobs_processed = 0

    @property
    def jobs_processed(self) -> int:
        return self._jobs_processed

    async def start(self) -> None:
        """Process jobs until stop() is called."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, job_names=%s",
            self.config.worker_id,
            self.queue.registered_names,
        )

        try:
            await self._run_loop()
        finally:
            if self.retry is not None:
                cancelled = await self.retry.shutdown()
                if cancelled:
                    logger.warning(
                        "Worker stopped with %d retries pending; sent to dead letter",
                        cancelled,
                    )
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, uptime=%s",
                self.config.worker_id,
                self._jobs_processed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    @property
    def stopping(self) -> bool:
        return self._shutdown_event.is_set()

    async def run_once(self) -> int:
        """Run one poll cycle: up to batch_size jobs, then a stale sweep if due.

        Returns:
            Number of jobs processed in this cycle.
        """
        processed = 0
        while processed < self.config.batch_size and not self.stopping:
            if not await self.queue.poll_once(self.config.worker_id):
                break
            processed += 1
        self._jobs_processed += processed

        if not self.stopping:
            await self._cleanup_stale_jobs()
        return processed

    async def _run_loop(self) -> None:
        while not self.stopping:
            try:
                processed = await self.run_once()
            except QueueUnavailableError as e:
                logger.error("Queue unavailable, backing off: %s", e)
                processed = 0
            except Exception as e:
                logger.exception("Error in worker loop: %s", e)
                processed = 0

            if processed >= self.config.batch_size:
                continue

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.poll_interval,
                )

    async def _cleanup_stale_jobs(self) -> None:
        now = asyncio.get_running_loop().time()
        if self._last_cleanup is not None and now - self._last_cleanup < self.config.cleanup_interval:
            return
        self._last_cleanup = now
        await self.queue.cleanup_stale_jobs(self.config.stale_job_threshold_seconds)

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


def build_worker(settings: Settings) -> tuple[Worker, AsyncEngine]:
    """Wire a standalone worker from settings.

    Returns:
        The worker and the engine the caller must dispose.

    Raises:
        ValueError: If the queue backend is not "database" or no URL is set.
    """
    if settings.queue.backend is not QueueBackend.DATABASE:
        msg = "The standalone worker requires HOOKRELAY_QUEUE__BACKEND=database"
        raise ValueError(msg)

    engine = create_engine_from_settings(settings.database)
    session_factory = create_session_factory(engine)

    queue = DatabaseJobQueue(session_factory)
    audit = DatabaseAuditTrail(session_factory)
    retry = RetryManager(
        queue,
        dead_letter=AuditDeadLetterSink(audit),
        default_config=get_retry_preset(settings.queue.retry_preset),
    )
    register_all_webhook_workers(queue, audit, retry)

    return Worker(queue, WorkerConfig.from_settings(settings), retry=retry), engine


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(settings: Settings, shutdown_event: asyncio.Event) -> None:
    worker, engine = build_worker(settings)
    worker_task = asyncio.create_task(worker.start())

    try:
        await shutdown_event.wait()
        await worker.stop()

        try:
            await asyncio.wait_for(worker_task, timeout=worker.config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
    finally:
        await worker.queue.close()
        await engine.dispose()


def run() -> NoReturn:
    """Run the worker process (hookrelay-worker console script).

    - Loads and validates settings (exits on invalid configuration)
    - Sets up logging from HOOKRELAY_LOG_LEVEL
    - Registers signal handlers for graceful shutdown
    - Runs the polling loop until SIGTERM/SIGINT
    """
    global _shutdown_event

    from hookrelay.core.settings import get_settings

    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("hookrelay worker starting...")

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(settings, _shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("hookrelay worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
