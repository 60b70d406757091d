"""hookrelay API service.

FastAPI application providing:
- GitHub and Linear webhook ingestion (/api/webhooks/...)
- Queue health reporting (/health)
- Optional in-process worker draining the durable queue

The app factory owns every stateful collaborator (queue, audit trail,
retry manager, rate limiter) and stores it on app.state, so each app
instance, and each test, gets its own.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hookrelay.api.middleware import (
    APIError,
    ErrorHandlerMiddleware,
    RequestIDMiddleware,
    api_error_handler,
    http_exception_handler,
    request_validation_handler,
)
from hookrelay.api.routers import github_router, health_router, linear_router
from hookrelay.core.config import QueueBackend, Settings, validate_settings
from hookrelay.db import create_engine_from_settings, create_session_factory, create_tables
from hookrelay.services.audit import AuditTrail, DatabaseAuditTrail, InMemoryAuditTrail
from hookrelay.services.database_queue import DatabaseJobQueue
from hookrelay.services.job_queue import InMemoryJobQueue, JobQueue
from hookrelay.services.rate_limit import RateLimiter
from hookrelay.services.retry import (
    AuditDeadLetterSink,
    DeadLetterSink,
    RetryManager,
    get_retry_preset,
)
from hookrelay.worker.handlers import register_all_webhook_workers
from hookrelay.worker.main import Worker, WorkerConfig

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

API_TITLE = "hookrelay API"
API_DESCRIPTION = """
Webhook ingestion and durable job-retry pipeline.

## Endpoints

- **POST /api/webhooks/github** - GitHub deliveries (X-Hub-Signature-256)
- **POST /api/webhooks/linear** - Linear deliveries (Linear-Signature)
- **GET /api/webhooks/linear/test** - Linear endpoint probe
- **GET /health** - Queue mode, health and job counts
"""


def create_app(
    settings: Settings | None = None,
    *,
    queue: JobQueue | None = None,
    audit: AuditTrail | None = None,
    dead_letter: DeadLetterSink | None = None,
    rate_limiter: RateLimiter | None = None,
    register_workers: bool = True,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Collaborators not passed in are built from settings: the queue backend
    (memory or database), the matching audit trail, a retry manager using
    the configured preset, and a rate limiter.

    Args:
        settings: Settings instance. Loaded from the environment if omitted.
        queue: Job queue to use instead of the configured backend.
        audit: Audit trail to use instead of the configured backend.
        dead_letter: Sink for exhausted retries (audit trail by default).
        rate_limiter: Rate limiter to use instead of the configured one.
        register_workers: Register the webhook event workers on the queue.

    Returns:
        Configured FastAPI application.

    Raises:
        ConfigValidationError: If the settings are inconsistent.

    Example:
        # Development: in-memory queue, inline processing
        app = create_app(Settings())

        # Tests: inject fakes
        app = create_app(settings, queue=InMemoryJobQueue(), audit=InMemoryAuditTrail())
    """
    settings = settings or Settings()
    validate_settings(settings)

    engine: AsyncEngine | None = None
    if (queue is None or audit is None) and settings.queue.backend is QueueBackend.DATABASE:
        engine = create_engine_from_settings(settings.database)
        session_factory = create_session_factory(engine)
        queue = queue or DatabaseJobQueue(session_factory)
        audit = audit or DatabaseAuditTrail(session_factory)

    queue = queue or InMemoryJobQueue()
    audit = audit or InMemoryAuditTrail()

    retry = RetryManager(
        queue,
        dead_letter=dead_letter or AuditDeadLetterSink(audit),
        default_config=get_retry_preset(settings.queue.retry_preset),
    )
    if register_workers:
        register_all_webhook_workers(queue, audit, retry)

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=_lifespan,
    )

    app.state.settings = settings
    app.state.queue = queue
    app.state.audit = audit
    app.state.retry = retry
    app.state.rate_limiter = rate_limiter or RateLimiter(settings.webhooks.rate_limit_per_minute)
    app.state.engine = engine
    app.state.worker = None

    _add_middleware(app)
    _add_exception_handlers(app)
    _include_routers(app)

    logger.info(
        "hookrelay API application created (version=%s, queue=%s, retry_preset=%s)",
        settings.app_version,
        queue.mode,
        settings.queue.retry_preset,
    )
    return app


@contextlib.asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the in-process worker if configured; release resources on shutdown."""
    settings: Settings = app.state.settings
    queue: JobQueue = app.state.queue
    engine: AsyncEngine | None = app.state.engine

    if engine is not None and settings.is_development:
        await create_tables(engine)

    worker_task: asyncio.Task[None] | None = None
    if isinstance(queue, DatabaseJobQueue) and settings.queue.run_worker_in_process:
        worker = Worker(queue, WorkerConfig.from_settings(settings), retry=app.state.retry)
        app.state.worker = worker
        worker_task = asyncio.create_task(worker.start(), name="hookrelay-worker")
        logger.info("In-process worker started: worker_id=%s", worker.config.worker_id)

    try:
        yield
    finally:
        if worker_task is not None:
            await app.state.worker.stop()
            try:
                await asyncio.wait_for(worker_task, timeout=app.state.worker.config.shutdown_timeout)
            except TimeoutError:
                logger.warning("In-process worker did not stop within timeout")
                worker_task.cancel()

        await app.state.retry.shutdown()
        await queue.close()
        if engine is not None:
            await engine.dispose()
        logger.info("hookrelay API shut down")


def _add_middleware(app: FastAPI) -> None:
    """Add middleware to the application.

    The last middleware added is the outermost: RequestIDMiddleware wraps
    ErrorHandlerMiddleware so error bodies carry the request id.
    """
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)


def _add_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


def _include_routers(app: FastAPI) -> None:
    app.include_router(health_router)
    app.include_router(github_router, prefix="/api")
    app.include_router(linear_router, prefix="/api")
