"""Health endpoint for container orchestration.

Reports the queue mode, whether its backing is reachable, and job counts.
Returns 503 when the queue is unhealthy so load balancers stop routing
webhook deliveries to this instance.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from hookrelay.api.dependencies import Queue
from hookrelay.api.schemas.webhooks import HealthResponse, QueueHealth
from hookrelay.services.job_queue import JobQueueError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(queue: Queue) -> JSONResponse:
    healthy = await queue.ping()

    stats = None
    if healthy:
        try:
            stats = (await queue.get_stats()).as_dict()
        except JobQueueError as e:
            logger.warning("Could not read queue stats: %s", e)
            healthy = queue.is_healthy()

    body = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        queue=QueueHealth(mode=queue.mode, healthy=healthy, stats=stats),
    )
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
