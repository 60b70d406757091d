"""Linear webhook router.

POST /api/webhooks/linear receives entity events from Linear. The event is
identified by the payload's type and action (e.g. Issue.create) and signed
with a bare hex HMAC in Linear-Signature.

GET /api/webhooks/linear/test lets operators confirm the endpoint is
reachable when configuring the hook.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Header, Request
from pydantic import ValidationError

from hookrelay.api.dependencies import (
    AppSettings,
    Audit,
    Limiter,
    Queue,
    enforce_rate_limit,
    parse_json_body,
    require_healthy_queue,
    require_valid_signature,
    validation_failed,
)
from hookrelay.api.middleware.errors import ServiceUnavailableError
from hookrelay.api.schemas.webhooks import (
    LinearTestResponse,
    LinearWebhookPayload,
    LinearWebhookResponse,
)
from hookrelay.services.job_queue import JobName, QueueUnavailableError
from hookrelay.services.signatures import LINEAR_SIGNATURE

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks/linear",
    tags=["webhooks"],
    responses={
        400: {"description": "Malformed delivery"},
        401: {"description": "Invalid webhook signature"},
        503: {"description": "Job queue unavailable"},
    },
)

# Entity type -> (job name, key holding the entity in the job data)
TYPE_JOBS: dict[str, tuple[JobName, str]] = {
    "Issue": (JobName.LINEAR_ISSUE, "issue"),
    "Comment": (JobName.LINEAR_COMMENT, "comment"),
    "Project": (JobName.LINEAR_PROJECT, "project"),
}


def build_job_data(payload: LinearWebhookPayload) -> tuple[str, dict[str, Any]] | None:
    """Map a Linear payload onto (job name, job data), or None if unsupported."""
    mapping = TYPE_JOBS.get(payload.type)
    if mapping is None:
        return None
    job_name, entity_key = mapping
    return job_name.value, {
        "action": payload.action,
        entity_key: payload.data,
        "url": payload.url,
    }


@router.post(
    "",
    response_model=LinearWebhookResponse,
    summary="Receive a Linear webhook delivery",
)
async def receive_linear_webhook(
    request: Request,
    settings: AppSettings,
    queue: Queue,
    audit: Audit,
    limiter: Limiter,
    linear_signature: Annotated[str | None, Header()] = None,
) -> LinearWebhookResponse:
    """Verify, audit and enqueue one Linear delivery."""
    enforce_rate_limit(request, limiter, "linear")

    raw_body = await request.body()
    require_valid_signature(raw_body, linear_signature, settings, LINEAR_SIGNATURE)

    try:
        payload = LinearWebhookPayload.model_validate(parse_json_body(raw_body))
    except ValidationError as e:
        msg = "Missing required fields: type, action"
        raise validation_failed(msg, e) from e

    require_healthy_queue(queue)

    await audit.record(
        agent="linear_webhook",
        action=f"webhook:{payload.type}.{payload.action}",
        input={
            "type": payload.type,
            "action": payload.action,
            "data": {
                "id": payload.data.get("id"),
                "title": payload.data.get("title"),
                "team": payload.team_name(),
            },
        },
        output={"status": "received"},
    )

    job = build_job_data(payload)
    if job is None:
        logger.info("Unhandled Linear event acknowledged: %s.%s", payload.type, payload.action)
    else:
        job_name, data = job
        logger.info(
            "Linear %s event: action=%s, id=%s, title=%s, team=%s",
            payload.type,
            payload.action,
            payload.data.get("id"),
            payload.data.get("title") or payload.data.get("name"),
            payload.team_name(),
        )
        try:
            await queue.add(job_name, data)
        except QueueUnavailableError as e:
            raise ServiceUnavailableError(str(e)) from e

    return LinearWebhookResponse(
        type=payload.type,
        action=payload.action,
        message="Event received and queued",
    )


@router.get("/test", response_model=LinearTestResponse)
async def linear_webhook_test() -> LinearTestResponse:
    """Confirm the Linear webhook endpoint is active."""
    return LinearTestResponse(
        message="Linear webhook endpoint is active",
        timestamp=datetime.now(UTC).isoformat(),
    )
