"""GitHub webhook router.

POST /api/webhooks/github receives repository events from GitHub:

1. Reads the event type from X-GitHub-Event (400 when missing)
2. Answers ping immediately (GitHub sends it when the hook is created)
3. Verifies X-Hub-Signature-256 over the raw body (401 when invalid)
4. For events with a worker, validates repository/sender (400)
5. Checks the queue is healthy (503)
6. Writes one audit entry, then enqueues one job per supported event

Unsupported events, including organization and app level events without a
repository, are audited with whatever they carry and acknowledged with 200
so GitHub never disables the hook. The response confirms ingestion only:
processing happens in the event workers.
"""

from __future__ import annotations

import logging
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
from hookrelay.api.middleware.errors import ServiceUnavailableError, WebhookValidationError
from hookrelay.api.schemas.webhooks import (
    GitHubEventEnvelope,
    GitHubWebhookPayload,
    GitHubWebhookResponse,
)
from hookrelay.services.audit import AuditTrail
from hookrelay.services.job_queue import JobName, JobQueue, QueueUnavailableError
from hookrelay.services.signatures import GITHUB_SIGNATURE

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks/github",
    tags=["webhooks"],
    responses={
        400: {"description": "Malformed delivery"},
        401: {"description": "Invalid webhook signature"},
        503: {"description": "Job queue unavailable"},
    },
)

EVENT_JOB_NAMES: dict[str, JobName] = {
    "push": JobName.GITHUB_PUSH,
    "pull_request": JobName.GITHUB_PULL_REQUEST,
    "issues": JobName.GITHUB_ISSUES,
    "issue_comment": JobName.GITHUB_ISSUE_COMMENT,
}


def build_job_data(event: str, payload: GitHubWebhookPayload) -> dict[str, Any] | None:
    """Normalize a GitHub payload into job data, or None for unsupported events."""
    base: dict[str, Any] = {
        "repository": payload.repository.full_name,
        "sender": payload.sender.login,
    }

    if event == "push":
        return {
            **base,
            "ref": payload.extra_field("ref"),
            "commits": payload.extra_field("commits") or [],
        }
    if event == "pull_request":
        return {
            **base,
            "action": payload.action,
            "pull_request": payload.extra_field("pull_request"),
        }
    if event == "issues":
        return {**base, "action": payload.action, "issue": payload.extra_field("issue")}
    if event == "issue_comment":
        return {
            **base,
            "action": payload.action,
            "issue": payload.extra_field("issue"),
            "comment": payload.extra_field("comment"),
        }
    return None


def _log_event(event: str, payload: GitHubWebhookPayload) -> None:
    number = None
    for key in ("pull_request", "issue"):
        item = payload.extra_field(key)
        if isinstance(item, dict):
            number = item.get("number")
            break
    commits = payload.extra_field("commits")

    logger.info(
        "GitHub %s event: repo=%s, action=%s, sender=%s, number=%s, commits=%s",
        event,
        payload.repository.full_name,
        payload.action,
        payload.sender.login,
        number,
        len(commits) if isinstance(commits, list) else None,
    )


@router.post(
    "",
    response_model=GitHubWebhookResponse,
    response_model_exclude_none=True,
    summary="Receive a GitHub webhook delivery",
)
async def receive_github_webhook(
    request: Request,
    settings: AppSettings,
    queue: Queue,
    audit: Audit,
    limiter: Limiter,
    x_github_event: Annotated[str | None, Header()] = None,
    x_hub_signature_256: Annotated[str | None, Header()] = None,
) -> GitHubWebhookResponse:
    """Verify, audit and enqueue one GitHub delivery."""
    if not x_github_event:
        msg = "Missing X-GitHub-Event header"
        raise WebhookValidationError(msg)

    event = x_github_event.strip()

    if event == "ping":
        logger.info("GitHub webhook ping received")
        return GitHubWebhookResponse(message="pong")

    enforce_rate_limit(request, limiter, "github")

    raw_body = await request.body()
    require_valid_signature(raw_body, x_hub_signature_256, settings, GITHUB_SIGNATURE)
    body = parse_json_body(raw_body)

    job_name = EVENT_JOB_NAMES.get(event)
    if job_name is None:
        return await _acknowledge_unhandled(event, body, queue, audit)

    try:
        payload = GitHubWebhookPayload.model_validate(body)
    except ValidationError as e:
        msg = "Missing required fields: repository.full_name, sender.login"
        raise validation_failed(msg, e) from e

    require_healthy_queue(queue)

    await audit.record(
        agent="github_webhook",
        action=f"webhook:{event}",
        input={
            "event": event,
            "repository": payload.repository.full_name,
            "action": payload.action,
            "sender": payload.sender.login,
        },
        output={"status": "received"},
    )

    data = build_job_data(event, payload)
    if data is None:
        logger.info("Unhandled GitHub event acknowledged: %s", event)
        return GitHubWebhookResponse(event=event, message="Event received and queued")

    _log_event(event, payload)

    try:
        job_id = await queue.add(job_name.value, data)
    except QueueUnavailableError as e:
        raise ServiceUnavailableError(str(e)) from e

    logger.debug("GitHub %s queued as job %s", event, job_id)
    return GitHubWebhookResponse(event=event, message="Event received and queued")


async def _acknowledge_unhandled(
    event: str,
    body: dict[str, Any],
    queue: JobQueue,
    audit: AuditTrail,
) -> GitHubWebhookResponse:
    """Audit an event without a worker and acknowledge it without enqueueing."""
    try:
        envelope = GitHubEventEnvelope.model_validate(body)
    except ValidationError:
        envelope = GitHubEventEnvelope()

    require_healthy_queue(queue)

    await audit.record(
        agent="github_webhook",
        action=f"webhook:{event}",
        input={
            "event": event,
            "repository": envelope.repository_name,
            "action": envelope.action,
            "sender": envelope.sender_login,
        },
        output={"status": "ignored"},
    )

    logger.info(
        "Unhandled GitHub event acknowledged: %s (repo=%s, sender=%s)",
        event,
        envelope.repository_name,
        envelope.sender_login,
    )
    return GitHubWebhookResponse(event=event, message="Event received and queued")
