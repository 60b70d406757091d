"""FastAPI dependencies exposing the collaborators stored on app.state.

The app factory owns the queue, the audit trail, the settings and the rate
limiter; routes receive them through these dependencies so tests can build
an app around fakes.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any

from fastapi import Depends, Request
from pydantic import ValidationError

from hookrelay.api.middleware.errors import (
    InvalidSignatureError,
    RateLimitedError,
    ServiceUnavailableError,
    WebhookValidationError,
)
from hookrelay.core.config import Settings
from hookrelay.services.audit import AuditTrail
from hookrelay.services.job_queue import JobQueue
from hookrelay.services.rate_limit import RateLimiter
from hookrelay.services.signatures import SignatureScheme, verify_signature

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_audit(request: Request) -> AuditTrail:
    return request.app.state.audit


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


AppSettings = Annotated[Settings, Depends(get_app_settings)]
Queue = Annotated[JobQueue, Depends(get_queue)]
Audit = Annotated[AuditTrail, Depends(get_audit)]
Limiter = Annotated[RateLimiter, Depends(get_rate_limiter)]


def client_key(request: Request, provider: str) -> str:
    """Rate limit key: provider plus the first X-Forwarded-For hop or peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    elif request.client:
        ip = request.client.host
    else:
        ip = "unknown"
    return f"{provider}:{ip}"


def enforce_rate_limit(request: Request, limiter: RateLimiter, provider: str) -> None:
    """Raises:
    RateLimitedError: If the client exhausted its window.
    """
    decision = limiter.check(client_key(request, provider))
    if not decision.allowed:
        raise RateLimitedError(decision.retry_after)


def require_valid_signature(
    raw_body: bytes,
    signature_header: str | None,
    settings: Settings,
    scheme: SignatureScheme,
) -> None:
    """Verify a delivery against the provider's configured secret.

    With no secret configured, verification is skipped when unsigned
    deliveries are allowed (development) and rejected otherwise.

    Raises:
        InvalidSignatureError: If the delivery cannot be authenticated.
    """
    secret = settings.webhooks.secret_for(scheme.provider)

    if not secret:
        if settings.webhooks.allow_unsigned:
            logger.debug("%s signature verification skipped (no secret configured)", scheme.provider)
            return
        logger.warning("%s webhook rejected: no secret configured", scheme.provider)
        msg = "Webhook secret not configured"
        raise InvalidSignatureError(msg)

    if not verify_signature(raw_body, signature_header, secret, scheme):
        logger.warning(
            "Invalid %s webhook signature (header present=%s)",
            scheme.provider,
            signature_header is not None,
        )
        raise InvalidSignatureError()


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse the raw body verified above.

    Raises:
        WebhookValidationError: If the body is not a JSON object.
    """
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        msg = "Request body is not valid JSON"
        raise WebhookValidationError(msg, detail={"reason": str(e)}) from e

    if not isinstance(payload, dict):
        msg = "Request body must be a JSON object"
        raise WebhookValidationError(msg)
    return payload


def validation_failed(message: str, error: ValidationError) -> WebhookValidationError:
    fields = sorted({".".join(str(p) for p in err["loc"]) for err in error.errors()})
    return WebhookValidationError(message, detail={"fields": fields})


def require_healthy_queue(queue: JobQueue) -> None:
    """Raises:
    ServiceUnavailableError: If the queue cannot currently accept jobs.
    """
    if not queue.is_healthy():
        logger.error("Rejecting webhook: %s queue unhealthy", queue.mode)
        raise ServiceUnavailableError()
