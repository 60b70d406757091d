"""Job handlers for webhook-derived work.

- github: push, pull request, issue and issue comment events
- linear: issue, comment and project events
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from hookrelay.worker.handlers.github import register_github_workers
from hookrelay.worker.handlers.linear import register_linear_workers

if TYPE_CHECKING:
    from hookrelay.services.audit import AuditTrail
    from hookrelay.services.job_queue import JobQueue
    from hookrelay.services.retry import RetryConfig, RetryManager

logger = logging.getLogger(__name__)


def register_all_webhook_workers(
    queue: JobQueue,
    audit: AuditTrail,
    retry: RetryManager | None = None,
    retry_config: RetryConfig | None = None,
) -> list[str]:
    """Register every webhook worker on queue. Call once at startup."""
    names = register_github_workers(queue, audit, retry, retry_config)
    names += register_linear_workers(queue, audit, retry, retry_config)
    logger.info("All webhook workers registered (%d handlers)", len(names))
    return names


__all__ = [
    "register_all_webhook_workers",
    "register_github_workers",
    "register_linear_workers",
]
