"""Linear event workers.

Processes jobs enqueued by the Linear webhook router:
- linear_issue: issue created, updated, removed
- linear_comment: comment created, updated
- linear_project: project created, updated
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING

from hookrelay.services.job_queue import JobName
from hookrelay.worker.handlers.payloads import (
    LinearCommentJob,
    LinearIssueJob,
    LinearProjectJob,
    name_of,
    without_retry,
)

if TYPE_CHECKING:
    from hookrelay.services.audit import AuditTrail
    from hookrelay.services.job_queue import JobHandler, JobQueue, QueueJob
    from hookrelay.services.retry import RetryConfig, RetryManager

logger = logging.getLogger(__name__)

AGENT = "linear_worker"


async def handle_issue(job: QueueJob, audit: AuditTrail) -> None:
    """Handle linear_issue jobs.

    Expected job data:
        action: create, update or remove
        issue: Linear issue object (id, title, state, team, assignee, url)
        url: Link to the issue
    """
    data = LinearIssueJob.model_validate(without_retry(job.data))
    issue = data.issue
    logger.info("Processing Linear issue %s: %s (%s)", issue.id, issue.title, data.action)

    await audit.record(
        agent=AGENT,
        action="process_issue",
        input={
            "action": data.action,
            "issue_id": issue.id,
            "issue_title": issue.title,
            "state": name_of(issue.state),
            "team": name_of(issue.team),
            "assignee": name_of(issue.assignee),
        },
        output={"status": "processed", "url": issue.url or data.url},
    )


async def handle_comment(job: QueueJob, audit: AuditTrail) -> None:
    """Handle linear_comment jobs."""
    data = LinearCommentJob.model_validate(without_retry(job.data))
    comment = data.comment
    issue_title = comment.issue.title if comment.issue else None
    logger.info("Processing Linear comment %s on %s (%s)", comment.id, issue_title, data.action)

    await audit.record(
        agent=AGENT,
        action="process_comment",
        input={
            "action": data.action,
            "comment_id": comment.id,
            "issue_id": comment.issue.id if comment.issue else None,
            "issue_title": issue_title,
            "commenter": name_of(comment.user),
            "body_length": len(comment.body),
        },
        output={"status": "processed", "url": comment.url or data.url},
    )


async def handle_project(job: QueueJob, audit: AuditTrail) -> None:
    """Handle linear_project jobs."""
    data = LinearProjectJob.model_validate(without_retry(job.data))
    project = data.project
    logger.info(
        "Processing Linear project %s: %s (%s, state=%s)",
        project.id,
        project.name,
        data.action,
        project.state,
    )

    await audit.record(
        agent=AGENT,
        action="process_project",
        input={
            "action": data.action,
            "project_id": project.id,
            "project_name": project.name,
            "state": project.state,
            "lead": name_of(project.lead),
        },
        output={"status": "processed", "url": project.url or data.url},
    )


HANDLERS = {
    JobName.LINEAR_ISSUE: handle_issue,
    JobName.LINEAR_COMMENT: handle_comment,
    JobName.LINEAR_PROJECT: handle_project,
}


def _logged(name: str, handler: JobHandler) -> JobHandler:
    async def run(job: QueueJob) -> None:
        try:
            await handler(job)
        except Exception:
            logger.exception("Linear worker %s failed for job %s", name, job.id)
            raise

    return run


def register_linear_workers(
    queue: JobQueue,
    audit: AuditTrail,
    retry: RetryManager | None = None,
    retry_config: RetryConfig | None = None,
) -> list[str]:
    """Register the Linear handlers on queue. See register_github_workers()."""
    names = []
    for job_name, func in HANDLERS.items():
        handler = _logged(job_name.value, partial(func, audit=audit))
        if retry is not None:
            handler = retry.wrap(handler, retry_config)
        queue.process(job_name.value, handler)
        names.append(job_name.value)

    logger.info("Linear webhook workers registered: %s", ", ".join(names))
    return names
