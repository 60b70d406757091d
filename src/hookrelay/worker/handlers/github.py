"""GitHub event workers.

Processes jobs enqueued by the GitHub webhook router:
- github_push: code pushes
- github_pull_request: PR opened, closed, merged, ...
- github_issues: issue opened, closed, labeled, ...
- github_issue_comment: comments created, edited, deleted

Each handler validates its job data, records one audit entry with a compact
summary, and lets any failure propagate so the queue marks the job failed
(and the retry wrapper, when installed, schedules the next attempt).
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING

from hookrelay.services.job_queue import JobName
from hookrelay.worker.handlers.payloads import (
    GitHubIssueCommentJob,
    GitHubIssuesJob,
    GitHubPullRequestJob,
    GitHubPushJob,
    without_retry,
)

if TYPE_CHECKING:
    from hookrelay.services.audit import AuditTrail
    from hookrelay.services.job_queue import JobHandler, JobQueue, QueueJob
    from hookrelay.services.retry import RetryConfig, RetryManager

logger = logging.getLogger(__name__)

AGENT = "github_worker"


async def handle_push(job: QueueJob, audit: AuditTrail) -> None:
    """Handle github_push jobs.

    Expected job data:
        repository: owner/name
        ref: Git ref that was pushed
        commits: Commit objects (id, message, author.name)
        sender: Login of the pusher
    """
    data = GitHubPushJob.model_validate(without_retry(job.data))
    logger.info(
        "Processing GitHub push: repo=%s, ref=%s, commits=%d",
        data.repository,
        data.ref,
        len(data.commits),
    )

    await audit.record(
        agent=AGENT,
        action="process_push",
        input={
            "repository": data.repository,
            "ref": data.ref,
            "commit_count": len(data.commits),
            "sender": data.sender,
        },
        output={
            "status": "processed",
            "commits": [commit.summary() for commit in data.commits],
        },
    )


async def handle_pull_request(job: QueueJob, audit: AuditTrail) -> None:
    """Handle github_pull_request jobs."""
    data = GitHubPullRequestJob.model_validate(without_retry(job.data))
    pr = data.pull_request
    logger.info(
        "Processing GitHub PR: repo=%s, number=%d, action=%s",
        data.repository,
        pr.number,
        data.action,
    )

    await audit.record(
        agent=AGENT,
        action="process_pull_request",
        input={
            "repository": data.repository,
            "action": data.action,
            "pr_number": pr.number,
            "pr_title": pr.title,
            "pr_state": pr.state,
            "sender": data.sender,
        },
        output={"status": "processed", "url": pr.html_url},
    )


async def handle_issues(job: QueueJob, audit: AuditTrail) -> None:
    """Handle github_issues jobs."""
    data = GitHubIssuesJob.model_validate(without_retry(job.data))
    issue = data.issue
    logger.info(
        "Processing GitHub issue: repo=%s, number=%d, action=%s",
        data.repository,
        issue.number,
        data.action,
    )

    await audit.record(
        agent=AGENT,
        action="process_issues",
        input={
            "repository": data.repository,
            "action": data.action,
            "issue_number": issue.number,
            "issue_title": issue.title,
            "issue_state": issue.state,
            "sender": data.sender,
        },
        output={"status": "processed", "url": issue.html_url},
    )


async def handle_issue_comment(job: QueueJob, audit: AuditTrail) -> None:
    """Handle github_issue_comment jobs."""
    data = GitHubIssueCommentJob.model_validate(without_retry(job.data))
    comment = data.comment
    logger.info(
        "Processing GitHub comment: repo=%s, issue=%d, action=%s",
        data.repository,
        data.issue.number,
        data.action,
    )

    await audit.record(
        agent=AGENT,
        action="process_issue_comment",
        input={
            "repository": data.repository,
            "action": data.action,
            "issue_number": data.issue.number,
            "comment_id": comment.id,
            "commenter": comment.user.login if comment.user else None,
            "sender": data.sender,
        },
        output={
            "status": "processed",
            "url": comment.html_url,
            "body_length": len(comment.body),
        },
    )


HANDLERS = {
    JobName.GITHUB_PUSH: handle_push,
    JobName.GITHUB_PULL_REQUEST: handle_pull_request,
    JobName.GITHUB_ISSUES: handle_issues,
    JobName.GITHUB_ISSUE_COMMENT: handle_issue_comment,
}


def _logged(name: str, handler: JobHandler) -> JobHandler:
    async def run(job: QueueJob) -> None:
        try:
            await handler(job)
        except Exception:
            logger.exception("GitHub worker %s failed for job %s", name, job.id)
            raise

    return run


def register_github_workers(
    queue: JobQueue,
    audit: AuditTrail,
    retry: RetryManager | None = None,
    retry_config: RetryConfig | None = None,
) -> list[str]:
    """Register the GitHub handlers on queue.

    Args:
        queue: Queue to register on.
        audit: Audit trail receiving one entry per processed job.
        retry: When given, every handler is wrapped with retry.
        retry_config: Retry configuration (the manager default when omitted).

    Returns:
        Registered job names.
    """
    names = []
    for job_name, func in HANDLERS.items():
        handler = _logged(job_name.value, partial(func, audit=audit))
        if retry is not None:
            handler = retry.wrap(handler, retry_config)
        queue.process(job_name.value, handler)
        names.append(job_name.value)

    logger.info("GitHub webhook workers registered: %s", ", ".join(names))
    return names
