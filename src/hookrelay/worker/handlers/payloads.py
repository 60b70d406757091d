"""Job data models for the webhook event workers.

The routers enqueue provider objects as received; these models pick out
the fields the workers summarize and tolerate everything else.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _JobModel(BaseModel):
    model_config = ConfigDict(extra="allow")


# -----------------------------------------------------------------------------
# GitHub
# -----------------------------------------------------------------------------


class GitHubUser(_JobModel):
    login: str


class GitHubCommitAuthor(_JobModel):
    name: str = "unknown"
    email: str | None = None


class GitHubCommit(_JobModel):
    id: str
    message: str = ""
    author: GitHubCommitAuthor = Field(default_factory=GitHubCommitAuthor)
    url: str | None = None

    def summary(self) -> dict[str, str]:
        """Short id, first message line and author name."""
        return {
            "id": self.id[:7],
            "message": self.message.split("\n", 1)[0],
            "author": self.author.name,
        }


class GitHubPullRequest(_JobModel):
    number: int
    title: str = ""
    state: str | None = None
    html_url: str | None = None
    user: GitHubUser | None = None


class GitHubIssue(_JobModel):
    number: int
    title: str = ""
    state: str | None = None
    html_url: str | None = None
    user: GitHubUser | None = None


class GitHubComment(_JobModel):
    id: int
    body: str = ""
    html_url: str | None = None
    user: GitHubUser | None = None


class GitHubPushJob(_JobModel):
    repository: str
    ref: str
    commits: list[GitHubCommit] = Field(default_factory=list)
    sender: str


class GitHubPullRequestJob(_JobModel):
    repository: str
    action: str | None = None
    pull_request: GitHubPullRequest
    sender: str


class GitHubIssuesJob(_JobModel):
    repository: str
    action: str | None = None
    issue: GitHubIssue
    sender: str


class GitHubIssueCommentJob(_JobModel):
    repository: str
    action: str | None = None
    issue: GitHubIssue
    comment: GitHubComment
    sender: str


# -----------------------------------------------------------------------------
# Linear
# -----------------------------------------------------------------------------


class LinearNamed(_JobModel):
    """Nested object Linear identifies by name (state, team, assignee, lead)."""

    id: str | None = None
    name: str | None = None


class LinearIssue(_JobModel):
    id: str
    title: str = ""
    state: LinearNamed | None = None
    team: LinearNamed | None = None
    assignee: LinearNamed | None = None
    url: str | None = None


class LinearIssueRef(_JobModel):
    id: str | None = None
    title: str | None = None


class LinearComment(_JobModel):
    id: str
    body: str = ""
    issue: LinearIssueRef | None = None
    user: LinearNamed | None = None
    url: str | None = None


class LinearProject(_JobModel):
    id: str
    name: str = ""
    state: str | None = None
    lead: LinearNamed | None = None
    url: str | None = None


class LinearIssueJob(_JobModel):
    action: str
    issue: LinearIssue
    url: str | None = None


class LinearCommentJob(_JobModel):
    action: str
    comment: LinearComment
    url: str | None = None


class LinearProjectJob(_JobModel):
    action: str
    project: LinearProject
    url: str | None = None


def name_of(value: LinearNamed | None) -> str | None:
    return value.name if value is not None else None


def without_retry(data: dict[str, Any]) -> dict[str, Any]:
    """Job data minus retry bookkeeping."""
    return {k: v for k, v in data.items() if k != "_retry"}
