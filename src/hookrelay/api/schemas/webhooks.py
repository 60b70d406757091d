"""Webhook request and response schemas.

Inbound payloads are validated only for the fields routing and auditing
need; everything else is passed through to the job payload untouched.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# -----------------------------------------------------------------------------
# GitHub
# -----------------------------------------------------------------------------


class GitHubRepository(BaseModel):
    """Repository block present on every repository-scoped GitHub event."""

    model_config = ConfigDict(extra="allow")

    full_name: str = Field(..., min_length=1, description="owner/name")


class GitHubSender(BaseModel):
    model_config = ConfigDict(extra="allow")

    login: str = Field(..., min_length=1)


class GitHubWebhookPayload(BaseModel):
    """Minimal shape of a GitHub webhook body."""

    model_config = ConfigDict(extra="allow")

    action: str | None = None
    repository: GitHubRepository
    sender: GitHubSender

    def extra_field(self, name: str, default: Any = None) -> Any:
        """Return an event-specific top-level field (e.g. "commits") as received."""
        return (self.model_extra or {}).get(name, default)


class GitHubEventEnvelope(BaseModel):
    """Lenient shape for events without a worker.

    Organization and app level events (organization, installation,
    membership, ...) carry no repository, so nothing beyond a JSON object
    is required.
    """

    model_config = ConfigDict(extra="allow")

    action: str | None = None
    repository: dict[str, Any] | None = None
    sender: dict[str, Any] | None = None

    @property
    def repository_name(self) -> str | None:
        return (self.repository or {}).get("full_name")

    @property
    def sender_login(self) -> str | None:
        return (self.sender or {}).get("login")


class GitHubWebhookResponse(BaseModel):
    """Acknowledgment returned to GitHub."""

    success: bool = True
    event: str | None = None
    message: str


# -----------------------------------------------------------------------------
# Linear
# -----------------------------------------------------------------------------


class LinearWebhookPayload(BaseModel):
    """Minimal shape of a Linear webhook body."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = Field(..., min_length=1, description="Entity type, e.g. Issue")
    action: str = Field(..., min_length=1, description="create, update or remove")
    data: dict[str, Any] = Field(default_factory=dict)
    url: str | None = None
    created_at: str | None = Field(None, alias="createdAt")
    webhook_id: str | None = Field(None, alias="webhookId")

    def team_name(self) -> str | None:
        team = self.data.get("team")
        return team.get("name") if isinstance(team, dict) else None


class LinearWebhookResponse(BaseModel):
    """Acknowledgment returned to Linear."""

    success: bool = True
    type: str
    action: str
    message: str


class LinearTestResponse(BaseModel):
    success: bool = True
    message: str
    timestamp: str


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


class QueueHealth(BaseModel):
    mode: str
    healthy: bool
    stats: dict[str, int] | None = None


class HealthResponse(BaseModel):
    status: str
    queue: QueueHealth
