"""Pydantic schemas for the hookrelay HTTP API."""

from hookrelay.api.schemas.webhooks import (
    GitHubEventEnvelope,
    GitHubRepository,
    GitHubSender,
    GitHubWebhookPayload,
    GitHubWebhookResponse,
    HealthResponse,
    LinearTestResponse,
    LinearWebhookPayload,
    LinearWebhookResponse,
    QueueHealth,
)

__all__ = [
    "GitHubEventEnvelope",
    "GitHubRepository",
    "GitHubSender",
    "GitHubWebhookPayload",
    "GitHubWebhookResponse",
    "HealthResponse",
    "LinearTestResponse",
    "LinearWebhookPayload",
    "LinearWebhookResponse",
    "QueueHealth",
]
