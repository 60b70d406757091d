"""Pytest configuration and shared fixtures.

Everything runs in-process: the in-memory queue and audit trail stand in
for the database backings, and the API is exercised through httpx's ASGI
transport. Database-backed code is tested against mocked sessions.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from hookrelay.api import create_app
from hookrelay.core.config import Settings, WebhookSettings
from hookrelay.services.audit import InMemoryAuditTrail
from hookrelay.services.job_queue import InMemoryJobQueue
from hookrelay.services.retry import InMemoryDeadLetterStore, RetryScheduler
from tests.factories import GITHUB_SECRET, LINEAR_SECRET, github_repository


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
@pytest.fixture
def settings() -> Settings:
    """Development settings with both webhook secrets configured."""
    return Settings(
        environment="dev",
        webhooks=WebhookSettings(
            github_secret=GITHUB_SECRET,
            linear_secret=LINEAR_SECRET,
            allow_unsigned=False,
        ),
    )


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def audit() -> InMemoryAuditTrail:
    return InMemoryAuditTrail()


@pytest.fixture
def dead_letters() -> InMemoryDeadLetterStore:
    return InMemoryDeadLetterStore()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays (seconds) requested from the instant scheduler."""
    return []


@pytest.fixture
def scheduler(sleeps: list[float]) -> RetryScheduler:
    """Retry scheduler whose timers fire immediately but record their delay."""

    async def instant_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    return RetryScheduler(sleep=instant_sleep)


# ---------------------------------------------------------------------------
# API client fixture (in-process testing via ASGI transport)
# ---------------------------------------------------------------------------
@pytest.fixture
def test_app(settings, queue, audit, dead_letters):
    """Fresh application around the in-memory collaborators."""
    return create_app(settings, queue=queue, audit=audit, dead_letter=dead_letters)


@pytest.fixture
async def api_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ---------------------------------------------------------------------------
# Webhook payloads
# ---------------------------------------------------------------------------
@pytest.fixture
def push_payload() -> dict[str, Any]:
    """GitHub push delivery with two commits."""
    return {
        "ref": "refs/heads/main",
        "repository": github_repository(),
        "sender": {"login": "alice"},
        "commits": [
            {
                "id": "abc1234def5678",
                "message": "Fix bug\n\nLonger description",
                "author": {"name": "Alice", "email": "alice@example.com"},
                "url": "https://github.com/octo/repo/commit/abc1234def5678",
            },
            {
                "id": "0011223344556677",
                "message": "Add tests",
                "author": {"name": "Bob", "email": "bob@example.com"},
                "url": "https://github.com/octo/repo/commit/0011223344556677",
            },
        ],
    }


@pytest.fixture
def linear_issue_payload() -> dict[str, Any]:
    """Linear Issue.create delivery."""
    return {
        "action": "create",
        "type": "Issue",
        "data": {
            "id": "issue-1",
            "title": "Broken login",
            "state": {"name": "Todo", "type": "unstarted"},
            "team": {"id": "team-1", "name": "Core", "key": "COR"},
            "assignee": {"id": "user-1", "name": "Dana"},
            "url": "https://linear.app/acme/issue/COR-1",
        },
        "url": "https://linear.app/acme/issue/COR-1",
        "createdAt": "2026-10-17T10:00:00.000Z",
        "webhookTimestamp": 1760695200000,
        "webhookId": "hook-1",
    }
