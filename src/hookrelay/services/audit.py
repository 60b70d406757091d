"""Append-only audit trail.

Webhook routers write one entry per received event and event workers write
one outcome entry per processed job. The trail is write-only from the
pipeline's point of view: return values are never consulted.

Backings:
- InMemoryAuditTrail: list held by the instance (tests, single process)
- DatabaseAuditTrail: rows in the audit_entries table

Example:
    audit = InMemoryAuditTrail()
    await audit.record(
        agent="github_webhook",
        action="webhook:push",
        input={"repository": "o/r"},
        output={"status": "received"},
    )
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from hookrelay.db.models.audit import AuditEntryRecord

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class AuditWriteError(Exception):
    """Raised when an audit entry cannot be persisted."""

    pass


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """Immutable audit trail entry.

    Attributes:
        agent: Originating component (e.g. "github_webhook", "linear_worker").
        action: Event or operation label (e.g. "webhook:push").
        input: JSON text describing what was received.
        output: JSON text describing the outcome.
        timestamp: ISO-8601 UTC timestamp.
    """

    agent: str
    action: str
    input: str
    output: str
    timestamp: str

    def input_json(self) -> Any:
        return json.loads(self.input)

    def output_json(self) -> Any:
        return json.loads(self.output)


def _dump(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class AuditTrail(abc.ABC):
    """Audit collaborator interface."""

    @abc.abstractmethod
    async def create_audit_entry(self, entry: AuditEntry) -> None:
        """Append one entry.

        Raises:
            AuditWriteError: If the entry cannot be stored.
        """

    async def record(
        self,
        *,
        agent: str,
        action: str,
        input: Any,  # noqa: A002 - matches the audit entry field name
        output: Any,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """Serialize input/output to JSON and append an entry.

        Returns:
            The entry that was written.
        """
        entry = AuditEntry(
            agent=agent,
            action=action,
            input=_dump(input),
            output=_dump(output),
            timestamp=(timestamp or datetime.now(UTC)).isoformat(),
        )
        await self.create_audit_entry(entry)
        return entry


class InMemoryAuditTrail(AuditTrail):
    """Audit trail held in memory, in append order."""

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []

    async def create_audit_entry(self, entry: AuditEntry) -> None:
        self._entries.append(entry)
        logger.debug("Audit entry: agent=%s, action=%s", entry.agent, entry.action)

    def get_audit_entries(
        self,
        agent: str | None = None,
        action: str | None = None,
    ) -> list[AuditEntry]:
        """Return entries, optionally filtered by agent and/or action."""
        return [
            e
            for e in self._entries
            if (agent is None or e.agent == agent) and (action is None or e.action == action)
        ]

    def __len__(self) -> int:
        return len(self._entries)


class DatabaseAuditTrail(AuditTrail):
    """Audit trail persisted in the audit_entries table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def create_audit_entry(self, entry: AuditEntry) -> None:
        record = AuditEntryRecord(
            agent=entry.agent,
            action=entry.action,
            input=entry.input,
            output=entry.output,
            timestamp=entry.timestamp,
        )
        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to write audit entry: agent=%s, action=%s, error=%s",
                entry.agent,
                entry.action,
                e,
            )
            raise AuditWriteError(f"Failed to write audit entry: {e}") from e

    async def list_entries(self, agent: str | None = None, limit: int = 100) -> list[AuditEntry]:
        """Return the most recent entries, newest first."""
        stmt = select(AuditEntryRecord).order_by(AuditEntryRecord.created_at.desc()).limit(limit)
        if agent:
            stmt = stmt.where(AuditEntryRecord.agent == agent)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            records = list(result.scalars().all())

        return [
            AuditEntry(
                agent=r.agent,
                action=r.action,
                input=r.input,
                output=r.output,
                timestamp=r.timestamp,
            )
            for r in records
        ]
