"""Append-only audit trail records."""

from __future__ import annotations

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hookrelay.db.models.base import Base, TimestampTZ, UUIDPrimaryKey


class AuditEntryRecord(Base):
    """One audit trail entry.

    Webhook routers write one entry per receipt and event workers write one
    outcome entry per processed job. input/output hold JSON text.
    """

    __tablename__ = "audit_entries"

    entry_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    agent: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    input: Mapped[str] = mapped_column(Text, nullable=False)
    output: Mapped[str] = mapped_column(Text, nullable=False)
    # ISO-8601 timestamp as supplied by the writer
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_audit_entries_agent_created_at", "agent", "created_at"),
        Index("ix_audit_entries_action", "action"),
    )
