"""SQLAlchemy ORM models for hookrelay.

- base: Common metadata, type definitions, and JobStatus
- jobs: Durable job queue rows
- audit: Append-only audit trail entries
"""

from hookrelay.db.models.audit import AuditEntryRecord
from hookrelay.db.models.base import Base, JobStatus, metadata
from hookrelay.db.models.jobs import JobRecord

__all__ = [
    "AuditEntryRecord",
    "Base",
    "JobRecord",
    "JobStatus",
    "metadata",
]
