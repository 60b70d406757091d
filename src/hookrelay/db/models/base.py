"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable column type annotations
- The job status enum shared by the queue services and the ORM
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from sqlalchemy import JSON, DateTime, MetaData, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time used for column defaults."""
    return datetime.now(UTC)


# UUID primary key generated client-side so ids are known before flush
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), default=utcnow, nullable=False),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]


JSONDict = Annotated[dict[str, Any], mapped_column(JSONType, nullable=False, default=dict)]


class Base(DeclarativeBase):
    """Declarative base for all hookrelay models."""

    metadata = metadata
    registry = type_registry


class JobStatus(enum.Enum):
    """Status of a queued job.

    Values:
        PENDING: Job is waiting to be processed
        PROCESSING: A handler is currently executing the job
        COMPLETED: The handler finished successfully
        FAILED: The handler raised; retries, if any, are separate jobs
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
