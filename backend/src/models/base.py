"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- SoftDeleteMixin: is_deleted tombstone flag
- generate_uuid: UUID generation for primary keys
"""

import uuid

from sqlalchemy import Boolean, Column, DateTime, func


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class SoftDeleteMixin:
    """
    Mixin that adds an is_deleted tombstone.

    Rows are never hard-deleted by the billing subsystem; deleted rows are
    excluded from job and webhook lookups instead.
    """

    is_deleted = Column(
        Boolean,
        nullable=False,
        default=False,
        index=True,
        comment="Tombstone flag (true = soft deleted)"
    )
