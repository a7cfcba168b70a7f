"""
Role model and user-role assignments for billing-driven access control.

Roles are global and identified by name:
- admin: administrative account, orthogonal to billing
- premium / trial / free: billing-derived, at most one held at a time

Role rows are created on demand by RoleSynchronizer. Assignments are only
mutated through RoleSynchronizer so admin preservation lives in one place.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    String,
    DateTime,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from src.db_base import Base
from src.models.base import TimestampMixin, generate_uuid


class RoleName(str, Enum):
    """Role names understood by the billing subsystem."""
    ADMIN = "admin"
    PREMIUM = "premium"
    TRIAL = "trial"
    FREE = "free"


# Roles derived from billing state; exactly one is held at a time.
BILLING_ROLES = frozenset({
    RoleName.PREMIUM.value,
    RoleName.TRIAL.value,
    RoleName.FREE.value,
})


class Role(Base, TimestampMixin):
    """A named role (admin, premium, trial, free)."""

    __tablename__ = "roles"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    name = Column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="Role name (admin, premium, trial, free)",
    )

    assignments = relationship(
        "UserRoleAssignment",
        back_populates="role",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name})>"


class UserRoleAssignment(Base):
    """
    Maps a user to a role.

    - source: component that granted the assignment
      (trial_start, trial_sweep, population_sync, webhook, admin_grant)
    """

    __tablename__ = "user_role_assignments"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="User ID (FK to users.id)",
    )

    role_id = Column(
        String(36),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Role ID (FK to roles.id)",
    )

    source = Column(
        String(50),
        nullable=True,
        default="admin_grant",
        comment="Which component granted this assignment",
    )

    assigned_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="When the assignment was created",
    )

    user = relationship("User", back_populates="role_assignments")
    role = relationship("Role", back_populates="assignments", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", name="uq_user_role_assignment"),
    )

    def __repr__(self) -> str:
        return f"<UserRoleAssignment(user_id={self.user_id}, role_id={self.role_id})>"
