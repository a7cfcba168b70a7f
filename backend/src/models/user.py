"""
User model for the subscription entitlement subsystem.

Only the fields the billing subsystem reads or writes live here. Identity,
credentials and profile editing are owned by the auth collaborator.

Billing fields:
- trial_ends_at: set once when a trial starts; a used trial is never reusable
- remote_customer_id: billing provider customer ID (Stripe cus_...)
- last_sync_at: when population sync last pulled remote state for the user
"""

from typing import List

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship

from src.db_base import Base
from src.models.base import TimestampMixin, SoftDeleteMixin, generate_uuid


class User(Base, TimestampMixin, SoftDeleteMixin):
    """Local user record with billing state and role assignments."""

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    email = Column(
        String(255),
        nullable=True,
        index=True,
        comment="User email address"
    )

    name = Column(
        String(255),
        nullable=True,
        comment="Display name"
    )

    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="End of the (single-use) local trial"
    )

    remote_customer_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        comment="Billing provider customer ID"
    )

    last_sync_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When remote subscriptions were last synced for this user"
    )

    role_assignments = relationship(
        "UserRoleAssignment",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    subscriptions = relationship(
        "Subscription",
        back_populates="user",
        lazy="dynamic",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"

    @property
    def role_names(self) -> List[str]:
        """Names of all roles currently assigned to the user."""
        return sorted(a.role.name for a in self.role_assignments)
