"""
Local cache of remote billing subscriptions.

CRITICAL: rows are written only by population sync and the billing webhook
handler, upserted by remote_id. Rows are never hard-deleted; a remote
cancellation transitions status instead.
"""

from enum import Enum

from sqlalchemy import (
    Column, String, Integer, DateTime,
    ForeignKey, Index
)
from sqlalchemy.orm import relationship

from src.db_base import Base
from src.models.base import TimestampMixin, generate_uuid


class SubscriptionStatus(str, Enum):
    """Remote subscription status values as reported by the provider."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


# Statuses that grant an entitlement (past_due is a grace state)
ENTITLED_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)


class Subscription(Base, TimestampMixin):
    """
    Cached copy of one remote subscription.

    updated_at is written explicitly from the injected clock on every sync
    so staleness can be computed deterministically.
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    remote_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Provider subscription ID (sub_...)"
    )

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning user"
    )

    status = Column(
        String(32),
        nullable=False,
        index=True,
        comment="Provider subscription status"
    )

    price_ref = Column(
        String(255),
        nullable=True,
        comment="Provider price ID of the first item"
    )

    quantity = Column(
        Integer,
        nullable=False,
        default=1
    )

    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Provider-side trial end"
    )

    ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Scheduled cancellation time (cancel_at)"
    )

    # Failed payment tracking (webhook-driven)
    failed_payment_count = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Highest invoice attempt_count seen for a failed payment"
    )
    last_payment_failed_at = Column(
        DateTime(timezone=True),
        nullable=True
    )

    user = relationship("User", back_populates="subscriptions")
    items = relationship(
        "SubscriptionItem",
        back_populates="subscription",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, remote_id={self.remote_id}, status={self.status})>"


class SubscriptionItem(Base, TimestampMixin):
    """Line item of a cached subscription, upserted by remote_id."""

    __tablename__ = "subscription_items"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    remote_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Provider subscription item ID (si_...)"
    )

    subscription_id = Column(
        String(36),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    product_ref = Column(String(255), nullable=True)
    price_ref = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    subscription = relationship("Subscription", back_populates="items")

    def __repr__(self) -> str:
        return f"<SubscriptionItem(id={self.id}, remote_id={self.remote_id})>"
