"""
WebhookEvent model for tracking processed billing provider webhooks.

Used for idempotency - ensures payment events are applied exactly once
under at-least-once delivery.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Index, func

from src.db_base import Base


class WebhookEvent(Base):
    """
    Tracks processed billing webhook events for deduplication.

    The provider may redeliver an event any number of times. A row here
    means the event was fully applied and must be skipped on redelivery.
    """

    __tablename__ = "webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    remote_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider event ID (evt_...)"
    )

    event_type = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Event type (e.g., invoice.payment_failed)"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="When the webhook was processed"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="When the record was created"
    )

    __table_args__ = (
        Index(
            "idx_webhook_events_processed",
            "processed_at",
        ),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(id={self.id}, event_id={self.remote_event_id}, type={self.event_type})>"
