"""
Subscription repository for data access operations.

Encapsulates all database operations on the local subscription cache:
- Upserts keyed by the provider's remote_id
- Entitlement lookups used by the resolver's local fallback
- Webhook event deduplication
"""

import logging
from typing import Optional, List, Tuple
from datetime import datetime

from sqlalchemy.orm import Session

from src.integrations.stripe.billing_client import RemoteSubscription, RemoteSubscriptionItem
from src.models.subscription import (
    Subscription,
    SubscriptionItem,
    SubscriptionStatus,
    ENTITLED_STATUSES,
)
from src.models.webhook_event import WebhookEvent
from src.platform.clock import ensure_utc

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository for subscription data access.

    Rows are never deleted here; remote cancellations arrive as status
    transitions through upsert_subscription.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_by_remote_id(self, remote_id: str) -> Optional[Subscription]:
        """
        Get subscription by provider subscription ID.

        Args:
            remote_id: Provider subscription ID (sub_...)

        Returns:
            Subscription if found, None otherwise
        """
        return self.db.query(Subscription).filter(
            Subscription.remote_id == remote_id
        ).first()

    def get_item_by_remote_id(self, remote_id: str) -> Optional[SubscriptionItem]:
        return self.db.query(SubscriptionItem).filter(
            SubscriptionItem.remote_id == remote_id
        ).first()

    def list_for_user(self, user_id: str) -> List[Subscription]:
        """All cached subscriptions of a user, most recently updated first."""
        return self.db.query(Subscription).filter(
            Subscription.user_id == user_id
        ).order_by(Subscription.updated_at.desc(), Subscription.id.desc()).all()

    def find_latest_entitled(self, user_id: str) -> Optional[Subscription]:
        """
        Most recently updated subscription in active, trialing or past_due.

        Args:
            user_id: Owning user ID

        Returns:
            Subscription if found, None otherwise
        """
        return self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(ENTITLED_STATUSES)
        ).order_by(Subscription.updated_at.desc(), Subscription.id.desc()).first()

    def find_grace_canceled(self, user_id: str, now: datetime) -> Optional[Subscription]:
        """
        Canceled subscription whose ends_at is still in the future.

        Args:
            user_id: Owning user ID
            now: Reference time

        Returns:
            The canceled subscription ending last, None if there is none
        """
        candidates = self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.CANCELED.value,
            Subscription.ends_at.isnot(None)
        ).all()

        in_grace = [s for s in candidates if ensure_utc(s.ends_at) > now]
        if not in_grace:
            return None
        return max(in_grace, key=lambda s: ensure_utc(s.ends_at))

    def upsert_subscription(
        self,
        user_id: str,
        remote: RemoteSubscription,
        now: datetime
    ) -> Tuple[Subscription, bool]:
        """
        Insert or update the local copy of a remote subscription.

        Mutable fields are last-write-wins. Failure tracking fields are
        owned by the webhook handler and left untouched.

        Returns:
            (subscription, created)
        """
        subscription = self.get_by_remote_id(remote.id)
        created = subscription is None

        if created:
            subscription = Subscription(
                remote_id=remote.id,
                user_id=user_id,
                failed_payment_count=0,
                created_at=now,
            )
            self.db.add(subscription)

        subscription.user_id = user_id
        subscription.status = remote.status
        subscription.price_ref = remote.price_ref
        subscription.quantity = remote.quantity
        subscription.trial_ends_at = remote.trial_ends_at
        subscription.ends_at = remote.ends_at
        subscription.updated_at = now

        self.db.flush()
        return subscription, created

    def upsert_item(
        self,
        subscription: Subscription,
        remote_item: RemoteSubscriptionItem,
        now: datetime
    ) -> Tuple[SubscriptionItem, bool]:
        """
        Insert or update a subscription item keyed by remote_id.

        Returns:
            (item, created)
        """
        item = self.get_item_by_remote_id(remote_item.id)
        created = item is None

        if created:
            item = SubscriptionItem(remote_id=remote_item.id, created_at=now)
            self.db.add(item)

        item.subscription_id = subscription.id
        item.product_ref = remote_item.product_ref
        item.price_ref = remote_item.price_ref
        item.quantity = remote_item.quantity
        item.updated_at = now

        self.db.flush()
        return item, created

    def update_status(
        self,
        subscription: Subscription,
        new_status: SubscriptionStatus,
        now: datetime
    ) -> Subscription:
        """
        Update subscription status with logging.

        Args:
            subscription: Subscription to update
            new_status: New status value
            now: Write timestamp

        Returns:
            Updated subscription
        """
        old_status = subscription.status
        subscription.status = new_status.value
        subscription.updated_at = now

        logger.info("Subscription status updated", extra={
            "subscription_id": subscription.id,
            "remote_id": subscription.remote_id,
            "old_status": old_status,
            "new_status": new_status.value
        })

        return subscription


class WebhookEventRepository:
    """
    Repository for webhook event deduplication.

    Tracks processed webhook events to ensure idempotency.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def is_processed(self, event_id: str) -> bool:
        """
        Check if a webhook event has already been processed.

        Args:
            event_id: Provider event ID

        Returns:
            True if already processed, False otherwise
        """
        existing = self.db.query(WebhookEvent).filter(
            WebhookEvent.remote_event_id == event_id
        ).first()

        return existing is not None

    def mark_processed(
        self,
        event_id: str,
        event_type: str,
        processed_at: datetime,
        payload_hash: Optional[str] = None
    ) -> None:
        """
        Mark a webhook event as processed.

        Args:
            event_id: Provider event ID
            event_type: Event type
            processed_at: Processing timestamp
            payload_hash: Optional hash of payload for debugging
        """
        event = WebhookEvent(
            remote_event_id=event_id,
            event_type=event_type,
            payload_hash=payload_hash,
            processed_at=processed_at
        )
        self.db.add(event)
        self.db.flush()
