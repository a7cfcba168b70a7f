"""
Billing webhook handler with idempotency support.

Processes Stripe invoice webhooks with:
- Event deduplication using the provider event ID
- Acknowledgement of events for unknown customers (no futile retries)
- Role grants routed through RoleSynchronizer (admin preserved)
- Past-due escalation after repeated payment failures
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.models.role import RoleName
from src.models.subscription import SubscriptionStatus
from src.models.user import User
from src.platform.clock import Clock, utc_now
from src.repositories.subscription_repository import (
    SubscriptionRepository,
    WebhookEventRepository,
)
from src.repositories.user_repository import UserRepository
from src.services.role_synchronizer import RoleSynchronizer

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "message": self.message,
            "event_id": self.event_id,
            "user_id": self.user_id,
            "skipped_reason": self.skipped_reason,
        }


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Subscription ID of an invoice, across old and new payload shapes."""
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription

    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    subscription = details.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription or None


def _invoice_customer_id(invoice: Dict[str, Any]) -> Optional[str]:
    customer = invoice.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return customer or None


class BillingWebhookHandler:
    """
    Handler for Stripe invoice webhooks with idempotency.

    Each event is applied at most once: the event ID is recorded in the
    same transaction as the state change it caused.
    """

    def __init__(
        self,
        db_session: Session,
        role_synchronizer: Optional[RoleSynchronizer] = None,
        settings: Optional[SubscriptionSettings] = None,
        clock: Clock = utc_now,
    ):
        """
        Initialize webhook handler.

        Args:
            db_session: Database session
            role_synchronizer: Optional RoleSynchronizer (shares the session)
            settings: Optional settings override
            clock: Time source
        """
        self.db = db_session
        self.settings = settings or get_subscription_settings()
        self.clock = clock
        self.roles = role_synchronizer or RoleSynchronizer(db_session, clock=clock)
        self.users = UserRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)
        self.events = WebhookEventRepository(db_session)

    def _is_duplicate(self, event_id: str) -> bool:
        return self.events.is_processed(event_id)

    def _record_event(self, event: Dict[str, Any], now: datetime) -> None:
        """
        Record processed webhook event for deduplication.

        Args:
            event: Full provider event
            now: Processing time
        """
        payload_str = json.dumps(event, sort_keys=True, default=str)
        payload_hash = hashlib.sha256(payload_str.encode()).hexdigest()

        self.events.mark_processed(
            event_id=event["id"],
            event_type=event.get("type", ""),
            processed_at=now,
            payload_hash=payload_hash,
        )

    def _commit(self, event_id: str) -> bool:
        """Commit; False if a concurrent delivery already recorded the event."""
        try:
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
            logger.info("Concurrent duplicate webhook skipped", extra={"event_id": event_id})
            return False

    def _preflight(self, event: Dict[str, Any]):
        """
        Common checks shared by both handlers.

        Returns:
            (invoice, subscription_id, early_result)
        """
        event_id = event.get("id")
        invoice = (event.get("data") or {}).get("object") or {}
        subscription_id = _invoice_subscription_id(invoice)

        if not subscription_id:
            logger.info("Non-subscription invoice skipped", extra={
                "event_id": event_id,
                "invoice_id": invoice.get("id"),
            })
            return invoice, None, WebhookProcessingResult(
                processed=False,
                message="Invoice is not for a subscription",
                event_id=event_id,
                skipped_reason="non_subscription",
            )

        if self._is_duplicate(event_id):
            logger.info("Duplicate webhook skipped", extra={"event_id": event_id})
            return invoice, subscription_id, WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                event_id=event_id,
                skipped_reason="duplicate",
            )

        return invoice, subscription_id, None

    def _acknowledge_unknown_customer(
        self, event: Dict[str, Any], customer_id: Optional[str], now: datetime
    ) -> WebhookProcessingResult:
        logger.warning("User not found for billing webhook", extra={
            "event_id": event.get("id"),
            "event_type": event.get("type"),
            "customer_id": customer_id,
        })
        try:
            self._record_event(event, now)
        except Exception:
            self.db.rollback()
            raise
        self._commit(event["id"])
        return WebhookProcessingResult(
            processed=False,
            message="No user for customer - acknowledged",
            event_id=event.get("id"),
            skipped_reason="unknown_customer",
        )

    async def handle_payment_succeeded(self, event: Dict[str, Any]) -> WebhookProcessingResult:
        """
        Handle invoice.payment_succeeded (subscription renewal).

        Grants premium if missing and clears a past_due state.

        Returns:
            WebhookProcessingResult
        """
        invoice, subscription_id, early = self._preflight(event)
        if early is not None:
            return early

        event_id = event["id"]
        customer_id = _invoice_customer_id(invoice)
        now = self.clock()

        logger.info("Subscription payment succeeded", extra={
            "event_id": event_id,
            "customer_id": customer_id,
            "remote_subscription_id": subscription_id,
        })

        user: Optional[User] = self.users.get_by_remote_customer_id(customer_id)
        if user is None:
            return self._acknowledge_unknown_customer(event, customer_id, now)

        user_id = user.id
        try:
            row = self.subscriptions.get_by_remote_id(subscription_id)
            if row is not None and row.status == SubscriptionStatus.PAST_DUE.value:
                self.subscriptions.update_status(row, SubscriptionStatus.ACTIVE, now)
                row.failed_payment_count = 0

            self._record_event(event, now)

            if RoleName.PREMIUM.value not in self.users.get_role_names(user_id):
                # sync_role commits the pending subscription and event rows too
                self.roles.sync_role(user, RoleName.PREMIUM.value, source="webhook")
            elif not self._commit(event_id):
                return WebhookProcessingResult(
                    processed=False,
                    message="Duplicate webhook - already processed",
                    event_id=event_id,
                    user_id=user_id,
                    skipped_reason="duplicate",
                )
        except Exception as e:
            self.db.rollback()
            logger.error("Error handling payment succeeded webhook", extra={
                "event_id": event_id,
                "user_id": user_id,
                "error": str(e),
            }, exc_info=True)
            raise

        return WebhookProcessingResult(
            processed=True,
            message="Payment success applied",
            event_id=event_id,
            user_id=user_id,
        )

    async def handle_payment_failed(self, event: Dict[str, Any]) -> WebhookProcessingResult:
        """
        Handle invoice.payment_failed.

        Records the failure; escalates the subscription to past_due once
        attempt_count reaches the configured threshold. Roles are left
        alone: past_due is a grace state, not a downgrade.

        Returns:
            WebhookProcessingResult
        """
        invoice, subscription_id, early = self._preflight(event)
        if early is not None:
            return early

        event_id = event["id"]
        customer_id = _invoice_customer_id(invoice)
        attempt_count = int(invoice.get("attempt_count") or 1)
        now = self.clock()

        logger.warning("Subscription payment failed", extra={
            "event_id": event_id,
            "customer_id": customer_id,
            "remote_subscription_id": subscription_id,
            "attempt_count": attempt_count,
        })

        user = self.users.get_by_remote_customer_id(customer_id)
        if user is None:
            return self._acknowledge_unknown_customer(event, customer_id, now)

        user_id = user.id
        threshold = self.settings.payment_failure_escalation_attempts
        try:
            row = self.subscriptions.get_by_remote_id(subscription_id)
            if row is None:
                logger.warning("Failed payment for subscription not cached locally", extra={
                    "event_id": event_id,
                    "user_id": user_id,
                    "remote_subscription_id": subscription_id,
                })
            else:
                row.failed_payment_count = max(row.failed_payment_count or 0, attempt_count)
                row.last_payment_failed_at = now
                row.updated_at = now

                if attempt_count >= threshold and row.status in (
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.TRIALING.value,
                ):
                    self.subscriptions.update_status(row, SubscriptionStatus.PAST_DUE, now)
                    logger.warning("Subscription escalated to past_due", extra={
                        "user_id": user_id,
                        "remote_subscription_id": subscription_id,
                        "attempt_count": attempt_count,
                    })

            self._record_event(event, now)
            if not self._commit(event_id):
                return WebhookProcessingResult(
                    processed=False,
                    message="Duplicate webhook - already processed",
                    event_id=event_id,
                    user_id=user_id,
                    skipped_reason="duplicate",
                )
        except Exception as e:
            self.db.rollback()
            logger.error("Error handling payment failed webhook", extra={
                "event_id": event_id,
                "user_id": user_id,
                "error": str(e),
            }, exc_info=True)
            raise

        return WebhookProcessingResult(
            processed=True,
            message="Payment failure recorded",
            event_id=event_id,
            user_id=user_id,
        )

    async def handle_event(self, event: Dict[str, Any]) -> WebhookProcessingResult:
        """Dispatch a provider event to its handler."""
        event_type = event.get("type")
        if event_type == PAYMENT_SUCCEEDED:
            return await self.handle_payment_succeeded(event)
        if event_type == PAYMENT_FAILED:
            return await self.handle_payment_failed(event)

        logger.info("Unhandled webhook event type", extra={
            "event_id": event.get("id"),
            "event_type": event_type,
        })
        return WebhookProcessingResult(
            processed=False,
            message=f"Unhandled event type: {event_type}",
            event_id=event.get("id"),
            skipped_reason="unhandled_type",
        )

