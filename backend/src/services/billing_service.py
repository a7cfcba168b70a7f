"""
Billing service for hosted checkout, the billing portal and the plan catalog.

Orchestrates:
- Plan/currency validation against config/billing_plans.yml
- Lazy creation of the remote billing customer
- Checkout and billing portal session creation

Subscriptions themselves are never written here; they arrive through
population sync and payment webhooks.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from src.config.billing_plans import BillingPlansLoader, get_billing_plans_loader
from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.integrations.stripe.billing_client import BillingGateway
from src.models.user import User
from src.services.billing_errors import (
    AlreadySubscribedError,
    BillingServiceError,
    InvalidPlanError,
    NoBillingCustomerError,
    UnsupportedCurrencyError,
)
from src.services.entitlement_resolver import EntitlementResolver, EntitlementSource

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    """Result of creating a checkout session."""
    url: str
    session_id: str


@dataclass
class PortalResult:
    """Result of creating a billing portal session."""
    url: str
    session_id: str


class BillingService:
    """Service for user-initiated billing operations."""

    def __init__(
        self,
        db_session: Session,
        gateway: Optional[BillingGateway],
        resolver: EntitlementResolver,
        settings: Optional[SubscriptionSettings] = None,
        plans: Optional[BillingPlansLoader] = None,
    ):
        """
        Initialize billing service.

        Args:
            db_session: Database session
            gateway: Remote billing gateway (None when billing is not configured)
            resolver: Entitlement resolver used for the already-subscribed check
            settings: Optional settings override
            plans: Optional plan catalog loader
        """
        self.db = db_session
        self.gateway = gateway
        self.resolver = resolver
        self.settings = settings or get_subscription_settings()
        self.plans = plans or get_billing_plans_loader()

    def _require_gateway(self) -> BillingGateway:
        if self.gateway is None:
            raise BillingServiceError("Billing is not configured")
        return self.gateway

    async def _ensure_customer(self, user: User) -> str:
        """Return the user's billing customer ID, creating the customer on first use."""
        if user.remote_customer_id:
            return user.remote_customer_id

        customer = await self._require_gateway().create_customer(
            email=user.email,
            name=user.name,
            metadata={"user_id": user.id},
        )
        try:
            user.remote_customer_id = customer.id
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Billing customer linked to user", extra={
            "user_id": user.id,
            "customer_id": customer.id,
        })
        return customer.id

    async def create_checkout_session(
        self,
        user: User,
        plan: str,
        currency: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        trial_days: Optional[int] = None,
    ) -> CheckoutResult:
        """
        Create a hosted checkout session for a subscription plan.

        Raises:
            AlreadySubscribedError: User already holds a paid entitlement
            InvalidPlanError: Unknown plan or currency
            BillingServiceError: Billing is not configured
        """
        price_id = self.plans.get_price_id(plan, currency) if self.plans.has_plan(plan) else None
        if price_id is None:
            raise InvalidPlanError()

        entitlement = await self.resolver.resolve(user)
        if (
            entitlement.has_subscription
            and entitlement.source != EntitlementSource.LOCAL_TRIAL.value
            and not entitlement.in_grace_period
        ):
            raise AlreadySubscribedError()

        customer_id = await self._ensure_customer(user)

        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "client_reference_id": user.id,
            "success_url": success_url or f"{self.settings.frontend_url}/subscription/success",
            "cancel_url": cancel_url or f"{self.settings.frontend_url}/subscription/cancel",
            "line_items": [{"price": price_id, "quantity": 1}],
        }
        if trial_days and trial_days > 0:
            params["subscription_data"] = {"trial_period_days": trial_days}

        session = await self._require_gateway().create_checkout_session(params)

        logger.info("Checkout session created", extra={
            "user_id": user.id,
            "plan": plan,
            "currency": (currency or self.plans.default_currency).upper(),
            "session_id": session.id,
        })
        return CheckoutResult(url=session.url, session_id=session.id)

    async def create_billing_portal_session(
        self,
        user: User,
        return_url: Optional[str] = None,
    ) -> PortalResult:
        """
        Create a billing portal session for an existing customer.

        Raises:
            NoBillingCustomerError: User has no billing customer
        """
        if not user.remote_customer_id:
            raise NoBillingCustomerError()

        session = await self._require_gateway().create_billing_portal_session(
            user.remote_customer_id,
            return_url or f"{self.settings.frontend_url}/account",
        )

        logger.info("Billing portal session created", extra={
            "user_id": user.id,
            "session_id": session.id,
        })
        return PortalResult(url=session.url, session_id=session.id)

    def get_plans(self, currency: Optional[str] = None) -> Dict[str, Any]:
        """
        Plan catalog with price IDs and fallback prices.

        Raises:
            UnsupportedCurrencyError: currency is given and not offered
        """
        if currency and currency.upper() not in self.plans.supported_currencies():
            raise UnsupportedCurrencyError()
        return self.plans.get_all(currency)

    def get_currencies(self) -> Dict[str, Any]:
        """Offered currencies and the default one."""
        return {
            "default_currency": self.plans.default_currency,
            "currencies": self.plans.supported_currencies(),
        }
