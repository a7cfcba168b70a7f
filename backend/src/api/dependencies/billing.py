"""
Billing dependencies.

Provides the authenticated user, the billing gateway and the subscription
services as FastAPI dependencies. Authentication itself is done upstream:
the auth middleware places the user ID on request.state.user_id.
"""

import logging
from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.database.session import get_db_session
from src.integrations.stripe.billing_client import BillingGateway, get_billing_client
from src.models.user import User
from src.repositories.user_repository import UserRepository
from src.services.billing_service import BillingService
from src.services.entitlement_resolver import EntitlementResolver
from src.services.trial_service import TrialLifecycleManager

logger = logging.getLogger(__name__)


def get_settings() -> SubscriptionSettings:
    return get_subscription_settings()


async def get_billing_gateway(
    settings: SubscriptionSettings = Depends(get_settings),
) -> AsyncGenerator[Optional[BillingGateway], None]:
    """Per-request gateway client; None when STRIPE_SECRET_KEY is unset."""
    try:
        gateway = get_billing_client(settings)
    except ValueError:
        logger.warning("Stripe not configured; billing gateway unavailable")
        yield None
        return

    try:
        yield gateway
    finally:
        await gateway.close()


def get_current_user(request: Request, db: Session = Depends(get_db_session)) -> User:
    """
    Resolve the authenticated user.

    Raises:
        HTTPException: 401 if unauthenticated, 404 if the user is gone
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    user = UserRepository(db).get_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


def get_entitlement_resolver(
    db: Session = Depends(get_db_session),
    gateway: Optional[BillingGateway] = Depends(get_billing_gateway),
    settings: SubscriptionSettings = Depends(get_settings),
) -> EntitlementResolver:
    return EntitlementResolver(db, gateway, settings=settings)


def get_trial_manager(
    db: Session = Depends(get_db_session),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    settings: SubscriptionSettings = Depends(get_settings),
) -> TrialLifecycleManager:
    return TrialLifecycleManager(db, resolver, settings=settings)


def get_billing_service(
    db: Session = Depends(get_db_session),
    gateway: Optional[BillingGateway] = Depends(get_billing_gateway),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
    settings: SubscriptionSettings = Depends(get_settings),
) -> BillingService:
    return BillingService(db, gateway, resolver, settings=settings)
