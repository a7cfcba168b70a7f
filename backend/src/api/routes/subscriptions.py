"""
Subscription API routes.

Entitlement status, trial start, hosted checkout, billing portal, the
plan catalog and offered currencies for the authenticated user.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.api.dependencies.billing import (
    get_billing_service,
    get_current_user,
    get_entitlement_resolver,
    get_trial_manager,
)
from src.models.user import User
from src.services.billing_errors import (
    AlreadyOnTrialError,
    AlreadySubscribedError,
    BillingServiceError,
    InvalidPlanError,
    NoBillingCustomerError,
    RemoteBillingUnavailableError,
    SubscriptionRuleError,
    UnsupportedCurrencyError,
)
from src.services.billing_service import BillingService
from src.services.entitlement_resolver import EntitlementResolver
from src.services.trial_service import TrialLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])

# Status constant name differs across Starlette releases
UNPROCESSABLE = 422


# Request/Response models
class EntitlementResponse(BaseModel):
    """Current entitlement of the user."""
    status: str
    has_subscription: bool
    on_trial: bool
    trial_ends_at: Optional[str] = None
    source: str
    staleness_hours: Optional[float] = None
    is_stale: bool = False
    ends_at: Optional[str] = None
    remote_status: Optional[str] = None
    remote_subscription_id: Optional[str] = None
    in_grace_period: bool = False
    error: Optional[str] = None


class StartTrialResponse(BaseModel):
    """Response after starting a trial."""
    success: bool
    trial_ends_at: Optional[str]
    roles: list[str]


class CreateCheckoutRequest(BaseModel):
    """Request to create a hosted checkout session."""
    plan: str = Field(..., description="Plan name, e.g. monthly or annual")
    currency: Optional[str] = Field(None, description="ISO currency code")
    success_url: Optional[str] = Field(None, description="Redirect after payment")
    cancel_url: Optional[str] = Field(None, description="Redirect on cancel")
    trial_days: Optional[int] = Field(None, ge=0, description="Provider-side trial length")


class BillingPortalRequest(BaseModel):
    """Request to open the billing portal."""
    return_url: Optional[str] = None


class SessionResponse(BaseModel):
    """Hosted session URL."""
    url: str
    session_id: str


def _rule_error(exc: SubscriptionRuleError, status_code: int) -> HTTPException:
    return HTTPException(status_code=status_code, detail=exc.reason)


def _unavailable(exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc) or "Billing provider unavailable"
    )


@router.get("", response_model=EntitlementResponse)
async def get_subscription(
    user: User = Depends(get_current_user),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
):
    """Get the current entitlement of the authenticated user."""
    try:
        entitlement = await resolver.resolve(user)
    except RemoteBillingUnavailableError as e:
        logger.warning("Entitlement unavailable", extra={
            "user_id": user.id,
            "error": str(e),
        })
        raise _unavailable(e)

    return EntitlementResponse(**entitlement.to_dict())


@router.post("/start-trial", response_model=StartTrialResponse)
async def start_trial(
    user: User = Depends(get_current_user),
    manager: TrialLifecycleManager = Depends(get_trial_manager),
):
    """Start the one-time trial."""
    try:
        outcome = await manager.start_trial(user)
    except (AlreadyOnTrialError, AlreadySubscribedError) as e:
        logger.info("Trial start rejected", extra={
            "user_id": user.id,
            "reason": e.reason,
        })
        raise _rule_error(e, status.HTTP_400_BAD_REQUEST)
    except RemoteBillingUnavailableError as e:
        raise _unavailable(e)

    return StartTrialResponse(
        success=True,
        trial_ends_at=user.trial_ends_at.isoformat() if user.trial_ends_at else None,
        roles=outcome.roles_after,
    )


@router.post("/checkout", response_model=SessionResponse)
async def create_checkout(
    request: CreateCheckoutRequest,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Create a hosted checkout session for a plan."""
    try:
        result = await service.create_checkout_session(
            user,
            plan=request.plan,
            currency=request.currency,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            trial_days=request.trial_days,
        )
    except AlreadySubscribedError as e:
        raise _rule_error(e, status.HTTP_403_FORBIDDEN)
    except InvalidPlanError as e:
        raise _rule_error(e, UNPROCESSABLE)
    except RemoteBillingUnavailableError as e:
        raise _unavailable(e)
    except BillingServiceError as e:
        logger.error("Checkout failed", extra={
            "user_id": user.id,
            "plan": request.plan,
            "error": str(e),
        })
        raise _unavailable(e)

    return SessionResponse(url=result.url, session_id=result.session_id)


@router.post("/billing-portal", response_model=SessionResponse)
async def create_billing_portal(
    request: Optional[BillingPortalRequest] = None,
    user: User = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Open the provider's billing portal for an existing customer."""
    return_url = request.return_url if request else None
    try:
        result = await service.create_billing_portal_session(user, return_url)
    except NoBillingCustomerError as e:
        raise _rule_error(e, UNPROCESSABLE)
    except BillingServiceError as e:
        logger.error("Billing portal failed", extra={
            "user_id": user.id,
            "error": str(e),
        })
        raise _unavailable(e)

    return SessionResponse(url=result.url, session_id=result.session_id)


@router.get("/plans")
async def list_plans(
    currency: Optional[str] = Query(None, description="Only prices in this ISO currency"),
    service: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    """Plan catalog: price IDs and fallback prices per currency."""
    try:
        return service.get_plans(currency)
    except UnsupportedCurrencyError as e:
        raise _rule_error(e, UNPROCESSABLE)


@router.get("/currencies")
async def list_currencies(
    service: BillingService = Depends(get_billing_service),
) -> Dict[str, Any]:
    """Currencies offered at checkout, with display names and symbols."""
    return service.get_currencies()
