"""
Entitlement resolution for a single user.

Combines the user's local trial, the remote billing gateway and the local
subscription cache into one EntitlementStatus:

1. Active local trial wins without a remote call.
2. Users without a billing customer are free.
3. The gateway is authoritative when it answers.
4. When it does not, the local cache answers with staleness metadata.
5. If even that fails the result is 'unknown' and never raised.

This is a pure read path: no role changes, no writes.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

import httpx
from sqlalchemy.orm import Session

from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.integrations.stripe.billing_client import (
    BillingAPIError,
    BillingGateway,
    RemoteSubscription,
)
from src.models.role import RoleName
from src.models.subscription import Subscription, SubscriptionStatus, ENTITLED_STATUSES
from src.models.user import User
from src.platform.clock import Clock, utc_now, ensure_utc
from src.repositories.subscription_repository import SubscriptionRepository
from src.services.billing_errors import RemoteBillingUnavailableError

logger = logging.getLogger(__name__)

# Subscriptions inspected per remote lookup
REMOTE_LOOKUP_LIMIT = 10


class EntitlementSource(str, Enum):
    """Where an EntitlementStatus was derived from."""
    LOCAL_TRIAL = "local-trial"
    REMOTE = "remote"
    LOCAL_FALLBACK = "local-fallback"
    ERROR_FALLBACK = "error-fallback"


class EntitlementState(str, Enum):
    """Internal entitlement status values."""
    FREE = "free"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


REMOTE_STATUS_MAP = {
    SubscriptionStatus.ACTIVE.value: EntitlementState.ACTIVE.value,
    SubscriptionStatus.TRIALING.value: EntitlementState.TRIAL.value,
    SubscriptionStatus.PAST_DUE.value: EntitlementState.PAST_DUE.value,
    SubscriptionStatus.CANCELED.value: EntitlementState.CANCELED.value,
    SubscriptionStatus.UNPAID.value: EntitlementState.CANCELED.value,
    SubscriptionStatus.INCOMPLETE.value: EntitlementState.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value: EntitlementState.EXPIRED.value,
}


def map_remote_status(remote_status: Optional[str]) -> str:
    """Map a provider subscription status to the internal status."""
    return REMOTE_STATUS_MAP.get(remote_status or "", EntitlementState.UNKNOWN.value)


def billing_role_for_status(status: str) -> str:
    """
    Billing role implied by an internal entitlement status.

    past_due keeps premium; the provider is still retrying payment.
    """
    if status in (EntitlementState.ACTIVE.value, EntitlementState.PAST_DUE.value):
        return RoleName.PREMIUM.value
    if status == EntitlementState.TRIAL.value:
        return RoleName.TRIAL.value
    return RoleName.FREE.value


@dataclass
class EntitlementStatus:
    """Computed entitlement of one user at one moment."""
    status: str
    has_subscription: bool
    on_trial: bool
    source: str
    trial_ends_at: Optional[datetime] = None
    staleness_hours: Optional[float] = None
    is_stale: bool = False
    ends_at: Optional[datetime] = None
    remote_status: Optional[str] = None
    remote_subscription_id: Optional[str] = None
    in_grace_period: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("trial_ends_at", "ends_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def billing_role_for_entitlement(entitlement: EntitlementStatus, now: datetime) -> str:
    """
    Billing role implied by a resolved entitlement.

    Agrees with billing_role_from_local_state, which the population sync
    uses: past_due stays premium, and a canceled subscription paid through
    a future ends_at stays premium until then.
    """
    if entitlement.in_grace_period:
        return RoleName.PREMIUM.value

    ends_at = ensure_utc(entitlement.ends_at)
    if (
        entitlement.status == EntitlementState.CANCELED.value
        and entitlement.remote_status == SubscriptionStatus.CANCELED.value
        and ends_at is not None
        and ends_at > now
    ):
        return RoleName.PREMIUM.value

    if not entitlement.has_subscription:
        return RoleName.FREE.value
    return billing_role_for_status(entitlement.status)


class EntitlementResolver:
    """
    Resolves a user's billing entitlement.

    The gateway may be None (billing not configured); that is treated the
    same as an unreachable gateway.
    """

    def __init__(
        self,
        db_session: Session,
        gateway: Optional[BillingGateway],
        settings: Optional[SubscriptionSettings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db_session
        self.gateway = gateway
        self.settings = settings or get_subscription_settings()
        self.clock = clock
        self.subscriptions = SubscriptionRepository(db_session)

    def _active_trial_end(self, user: User, now: datetime) -> Optional[datetime]:
        trial_ends_at = ensure_utc(user.trial_ends_at)
        if trial_ends_at is not None and trial_ends_at > now:
            return trial_ends_at
        return None

    async def resolve(self, user: User) -> EntitlementStatus:
        """
        Determine the user's entitlement.

        Raises:
            RemoteBillingUnavailableError: Remote lookup failed and local
                fallback is disabled
        """
        now = self.clock()

        trial_end = self._active_trial_end(user, now)
        if trial_end is not None:
            return EntitlementStatus(
                status=EntitlementState.TRIAL.value,
                has_subscription=True,
                on_trial=True,
                trial_ends_at=trial_end,
                source=EntitlementSource.LOCAL_TRIAL.value,
            )

        if not user.remote_customer_id:
            return EntitlementStatus(
                status=EntitlementState.FREE.value,
                has_subscription=False,
                on_trial=False,
                trial_ends_at=ensure_utc(user.trial_ends_at),
                source=EntitlementSource.LOCAL_TRIAL.value,
            )

        try:
            remote = await self._fetch_remote(user.remote_customer_id)
        except (BillingAPIError, asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.warning("Remote subscription lookup failed", extra={
                "user_id": user.id,
                "customer_id": user.remote_customer_id,
                "error": str(e) or type(e).__name__,
                "fallback_enabled": self.settings.fallback_enabled,
            })
            if not self.settings.fallback_enabled:
                raise RemoteBillingUnavailableError(
                    "Billing service unavailable and local fallback is disabled",
                    cause=e,
                ) from e
            return self._resolve_with_fallback(user, now)

        return self._from_remote(user, remote)

    async def _fetch_remote(self, customer_id: str):
        if self.gateway is None:
            raise BillingAPIError("Billing gateway not configured", code="NOT_CONFIGURED")
        return await asyncio.wait_for(
            self.gateway.list_subscriptions(
                customer_id, status="all", limit=REMOTE_LOOKUP_LIMIT
            ),
            timeout=self.settings.billing_api_timeout_seconds,
        )

    def _from_remote(self, user: User, subscriptions) -> EntitlementStatus:
        entitled: Optional[RemoteSubscription] = next(
            (s for s in subscriptions if s.status in ENTITLED_STATUSES), None
        )

        if entitled is not None:
            return EntitlementStatus(
                status=map_remote_status(entitled.status),
                has_subscription=True,
                on_trial=entitled.status == SubscriptionStatus.TRIALING.value,
                trial_ends_at=entitled.trial_ends_at,
                ends_at=entitled.ends_at,
                remote_status=entitled.status,
                remote_subscription_id=entitled.id,
                source=EntitlementSource.REMOTE.value,
            )

        if subscriptions:
            latest = subscriptions[0]
            return EntitlementStatus(
                status=map_remote_status(latest.status),
                has_subscription=False,
                on_trial=False,
                trial_ends_at=ensure_utc(user.trial_ends_at),
                ends_at=latest.ends_at,
                remote_status=latest.status,
                remote_subscription_id=latest.id,
                source=EntitlementSource.REMOTE.value,
            )

        return EntitlementStatus(
            status=EntitlementState.FREE.value,
            has_subscription=False,
            on_trial=False,
            trial_ends_at=ensure_utc(user.trial_ends_at),
            source=EntitlementSource.REMOTE.value,
        )

    def _staleness_hours(self, row: Subscription, now: datetime) -> Optional[float]:
        updated_at = ensure_utc(row.updated_at)
        if updated_at is None:
            return None
        return max((now - updated_at).total_seconds() / 3600.0, 0.0)

    def _resolve_with_fallback(self, user: User, now: datetime) -> EntitlementStatus:
        """Answer from the local cache; never raises."""
        try:
            row = self.subscriptions.find_latest_entitled(user.id)
            if row is not None:
                staleness = self._staleness_hours(row, now)
                is_stale = staleness is None or staleness > self.settings.fallback_max_age_hours
                if is_stale:
                    logger.warning("Serving stale local subscription data", extra={
                        "user_id": user.id,
                        "subscription_id": row.remote_id,
                        "staleness_hours": staleness,
                    })
                return EntitlementStatus(
                    status=map_remote_status(row.status),
                    has_subscription=True,
                    on_trial=row.status == SubscriptionStatus.TRIALING.value,
                    trial_ends_at=ensure_utc(row.trial_ends_at),
                    ends_at=ensure_utc(row.ends_at),
                    remote_status=row.status,
                    remote_subscription_id=row.remote_id,
                    staleness_hours=staleness,
                    is_stale=is_stale,
                    source=EntitlementSource.LOCAL_FALLBACK.value,
                )

            grace = self.subscriptions.find_grace_canceled(user.id, now)
            if grace is not None:
                staleness = self._staleness_hours(grace, now)
                return EntitlementStatus(
                    status=EntitlementState.CANCELED.value,
                    has_subscription=True,
                    on_trial=False,
                    trial_ends_at=ensure_utc(user.trial_ends_at),
                    ends_at=ensure_utc(grace.ends_at),
                    remote_status=grace.status,
                    remote_subscription_id=grace.remote_id,
                    staleness_hours=staleness,
                    is_stale=staleness is None or staleness > self.settings.fallback_max_age_hours,
                    in_grace_period=True,
                    source=EntitlementSource.LOCAL_FALLBACK.value,
                )

            trial_end = self._active_trial_end(user, now)
            return EntitlementStatus(
                status=EntitlementState.TRIAL.value if trial_end else EntitlementState.FREE.value,
                has_subscription=trial_end is not None,
                on_trial=trial_end is not None,
                trial_ends_at=ensure_utc(user.trial_ends_at),
                source=EntitlementSource.LOCAL_FALLBACK.value,
            )
        except Exception as e:
            logger.error("Local subscription fallback failed", extra={
                "user_id": user.id,
                "error": str(e),
            }, exc_info=True)
            return EntitlementStatus(
                status=EntitlementState.UNKNOWN.value,
                has_subscription=False,
                on_trial=False,
                trial_ends_at=ensure_utc(user.trial_ends_at),
                error="Failed to retrieve subscription data",
                source=EntitlementSource.ERROR_FALLBACK.value,
            )
