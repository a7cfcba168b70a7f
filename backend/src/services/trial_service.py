"""
Trial lifecycle: starting the single local trial and sweeping expired ones.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.models.role import RoleName
from src.models.user import User
from src.platform.clock import Clock, utc_now
from src.repositories.user_repository import UserRepository
from src.services.batching import should_stop
from src.services.billing_errors import (
    AlreadyOnTrialError,
    AlreadySubscribedError,
    UserNotFoundError,
)
from src.services.entitlement_resolver import (
    EntitlementResolver,
    EntitlementSource,
    billing_role_for_entitlement,
)
from src.services.role_synchronizer import RoleSynchronizer, RoleSyncResult

logger = logging.getLogger(__name__)


@dataclass
class TrialSweepResult:
    """Counters for one expired-trial sweep."""
    processed: int = 0
    downgraded: int = 0
    premium_retained: int = 0
    skipped: int = 0
    errors: int = 0
    chunks_processed: int = 0
    cancelled: bool = False
    dry_run: bool = False
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "downgraded": self.downgraded,
            "premium_retained": self.premium_retained,
            "skipped": self.skipped,
            "errors": self.errors,
            "chunks_processed": self.chunks_processed,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class TrialLifecycleManager:
    """Starts trials and downgrades users whose trial has ended."""

    def __init__(
        self,
        db_session: Session,
        resolver: EntitlementResolver,
        role_synchronizer: Optional[RoleSynchronizer] = None,
        settings: Optional[SubscriptionSettings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db_session
        self.resolver = resolver
        self.settings = settings or get_subscription_settings()
        self.clock = clock
        self.roles = role_synchronizer or RoleSynchronizer(db_session, clock=clock)
        self.users = UserRepository(db_session)

    async def start_trial(self, user: User) -> RoleSyncResult:
        """
        Start the user's one-time trial.

        Raises:
            AlreadyOnTrialError: A trial was ever started for this user
            AlreadySubscribedError: The user already has a paid entitlement
        """
        if user.trial_ends_at is not None:
            raise AlreadyOnTrialError()

        entitlement = await self.resolver.resolve(user)
        if (
            entitlement.has_subscription
            and entitlement.source != EntitlementSource.LOCAL_TRIAL.value
        ):
            raise AlreadySubscribedError()

        trial_ends_at = self.clock() + timedelta(days=self.settings.trial_days)
        try:
            user.trial_ends_at = trial_ends_at
            # Flushed so the locked reload in sync_role keeps it; sync_role commits both
            self.db.flush()
            result = self.roles.sync_role(user, RoleName.TRIAL.value, source="trial_start")
        except Exception:
            self.db.rollback()
            raise

        logger.info("Trial started", extra={
            "user_id": user.id,
            "trial_days": self.settings.trial_days,
            "trial_ends_at": trial_ends_at.isoformat(),
        })
        return result

    async def downgrade_expired_trials(
        self,
        as_of: Optional[datetime] = None,
        dry_run: bool = False,
        user_id: Optional[str] = None,
        batch_size: int = 50,
        stop_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> TrialSweepResult:
        """
        Move users with an ended trial back to free unless they pay.

        Args:
            as_of: Reference time, defaults to now
            dry_run: Count would-be downgrades without writing
            user_id: Restrict to one user
            batch_size: Users per chunk
            stop_event: Set to stop before the next chunk
            deadline: time.monotonic() value after which no chunk starts

        Raises:
            UserNotFoundError: If user_id is given and unknown
        """
        as_of = as_of or self.clock()
        started = time.monotonic()
        result = TrialSweepResult(dry_run=dry_run)

        if user_id and self.users.get_by_id(user_id) is None:
            raise UserNotFoundError(user_id)

        logger.info("Starting expired trial sweep", extra={
            "as_of": as_of.isoformat(),
            "dry_run": dry_run,
            "target_user_id": user_id,
        })

        after_id: Optional[str] = None
        while True:
            if should_stop(stop_event, deadline):
                result.cancelled = True
                logger.warning("Expired trial sweep cancelled", extra=result.to_dict())
                break

            chunk = self.users.get_expired_trial_users(
                as_of, limit=batch_size, after_id=after_id, user_id=user_id
            )
            if not chunk:
                break
            after_id = chunk[-1].id

            for user in chunk:
                await self._process_user(user, dry_run, result)

            result.chunks_processed += 1
            if len(chunk) < batch_size:
                break

        result.duration_seconds = time.monotonic() - started
        logger.info("Expired trial sweep complete", extra=result.to_dict())
        return result

    async def _process_user(self, user: User, dry_run: bool, result: TrialSweepResult) -> None:
        user_id = user.id
        result.processed += 1
        try:
            entitlement = await self.resolver.resolve(user)
            if entitlement.source == EntitlementSource.ERROR_FALLBACK.value:
                # Unknown state; left for the next sweep like a failed sync
                result.errors += 1
                logger.warning("Entitlement unknown, expired trial user left unchanged", extra={
                    "user_id": user_id,
                    "error": entitlement.error,
                })
                return

            desired = billing_role_for_entitlement(entitlement, self.clock())
            if desired != RoleName.FREE.value:
                result.premium_retained += 1
                if not dry_run:
                    self.roles.sync_role(user, desired, source="trial_sweep")
                logger.info("Expired trial user has paid subscription", extra={
                    "user_id": user_id,
                    "role": desired,
                    "status": entitlement.status,
                    "source": entitlement.source,
                })
                return

            roles = set(self.users.get_role_names(user_id))
            if not roles & {RoleName.TRIAL.value, RoleName.PREMIUM.value}:
                result.skipped += 1
                return

            if dry_run:
                logger.info("Would downgrade expired trial user", extra={"user_id": user_id})
            else:
                self.roles.sync_role(user, RoleName.FREE.value, source="trial_sweep")
                logger.info("Expired trial user downgraded", extra={"user_id": user_id})
            result.downgraded += 1
        except Exception as e:
            self.db.rollback()
            result.errors += 1
            logger.error("Failed to process expired trial user", extra={
                "user_id": user_id,
                "error": str(e),
            }, exc_info=True)
