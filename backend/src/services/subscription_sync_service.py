"""
Population sync: pull remote subscriptions into the local cache.

Runs on a schedule (and from the sync-subscriptions CLI) so local state is
accurate even if payment webhooks are missed. Users are processed in
keyset-paginated chunks; remote lookups for a chunk run concurrently under
a semaphore, then writes are applied one user at a time, each in its own
transaction.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from src.config.subscription import SubscriptionSettings, get_subscription_settings
from src.integrations.stripe.billing_client import BillingGateway, RemoteSubscription
from src.models.role import RoleName
from src.models.user import User
from src.platform.clock import Clock, utc_now
from src.repositories.subscription_repository import SubscriptionRepository
from src.repositories.user_repository import UserRepository
from src.services.batching import should_stop
from src.services.billing_errors import UserNotFoundError
from src.services.role_synchronizer import (
    RoleSynchronizer,
    billing_role_from_local_state,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """
    Counters for one population sync run.

    users_processed counts every user attempted, including those that
    ended in an error. In dry-run mode the created/updated and
    roles_changed counters describe what would have been written.
    """
    users_processed: int = 0
    errors: int = 0
    subscriptions_created: int = 0
    subscriptions_updated: int = 0
    items_created: int = 0
    items_updated: int = 0
    roles_changed: int = 0
    roles_skipped_admin: int = 0
    chunks_processed: int = 0
    cancelled: bool = False
    dry_run: bool = False
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users_processed": self.users_processed,
            "errors": self.errors,
            "subscriptions_created": self.subscriptions_created,
            "subscriptions_updated": self.subscriptions_updated,
            "items_created": self.items_created,
            "items_updated": self.items_updated,
            "roles_changed": self.roles_changed,
            "roles_skipped_admin": self.roles_skipped_admin,
            "chunks_processed": self.chunks_processed,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class SubscriptionSnapshot:
    """Projected subscription state used to plan roles during a dry run."""
    remote_id: str
    status: str
    updated_at: Optional[datetime]
    ends_at: Optional[datetime]


class SubscriptionSyncService:
    """Synchronizes the local subscription cache with the billing provider."""

    def __init__(
        self,
        db_session: Session,
        gateway: BillingGateway,
        role_synchronizer: Optional[RoleSynchronizer] = None,
        settings: Optional[SubscriptionSettings] = None,
        clock: Clock = utc_now,
    ):
        self.db = db_session
        self.gateway = gateway
        self.settings = settings or get_subscription_settings()
        self.clock = clock
        self.roles = role_synchronizer or RoleSynchronizer(db_session, clock=clock)
        self.users = UserRepository(db_session)
        self.subscriptions = SubscriptionRepository(db_session)

    async def sync_population(
        self,
        window_days: int = 2,
        batch_size: int = 50,
        user_id: Optional[str] = None,
        update_roles: bool = False,
        dry_run: bool = False,
        stop_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> SyncResult:
        """
        Sync remote subscriptions for all candidate users.

        Args:
            window_days: Only users updated or synced within this many days
                (or never synced); 0 disables the window
            batch_size: Users per chunk
            user_id: Restrict to one user
            update_roles: Recompute billing roles from the synced state
            dry_run: Read everything, write nothing
            stop_event: Set to stop before the next chunk
            deadline: time.monotonic() value after which no chunk starts

        Returns:
            SyncResult

        Raises:
            UserNotFoundError: If user_id is given and unknown
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        started = time.monotonic()
        now = self.clock()
        result = SyncResult(dry_run=dry_run)

        if user_id and self.users.get_by_id(user_id) is None:
            raise UserNotFoundError(user_id)

        window_start = now - timedelta(days=window_days) if window_days > 0 else None
        concurrency = max(1, min(batch_size, self.settings.sync_max_concurrency))
        semaphore = asyncio.Semaphore(concurrency)

        logger.info("Starting subscription population sync", extra={
            "window_days": window_days,
            "batch_size": batch_size,
            "concurrency": concurrency,
            "target_user_id": user_id,
            "update_roles": update_roles,
            "dry_run": dry_run,
        })

        after_id: Optional[str] = None
        while True:
            if should_stop(stop_event, deadline):
                result.cancelled = True
                logger.warning("Subscription population sync cancelled", extra=result.to_dict())
                break

            chunk = self.users.get_sync_candidates(
                limit=batch_size,
                after_id=after_id,
                window_start=window_start,
                user_id=user_id,
            )
            if not chunk:
                break
            after_id = chunk[-1].id

            fetched = await self._fetch_chunk(chunk, semaphore)
            for user, remote, error in fetched:
                result.users_processed += 1
                if error is not None:
                    result.errors += 1
                    logger.error("Failed to fetch remote subscriptions", extra={
                        "user_id": user.id,
                        "customer_id": user.remote_customer_id,
                        "error": str(error) or type(error).__name__,
                    })
                    continue
                self._apply_user(user, remote, update_roles, dry_run, result)

            result.chunks_processed += 1
            if len(chunk) < batch_size:
                break

        result.duration_seconds = time.monotonic() - started
        logger.info("Subscription population sync complete", extra=result.to_dict())
        return result

    async def _fetch_chunk(
        self,
        users: List[User],
        semaphore: asyncio.Semaphore,
    ) -> List[Tuple[User, Optional[List[RemoteSubscription]], Optional[BaseException]]]:
        """Fetch remote subscriptions for every user in the chunk concurrently."""

        async def fetch(customer_id: str) -> List[RemoteSubscription]:
            async with semaphore:
                return await asyncio.wait_for(
                    self.gateway.list_subscriptions(
                        customer_id,
                        status="all",
                        limit=self.settings.sync_page_size,
                        paginate=True,
                    ),
                    timeout=self.settings.billing_api_timeout_seconds,
                )

        customer_ids = [user.remote_customer_id for user in users]
        outcomes = await asyncio.gather(
            *(fetch(customer_id) for customer_id in customer_ids),
            return_exceptions=True,
        )

        fetched = []
        for user, outcome in zip(users, outcomes):
            if isinstance(outcome, BaseException):
                fetched.append((user, None, outcome))
            else:
                fetched.append((user, outcome, None))
        return fetched

    def _apply_user(
        self,
        user: User,
        remote: List[RemoteSubscription],
        update_roles: bool,
        dry_run: bool,
        result: SyncResult,
    ) -> None:
        """Write (or plan) one user's subscriptions and roles; never raises."""
        user_id = user.id
        now = self.clock()
        try:
            if dry_run:
                projected = self._project(user_id, remote, now, result)
            else:
                self._write(user, remote, now, result)
                projected = self.subscriptions.list_for_user(user_id)

            if update_roles:
                self._sync_roles(user, projected, now, dry_run, result)
        except Exception as e:
            self.db.rollback()
            result.errors += 1
            logger.error("Failed to sync subscriptions for user", extra={
                "user_id": user_id,
                "error": str(e),
            }, exc_info=True)

    def _write(
        self,
        user: User,
        remote: List[RemoteSubscription],
        now: datetime,
        result: SyncResult,
    ) -> None:
        created = updated = items_created = items_updated = 0
        try:
            for remote_sub in remote:
                row, was_created = self.subscriptions.upsert_subscription(user.id, remote_sub, now)
                if was_created:
                    created += 1
                else:
                    updated += 1

                for remote_item in remote_sub.items:
                    _, item_created = self.subscriptions.upsert_item(row, remote_item, now)
                    if item_created:
                        items_created += 1
                    else:
                        items_updated += 1

            user.last_sync_at = now
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        result.subscriptions_created += created
        result.subscriptions_updated += updated
        result.items_created += items_created
        result.items_updated += items_updated

        logger.debug("User subscriptions synced", extra={
            "user_id": user.id,
            "created": created,
            "updated": updated,
        })

    def _project(
        self,
        user_id: str,
        remote: List[RemoteSubscription],
        now: datetime,
        result: SyncResult,
    ) -> List[SubscriptionSnapshot]:
        """Dry run: count intended writes and project the resulting state."""
        projected = {
            row.remote_id: SubscriptionSnapshot(
                remote_id=row.remote_id,
                status=row.status,
                updated_at=row.updated_at,
                ends_at=row.ends_at,
            )
            for row in self.subscriptions.list_for_user(user_id)
        }

        for remote_sub in remote:
            if self.subscriptions.get_by_remote_id(remote_sub.id) is None:
                result.subscriptions_created += 1
                logger.info("Would create subscription", extra={
                    "user_id": user_id,
                    "remote_id": remote_sub.id,
                    "status": remote_sub.status,
                })
            else:
                result.subscriptions_updated += 1
                logger.info("Would update subscription", extra={
                    "user_id": user_id,
                    "remote_id": remote_sub.id,
                    "status": remote_sub.status,
                })

            for remote_item in remote_sub.items:
                if self.subscriptions.get_item_by_remote_id(remote_item.id) is None:
                    result.items_created += 1
                else:
                    result.items_updated += 1

            projected[remote_sub.id] = SubscriptionSnapshot(
                remote_id=remote_sub.id,
                status=remote_sub.status,
                updated_at=now,
                ends_at=remote_sub.ends_at,
            )

        return list(projected.values())

    def _sync_roles(
        self,
        user: User,
        subscriptions: List[Any],
        now: datetime,
        dry_run: bool,
        result: SyncResult,
    ) -> None:
        roles = self.users.get_role_names(user.id)
        if RoleName.ADMIN.value in roles:
            result.roles_skipped_admin += 1
            logger.info("Skipping role update for admin user", extra={
                "user_id": user.id,
                "roles": roles,
            })
            return

        desired = billing_role_from_local_state(subscriptions, user.trial_ends_at, now)
        outcome = self.roles.sync_role(
            user, desired, dry_run=dry_run, source="population_sync"
        )
        if outcome.changed:
            result.roles_changed += 1
