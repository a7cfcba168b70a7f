"""
Role synchronizer.

The single place where billing-derived roles are written. Every caller
(trial start, trial sweep, population sync, payment webhooks) goes through
sync_role so the admin-preservation rule cannot be bypassed:

    target = {desired billing role} + {admin, if currently held}

The read-modify-write for one user runs inside one transaction with the
user row locked (SELECT ... FOR UPDATE).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from src.models.role import RoleName, BILLING_ROLES
from src.models.subscription import SubscriptionStatus, ENTITLED_STATUSES
from src.models.user import User
from src.platform.clock import Clock, utc_now, ensure_utc
from src.repositories.user_repository import UserRepository
from src.services.billing_errors import UserNotFoundError

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class RoleSyncResult:
    """Outcome of one sync_role call."""
    user_id: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    roles_before: List[str] = field(default_factory=list)
    roles_after: List[str] = field(default_factory=list)
    changed: bool = False
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "added": self.added,
            "removed": self.removed,
            "roles_before": self.roles_before,
            "roles_after": self.roles_after,
            "changed": self.changed,
            "dry_run": self.dry_run,
        }


def billing_role_from_local_state(
    subscriptions: Iterable[Any],
    trial_ends_at: Optional[datetime],
    now: datetime,
) -> str:
    """
    Desired billing role from cached subscriptions and the local trial.

    Accepts any objects exposing status, updated_at and ends_at.
    """
    subscriptions = list(subscriptions)

    entitled = [s for s in subscriptions if s.status in ENTITLED_STATUSES]
    if entitled:
        newest = max(entitled, key=lambda s: ensure_utc(s.updated_at) or _EPOCH)
        if newest.status == SubscriptionStatus.TRIALING.value:
            return RoleName.TRIAL.value
        return RoleName.PREMIUM.value

    trial_end = ensure_utc(trial_ends_at)
    if trial_end is not None and trial_end > now:
        return RoleName.TRIAL.value

    # Canceled but paid through ends_at
    for s in subscriptions:
        ends_at = ensure_utc(s.ends_at)
        if s.status == SubscriptionStatus.CANCELED.value and ends_at is not None and ends_at > now:
            return RoleName.PREMIUM.value

    return RoleName.FREE.value


def plan_role_change(current: Iterable[str], desired: str) -> Dict[str, List[str]]:
    """Compute target roles and the add/remove diff for a desired billing role."""
    before = sorted(set(current))
    target = {desired}
    if RoleName.ADMIN.value in before:
        target.add(RoleName.ADMIN.value)
    return {
        "before": before,
        "after": sorted(target),
        "add": sorted(target - set(before)),
        "remove": sorted(set(before) - target),
    }


class RoleSynchronizer:
    """Applies a desired billing role to a user, preserving admin."""

    def __init__(self, db_session: Session, clock: Clock = utc_now):
        self.db = db_session
        self.clock = clock
        self.users = UserRepository(db_session)

    def sync_role(
        self,
        user: User,
        desired_billing_role: str,
        dry_run: bool = False,
        source: str = "system",
    ) -> RoleSyncResult:
        """
        Make the user's roles exactly {desired} plus admin if held.

        Args:
            user: User to update
            desired_billing_role: premium, trial or free
            dry_run: Compute the diff without writing
            source: Recorded on new assignments

        Returns:
            RoleSyncResult

        Raises:
            ValueError: If desired_billing_role is not a billing role
            UserNotFoundError: If the user row no longer exists
        """
        if desired_billing_role not in BILLING_ROLES:
            raise ValueError(
                f"Invalid billing role '{desired_billing_role}', "
                f"expected one of {sorted(BILLING_ROLES)}"
            )

        user_id = user.id

        if dry_run:
            plan = plan_role_change(self.users.get_role_names(user_id), desired_billing_role)
            result = RoleSyncResult(
                user_id=user_id,
                added=plan["add"],
                removed=plan["remove"],
                roles_before=plan["before"],
                roles_after=plan["after"],
                changed=bool(plan["add"] or plan["remove"]),
                dry_run=True,
            )
            if result.changed:
                logger.info("Role change planned (dry run)", extra=result.to_dict())
            return result

        try:
            locked = self.users.lock_for_update(user_id)
            if locked is None:
                raise UserNotFoundError(user_id)

            # Reload assignments under the lock
            self.db.expire(locked, ["role_assignments"])
            plan = plan_role_change(locked.role_names, desired_billing_role)

            for name in plan["remove"]:
                self.users.remove_role(locked, name)

            now = self.clock()
            for name in plan["add"]:
                role = self.users.get_or_create_role(name)
                self.users.add_role(locked, role, source=source, now=now)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        result = RoleSyncResult(
            user_id=user_id,
            added=plan["add"],
            removed=plan["remove"],
            roles_before=plan["before"],
            roles_after=plan["after"],
            changed=bool(plan["add"] or plan["remove"]),
        )
        if result.changed:
            logger.info("User roles synchronized", extra={**result.to_dict(), "source": source})
        return result
