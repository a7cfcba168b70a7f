"""
Database models for users, roles, subscriptions and webhook dedup.

Importing this package registers every model on the shared declarative Base.
"""

from src.models.base import TimestampMixin, SoftDeleteMixin
from src.models.role import Role, RoleName, UserRoleAssignment, BILLING_ROLES
from src.models.user import User
from src.models.subscription import (
    Subscription,
    SubscriptionItem,
    SubscriptionStatus,
    ENTITLED_STATUSES,
)
from src.models.webhook_event import WebhookEvent

__all__ = [
    "TimestampMixin",
    "SoftDeleteMixin",
    "Role",
    "RoleName",
    "UserRoleAssignment",
    "BILLING_ROLES",
    "User",
    "Subscription",
    "SubscriptionItem",
    "SubscriptionStatus",
    "ENTITLED_STATUSES",
    "WebhookEvent",
]
