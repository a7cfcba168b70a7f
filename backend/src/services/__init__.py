"""
Business logic services.

Subscription entitlement, role synchronization, trial lifecycle, population
sync and payment webhook handling.
"""

from src.services.billing_errors import (
    BillingServiceError,
    SubscriptionRuleError,
    AlreadyOnTrialError,
    AlreadySubscribedError,
    NoBillingCustomerError,
    InvalidPlanError,
    UserNotFoundError,
    RemoteBillingUnavailableError,
)
from src.services.entitlement_resolver import (
    EntitlementResolver,
    EntitlementSource,
    EntitlementState,
    EntitlementStatus,
)
from src.services.role_synchronizer import RoleSynchronizer, RoleSyncResult
from src.services.trial_service import TrialLifecycleManager, TrialSweepResult
from src.services.subscription_sync_service import SubscriptionSyncService, SyncResult
from src.services.billing_webhook_handler import (
    BillingWebhookHandler,
    WebhookProcessingResult,
)
from src.services.billing_service import BillingService

__all__ = [
    "BillingServiceError",
    "SubscriptionRuleError",
    "AlreadyOnTrialError",
    "AlreadySubscribedError",
    "NoBillingCustomerError",
    "InvalidPlanError",
    "UserNotFoundError",
    "RemoteBillingUnavailableError",
    "EntitlementResolver",
    "EntitlementSource",
    "EntitlementState",
    "EntitlementStatus",
    "RoleSynchronizer",
    "RoleSyncResult",
    "TrialLifecycleManager",
    "TrialSweepResult",
    "SubscriptionSyncService",
    "SyncResult",
    "BillingWebhookHandler",
    "WebhookProcessingResult",
    "BillingService",
]
