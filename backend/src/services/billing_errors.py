"""
Exception hierarchy for subscription and entitlement services.

Routes map SubscriptionRuleError subclasses to 4xx responses; CLI jobs
treat UserNotFoundError as fatal. Remote transport failures are raised by
the gateway as BillingAPIError and only surface here when fallback is off.
"""

from typing import Optional


class BillingServiceError(Exception):
    """Base exception for billing service errors."""
    pass


class SubscriptionRuleError(BillingServiceError):
    """A business rule prevented the requested operation."""

    reason = "Subscription rule violated"

    def __init__(self, reason: Optional[str] = None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class AlreadyOnTrialError(SubscriptionRuleError):
    """The user has already used (or is on) their single trial."""
    reason = "You have already used your trial period"


class AlreadySubscribedError(SubscriptionRuleError):
    """The user already holds an entitled subscription."""
    reason = "You already have a premium subscription or active trial"


class NoBillingCustomerError(SubscriptionRuleError):
    """The user has no remote billing customer yet."""
    reason = "User does not have a billing customer ID"


class InvalidPlanError(SubscriptionRuleError):
    """The requested plan or currency is not in the catalog."""
    reason = "Invalid plan selected"


class UnsupportedCurrencyError(SubscriptionRuleError):
    """The requested currency is not offered."""
    reason = "Unsupported currency"


class UserNotFoundError(BillingServiceError):
    """No (non-deleted) user exists with the given id."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class RemoteBillingUnavailableError(BillingServiceError):
    """Remote lookup failed and local fallback is disabled."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause
