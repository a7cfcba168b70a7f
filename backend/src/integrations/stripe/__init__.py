"""Stripe billing integration."""

from src.integrations.stripe.billing_client import (
    BillingGateway,
    StripeBillingClient,
    BillingAPIError,
    RetryConfig,
    RemoteSubscription,
    RemoteSubscriptionItem,
    RemoteCustomer,
    BillingSession,
    get_billing_client,
)

__all__ = [
    "BillingGateway",
    "StripeBillingClient",
    "BillingAPIError",
    "RetryConfig",
    "RemoteSubscription",
    "RemoteSubscriptionItem",
    "RemoteCustomer",
    "BillingSession",
    "get_billing_client",
]
