"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from src.api.dependencies.billing import (
    get_settings,
    get_billing_gateway,
    get_current_user,
    get_entitlement_resolver,
    get_trial_manager,
    get_billing_service,
)

__all__ = [
    "get_settings",
    "get_billing_gateway",
    "get_current_user",
    "get_entitlement_resolver",
    "get_trial_manager",
    "get_billing_service",
]
