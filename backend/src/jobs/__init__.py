"""
Background jobs module.
"""

from src.jobs.sync_subscriptions import run_subscription_sync
from src.jobs.check_expired_trials import run_trial_sweep

__all__ = [
    "run_subscription_sync",
    "run_trial_sweep",
]
