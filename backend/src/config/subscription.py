"""
Subscription subsystem settings.

Read once from environment variables into a frozen dataclass. Services take
the settings object in their constructor so tests can pass overrides
without touching the environment.

Usage:
    from src.config.subscription import get_subscription_settings

    settings = get_subscription_settings()
    if settings.fallback_enabled:
        ...
"""

import logging
import os
from dataclasses import dataclass, replace
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

# Environments where the webhook test bypass header is honoured
NON_PRODUCTION_ENVS = frozenset({"test", "testing", "local", "development"})

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Invalid integer in environment, using default",
            extra={"variable": name, "default": default},
        )
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(
            "Invalid number in environment, using default",
            extra={"variable": name, "default": default},
        )
        return default


@dataclass(frozen=True)
class SubscriptionSettings:
    """Resolved configuration for billing services, jobs and routes."""

    env: str = "production"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com"
    billing_api_timeout_seconds: float = 10.0
    trial_days: int = 30
    fallback_enabled: bool = True
    fallback_max_age_hours: float = 24.0
    payment_failure_escalation_attempts: int = 3
    sync_page_size: int = 100
    sync_max_concurrency: int = 5
    frontend_url: str = "http://localhost:3000"
    subscription_sync_interval: int = 3600
    trial_sweep_interval: int = 3600
    subscription_sync_timeout: int = 1800
    trial_sweep_timeout: int = 900

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def allows_webhook_test_bypass(self) -> bool:
        """Whether the X-Stripe-Test header may skip signature checks."""
        return self.env in NON_PRODUCTION_ENVS

    def with_overrides(self, **changes) -> "SubscriptionSettings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "SubscriptionSettings":
        return cls(
            env=os.getenv("ENV", "production").strip().lower(),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            stripe_api_base=os.getenv("STRIPE_API_BASE", "https://api.stripe.com").rstrip("/"),
            billing_api_timeout_seconds=_env_float("BILLING_API_TIMEOUT_SECONDS", 10.0),
            trial_days=_env_int("TRIAL_DAYS", 30),
            fallback_enabled=_env_bool("SUBSCRIPTION_FALLBACK_ENABLED", True),
            fallback_max_age_hours=_env_float("SUBSCRIPTION_FALLBACK_MAX_AGE_HOURS", 24.0),
            payment_failure_escalation_attempts=_env_int("PAYMENT_FAILURE_ESCALATION_ATTEMPTS", 3),
            sync_page_size=_env_int("SYNC_PAGE_SIZE", 100),
            sync_max_concurrency=_env_int("SYNC_MAX_CONCURRENCY", 5),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            subscription_sync_interval=_env_int("SUBSCRIPTION_SYNC_INTERVAL", 3600),
            trial_sweep_interval=_env_int("TRIAL_SWEEP_INTERVAL", 3600),
            subscription_sync_timeout=_env_int("SUBSCRIPTION_SYNC_TIMEOUT", 1800),
            trial_sweep_timeout=_env_int("TRIAL_SWEEP_TIMEOUT", 900),
        )


_settings: Optional[SubscriptionSettings] = None
_settings_lock = Lock()


def get_subscription_settings() -> SubscriptionSettings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = SubscriptionSettings.from_env()
                logger.info(
                    "Subscription settings loaded",
                    extra={
                        "env": _settings.env,
                        "fallback_enabled": _settings.fallback_enabled,
                        "trial_days": _settings.trial_days,
                    },
                )
    return _settings


def reset_subscription_settings() -> None:
    """Reset cached settings (for tests only)."""
    global _settings
    _settings = None
