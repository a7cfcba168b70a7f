"""
Billing plan catalog loader.

Loads subscription plans (monthly / annual) with per-currency provider
price IDs and display fallback prices from config/billing_plans.yml.

Consumers:
  - BillingService: checkout price lookup and the plan catalog endpoint

Usage:
    from src.config.billing_plans import get_billing_plans_loader

    loader = get_billing_plans_loader()
    price_id = loader.get_price_id("monthly", "PLN")
"""

import copy
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_FALLBACK_DEFAULT_CURRENCY = "PLN"

# Used when the YAML file cannot be found
_FALLBACK_PLANS: Dict[str, Any] = {
    "monthly": {
        "name": "Monthly Plan",
        "interval": "month",
        "currencies": {
            "PLN": {"price_id": "price_monthly_pln", "fallback_price": 10},
            "USD": {"price_id": "price_monthly_usd", "fallback_price": 10},
            "EUR": {"price_id": "price_monthly_eur", "fallback_price": 10},
        },
    },
    "annual": {
        "name": "Annual Plan",
        "interval": "year",
        "currencies": {
            "PLN": {"price_id": "price_annual_pln", "fallback_price": 100},
            "USD": {"price_id": "price_annual_usd", "fallback_price": 100},
            "EUR": {"price_id": "price_annual_eur", "fallback_price": 100},
        },
    },
}


class BillingPlansLoader:
    """
    Thread-safe singleton loader for config/billing_plans.yml.

    Environment variables STRIPE_<PLAN>_PLAN_<CCY>_ID override the
    configured price IDs at lookup time.
    """

    _instance: Optional["BillingPlansLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._plans: Dict[str, Any] = {}
        self._default_currency: str = _FALLBACK_DEFAULT_CURRENCY
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "billing_plans.yml",
            Path(os.getcwd()) / "config" / "billing_plans.yml",
            Path(os.getcwd()) / ".." / "config" / "billing_plans.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"billing_plans.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading billing plans from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                self._plans = self._raw.get("plans") or copy.deepcopy(_FALLBACK_PLANS)
                self._default_currency = str(
                    self._raw.get("default_currency", _FALLBACK_DEFAULT_CURRENCY)
                ).upper()

                logger.info(
                    "Loaded billing plans: plans=%s, default_currency=%s",
                    list(self._plans.keys()),
                    self._default_currency,
                )
            except FileNotFoundError:
                logger.warning("billing_plans.yml not found, using fallback defaults")
                self._raw = {}
                self._plans = copy.deepcopy(_FALLBACK_PLANS)
                self._default_currency = _FALLBACK_DEFAULT_CURRENCY

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def default_currency(self) -> str:
        return self._default_currency

    def plan_names(self) -> List[str]:
        return list(self._plans.keys())

    def has_plan(self, plan: str) -> bool:
        return plan in self._plans

    def currencies(self, plan: str) -> List[str]:
        return list(self._plans.get(plan, {}).get("currencies", {}).keys())

    def get_price_id(self, plan: str, currency: Optional[str] = None) -> Optional[str]:
        """
        Return the provider price ID for a plan and currency.

        Args:
            plan: 'monthly' or 'annual'
            currency: ISO code; defaults to the catalog default currency

        Returns:
            Price ID, or None if the plan/currency pair is not configured
        """
        ccy = (currency or self._default_currency).upper()
        entry = self._plans.get(plan, {}).get("currencies", {}).get(ccy)
        if entry is None:
            return None

        override = os.getenv(f"STRIPE_{plan.upper()}_PLAN_{ccy}_ID")
        if override:
            return override
        return entry.get("price_id")

    def get_fallback_price(self, plan: str, currency: Optional[str] = None) -> Optional[float]:
        ccy = (currency or self._default_currency).upper()
        entry = self._plans.get(plan, {}).get("currencies", {}).get(ccy)
        if entry is None or entry.get("fallback_price") is None:
            return None
        return float(entry["fallback_price"])

    def supported_currencies(self) -> Dict[str, Any]:
        """Currency code -> display info; codes from the plans if no currencies block."""
        configured = self._raw.get("currencies")
        if configured:
            return {str(code).upper(): info or {} for code, info in configured.items()}

        codes = {}
        for plan in self._plans.values():
            for ccy in plan.get("currencies", {}):
                codes.setdefault(str(ccy).upper(), {})
        return codes

    def get_all(self, currency: Optional[str] = None) -> Dict[str, Any]:
        """
        Return the catalog with env overrides applied, for API exposure.

        Args:
            currency: Only include prices in this currency
        """
        only = currency.upper() if currency else None
        plans = {}
        for name, plan in self._plans.items():
            plans[name] = {
                "name": plan.get("name", name),
                "interval": plan.get("interval"),
                "currencies": {
                    ccy: {
                        "price_id": self.get_price_id(name, ccy),
                        "fallback_price": self.get_fallback_price(name, ccy),
                    }
                    for ccy in plan.get("currencies", {})
                    if only is None or ccy.upper() == only
                },
            }
        return {
            "version": self._raw.get("version", 1),
            "default_currency": self._default_currency,
            "currencies": self.supported_currencies(),
            "plans": plans,
        }


def get_billing_plans_loader(config_path: Optional[str] = None) -> BillingPlansLoader:
    """Return the singleton BillingPlansLoader."""
    return BillingPlansLoader(config_path)


def reset_billing_plans_loader() -> None:
    """Reset singleton (for tests only)."""
    BillingPlansLoader._instance = None
