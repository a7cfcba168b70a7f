"""
Unit tests for subscription settings and the billing plan catalog.
"""

import pytest

from src.config.billing_plans import BillingPlansLoader, get_billing_plans_loader
from src.config.subscription import (
    SubscriptionSettings,
    get_subscription_settings,
    reset_subscription_settings,
)


class TestSubscriptionSettings:

    def test_defaults(self, monkeypatch):
        for name in (
            "ENV", "STRIPE_SECRET_KEY", "TRIAL_DAYS", "SUBSCRIPTION_FALLBACK_ENABLED",
            "SUBSCRIPTION_FALLBACK_MAX_AGE_HOURS", "PAYMENT_FAILURE_ESCALATION_ATTEMPTS",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = SubscriptionSettings.from_env()

        assert settings.env == "production"
        assert settings.allows_webhook_test_bypass is False
        assert settings.stripe_secret_key is None
        assert settings.trial_days == 30
        assert settings.fallback_enabled is True
        assert settings.fallback_max_age_hours == 24.0
        assert settings.payment_failure_escalation_attempts == 3
        assert settings.sync_page_size == 100

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ENV", "Production")
        monkeypatch.setenv("TRIAL_DAYS", "14")
        monkeypatch.setenv("SUBSCRIPTION_FALLBACK_ENABLED", "false")
        monkeypatch.setenv("SUBSCRIPTION_FALLBACK_MAX_AGE_HOURS", "6.5")
        monkeypatch.setenv("FRONTEND_URL", "https://app.example.com/")

        settings = SubscriptionSettings.from_env()

        assert settings.env == "production"
        assert settings.is_production is True
        assert settings.trial_days == 14
        assert settings.fallback_enabled is False
        assert settings.fallback_max_age_hours == 6.5
        assert settings.frontend_url == "https://app.example.com"

    def test_invalid_number_uses_default(self, monkeypatch):
        monkeypatch.setenv("TRIAL_DAYS", "thirty")

        assert SubscriptionSettings.from_env().trial_days == 30

    @pytest.mark.parametrize("env,allowed", [
        ("test", True),
        ("testing", True),
        ("local", True),
        ("development", True),
        ("staging", False),
        ("production", False),
    ])
    def test_webhook_test_bypass(self, env, allowed):
        assert SubscriptionSettings(env=env).allows_webhook_test_bypass is allowed

    def test_singleton_and_reset(self, monkeypatch):
        monkeypatch.setenv("TRIAL_DAYS", "10")
        first = get_subscription_settings()
        monkeypatch.setenv("TRIAL_DAYS", "20")

        assert get_subscription_settings() is first

        reset_subscription_settings()
        assert get_subscription_settings().trial_days == 20

    def test_with_overrides(self):
        settings = SubscriptionSettings(trial_days=30)

        assert settings.with_overrides(trial_days=7).trial_days == 7
        assert settings.trial_days == 30


class TestBillingPlansLoader:

    def test_loads_repository_catalog(self):
        loader = get_billing_plans_loader()

        assert loader.default_currency == "PLN"
        assert set(loader.plan_names()) == {"monthly", "annual"}
        assert loader.get_price_id("monthly") == "price_monthly_pln"
        assert loader.get_price_id("annual", "usd") == "price_annual_usd"
        assert loader.get_fallback_price("annual", "EUR") == 100.0

    def test_singleton(self):
        assert get_billing_plans_loader() is get_billing_plans_loader()
        assert BillingPlansLoader() is get_billing_plans_loader()

    def test_unknown_plan_or_currency(self):
        loader = get_billing_plans_loader()

        assert loader.has_plan("weekly") is False
        assert loader.get_price_id("weekly") is None
        assert loader.get_price_id("monthly", "GBP") is None

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("STRIPE_MONTHLY_PLAN_PLN_ID", "price_live_monthly")
        loader = get_billing_plans_loader()

        assert loader.get_price_id("monthly", "PLN") == "price_live_monthly"
        assert loader.get_all()["plans"]["monthly"]["currencies"]["PLN"]["price_id"] == "price_live_monthly"

    def test_custom_config_file(self, tmp_path):
        path = tmp_path / "billing_plans.yml"
        path.write_text(
            "default_currency: usd\n"
            "plans:\n"
            "  monthly:\n"
            "    name: Pro\n"
            "    interval: month\n"
            "    currencies:\n"
            "      USD: {price_id: price_pro_usd, fallback_price: 12}\n"
        )

        loader = get_billing_plans_loader(str(path))

        assert loader.default_currency == "USD"
        assert loader.plan_names() == ["monthly"]
        assert loader.get_price_id("monthly") == "price_pro_usd"

    def test_missing_file_uses_fallback(self, tmp_path):
        loader = get_billing_plans_loader(str(tmp_path / "missing.yml"))

        assert loader.get_price_id("annual", "EUR") == "price_annual_eur"
        assert loader.get_all()["default_currency"] == "PLN"

    def test_currencies_derived_from_plans(self, tmp_path):
        path = tmp_path / "billing_plans.yml"
        path.write_text(
            "plans:\n"
            "  monthly:\n"
            "    currencies:\n"
            "      usd: {price_id: price_usd, fallback_price: 12}\n"
            "      GBP: {price_id: price_gbp, fallback_price: 10}\n"
        )

        loader = get_billing_plans_loader(str(path))

        assert loader.supported_currencies() == {"USD": {}, "GBP": {}}

    def test_catalog_filtered_by_currency(self):
        catalog = get_billing_plans_loader().get_all("eur")

        assert {name: list(plan["currencies"]) for name, plan in catalog["plans"].items()} == {
            "monthly": ["EUR"],
            "annual": ["EUR"],
        }
        assert set(catalog["currencies"]) == {"PLN", "USD", "EUR"}
