"""
Unit tests for the sync-subscriptions and check-expired-trials CLI jobs.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from src.jobs import check_expired_trials, sync_subscriptions
from src.repositories.user_repository import UserRepository
from src.services.billing_errors import UserNotFoundError
from src.services.subscription_sync_service import SyncResult
from src.services.trial_service import TrialSweepResult


@pytest.fixture
def scoped_session(db_session):
    @contextmanager
    def _scope():
        yield db_session
    return _scope


class TestSyncSubscriptionsCli:

    def test_parser_defaults(self):
        args = sync_subscriptions.build_parser().parse_args([])

        assert args.days == 2
        assert args.user_id is None
        assert args.dry_run is False
        assert args.sync_roles is False
        assert args.batch_size == 50

    def test_flags_passed_through(self):
        run = AsyncMock(return_value=SyncResult(users_processed=3))
        with patch.object(sync_subscriptions, "run_subscription_sync", run):
            code = sync_subscriptions.main([
                "--days=7", "--user=u1", "--dry-run", "--sync-roles", "--batch-size=10",
            ])

        assert code == 0
        run.assert_awaited_once_with(
            days=7, user_id="u1", dry_run=True, sync_roles=True, batch_size=10,
        )

    def test_partial_errors_still_exit_zero(self, capsys):
        run = AsyncMock(return_value=SyncResult(users_processed=3, errors=2))
        with patch.object(sync_subscriptions, "run_subscription_sync", run):
            code = sync_subscriptions.main([])

        assert code == 0
        assert "2 user(s) failed" in capsys.readouterr().out

    def test_unknown_user_exits_one(self):
        run = AsyncMock(side_effect=UserNotFoundError("missing"))
        with patch.object(sync_subscriptions, "run_subscription_sync", run):
            assert sync_subscriptions.main(["--user=missing"]) == 1

    def test_invalid_batch_size_exits_one(self):
        assert sync_subscriptions.main(["--batch-size=0"]) == 1

    def test_missing_stripe_key_exits_one(self, monkeypatch, scoped_session):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        with patch.object(sync_subscriptions, "session_scope", scoped_session):
            assert sync_subscriptions.main([]) == 1

    def test_run_against_database(
        self, gateway, make_user, make_remote_subscription, scoped_session, db_session
    ):
        user = make_user(remote_customer_id="cus_1", roles=["free"])
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        with patch.object(sync_subscriptions, "session_scope", scoped_session), \
                patch.object(sync_subscriptions, "get_billing_client", return_value=gateway):
            code = sync_subscriptions.main(["--sync-roles", "--days=0"])

        assert code == 0
        assert gateway.closed is True
        assert UserRepository(db_session).get_role_names(user.id) == ["premium"]


class TestCheckExpiredTrialsCli:

    def test_flags_passed_through(self):
        run = AsyncMock(return_value=TrialSweepResult(processed=1))
        with patch.object(check_expired_trials, "run_trial_sweep", run):
            code = check_expired_trials.main(["--dry-run", "--user", "u1"])

        assert code == 0
        run.assert_awaited_once_with(dry_run=True, user_id="u1")

    def test_unknown_user_exits_one(self, scoped_session, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        with patch.object(check_expired_trials, "session_scope", scoped_session):
            assert check_expired_trials.main(["--user=missing"]) == 1

    def test_runs_without_stripe_key(self, make_user, scoped_session, db_session, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        past = datetime.now(timezone.utc) - timedelta(days=1)
        user = make_user(roles=["trial"], trial_ends_at=past)

        with patch.object(check_expired_trials, "session_scope", scoped_session):
            code = check_expired_trials.main([])

        assert code == 0
        assert UserRepository(db_session).get_role_names(user.id) == ["free"]

    def test_dry_run_changes_nothing(self, make_user, scoped_session, db_session, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        past = datetime.now(timezone.utc) - timedelta(days=1)
        user = make_user(roles=["trial"], trial_ends_at=past)

        with patch.object(check_expired_trials, "session_scope", scoped_session):
            code = check_expired_trials.main(["--dry-run"])

        assert code == 0
        assert UserRepository(db_session).get_role_names(user.id) == ["trial"]
