"""
Unit tests for RoleSynchronizer and the billing role helpers.

Tests cover:
- Admin preservation
- Idempotency
- Dry run
- Desired role derived from cached subscriptions
"""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from hypothesis import given, strategies as st

from src.models.role import RoleName
from src.repositories.user_repository import UserRepository
from src.services.billing_errors import UserNotFoundError
from src.services.role_synchronizer import (
    RoleSynchronizer,
    billing_role_from_local_state,
    plan_role_change,
)

ALL_ROLES = ["admin", "premium", "trial", "free"]
BILLING = ["premium", "trial", "free"]


@pytest.fixture
def synchronizer(db_session, clock):
    return RoleSynchronizer(db_session, clock=clock)


def _roles(db_session, user_id):
    return UserRepository(db_session).get_role_names(user_id)


class TestPlanRoleChange:
    """Property tests for the pure diff."""

    @given(current=st.sets(st.sampled_from(ALL_ROLES)), desired=st.sampled_from(BILLING))
    def test_target_is_desired_plus_admin(self, current, desired):
        plan = plan_role_change(current, desired)

        expected = {desired} | ({"admin"} & current)
        assert set(plan["after"]) == expected
        assert set(plan["add"]) == expected - current
        assert set(plan["remove"]) == current - expected
        assert "admin" not in plan["remove"]

    @given(current=st.sets(st.sampled_from(ALL_ROLES)), desired=st.sampled_from(BILLING))
    def test_applying_plan_twice_is_a_noop(self, current, desired):
        first = plan_role_change(current, desired)
        second = plan_role_change(first["after"], desired)

        assert second["add"] == []
        assert second["remove"] == []
        assert second["after"] == first["after"]


class TestSyncRole:
    """Tests for sync_role against the database."""

    def test_admin_is_preserved(self, synchronizer, make_user, db_session):
        user = make_user(roles=["admin", "trial"])

        result = synchronizer.sync_role(user, "premium")

        assert result.changed is True
        assert result.added == ["premium"]
        assert result.removed == ["trial"]
        assert _roles(db_session, user.id) == ["admin", "premium"]

    @pytest.mark.parametrize("initial", [[], ["free"], ["trial"], ["premium", "trial"], ["admin"]])
    @pytest.mark.parametrize("desired", BILLING)
    def test_sync_is_idempotent(self, synchronizer, make_user, db_session, initial, desired):
        user = make_user(roles=initial)

        synchronizer.sync_role(user, desired)
        after_first = _roles(db_session, user.id)
        second = synchronizer.sync_role(user, desired)

        assert second.changed is False
        assert second.added == []
        assert second.removed == []
        assert _roles(db_session, user.id) == after_first

        expected = {desired} | ({"admin"} & set(initial))
        assert set(after_first) == expected

    def test_at_most_one_billing_role(self, synchronizer, make_user, db_session):
        user = make_user(roles=["premium", "trial", "free"])

        synchronizer.sync_role(user, "free")

        assert _roles(db_session, user.id) == ["free"]

    def test_records_source(self, synchronizer, make_user, db_session):
        user = make_user()

        synchronizer.sync_role(user, "trial", source="trial_start")

        db_session.expire_all()
        assignment = user.role_assignments[0]
        assert assignment.role.name == "trial"
        assert assignment.source == "trial_start"

    def test_invalid_role_raises(self, synchronizer, make_user):
        user = make_user()

        with pytest.raises(ValueError):
            synchronizer.sync_role(user, "admin")
        with pytest.raises(ValueError):
            synchronizer.sync_role(user, "gold")

    def test_dry_run_does_not_write(self, synchronizer, make_user, db_session):
        user = make_user(roles=["admin", "free"])

        result = synchronizer.sync_role(user, "premium", dry_run=True)

        assert result.dry_run is True
        assert result.changed is True
        assert result.added == ["premium"]
        assert result.removed == ["free"]
        assert result.roles_after == ["admin", "premium"]
        assert _roles(db_session, user.id) == ["admin", "free"]

    def test_missing_user_raises(self, synchronizer, make_user, db_session):
        user = make_user()
        ghost = SimpleNamespace(id="does-not-exist")

        with pytest.raises(UserNotFoundError):
            synchronizer.sync_role(ghost, "free")
        assert _roles(db_session, user.id) == []

    def test_role_rows_created_on_demand(self, synchronizer, make_user, db_session):
        user = make_user()

        synchronizer.sync_role(user, "premium")

        assert UserRepository(db_session).get_or_create_role(RoleName.PREMIUM.value).id
        assert _roles(db_session, user.id) == ["premium"]


class TestBillingRoleFromLocalState:
    """Desired role from cached subscriptions and the local trial."""

    def _sub(self, status, updated_at, ends_at=None):
        return SimpleNamespace(status=status, updated_at=updated_at, ends_at=ends_at)

    def test_newest_entitled_row_decides(self, now):
        subs = [
            self._sub("active", now - timedelta(days=3)),
            self._sub("trialing", now - timedelta(hours=1)),
        ]
        assert billing_role_from_local_state(subs, None, now) == "trial"

    def test_past_due_is_premium(self, now):
        subs = [self._sub("past_due", now)]
        assert billing_role_from_local_state(subs, None, now) == "premium"

    def test_active_trial_without_subscription(self, now):
        assert billing_role_from_local_state([], now + timedelta(days=1), now) == "trial"

    def test_expired_trial_without_subscription(self, now):
        assert billing_role_from_local_state([], now - timedelta(days=1), now) == "free"

    def test_canceled_in_grace_period(self, now):
        subs = [self._sub("canceled", now, ends_at=now + timedelta(days=2))]
        assert billing_role_from_local_state(subs, None, now) == "premium"

    def test_canceled_after_end(self, now):
        subs = [self._sub("canceled", now, ends_at=now - timedelta(days=2))]
        assert billing_role_from_local_state(subs, None, now) == "free"

    def test_unpaid_is_free(self, now):
        subs = [self._sub("unpaid", now), self._sub("incomplete_expired", now)]
        assert billing_role_from_local_state(subs, None, now) == "free"
