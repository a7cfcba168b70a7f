"""
Unit tests for SubscriptionSyncService (population sync).

Tests cover:
- Upsert idempotency keyed by remote_id
- Candidate window and single-user mode
- Role recomputation with admin skipped
- Dry run writes nothing
- Per-user failures and cancellation
"""

import asyncio
from datetime import timedelta

import pytest

from src.integrations.stripe.billing_client import RemoteSubscriptionItem
from src.models.subscription import Subscription, SubscriptionItem
from src.models.user import User
from src.repositories.user_repository import UserRepository
from src.services.billing_errors import UserNotFoundError
from src.services.subscription_sync_service import SubscriptionSyncService


@pytest.fixture
def service(db_session, gateway, settings, clock):
    return SubscriptionSyncService(db_session, gateway, settings=settings, clock=clock)


def _roles(db_session, user_id):
    return UserRepository(db_session).get_role_names(user_id)


def _count(db_session, model):
    return db_session.query(model).count()


class TestUpserts:

    @pytest.mark.asyncio
    async def test_creates_subscriptions_and_items(
        self, service, gateway, make_user, make_remote_subscription, db_session, now
    ):
        user = make_user(remote_customer_id="cus_1")
        gateway.set_subscriptions("cus_1", [
            make_remote_subscription("sub_1", "cus_1", items=[
                RemoteSubscriptionItem(id="si_1", price_ref="price_a", product_ref="prod_a", quantity=2),
                RemoteSubscriptionItem(id="si_2", price_ref="price_b", product_ref="prod_b"),
            ]),
        ])

        result = await service.sync_population()

        assert result.users_processed == 1
        assert result.subscriptions_created == 1
        assert result.items_created == 2
        assert result.errors == 0

        row = db_session.query(Subscription).filter_by(remote_id="sub_1").one()
        assert row.user_id == user.id
        assert row.status == "active"
        assert row.price_ref == "price_a"
        assert {item.remote_id for item in row.items} == {"si_1", "si_2"}

        db_session.refresh(user)
        assert user.last_sync_at.replace(tzinfo=None) == now.replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(
        self, service, gateway, make_user, make_remote_subscription, db_session
    ):
        make_user(remote_customer_id="cus_1")
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        await service.sync_population()
        second = await service.sync_population(window_days=0)

        assert second.subscriptions_created == 0
        assert second.subscriptions_updated == 1
        assert second.items_created == 0
        assert second.items_updated == 1
        assert _count(db_session, Subscription) == 1
        assert _count(db_session, SubscriptionItem) == 1

    @pytest.mark.asyncio
    async def test_status_transition_last_write_wins(
        self, service, gateway, make_user, make_subscription, make_remote_subscription, db_session, now
    ):
        user = make_user(remote_customer_id="cus_1")
        make_subscription(user, remote_id="sub_1", status="active", failed_payment_count=2)
        gateway.set_subscriptions("cus_1", [
            make_remote_subscription("sub_1", "cus_1", status="canceled", ends_at=now - timedelta(days=1))
        ])

        await service.sync_population()

        row = db_session.query(Subscription).filter_by(remote_id="sub_1").one()
        assert row.status == "canceled"
        assert row.failed_payment_count == 2
        assert _count(db_session, Subscription) == 1


class TestCandidates:

    @pytest.mark.asyncio
    async def test_skips_users_without_customer_and_deleted(
        self, service, gateway, make_user
    ):
        make_user()
        make_user(remote_customer_id="cus_deleted", is_deleted=True)
        make_user(remote_customer_id="cus_1")

        result = await service.sync_population()

        assert result.users_processed == 1
        assert gateway.calls == ["cus_1"]

    @pytest.mark.asyncio
    async def test_single_user(self, service, gateway, make_user):
        target = make_user(remote_customer_id="cus_1")
        make_user(remote_customer_id="cus_2")

        result = await service.sync_population(user_id=target.id)

        assert result.users_processed == 1
        assert gateway.calls == ["cus_1"]

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, service):
        with pytest.raises(UserNotFoundError):
            await service.sync_population(user_id="missing")

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, service):
        with pytest.raises(ValueError):
            await service.sync_population(batch_size=0)

    @pytest.mark.asyncio
    async def test_keyset_chunks(self, service, gateway, make_user):
        for index in range(5):
            make_user(remote_customer_id=f"cus_{index}")

        result = await service.sync_population(batch_size=2)

        assert result.users_processed == 5
        assert result.chunks_processed == 3
        assert sorted(gateway.calls) == [f"cus_{index}" for index in range(5)]


class TestRoleUpdates:

    @pytest.mark.asyncio
    async def test_roles_follow_synced_state(
        self, service, gateway, make_user, make_remote_subscription, db_session
    ):
        user = make_user(remote_customer_id="cus_1", roles=["free"])
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        result = await service.sync_population(update_roles=True)

        assert result.roles_changed == 1
        assert _roles(db_session, user.id) == ["premium"]

    @pytest.mark.asyncio
    async def test_admin_roles_never_rerouted(
        self, service, gateway, make_user, make_remote_subscription, db_session
    ):
        admin = make_user(remote_customer_id="cus_1", roles=["admin", "free"])
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        result = await service.sync_population(update_roles=True)

        assert result.roles_skipped_admin == 1
        assert result.roles_changed == 0
        assert _roles(db_session, admin.id) == ["admin", "free"]

    @pytest.mark.asyncio
    async def test_roles_untouched_without_flag(
        self, service, gateway, make_user, make_remote_subscription, db_session
    ):
        user = make_user(remote_customer_id="cus_1", roles=["free"])
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        await service.sync_population()

        assert _roles(db_session, user.id) == ["free"]


class TestDryRun:

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self, service, gateway, make_user, make_remote_subscription, db_session
    ):
        user = make_user(remote_customer_id="cus_1", roles=["free"])
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        result = await service.sync_population(update_roles=True, dry_run=True)

        assert result.dry_run is True
        assert result.subscriptions_created == 1
        assert result.items_created == 1
        assert result.roles_changed == 1
        assert _count(db_session, Subscription) == 0
        assert _count(db_session, SubscriptionItem) == 0
        assert _roles(db_session, user.id) == ["free"]
        assert db_session.query(User).filter_by(id=user.id).one().last_sync_at is None

    @pytest.mark.asyncio
    async def test_dry_run_counts_updates(
        self, service, gateway, make_user, make_subscription, make_remote_subscription
    ):
        user = make_user(remote_customer_id="cus_1")
        make_subscription(user, remote_id="sub_1")
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        result = await service.sync_population(dry_run=True)

        assert result.subscriptions_updated == 1
        assert result.subscriptions_created == 0


class TestFailures:

    @pytest.mark.asyncio
    async def test_remote_failure_counted_and_batch_continues(
        self, service, gateway, make_user, make_remote_subscription, db_session
    ):
        make_user(remote_customer_id="cus_bad")
        good = make_user(remote_customer_id="cus_good")
        gateway.fail("cus_bad")
        gateway.set_subscriptions("cus_good", [make_remote_subscription("sub_good", "cus_good")])

        result = await service.sync_population()

        assert result.users_processed == 2
        assert result.errors == 1
        row = db_session.query(Subscription).filter_by(remote_id="sub_good").one()
        assert row.user_id == good.id

    @pytest.mark.asyncio
    async def test_write_failure_rolled_back(
        self, service, gateway, make_user, make_remote_subscription, db_session, monkeypatch
    ):
        make_user(remote_customer_id="cus_1")
        gateway.set_subscriptions("cus_1", [make_remote_subscription("sub_1", "cus_1")])

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(service.subscriptions, "upsert_item", boom)

        result = await service.sync_population()

        assert result.errors == 1
        assert _count(db_session, Subscription) == 0

    @pytest.mark.asyncio
    async def test_timeout_counts_as_error(self, service, gateway, make_user):
        make_user(remote_customer_id="cus_1")
        gateway.fail("cus_1", asyncio.TimeoutError())

        result = await service.sync_population()

        assert result.errors == 1

    @pytest.mark.asyncio
    async def test_stop_event_cancels(self, service, gateway, make_user):
        make_user(remote_customer_id="cus_1")
        stop_event = asyncio.Event()
        stop_event.set()

        result = await service.sync_population(stop_event=stop_event)

        assert result.cancelled is True
        assert result.users_processed == 0
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_passed_deadline_cancels(self, service, gateway, make_user):
        make_user(remote_customer_id="cus_1")

        result = await service.sync_population(deadline=0.0)

        assert result.cancelled is True
        assert gateway.calls == []
