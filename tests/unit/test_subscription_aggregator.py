"""Unit tests for subscription aggregation and the active-for-entitlement predicate."""

from datetime import UTC, datetime, timedelta

from reconciler.models.enums import Provider, SubscriptionStatus
from reconciler.models.identity import Identity
from reconciler.models.subscription import Subscription
from reconciler.services.subscription_aggregator import (
    SubscriptionAggregator,
    is_active_for_entitlement,
    merge_provider_snapshot,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _sub(status="active", period_end=None, **fields) -> Subscription:
    return Subscription(
        provider=fields.pop("provider", "stripe"),
        provider_subscription_id=fields.pop("provider_subscription_id", "sub_1"),
        status=status,
        tier=fields.pop("tier", "premium"),
        current_period_end=period_end,
        **fields,
    )


class TestActivePredicate:
    def test_period_end_one_second_ahead_is_active(self):
        assert is_active_for_entitlement(_sub(period_end=NOW + timedelta(seconds=1)), NOW)

    def test_period_end_exactly_now_is_inactive(self):
        assert not is_active_for_entitlement(_sub(period_end=NOW), NOW)

    def test_period_end_one_second_ago_is_inactive(self):
        assert not is_active_for_entitlement(_sub(period_end=NOW - timedelta(seconds=1)), NOW)

    def test_stale_active_status_does_not_outlive_its_period(self):
        sub = _sub(status="active", period_end=NOW - timedelta(days=3))
        assert not is_active_for_entitlement(sub, NOW)

    def test_trialing_without_period_end_is_active(self):
        assert is_active_for_entitlement(_sub(status="trialing"), NOW)

    def test_incomplete_needs_future_period_end(self):
        assert is_active_for_entitlement(_sub(status="incomplete", period_end=NOW + timedelta(days=1)), NOW)
        assert not is_active_for_entitlement(_sub(status="incomplete"), NOW)

    def test_past_due_and_canceled_never_grant(self):
        future = NOW + timedelta(days=5)
        assert not is_active_for_entitlement(_sub(status="past_due", period_end=future), NOW)
        assert not is_active_for_entitlement(_sub(status="canceled", period_end=future), NOW)


class TestMergeProviderSnapshot:
    def test_started_at_is_immutable(self):
        stored = _sub(started_at=NOW - timedelta(days=400), period_end=NOW + timedelta(days=5))
        stored.id = "row-1"
        fresh = _sub(started_at=NOW - timedelta(days=2), period_end=NOW + timedelta(days=30))

        merged = merge_provider_snapshot(stored, fresh)

        assert merged.id == "row-1"
        assert merged.started_at == NOW - timedelta(days=400)
        assert merged.current_period_end == NOW + timedelta(days=30)

    def test_period_end_does_not_move_earlier_while_active(self):
        stored = _sub(period_end=NOW + timedelta(days=30))
        fresh = _sub(period_end=NOW + timedelta(days=2))

        merged = merge_provider_snapshot(stored, fresh)

        assert merged.current_period_end == NOW + timedelta(days=30)

    def test_cancellation_may_shorten_period(self):
        stored = _sub(period_end=NOW + timedelta(days=30))
        fresh = _sub(status="canceled", period_end=NOW)

        merged = merge_provider_snapshot(stored, fresh)

        assert merged.status == SubscriptionStatus.CANCELED
        assert merged.current_period_end == NOW

    def test_new_row_takes_started_at_from_period_start(self):
        fresh = _sub(current_period_start=NOW - timedelta(days=1))
        assert merge_provider_snapshot(None, fresh).started_at == NOW - timedelta(days=1)


class TestSubscriptionAggregator:
    async def test_lists_by_owner_id_across_providers(self, store, make_identity, make_subscription):
        row = make_identity()
        make_subscription(row["id"], provider="stripe")
        make_subscription(row["id"], provider="apple", provider_subscription_id="1000")
        aggregator = SubscriptionAggregator(store)

        subs = await aggregator.list_subscriptions(Identity.model_validate(row))

        assert {s.provider for s in subs} == {Provider.STRIPE, Provider.APPLE}

    async def test_includes_rows_of_identities_being_merged(self, store, make_identity, make_subscription):
        canonical = make_identity(id="keep")
        make_subscription("dupe", provider_subscription_id="sub_dupe")
        aggregator = SubscriptionAggregator(store)

        subs = await aggregator.list_subscriptions(
            Identity.model_validate(canonical), merged_ids=["dupe"]
        )

        assert [s.provider_subscription_id for s in subs] == ["sub_dupe"]

    async def test_email_fallback_is_limited_to_legacy_provider(
        self, store, make_identity, make_subscription
    ):
        row = make_identity(email="legacy@example.com")
        make_subscription(None, user_email="Legacy@Example.com", provider_subscription_id="sub_old")
        make_subscription(
            None, user_email="legacy@example.com", provider="apple", provider_subscription_id="2000"
        )
        aggregator = SubscriptionAggregator(store)

        subs = await aggregator.list_subscriptions(Identity.model_validate(row))

        assert [s.provider_subscription_id for s in subs] == ["sub_old"]

    async def test_email_fallback_rows_become_owned(self, store, make_identity, make_subscription):
        row = make_identity(email="legacy@example.com")
        legacy = make_subscription(None, user_email="legacy@example.com")
        aggregator = SubscriptionAggregator(store)
        identity = Identity.model_validate(row)

        unlinked = await aggregator.list_subscriptions(identity)
        assert unlinked[0].user_id == row["id"]
        assert store.tables[store.subscriptions_table][legacy["id"]]["user_id"] is None

        await aggregator.list_subscriptions(identity, link_legacy=True)
        assert store.tables[store.subscriptions_table][legacy["id"]]["user_id"] == row["id"]
        assert await store.list_subscriptions([row["id"]])

    async def test_email_fallback_skipped_when_owned_rows_exist(

        self, store, make_identity, make_subscription
    ):
        row = make_identity(email="both@example.com")
        make_subscription(row["id"], provider_subscription_id="sub_owned")
        make_subscription(None, user_email="both@example.com", provider_subscription_id="sub_loose")
        aggregator = SubscriptionAggregator(store)

        subs = await aggregator.list_subscriptions(Identity.model_validate(row))

        assert [s.provider_subscription_id for s in subs] == ["sub_owned"]

    async def test_pending_rows_shadow_stored_rows(self, store, make_identity, make_subscription):
        row = make_identity()
        make_subscription(row["id"], provider_subscription_id="sub_1", status="active")
        aggregator = SubscriptionAggregator(store)
        pending = _sub(status="canceled", provider_subscription_id="sub_1", user_id=row["id"])

        subs = await aggregator.list_subscriptions(Identity.model_validate(row), pending=[pending])

        assert len(subs) == 1
        assert subs[0].status == SubscriptionStatus.CANCELED

    async def test_record_snapshot_dry_run_writes_nothing(self, store, clock):
        aggregator = SubscriptionAggregator(store, now_provider=clock.now)
        before = store.snapshot()

        merged = await aggregator.record_provider_snapshot(_sub(user_id="u1"), dry_run=True)

        assert merged.updated_at == clock.now()
        assert store.snapshot() == before

    async def test_record_snapshot_upserts_on_provider_key(self, store, clock):
        aggregator = SubscriptionAggregator(store, now_provider=clock.now)

        first = await aggregator.record_provider_snapshot(_sub(user_id="u1"))
        second = await aggregator.record_provider_snapshot(_sub(user_id="u1", status="past_due"))

        assert first.id == second.id
        stored = await store.get_subscription(Provider.STRIPE, "sub_1")
        assert stored.status == SubscriptionStatus.PAST_DUE
