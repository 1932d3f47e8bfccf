"""Unit tests for the drift detector."""

from datetime import timedelta

from reconciler.config import DriftConfig, ReconcileConfig
from reconciler.errors import MalformedRecordError
from reconciler.models.enums import DriftType, Severity
from reconciler.models.identity import Identity
from reconciler.services.drift_detector import DriftDetector
from reconciler.services.precedence_resolver import PrecedenceResolver
from reconciler.services.subscription_aggregator import SubscriptionAggregator


def _detector(store, clock, **config) -> DriftDetector:
    aggregator = SubscriptionAggregator(store, now_provider=clock.now)
    resolver = PrecedenceResolver(ReconcileConfig(), now_provider=clock.now)
    return DriftDetector(store, aggregator, resolver, DriftConfig(**config), now_provider=clock.now)


def _types(records) -> set[DriftType]:
    return {r.drift_type for r in records}


class TestDriftRules:
    async def test_clean_identity_has_no_drift(self, store, clock, make_identity):
        row = make_identity()
        records = await _detector(store, clock).evaluate(Identity.model_validate(row))
        assert records == []

    async def test_never_synced_billing_identity_is_stale(self, store, clock, make_identity):
        row = make_identity(billing_provider="stripe")

        records = await _detector(store, clock).evaluate(Identity.model_validate(row))

        assert _types(records) == {DriftType.STALE_SYNC}
        assert records[0].severity == Severity.MEDIUM

    async def test_stale_threshold_is_configurable(self, store, clock, make_identity):
        synced = (clock.now() - timedelta(days=3)).isoformat()
        row = make_identity(billing_provider="stripe", entitlement_last_synced_at=synced)
        identity = Identity.model_validate(row)

        assert await _detector(store, clock).evaluate(identity) == []
        stale = await _detector(store, clock, stale_after_days=2).evaluate(identity)
        assert _types(stale) == {DriftType.STALE_SYNC}

    async def test_sync_error_is_high(self, store, clock, make_identity):
        row = make_identity(entitlement_sync_state="error", entitlement_sync_error="stripe 500")

        records = await _detector(store, clock).evaluate(Identity.model_validate(row))

        assert _types(records) == {DriftType.SYNC_ERROR}
        assert records[0].severity == Severity.HIGH
        assert records[0].details == "stripe 500"

    async def test_customer_on_free_tier_is_paid_but_free(self, store, clock, make_identity):
        row = make_identity(
            stripe_customer_id="cus_1",
            billing_provider="stripe",
            entitlement_last_synced_at=clock.now().isoformat(),
        )

        records = await _detector(store, clock).evaluate(Identity.model_validate(row))

        assert _types(records) == {DriftType.PAID_BUT_FREE}

    async def test_provider_mismatch(self, store, clock, make_identity, make_subscription):
        row = make_identity(
            billing_provider="stripe",
            subscription_provider="apple",
            entitlement_tier="premium",
            entitlement_level="paid",
            entitlement_status="active",
            entitlement_last_synced_at=clock.now().isoformat(),
        )
        make_subscription(row["id"], provider="apple", provider_subscription_id="1000")

        records = await _detector(store, clock).evaluate(Identity.model_validate(row))

        assert _types(records) == {DriftType.PROVIDER_MISMATCH}

    async def test_stored_state_disagreeing_with_evidence(self, store, clock, make_identity, make_subscription):
        row = make_identity()
        make_subscription(row["id"], tier="pro")

        records = await _detector(store, clock).evaluate(Identity.model_validate(row))

        assert _types(records) == {DriftType.ENTITLEMENT_MISMATCH}
        assert "evidence says pro/active" in records[0].details

    async def test_resolution_check_can_be_disabled(self, store, clock, make_identity, make_subscription):
        row = make_identity()
        make_subscription(row["id"], tier="pro")

        records = await _detector(store, clock, check_resolution=False).evaluate(
            Identity.model_validate(row)
        )

        assert records == []


class TestDriftScan:
    async def test_scan_replaces_unresolved_records_in_scope(self, store, clock, make_identity):
        row = make_identity(entitlement_sync_state="error")
        other = make_identity("other@example.com", entitlement_sync_state="error")
        identity = Identity.model_validate(row)
        detector = _detector(store, clock)

        await detector.scan([identity, Identity.model_validate(other)])
        await detector.scan([identity])

        stored = await store.list_drift_records()
        assert sorted(r.user_id for r in stored) == sorted([row["id"], other["id"]])

    async def test_resolved_records_are_kept(self, store, clock, make_identity):
        row = make_identity(entitlement_sync_state="error")
        store.seed(
            store.drift_table,
            {
                "id": "old",
                "user_id": row["id"],
                "user_email": row["email"],
                "drift_type": "sync_error",
                "severity": "high",
                "details": "handled",
                "detected_at": (clock.now() - timedelta(days=9)).isoformat(),
                "resolved": True,
            },
        )

        await _detector(store, clock).scan([Identity.model_validate(row)])

        stored = await store.list_drift_records()
        assert len(stored) == 2
        assert any(r.id == "old" and r.resolved for r in stored)

    async def test_scan_never_touches_identities(self, store, clock, make_identity, make_subscription):
        row = make_identity(stripe_customer_id="cus_1", billing_provider="stripe")
        make_subscription(row["id"], tier="pro")
        before = store.snapshot()["users"]

        records = await _detector(store, clock).scan([Identity.model_validate(row)])

        assert records
        assert store.snapshot()["users"] == before

    async def test_one_failing_identity_does_not_abort_the_scan(
        self, store, clock, make_identity, monkeypatch
    ):
        healthy = make_identity("ok@example.com", billing_provider="stripe")
        broken = make_identity("broken@example.com", entitlement_sync_state="error")
        store.seed(
            store.drift_table,
            {
                "id": "previous",
                "user_id": broken["id"],
                "user_email": broken["email"],
                "drift_type": "sync_error",
                "severity": "high",
                "details": "earlier finding",
                "detected_at": (clock.now() - timedelta(days=1)).isoformat(),
                "resolved": False,
            },
        )
        detector = _detector(store, clock)
        list_subscriptions = detector.aggregator.list_subscriptions

        async def flaky(identity, *args, **kwargs):
            if identity.id == broken["id"]:
                raise MalformedRecordError("bad row", identity_id=identity.id)
            return await list_subscriptions(identity, *args, **kwargs)

        monkeypatch.setattr(detector.aggregator, "list_subscriptions", flaky)

        records = await detector.scan(
            [Identity.model_validate(healthy), Identity.model_validate(broken)]
        )

        assert [r.user_id for r in records] == [healthy["id"]]
        stored = await store.list_drift_records()
        assert {r.id for r in stored if r.user_id == broken["id"]} == {"previous"}
        assert [r.drift_type for r in stored if r.user_id == healthy["id"]] == [DriftType.STALE_SYNC]

    async def test_unexpected_errors_are_isolated_too(self, store, clock, make_identity, monkeypatch):
        row = make_identity(entitlement_sync_state="error")
        detector = _detector(store, clock)

        async def crash(identity, *args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(detector.aggregator, "list_subscriptions", crash)

        records = await detector.scan([Identity.model_validate(row)])

        assert records == []
