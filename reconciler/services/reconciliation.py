"""
Reconciliation orchestration.

Runs the per-person pipeline (identity merge -> subscription aggregation ->
precedence resolution -> entitlement write) on demand or as a bounded
concurrent batch, and exposes the admin and purchase operations that must
route through it.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from typing import Iterable, Protocol

import structlog

from reconciler.config import DriftConfig, ReconcileConfig, ScoringWeights
from reconciler.constants import (
    MANUAL_GRANT_PERIOD_DAYS,
    MANUAL_SUBSCRIPTION_PREFIX,
    MOBILE_UNVERIFIED_PREFIX,
    PLAN_LABELS,
)
from reconciler.errors import ForbiddenError, NotFoundError, ReconcileError
from reconciler.models.enums import (
    EntitlementStatus,
    Provider,
    SubscriptionStatus,
    Tier,
)
from reconciler.models.identity import Identity, normalize_email
from reconciler.models.reconcile import (
    BatchItemResult,
    BatchResult,
    DriftRecord,
    EntitlementCheck,
    EntitlementSnapshot,
    MergeGroupResult,
    MergeResult,
    MergeSweepResult,
    ReconcileResult,
    WriteOutcome,
)
from reconciler.models.subscription import MobilePurchase, Subscription
from reconciler.services.conflict_guard import ensure_mobile_link_available
from reconciler.services.drift_detector import DriftDetector
from reconciler.services.entitlement_writer import EntitlementWriter
from reconciler.services.identity_resolver import IdentityResolver, pick_canonical
from reconciler.services.precedence_resolver import PrecedenceResolver
from reconciler.services.provider_clients import LiveProviderCheck
from reconciler.services.record_store import RecordStore
from reconciler.services.subscription_aggregator import SubscriptionAggregator

logger = structlog.get_logger(__name__)

# Upper bound on merged_into hops before a chain is treated as a cycle.
_MAX_MERGE_HOPS = 10


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Caller(Protocol):
    id: str

    @property
    def is_admin(self) -> bool: ...


class ReconciliationService:
    """Single entry point for every entitlement mutation.

    Usage:
        service = ReconciliationService(store, live_check=lookup)
        result = await service.reconcile_one("a@x.com", dry_run=True)
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        config: ReconcileConfig | None = None,
        weights: ScoringWeights | None = None,
        drift_config: DriftConfig | None = None,
        live_check: LiveProviderCheck | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.config = config or ReconcileConfig()
        self.live_check = live_check
        self.now_provider = now_provider

        self.identity_resolver = IdentityResolver(store, weights, now_provider=now_provider)
        self.aggregator = SubscriptionAggregator(
            store, self.config.legacy_default_provider, now_provider=now_provider
        )
        self.resolver = PrecedenceResolver(self.config, now_provider=now_provider)
        self.writer = EntitlementWriter(store, now_provider=now_provider)
        self.drift_detector = DriftDetector(
            store,
            self.aggregator,
            self.resolver,
            drift_config,
            max_concurrency=self.config.max_concurrency,
            now_provider=now_provider,
        )

        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_admin(caller: Caller | None) -> None:
        """``None`` is the system/scheduler context and is always allowed."""
        if caller is not None and not caller.is_admin:
            raise ForbiddenError("Admin access required", caller_id=caller.id)

    def _lock_for(self, email: str) -> asyncio.Lock:
        # One person == one normalized email, so this is the per-identity lock.
        return self._locks[normalize_email(email)]

    async def _follow_merged(self, identity: Identity) -> Identity:
        """Walk ``merged_into`` pointers to the surviving identity."""
        seen = {identity.id}
        current = identity
        for _ in range(_MAX_MERGE_HOPS):
            if not current.merged_into:
                return current
            target = await self.store.get_identity(current.merged_into)
            if target is None or target.id in seen:
                logger.warning(
                    "merge_chain_broken",
                    identity_id=identity.id,
                    merged_into=current.merged_into,
                )
                return current
            seen.add(target.id)
            current = target
        logger.warning("merge_chain_too_long", identity_id=identity.id)
        return current

    async def _load_group(
        self, email: str, overrides: dict[str, dict] | None = None
    ) -> list[Identity]:
        identities = await self.store.find_identities_by_email(email)
        if not identities:
            raise NotFoundError(f"No identity found for {normalize_email(email)}")
        if overrides:
            identities = [
                i.model_copy(update=overrides[i.id]) if i.id in overrides else i
                for i in identities
            ]
        return identities

    async def _canonical_for(self, email: str) -> tuple[Identity, list[Identity]]:
        group = await self._load_group(email)
        active = [i for i in group if not i.disabled]
        if not active:
            return await self._follow_merged(group[0]), group
        return pick_canonical(active, self.identity_resolver.weights), group

    # ------------------------------------------------------------------
    # Single-person reconciliation
    # ------------------------------------------------------------------

    async def reconcile_one(
        self,
        email: str,
        *,
        dry_run: bool,
        caller: Caller | None = None,
        live_lookup: bool = True,
    ) -> ReconcileResult:
        """Merge, aggregate, resolve and write for one email."""
        self._ensure_admin(caller)
        async with self._lock_for(email):
            return await self._reconcile_locked(email, dry_run=dry_run, live_lookup=live_lookup)

    async def _reconcile_locked(
        self,
        email: str,
        *,
        dry_run: bool,
        live_lookup: bool,
        pending: Iterable[Subscription] = (),
        overrides: dict[str, dict] | None = None,
    ) -> ReconcileResult:
        group = await self._load_group(email, overrides)
        if all(i.disabled for i in group):
            survivor = await self._follow_merged(group[0])
            if survivor.disabled or normalize_email(survivor.email) == normalize_email(email):
                raise NotFoundError(
                    f"No active identity for {normalize_email(email)}", email=email
                )
            group = await self._load_group(survivor.email, overrides)

        merge = await self.identity_resolver.resolve_canonical(group, dry_run=dry_run)
        # Carry the merge's canonical updates in memory so dry runs resolve
        # against the same state a real run would.
        canonical = merge.canonical.model_copy(
            update=merge.identity_updates.get(merge.canonical.id, {})
        )
        before = EntitlementSnapshot.of(merge.canonical)

        try:
            subscriptions = await self.aggregator.list_subscriptions(
                canonical, merge.merged_ids, pending=pending, link_legacy=not dry_run
            )
            resolved, live_result = await self.resolver.resolve(
                canonical,
                subscriptions,
                self.live_check if live_lookup else None,
            )
            if live_result is not None:
                for fresh in live_result.subscriptions:
                    fresh.user_id = canonical.id
                    await self.aggregator.record_provider_snapshot(fresh, dry_run=dry_run)

            write = await self.writer.apply(canonical, resolved, dry_run=dry_run)
        except ReconcileError as e:
            await self.writer.record_sync(canonical, error=f"{e.code}: {e.message}", dry_run=dry_run)
            raise

        sync_error = (
            "live provider lookup unavailable" if resolved.live_lookup == "unavailable" else None
        )
        await self.writer.record_sync(canonical, error=sync_error, dry_run=dry_run)

        after = EntitlementSnapshot(
            tier=resolved.tier,
            level=resolved.level,
            status=resolved.status,
            stripe_customer_id=write.updates.get(
                "stripe_customer_id", canonical.stripe_customer_id
            ),
            billing_provider=write.updates.get("billing_provider", canonical.billing_provider),
        )
        result = ReconcileResult(
            email=canonical.email,
            identity_id=canonical.id,
            dry_run=dry_run,
            before=before,
            after=after,
            provider_used=resolved.provider,
            live_lookup=resolved.live_lookup,
            changed=merge.changed or write.applied,
            write=write,
            merge=merge,
        )
        logger.info(
            "reconcile_completed",
            email=result.email,
            identity_id=result.identity_id,
            provider_used=result.provider_used,
            tier_before=before.tier.value,
            tier_after=after.tier.value,
            changed=result.changed,
            dry_run=dry_run,
        )
        return result

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def reconcile_batch(
        self,
        *,
        dry_run: bool,
        limit: int | None = None,
        tier_filter: Tier | None = None,
        caller: Caller | None = None,
        use_live_lookup: bool = False,
        stop: asyncio.Event | None = None,
    ) -> BatchResult:
        """Reconcile many identities concurrently; per-identity failures never escape.

        Once ``stop`` is set the remaining identities are reported as skipped
        and everything computed so far is returned.
        """
        self._ensure_admin(caller)
        max_limit = self.config.batch_max_limit
        limit = min(limit or max_limit, max_limit)
        identities = await self.store.list_identities(limit=limit, tier=tier_filter)
        emails = list(dict.fromkeys(i.email for i in identities))

        batch_id = uuid.uuid4().hex[:12]
        with structlog.contextvars.bound_contextvars(batch_id=batch_id):
            logger.info(
                "reconcile_batch_started",
                total=len(emails),
                dry_run=dry_run,
                tier_filter=tier_filter.value if tier_filter else None,
            )
            results = await asyncio.gather(
                *(
                    self._batch_item(email, dry_run=dry_run, live_lookup=use_live_lookup, stop=stop)
                    for email in emails
                )
            )

            batch = BatchResult(
                dry_run=dry_run,
                processed=sum(1 for r in results if r.status == "ok"),
                changed=sum(1 for r in results if r.changed),
                errors=sum(1 for r in results if r.status == "error"),
                skipped=sum(1 for r in results if r.status in ("skipped", "not_found")),
                stopped=bool(stop and stop.is_set()),
                results=list(results),
            )
            logger.info(
                "reconcile_batch_completed",
                processed=batch.processed,
                changed=batch.changed,
                errors=batch.errors,
                skipped=batch.skipped,
                stopped=batch.stopped,
            )
        return batch

    async def _batch_item(
        self,
        email: str,
        *,
        dry_run: bool,
        live_lookup: bool,
        stop: asyncio.Event | None,
    ) -> BatchItemResult:
        if stop is not None and stop.is_set():
            return BatchItemResult(email=email, status="skipped")

        async with self._semaphore:
            if stop is not None and stop.is_set():
                return BatchItemResult(email=email, status="skipped")
            try:
                async with self._lock_for(email):
                    result = await self._reconcile_locked(
                        email, dry_run=dry_run, live_lookup=live_lookup
                    )
            except NotFoundError as e:
                return BatchItemResult(
                    email=email, status="not_found", error_code=e.code, error=e.message
                )
            except ReconcileError as e:
                logger.warning("reconcile_item_failed", email=email, error_code=e.code, error=e.message)
                return BatchItemResult(
                    email=email, status="error", error_code=e.code, error=e.message
                )
            except Exception as e:
                logger.exception("reconcile_item_crashed", email=email)
                return BatchItemResult(
                    email=email, status="error", error_code="INTERNAL", error=str(e)
                )

        return BatchItemResult(
            email=email,
            identity_id=result.identity_id,
            status="ok",
            changed=result.changed,
            provider_used=result.provider_used,
            before=result.before,
            after=result.after,
        )

    # ------------------------------------------------------------------
    # Identity merge
    # ------------------------------------------------------------------

    async def merge_duplicates(
        self, email: str, *, dry_run: bool, caller: Caller | None = None
    ) -> MergeResult:
        self._ensure_admin(caller)
        async with self._lock_for(email):
            return await self.identity_resolver.merge_email(email, dry_run=dry_run)

    async def merge_all(self, *, dry_run: bool, caller: Caller | None = None) -> MergeSweepResult:
        """Merge every email group that has more than one active identity."""
        self._ensure_admin(caller)
        identities = await self.store.list_identities()
        counts: defaultdict[str, int] = defaultdict(int)
        for identity in identities:
            counts[identity.email] += 1
        emails = [email for email, count in counts.items() if count > 1]

        async def _merge_group(email: str) -> MergeGroupResult:
            async with self._semaphore:
                try:
                    async with self._lock_for(email):
                        merge = await self.identity_resolver.merge_email(email, dry_run=dry_run)
                except ReconcileError as e:
                    logger.warning("merge_group_failed", email=email, error_code=e.code)
                    return MergeGroupResult(
                        email=email, status="error", error_code=e.code, error=e.message
                    )
            return MergeGroupResult(email=email, status="ok", merge=merge)

        results = await asyncio.gather(*(_merge_group(e) for e in emails))
        sweep = MergeSweepResult(
            dry_run=dry_run,
            total_emails=len(emails),
            total_merged=sum(len(r.merge.duplicates) for r in results if r.merge),
            errors=sum(1 for r in results if r.status == "error"),
            results=list(results),
        )
        logger.info(
            "merge_sweep_completed",
            total_emails=sweep.total_emails,
            total_merged=sweep.total_merged,
            errors=sweep.errors,
            dry_run=dry_run,
        )
        return sweep

    # ------------------------------------------------------------------
    # Drift
    # ------------------------------------------------------------------

    async def scan_drift(
        self, *, caller: Caller | None = None, identity_ids: list[str] | None = None
    ) -> list[DriftRecord]:
        self._ensure_admin(caller)
        if identity_ids is None:
            identities = await self.store.list_identities()
        else:
            identities = []
            for identity_id in identity_ids:
                identity = await self.store.get_identity(identity_id)
                if identity is not None and not identity.disabled:
                    identities.append(identity)
        return await self.drift_detector.scan(identities)

    # ------------------------------------------------------------------
    # Entitlement checks
    # ------------------------------------------------------------------

    @staticmethod
    def check_entitlement(
        identity: Identity,
        *,
        started_at: datetime | None = None,
        pro_launch_cutoff: datetime | None = None,
    ) -> EntitlementCheck:
        """Access flags from the stored state. Admins always resolve to pro.

        Premium that started before ``pro_launch_cutoff`` is legacy premium
        and unlocks every pro feature while keeping the premium plan.
        """
        tier = Tier.PRO if identity.is_admin else identity.entitlement_tier
        is_legacy_premium = (
            tier == Tier.PREMIUM
            and started_at is not None
            and pro_launch_cutoff is not None
            and started_at < pro_launch_cutoff
        )
        return EntitlementCheck(
            tier=tier,
            has_paid_access=tier in (Tier.PREMIUM, Tier.PRO),
            has_pro_access=tier == Tier.PRO or is_legacy_premium,
            plan_label=PLAN_LABELS[tier.value],
            is_legacy_premium=is_legacy_premium,
        )

    async def entitlement_for(self, identity: Identity) -> EntitlementCheck:
        """``check_entitlement`` with the start date of the winning subscription."""
        subscriptions = await self.aggregator.list_subscriptions(identity)
        winner = self.resolver.pick_winner(subscriptions)
        started_at = None
        if winner is not None:
            started_at = winner.started_at or winner.current_period_start
        return self.check_entitlement(
            identity,
            started_at=started_at,
            pro_launch_cutoff=self.config.pro_launch_cutoff,
        )

    # ------------------------------------------------------------------
    # Admin grant / revoke
    # ------------------------------------------------------------------

    async def grant_access(
        self,
        email: str,
        tier: Tier = Tier.PREMIUM,
        status: EntitlementStatus = EntitlementStatus.ACTIVE,
        *,
        dry_run: bool,
        caller: Caller | None = None,
    ) -> ReconcileResult:
        """Upsert the person's manual subscription, then reconcile."""
        self._ensure_admin(caller)
        if tier == Tier.FREE:
            raise ReconcileError("Cannot grant the free tier; revoke instead", email=email)

        async with self._lock_for(email):
            canonical, _ = await self._canonical_for(email)
            now = self.now_provider()
            manual = Subscription(
                user_id=canonical.id,
                user_email=canonical.email,
                provider=Provider.MANUAL,
                provider_subscription_id=f"{MANUAL_SUBSCRIPTION_PREFIX}{canonical.id}",
                status=(
                    SubscriptionStatus.TRIALING
                    if status == EntitlementStatus.TRIALING
                    else SubscriptionStatus.ACTIVE
                ),
                tier=tier,
                billing_interval="month",
                current_period_start=now,
                current_period_end=now + timedelta(days=MANUAL_GRANT_PERIOD_DAYS),
            )
            stored = await self.aggregator.record_provider_snapshot(manual, dry_run=dry_run)
            logger.info(
                "manual_access_granted",
                identity_id=canonical.id,
                tier=tier.value,
                period_end=stored.current_period_end.isoformat() if stored.current_period_end else None,
                dry_run=dry_run,
            )
            return await self._reconcile_locked(
                canonical.email, dry_run=dry_run, live_lookup=False, pending=[stored]
            )

    async def revoke_access(
        self, email: str, *, dry_run: bool, caller: Caller | None = None
    ) -> ReconcileResult:
        """Cancel the manual subscription, then reconcile against what remains."""
        self._ensure_admin(caller)
        async with self._lock_for(email):
            canonical, _ = await self._canonical_for(email)
            existing = await self.store.get_subscription(
                Provider.MANUAL, f"{MANUAL_SUBSCRIPTION_PREFIX}{canonical.id}"
            )
            if existing is None:
                raise NotFoundError("No manual grant to revoke", email=canonical.email)

            canceled = existing.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELED,
                    "current_period_end": self.now_provider(),
                    "cancel_at_period_end": False,
                }
            )
            stored = await self.aggregator.record_provider_snapshot(canceled, dry_run=dry_run)
            logger.info("manual_access_revoked", identity_id=canonical.id, dry_run=dry_run)
            return await self._reconcile_locked(
                canonical.email, dry_run=dry_run, live_lookup=False, pending=[stored]
            )

    # ------------------------------------------------------------------
    # Client-reported mobile purchases
    # ------------------------------------------------------------------

    async def record_mobile_purchase(
        self,
        identity_id: str,
        *,
        original_transaction_id: str | None,
        product_id: str = "",
        active: bool,
        expires_at: datetime | None = None,
        tier: Tier | None = None,
        dry_run: bool = False,
    ) -> ReconcileResult:
        """Record a purchase reported by the mobile client and reconcile.

        The transaction must not already belong to another person; the link
        onto the identity goes through the conflict guard.
        """
        identity = await self.store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("Identity not found", identity_id=identity_id)
        identity = await self._follow_merged(identity)

        async with self._lock_for(identity.email):
            canonical, group = await self._canonical_for(identity.email)
            provider_subscription_id = (
                original_transaction_id or f"{MOBILE_UNVERIFIED_PREFIX}{canonical.id}"
            )
            existing = await self.store.get_subscription(Provider.APPLE, provider_subscription_id)
            ensure_mobile_link_available(existing, canonical.id, aliases=[i.id for i in group])

            if tier is None or tier == Tier.FREE:
                tier = Tier.PRO if "pro" in product_id.lower() else Tier.PREMIUM
            purchase = Subscription(
                user_id=canonical.id,
                user_email=canonical.email,
                provider=Provider.APPLE,
                provider_subscription_id=provider_subscription_id,
                status=SubscriptionStatus.ACTIVE if active else SubscriptionStatus.EXPIRED,
                tier=tier,
                current_period_start=self.now_provider(),
                current_period_end=expires_at,
            )
            stored = await self.aggregator.record_provider_snapshot(purchase, dry_run=dry_run)

            link: WriteOutcome | None = None
            overrides: dict[str, dict] = {}
            if original_transaction_id:
                link = await self.writer.link_mobile_transaction(
                    canonical, original_transaction_id, dry_run=dry_run
                )
                if link.applied:
                    overrides[canonical.id] = {
                        "apple_original_transaction_id": original_transaction_id
                    }

            logger.info(
                "mobile_purchase_recorded",
                identity_id=canonical.id,
                provider_subscription_id=provider_subscription_id,
                active=active,
                tier=tier.value,
                withheld=link.withheld if link else [],
                dry_run=dry_run,
            )
            result = await self._reconcile_locked(
                canonical.email,
                dry_run=dry_run,
                live_lookup=False,
                pending=[stored],
                overrides=overrides,
            )
        return result.model_copy(update={"link": link})

    async def record_purchase_event(
        self, identity_id: str, purchase: MobilePurchase, *, dry_run: bool = False
    ) -> ReconcileResult:
        return await self.record_mobile_purchase(
            identity_id,
            original_transaction_id=purchase.original_transaction_id,
            product_id=purchase.product_id,
            active=purchase.active,
            expires_at=purchase.expires_at,
            tier=purchase.tier,
            dry_run=dry_run,
        )
