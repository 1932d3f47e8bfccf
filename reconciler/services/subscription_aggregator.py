"""Collects every known subscription for an identity across providers."""

from datetime import UTC, datetime
from typing import Iterable

import structlog

from reconciler.models.enums import Provider, SubscriptionStatus
from reconciler.models.identity import Identity
from reconciler.models.subscription import Subscription
from reconciler.services.record_store import RecordStore

logger = structlog.get_logger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
FINAL_SUBSCRIPTION_STATUSES = {SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def is_active_for_entitlement(subscription: Subscription, now: datetime) -> bool:
    """Whether a subscription currently grants access.

    A known period end at or before ``now`` always means inactive, whatever
    the stored status says. ``incomplete`` only counts while its period end
    is known and still ahead.
    """
    period_end = subscription.current_period_end
    if period_end is not None and period_end <= now:
        return False
    if subscription.status in ACTIVE_SUBSCRIPTION_STATUSES:
        return True
    return subscription.status == SubscriptionStatus.INCOMPLETE and period_end is not None


def merge_provider_snapshot(
    stored: Subscription | None, fresh: Subscription
) -> Subscription:
    """Fold a fresh provider snapshot into the stored row.

    ``started_at`` is immutable once set, and a known period end never moves
    earlier unless the subscription was explicitly canceled/expired.
    """
    if stored is None:
        merged = fresh.model_copy(deep=True)
        if merged.started_at is None:
            merged.started_at = merged.current_period_start
        return merged

    merged = fresh.model_copy(deep=True)
    merged.id = stored.id
    merged.user_id = fresh.user_id or stored.user_id
    merged.user_email = fresh.user_email or stored.user_email
    merged.started_at = stored.started_at or fresh.started_at or fresh.current_period_start

    if (
        stored.current_period_end is not None
        and fresh.status not in FINAL_SUBSCRIPTION_STATUSES
        and (fresh.current_period_end is None or fresh.current_period_end < stored.current_period_end)
    ):
        merged.current_period_end = stored.current_period_end
    return merged


def dedupe(subscriptions: Iterable[Subscription]) -> list[Subscription]:
    seen: set[tuple[Provider, str]] = set()
    unique: list[Subscription] = []
    for sub in subscriptions:
        if sub.key in seen:
            continue
        seen.add(sub.key)
        unique.append(sub)
    return unique


class SubscriptionAggregator:
    """Reads subscriptions for an identity; always a fresh read, never cached."""

    def __init__(
        self,
        store: RecordStore,
        legacy_default_provider: Provider = Provider.STRIPE,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.legacy_default_provider = legacy_default_provider
        self.now_provider = now_provider

    async def list_subscriptions(
        self,
        identity: Identity,
        merged_ids: Iterable[str] = (),
        pending: Iterable[Subscription] = (),
        link_legacy: bool = False,
    ) -> list[Subscription]:
        """Subscriptions by owner id, falling back to the legacy email join.

        ``merged_ids`` are duplicate identities being folded into ``identity``;
        their rows count as owned by it. ``pending`` rows are owned snapshots
        not yet persisted (dry runs) and shadow stored rows with the same key.
        Email-joined rows without an owner are returned as owned by
        ``identity`` and, with ``link_legacy``, stored that way.
        """
        owner_ids = [identity.id, *[i for i in merged_ids if i != identity.id]]
        by_id = [*pending, *await self.store.list_subscriptions(owner_ids)]
        if by_id:
            return dedupe(by_id)

        by_email = await self.store.list_subscriptions_by_email(
            identity.email, self.legacy_default_provider
        )
        if by_email:
            logger.info(
                "subscriptions_email_fallback",
                identity_id=identity.id,
                provider=self.legacy_default_provider.value,
                count=len(by_email),
            )
        unowned = [s for s in by_email if not s.user_id]
        for subscription in unowned:
            subscription.user_id = identity.id
            if link_legacy:
                await self.store.upsert_subscription(subscription)
        if unowned and link_legacy:
            logger.info(
                "legacy_subscriptions_linked",
                identity_id=identity.id,
                subscription_ids=[s.provider_subscription_id for s in unowned],
            )
        return dedupe(by_email)

    def active(self, subscriptions: Iterable[Subscription]) -> list[Subscription]:
        now = self.now_provider()
        return [s for s in subscriptions if is_active_for_entitlement(s, now)]

    async def record_provider_snapshot(
        self, fresh: Subscription, *, dry_run: bool = False
    ) -> Subscription:
        """Upsert a provider-sync snapshot under the merge rules."""
        stored = await self.store.get_subscription(fresh.provider, fresh.provider_subscription_id)
        merged = merge_provider_snapshot(stored, fresh)
        merged.updated_at = self.now_provider()
        if stored is None:
            merged.created_at = merged.updated_at
        if dry_run:
            return merged
        return await self.store.upsert_subscription(merged)
