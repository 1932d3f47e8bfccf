"""Resolves aggregated subscriptions into one authoritative entitlement."""

import asyncio
from datetime import UTC, datetime

import structlog

from reconciler.config import ReconcileConfig
from reconciler.errors import ProviderUnavailableError
from reconciler.models.enums import (
    PROVIDER_NONE,
    PROVIDER_PRESERVED,
    EntitlementStatus,
    SubscriptionStatus,
    Tier,
    level_for_tier,
    tier_rank,
)
from reconciler.models.identity import Identity
from reconciler.models.reconcile import LiveLookupOutcome, ResolvedEntitlement
from reconciler.models.subscription import Subscription
from reconciler.services.provider_clients import LiveLookupResult, LiveProviderCheck
from reconciler.services.subscription_aggregator import dedupe, is_active_for_entitlement

logger = structlog.get_logger(__name__)

_STATUS_RANK = {
    SubscriptionStatus.ACTIVE: 2,
    SubscriptionStatus.TRIALING: 1,
    SubscriptionStatus.INCOMPLETE: 0,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def precedence_key(subscription: Subscription) -> tuple[int, int, datetime]:
    """Sort key: tier, then active over trialing, then latest period start."""
    return (
        tier_rank(subscription.tier),
        _STATUS_RANK.get(subscription.status, -1),
        subscription.current_period_start or _EPOCH,
    )


def entitlement_status_for(subscription: Subscription) -> EntitlementStatus:
    if subscription.status == SubscriptionStatus.TRIALING:
        return EntitlementStatus.TRIALING
    # incomplete only wins while its period is still running, so it grants access
    return EntitlementStatus.ACTIVE


class PrecedenceResolver:
    """Picks the winning subscription and derives tier/level/status/provider."""

    def __init__(self, config: ReconcileConfig, now_provider=_utcnow) -> None:
        self.config = config
        self.now_provider = now_provider

    def pick_winner(self, subscriptions: list[Subscription]) -> Subscription | None:
        now = self.now_provider()
        candidates = [
            s
            for s in subscriptions
            if s.tier != Tier.FREE and is_active_for_entitlement(s, now)
        ]
        if not candidates:
            return None
        return max(candidates, key=precedence_key)

    async def _run_live_check(
        self, identity: Identity, live_check: LiveProviderCheck
    ) -> tuple[LiveLookupResult | None, LiveLookupOutcome]:
        try:
            result = await asyncio.wait_for(
                live_check(identity), timeout=self.config.provider_timeout_seconds
            )
        except TimeoutError:
            logger.warning(
                "provider_lookup_unavailable",
                identity_id=identity.id,
                reason="timeout",
                timeout_seconds=self.config.provider_timeout_seconds,
            )
            return None, "unavailable"
        except ProviderUnavailableError as e:
            logger.warning(
                "provider_lookup_unavailable",
                identity_id=identity.id,
                reason=e.message,
                **e.context,
            )
            return None, "unavailable"
        return result, "ok"

    async def resolve(
        self,
        identity: Identity,
        subscriptions: list[Subscription],
        live_check: LiveProviderCheck | None = None,
    ) -> tuple[ResolvedEntitlement, LiveLookupResult | None]:
        """Resolve the authoritative entitlement for ``identity``.

        The live check runs only when the aggregated subscriptions grant
        nothing. Returns the resolution plus the live result (for persisting
        the fresh snapshots).
        """
        winner = self.pick_winner(subscriptions)
        live_result: LiveLookupResult | None = None
        live_outcome: LiveLookupOutcome = "skipped"

        if winner is None and live_check is not None:
            live_result, live_outcome = await self._run_live_check(identity, live_check)
            if live_result is not None:
                winner = self.pick_winner(dedupe([*live_result.subscriptions, *subscriptions]))

        stripe_customer_id = identity.stripe_customer_id or (
            live_result.stripe_customer_id if live_result else None
        )

        if winner is not None:
            tier = winner.tier
            status = entitlement_status_for(winner)
            provider = winner.provider.value
            subscription_id = winner.provider_subscription_id
        elif self._should_preserve(identity, subscriptions, live_result, live_outcome):
            logger.info(
                "entitlement_preserved_on_provider_miss",
                identity_id=identity.id,
                tier=identity.entitlement_tier.value,
                live_lookup=live_outcome,
            )
            return (
                ResolvedEntitlement(
                    tier=identity.entitlement_tier,
                    level=identity.entitlement_level,
                    status=identity.entitlement_status,
                    provider=PROVIDER_PRESERVED,
                    stripe_customer_id=stripe_customer_id,
                    live_lookup=live_outcome,
                    changed=False,
                ),
                live_result,
            )
        else:
            tier = Tier.FREE
            status = EntitlementStatus.INACTIVE
            provider = PROVIDER_NONE
            subscription_id = None

        level = level_for_tier(tier)
        changed = (
            tier != identity.entitlement_tier
            or level != identity.entitlement_level
            or status != identity.entitlement_status
        )
        return (
            ResolvedEntitlement(
                tier=tier,
                level=level,
                status=status,
                provider=provider,
                stripe_customer_id=stripe_customer_id,
                subscription_id=subscription_id,
                live_lookup=live_outcome,
                changed=changed,
            ),
            live_result,
        )

    def _should_preserve(
        self,
        identity: Identity,
        subscriptions: list[Subscription],
        live_result: LiveLookupResult | None,
        live_outcome: LiveLookupOutcome,
    ) -> bool:
        """Provider-miss policy for paid identities with no evidence either way."""
        if self.config.downgrade_on_provider_miss:
            return False
        if live_outcome == "skipped" or not identity.is_paid:
            return False
        live_evidence = live_result.subscriptions if live_result else []
        return not subscriptions and not live_evidence
