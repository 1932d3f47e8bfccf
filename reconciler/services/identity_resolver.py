"""
Identity deduplication: pick one canonical identity per email and fold the
duplicates into it.

Canonical selection (weights configurable via ScoringWeights):
    active pro > active premium > founding member > web customer id >
    most recently updated > oldest created
"""

from datetime import UTC, datetime
from typing import Any

import structlog

from reconciler.config import ScoringWeights
from reconciler.constants import OWNED_RECORD_FIELDS
from reconciler.errors import NotFoundError
from reconciler.models.enums import EntitlementStatus, Provider, Tier
from reconciler.models.identity import Identity, normalize_email
from reconciler.models.reconcile import MergeResult, OwnedRecordMove
from reconciler.services.record_store import RecordStore

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def score_identities(
    identities: list[Identity], weights: ScoringWeights
) -> dict[str, int]:
    """Score every candidate; recency and age bonuses go to one record each."""
    scores: dict[str, int] = {}
    for identity in identities:
        score = 0
        if identity.entitlement_status == EntitlementStatus.ACTIVE:
            if identity.entitlement_tier == Tier.PRO:
                score += weights.active_pro
            elif identity.entitlement_tier == Tier.PREMIUM:
                score += weights.active_premium
        if identity.is_founding_member:
            score += weights.founding_member
        if identity.has_web_customer:
            score += weights.web_customer_id
        scores[identity.id] = score

    updated = [i for i in identities if i.updated_at is not None]
    if updated:
        newest = min(updated, key=lambda i: (-i.updated_at.timestamp(), i.id))
        scores[newest.id] += weights.most_recently_updated

    created = [i for i in identities if i.created_at is not None]
    if created:
        oldest = min(created, key=lambda i: (i.created_at, i.id))
        scores[oldest.id] += weights.oldest_created
    return scores


def pick_canonical(identities: list[Identity], weights: ScoringWeights) -> Identity:
    """Highest score wins; ties go to the oldest record, then the lowest id."""
    scores = score_identities(identities, weights)
    return sorted(
        identities,
        key=lambda i: (-scores[i.id], i.created_at or _EPOCH, i.id),
    )[0]


def pick_provider(identities: list[Identity], canonical: Identity) -> str | None:
    """Web wins if any record signals it, then mobile; never a silent mobile default."""
    signals = {i.provider_signal() for i in identities}
    if Provider.STRIPE in signals:
        return Provider.STRIPE.value
    if Provider.APPLE in signals:
        return Provider.APPLE.value
    existing = canonical.billing_provider
    return existing if existing and existing != "unknown" else None


def pick_web_customer_id(identities: list[Identity]) -> str | None:
    """Prefer a customer id on an active record, else any valid one."""
    for identity in identities:
        if identity.has_web_customer and identity.entitlement_status == EntitlementStatus.ACTIVE:
            return identity.stripe_customer_id
    for identity in identities:
        if identity.has_web_customer:
            return identity.stripe_customer_id
    return None


class IdentityResolver:
    """Plans and applies the merge of one email group."""

    def __init__(
        self,
        store: RecordStore,
        weights: ScoringWeights | None = None,
        owned_fields: list[tuple[str, str]] | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.weights = weights or ScoringWeights()
        self.owned_fields = owned_fields if owned_fields is not None else OWNED_RECORD_FIELDS
        self.now_provider = now_provider

    async def merge_email(self, email: str, *, dry_run: bool) -> MergeResult:
        identities = await self.store.find_identities_by_email(email)
        if not identities:
            raise NotFoundError(f"No identity found for {normalize_email(email)}")
        return await self.resolve_canonical(identities, dry_run=dry_run)

    async def resolve_canonical(
        self, identities: list[Identity], *, dry_run: bool
    ) -> MergeResult:
        """Pick the canonical identity for one email group and fold the rest in.

        Rerunning on an already-merged group is a no-op with ``changed=False``.
        """
        active = [i for i in identities if not i.disabled]
        if not active:
            raise NotFoundError(
                "Every identity for this email is disabled",
                email=identities[0].email if identities else None,
            )

        canonical = pick_canonical(active, self.weights)
        duplicates = [i for i in active if i.id != canonical.id]
        already_merged = [i for i in identities if i.disabled and i.merged_into == canonical.id]

        provider = pick_provider(identities, canonical)
        identity_updates = self._plan_identity_updates(
            canonical, duplicates, identities, provider
        )
        reassignments = await self._plan_reassignments(canonical, duplicates + already_merged)

        result = MergeResult(
            email=canonical.email,
            dry_run=dry_run,
            canonical=canonical,
            duplicates=duplicates,
            already_merged_ids=[i.id for i in already_merged],
            provider=provider,
            stripe_customer_id=identity_updates.get(canonical.id, {}).get(
                "stripe_customer_id", canonical.stripe_customer_id
            ),
            identity_updates=identity_updates,
            reassignments=reassignments,
            changed=bool(identity_updates or reassignments),
        )

        logger.info(
            "identity_merge_planned",
            email=canonical.email,
            canonical_id=canonical.id,
            duplicates=len(duplicates),
            reassignments=len(reassignments),
            provider=provider,
            dry_run=dry_run,
        )
        if not dry_run and result.changed:
            await self._apply(result)
        return result

    def _plan_identity_updates(
        self,
        canonical: Identity,
        duplicates: list[Identity],
        group: list[Identity],
        provider: str | None,
    ) -> dict[str, dict[str, Any]]:
        updates: dict[str, dict[str, Any]] = {}

        canonical_changes: dict[str, Any] = {}
        if provider and canonical.billing_provider != provider:
            canonical_changes["billing_provider"] = provider
        if not canonical.stripe_customer_id:
            customer_id = pick_web_customer_id(group)
            if customer_id:
                canonical_changes["stripe_customer_id"] = customer_id
        if (
            not canonical.apple_original_transaction_id
            and not canonical.has_web_customer
            and "stripe_customer_id" not in canonical_changes
        ):
            carried = next(
                (i.apple_original_transaction_id for i in group if i.apple_original_transaction_id),
                None,
            )
            if carried:
                canonical_changes["apple_original_transaction_id"] = carried
        if canonical_changes:
            updates[canonical.id] = canonical_changes

        for duplicate in duplicates:
            updates[duplicate.id] = {"merged_into": canonical.id, "disabled": True}
        return updates

    async def _plan_reassignments(
        self, canonical: Identity, losers: list[Identity]
    ) -> list[OwnedRecordMove]:
        moves: list[OwnedRecordMove] = []
        for loser in losers:
            for table, field in self.owned_fields:
                by_email = field.endswith("_email")
                from_value = loser.email if by_email else loser.id
                to_value = canonical.email if by_email else canonical.id
                if from_value == to_value:
                    # Email-keyed rows already point at the shared email.
                    continue
                owned = await self.store.list_owned(table, field, from_value)
                moves.extend(
                    OwnedRecordMove(
                        table=table,
                        record_id=str(row["id"]),
                        field=field,
                        from_value=from_value,
                        to_value=to_value,
                    )
                    for row in owned
                )
        return moves

    async def _apply(self, result: MergeResult) -> None:
        now = self.now_provider().isoformat()
        # Canonical first so a partial failure never leaves owned rows pointing
        # at a disabled identity without a forwarding pointer.
        for identity_id, values in result.identity_updates.items():
            await self.store.update_identity(identity_id, {**values, "updated_at": now})

        for move in result.reassignments:
            await self.store.update_owned(move.table, move.record_id, move.field, move.to_value)

        logger.info(
            "identity_merge_applied",
            email=result.email,
            canonical_id=result.canonical.id,
            merged=[d.id for d in result.duplicates],
            reassigned=len(result.reassignments),
        )
