"""Single write path for entitlement state on an identity."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog

from reconciler.models.enums import PROVIDER_NONE, PROVIDER_PRESERVED, SyncState
from reconciler.models.identity import Identity
from reconciler.models.reconcile import ResolvedEntitlement, WriteOutcome
from reconciler.services.conflict_guard import guard_identifier_updates
from reconciler.services.record_store import RecordStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


class EntitlementWriter:
    """Applies resolved entitlements; every tier/status mutation goes through here.

    Writes are skipped unless the resolution reports ``changed``. Existing
    billing customer ids are never overwritten, and mobile identifiers pass
    through the conflict guard. A stored record that still carries a nested
    namespace is rewritten flat instead of patched.
    """

    def __init__(self, store: RecordStore, now_provider=_utcnow) -> None:
        self.store = store
        self.now_provider = now_provider

    def plan(self, identity: Identity, resolved: ResolvedEntitlement) -> dict[str, Any]:
        if not resolved.changed:
            return {}
        updates: dict[str, Any] = {
            "entitlement_tier": resolved.tier,
            "entitlement_level": resolved.level,
            "entitlement_status": resolved.status,
        }
        if resolved.provider not in (PROVIDER_NONE, PROVIDER_PRESERVED):
            updates["subscription_provider"] = resolved.provider
            if not identity.billing_provider:
                updates["billing_provider"] = resolved.provider
        if resolved.stripe_customer_id and not identity.stripe_customer_id:
            updates["stripe_customer_id"] = resolved.stripe_customer_id
        updates["updated_at"] = self.now_provider()
        return updates

    async def apply(
        self, identity: Identity, resolved: ResolvedEntitlement, *, dry_run: bool
    ) -> WriteOutcome:
        updates = self.plan(identity, resolved)
        if not updates:
            return WriteOutcome(applied=False, dry_run=dry_run)

        if not dry_run:
            await self._write(identity, updates)
            logger.info(
                "entitlement_write_applied",
                identity_id=identity.id,
                tier=resolved.tier.value,
                status=resolved.status.value,
                provider=resolved.provider,
            )
        return WriteOutcome(applied=True, dry_run=dry_run, updates=_jsonable(updates))

    async def link_mobile_transaction(
        self, identity: Identity, original_transaction_id: str, *, dry_run: bool
    ) -> WriteOutcome:
        """Attach a mobile store transaction id unless a web customer already owns billing."""
        if identity.apple_original_transaction_id == original_transaction_id:
            return WriteOutcome(applied=False, dry_run=dry_run)

        allowed, withheld = guard_identifier_updates(
            identity, {"apple_original_transaction_id": original_transaction_id}
        )
        if not allowed:
            return WriteOutcome(applied=False, dry_run=dry_run, withheld=withheld)

        allowed["updated_at"] = self.now_provider()
        if not dry_run:
            await self._write(identity, allowed)
        return WriteOutcome(applied=True, dry_run=dry_run, updates=_jsonable(allowed))

    async def record_sync(
        self, identity: Identity, *, error: str | None = None, dry_run: bool
    ) -> None:
        """Stamp sync metadata after a reconciliation attempt."""
        if dry_run:
            return
        await self._write(
            identity,
            {
                "entitlement_last_synced_at": self.now_provider(),
                "entitlement_sync_state": SyncState.ERROR if error else SyncState.OK,
                "entitlement_sync_error": error,
            },
        )

    async def _write(self, identity: Identity, updates: dict[str, Any]) -> None:
        if identity.needs_flatten:
            flat = identity.model_copy(update={**updates, "needs_flatten": False})
            await self.store.replace_identity(flat)
            logger.warning("identity_record_flattened", identity_id=identity.id)
            identity.needs_flatten = False
            return
        await self.store.update_identity(identity.id, _jsonable(updates))
