"""Read-only drift scan: flags identities whose stored entitlement disagrees with its evidence."""

import asyncio
from datetime import UTC, datetime, timedelta

import structlog

from reconciler.config import DriftConfig
from reconciler.errors import ReconcileError
from reconciler.models.enums import (
    PROVIDER_NONE,
    DriftType,
    Severity,
    SyncState,
    Tier,
)
from reconciler.models.identity import Identity
from reconciler.models.reconcile import DriftRecord
from reconciler.services.precedence_resolver import PrecedenceResolver
from reconciler.services.record_store import RecordStore
from reconciler.services.subscription_aggregator import SubscriptionAggregator

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DriftDetector:
    """Evaluates each identity independently and persists a fresh snapshot of findings."""

    def __init__(
        self,
        store: RecordStore,
        aggregator: SubscriptionAggregator,
        resolver: PrecedenceResolver,
        config: DriftConfig | None = None,
        max_concurrency: int = 5,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.resolver = resolver
        self.config = config or DriftConfig()
        self.max_concurrency = max_concurrency
        self.now_provider = now_provider

    def _record(
        self,
        identity: Identity,
        drift_type: DriftType,
        severity: Severity,
        details: str,
        now: datetime,
    ) -> DriftRecord:
        return DriftRecord(
            user_id=identity.id,
            user_email=identity.email,
            drift_type=drift_type,
            severity=severity,
            details=details,
            last_synced_at=identity.entitlement_last_synced_at,
            detected_at=now,
        )

    async def evaluate(self, identity: Identity) -> list[DriftRecord]:
        now = self.now_provider()
        findings: list[DriftRecord] = []

        billing_provider = identity.billing_provider
        has_billing = bool(billing_provider) and billing_provider != PROVIDER_NONE

        if has_billing:
            last_synced = identity.entitlement_last_synced_at
            stale_before = now - timedelta(days=self.config.stale_after_days)
            if last_synced is None:
                findings.append(
                    self._record(
                        identity, DriftType.STALE_SYNC, Severity.MEDIUM,
                        "Entitlement has never been synced", now,
                    )
                )
            elif last_synced < stale_before:
                days = (now - last_synced).days
                findings.append(
                    self._record(
                        identity, DriftType.STALE_SYNC, Severity.MEDIUM,
                        f"Entitlement last synced {days} days ago", now,
                    )
                )

        if identity.entitlement_sync_state == SyncState.ERROR:
            findings.append(
                self._record(
                    identity, DriftType.SYNC_ERROR, Severity.HIGH,
                    identity.entitlement_sync_error or "Last sync failed", now,
                )
            )

        if identity.has_web_customer and identity.entitlement_tier == Tier.FREE:
            findings.append(
                self._record(
                    identity, DriftType.PAID_BUT_FREE, Severity.HIGH,
                    f"Billing customer {identity.stripe_customer_id} exists but tier is free",
                    now,
                )
            )

        if (
            has_billing
            and identity.subscription_provider
            and identity.subscription_provider != PROVIDER_NONE
            and identity.subscription_provider != billing_provider
        ):
            findings.append(
                self._record(
                    identity, DriftType.PROVIDER_MISMATCH, Severity.MEDIUM,
                    f"billing_provider={billing_provider} "
                    f"subscription_provider={identity.subscription_provider}",
                    now,
                )
            )

        if self.config.check_resolution:
            subscriptions = await self.aggregator.list_subscriptions(identity)
            resolved, _ = await self.resolver.resolve(identity, subscriptions)
            if resolved.changed:
                findings.append(
                    self._record(
                        identity, DriftType.ENTITLEMENT_MISMATCH, Severity.HIGH,
                        f"stored {identity.entitlement_tier.value}/"
                        f"{identity.entitlement_status.value}, "
                        f"evidence says {resolved.tier.value}/{resolved.status.value}",
                        now,
                    )
                )
        return findings

    async def scan(self, identities: list[Identity]) -> list[DriftRecord]:
        """Replace unresolved findings for ``identities`` with a fresh scan.

        Never writes to identities; only drift records are persisted. An
        identity whose evaluation fails is logged and keeps its previous
        findings.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(identity: Identity) -> list[DriftRecord] | None:
            async with semaphore:
                try:
                    return await self.evaluate(identity)
                except ReconcileError as e:
                    logger.warning(
                        "drift_evaluate_failed",
                        identity_id=identity.id,
                        error_code=e.code,
                        error=e.message,
                    )
                except Exception:
                    logger.exception("drift_evaluate_failed", identity_id=identity.id)
                return None

        per_identity = await asyncio.gather(*(_bounded(i) for i in identities))
        evaluated = [i.id for i, records in zip(identities, per_identity) if records is not None]
        findings = [record for records in per_identity if records for record in records]

        cleared = await self.store.clear_drift_records(evaluated)
        if findings:
            await self.store.insert_drift_records(findings)

        logger.info(
            "drift_scan_completed",
            scanned=len(identities),
            failed=len(identities) - len(evaluated),
            cleared=cleared,
            found=len(findings),
        )
        return findings
