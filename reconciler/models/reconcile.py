"""Result payloads for the reconciliation operations and drift findings."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from reconciler.models.enums import (
    DriftType,
    EntitlementLevel,
    EntitlementStatus,
    Severity,
    Tier,
)
from reconciler.models.identity import Identity

LiveLookupOutcome = Literal["skipped", "ok", "unavailable"]


class EntitlementSnapshot(BaseModel):
    """Before/after view of an identity's entitlement fields."""

    tier: Tier
    level: EntitlementLevel
    status: EntitlementStatus
    stripe_customer_id: str | None = None
    billing_provider: str | None = None

    @classmethod
    def of(cls, identity: Identity) -> "EntitlementSnapshot":
        return cls(
            tier=identity.entitlement_tier,
            level=identity.entitlement_level,
            status=identity.entitlement_status,
            stripe_customer_id=identity.stripe_customer_id,
            billing_provider=identity.billing_provider,
        )


class ResolvedEntitlement(BaseModel):
    """Authoritative entitlement computed from subscription evidence."""

    tier: Tier
    level: EntitlementLevel
    status: EntitlementStatus
    provider: str
    stripe_customer_id: str | None = None
    subscription_id: str | None = None
    live_lookup: LiveLookupOutcome = "skipped"
    changed: bool


class WriteOutcome(BaseModel):
    """What the entitlement writer applied (or would apply, in a dry run)."""

    applied: bool
    dry_run: bool
    updates: dict[str, Any] = Field(default_factory=dict)
    withheld: list[str] = Field(default_factory=list)


class OwnedRecordMove(BaseModel):
    """One owned row moved from a duplicate identity to the canonical one."""

    table: str
    record_id: str
    field: str
    from_value: str
    to_value: str


class MergeResult(BaseModel):
    """Outcome of resolving one email group to a canonical identity."""

    email: str
    dry_run: bool
    canonical: Identity
    duplicates: list[Identity] = Field(default_factory=list)
    already_merged_ids: list[str] = Field(default_factory=list)
    provider: str | None = None
    stripe_customer_id: str | None = None
    identity_updates: dict[str, dict[str, Any]] = Field(default_factory=dict)
    reassignments: list[OwnedRecordMove] = Field(default_factory=list)
    changed: bool

    @property
    def merged_ids(self) -> list[str]:
        return [d.id for d in self.duplicates] + self.already_merged_ids


class MergeGroupResult(BaseModel):
    email: str
    status: Literal["ok", "error"]
    merge: MergeResult | None = None
    error_code: str | None = None
    error: str | None = None


class MergeSweepResult(BaseModel):
    dry_run: bool
    total_emails: int
    total_merged: int
    errors: int
    results: list[MergeGroupResult] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    """Single-identity repair result, auditable after the fact."""

    email: str
    identity_id: str
    dry_run: bool
    before: EntitlementSnapshot
    after: EntitlementSnapshot
    provider_used: str
    live_lookup: LiveLookupOutcome
    changed: bool
    write: WriteOutcome
    merge: MergeResult | None = None
    # Mobile transaction link, only for purchase events
    link: WriteOutcome | None = None


class BatchItemResult(BaseModel):
    email: str
    identity_id: str | None = None
    status: Literal["ok", "error", "skipped", "not_found"]
    changed: bool = False
    provider_used: str | None = None
    before: EntitlementSnapshot | None = None
    after: EntitlementSnapshot | None = None
    error_code: str | None = None
    error: str | None = None


class BatchResult(BaseModel):
    dry_run: bool
    processed: int
    changed: int
    errors: int
    skipped: int
    stopped: bool
    results: list[BatchItemResult] = Field(default_factory=list)


class EntitlementCheck(BaseModel):
    tier: Tier
    has_paid_access: bool
    has_pro_access: bool
    plan_label: str
    is_legacy_premium: bool = False


class DriftRecord(BaseModel):
    """Point-in-time drift finding; regenerated on every scan."""

    id: str | None = None
    user_id: str
    user_email: str
    drift_type: DriftType
    severity: Severity
    details: str
    last_synced_at: datetime | None = None
    detected_at: datetime
    resolved: bool = False

    def to_record(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)
