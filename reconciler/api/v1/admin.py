"""Admin endpoints: thin callers of the reconciliation service."""

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from reconciler.api.v1.entitlements import get_reconciliation_service
from reconciler.auth import CurrentUser
from reconciler.models.enums import EntitlementStatus, Tier
from reconciler.models.reconcile import (
    BatchResult,
    DriftRecord,
    MergeResult,
    MergeSweepResult,
    ReconcileResult,
)

router = APIRouter(prefix="/admin", tags=["admin"])


class EmailRequest(BaseModel):
    email: str = Field(min_length=3, description="Email of the person to act on")
    dry_run: bool = False


class ReconcileRequest(EmailRequest):
    live_lookup: bool = True


class BatchRequest(BaseModel):
    dry_run: bool = True
    limit: int | None = Field(default=None, ge=1)
    tier_filter: Tier | None = None
    use_live_lookup: bool = False


class GrantRequest(EmailRequest):
    tier: Tier = Tier.PREMIUM
    status: EntitlementStatus = EntitlementStatus.ACTIVE


class SweepRequest(BaseModel):
    dry_run: bool = True


class DriftScanRequest(BaseModel):
    identity_ids: list[str] | None = None


class DriftScanResponse(BaseModel):
    found: int
    records: list[DriftRecord]


@router.post("/entitlements/reconcile", response_model=ReconcileResult)
async def reconcile_entitlement(
    body: ReconcileRequest, request: Request, user: CurrentUser
) -> ReconcileResult:
    """Repair one person's entitlement from their subscription evidence."""
    service = get_reconciliation_service(request)
    return await service.reconcile_one(
        body.email, dry_run=body.dry_run, caller=user, live_lookup=body.live_lookup
    )


@router.post("/entitlements/reconcile-batch", response_model=BatchResult)
async def reconcile_batch(body: BatchRequest, request: Request, user: CurrentUser) -> BatchResult:
    """Reconcile many identities. Defaults to a dry run."""
    service = get_reconciliation_service(request)
    return await service.reconcile_batch(
        dry_run=body.dry_run,
        limit=body.limit,
        tier_filter=body.tier_filter,
        caller=user,
        use_live_lookup=body.use_live_lookup,
    )


@router.post("/entitlements/grant", response_model=ReconcileResult)
async def grant_access(body: GrantRequest, request: Request, user: CurrentUser) -> ReconcileResult:
    service = get_reconciliation_service(request)
    return await service.grant_access(
        body.email, body.tier, body.status, dry_run=body.dry_run, caller=user
    )


@router.post("/entitlements/revoke", response_model=ReconcileResult)
async def revoke_access(body: EmailRequest, request: Request, user: CurrentUser) -> ReconcileResult:
    service = get_reconciliation_service(request)
    return await service.revoke_access(body.email, dry_run=body.dry_run, caller=user)


@router.post("/identities/merge", response_model=MergeResult)
async def merge_identities(body: EmailRequest, request: Request, user: CurrentUser) -> MergeResult:
    """Fold duplicate identities for one email into the canonical one."""
    service = get_reconciliation_service(request)
    return await service.merge_duplicates(body.email, dry_run=body.dry_run, caller=user)


@router.post("/identities/merge-all", response_model=MergeSweepResult)
async def merge_all_identities(
    body: SweepRequest, request: Request, user: CurrentUser
) -> MergeSweepResult:
    service = get_reconciliation_service(request)
    return await service.merge_all(dry_run=body.dry_run, caller=user)


@router.post("/drift/scan", response_model=DriftScanResponse)
async def scan_drift(body: DriftScanRequest, request: Request, user: CurrentUser) -> DriftScanResponse:
    """Recompute drift findings; never changes any entitlement."""
    service = get_reconciliation_service(request)
    records = await service.scan_drift(caller=user, identity_ids=body.identity_ids)
    return DriftScanResponse(found=len(records), records=records)
