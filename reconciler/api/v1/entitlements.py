"""Entitlement endpoints for the authenticated user."""

import structlog
from fastapi import APIRouter, HTTPException, Request

from reconciler.auth import CurrentUser
from reconciler.errors import NotFoundError
from reconciler.models.reconcile import EntitlementCheck, ReconcileResult
from reconciler.models.subscription import MobilePurchase
from reconciler.services.reconciliation import ReconciliationService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


def get_reconciliation_service(request: Request) -> ReconciliationService:
    service = getattr(request.app.state, "reconciliation_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Reconciliation service unavailable")
    return service


@router.get("/me", response_model=EntitlementCheck)
async def my_entitlement(request: Request, user: CurrentUser) -> EntitlementCheck:
    """Return access flags for the authenticated user's stored entitlement."""
    if user.identity is None:
        raise NotFoundError("Identity not found", identity_id=user.id)
    service = get_reconciliation_service(request)
    return await service.entitlement_for(user.identity)


@router.post("/apple-purchase", response_model=ReconcileResult)
async def record_apple_purchase(
    body: MobilePurchase,
    request: Request,
    user: CurrentUser,
) -> ReconcileResult:
    """Record a purchase reported by the iOS client and reconcile the caller."""
    service = get_reconciliation_service(request)
    logger.info(
        "apple_purchase_reported",
        identity_id=user.id,
        product_id=body.product_id,
        active=body.active,
    )
    return await service.record_purchase_event(user.id, body)
