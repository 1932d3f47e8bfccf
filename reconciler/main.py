"""
Entitlement Reconciler - Main FastAPI Application.

Exposes the reconciliation service over HTTP: the caller's own entitlement
and mobile purchase sync, plus admin repair, merge and drift endpoints.

Run with:
    uvicorn reconciler.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from reconciler.api.v1.admin import router as admin_router
from reconciler.api.v1.entitlements import router as entitlements_router
from reconciler.config import Settings, get_settings
from reconciler.constants import API_TITLE, API_VERSION
from reconciler.errors import ReconcileError
from reconciler.logging_config import setup_logging
from reconciler.middleware import RequestContextMiddleware
from reconciler.services.provider_clients import (
    AppStoreProviderLookup,
    CompositeProviderLookup,
    ProviderClientCache,
    StripeProviderLookup,
    build_stripe_client,
)
from reconciler.services.reconciliation import ReconciliationService
from reconciler.services.record_store import InMemoryRecordStore, SupabaseRecordStore

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES = {
    "NOT_FOUND": 404,
    "FORBIDDEN": 403,
    "CONFLICT": 409,
    "PROVIDER_UNAVAILABLE": 503,
    "MALFORMED_RECORD": 422,
}


def build_live_lookup(
    settings: Settings, cache: ProviderClientCache
) -> tuple[CompositeProviderLookup | None, AppStoreProviderLookup | None]:
    """Live provider lookups for whichever providers are configured."""
    lookups = []
    app_store: AppStoreProviderLookup | None = None

    if settings.stripe.secret_key:
        try:
            lookups.append(StripeProviderLookup(settings.stripe, cache))
            logger.info("stripe_lookup_configured")
        except ValueError as e:
            logger.warning("stripe_lookup_disabled", error=str(e))
    else:
        logger.warning("stripe_key_missing", detail="Live Stripe recovery disabled")

    if settings.app_store.verify_url:
        app_store = AppStoreProviderLookup(settings.app_store)
        lookups.append(app_store)
        logger.info("app_store_lookup_configured")

    return (CompositeProviderLookup(lookups) if lookups else None), app_store


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    if supabase_client is not None:
        record_store = SupabaseRecordStore(
            supabase_client,
            identities_table=settings.identities_table,
            subscriptions_table=settings.subscriptions_table,
            drift_table=settings.drift_table,
        )
    else:
        record_store = InMemoryRecordStore(
            identities_table=settings.identities_table,
            subscriptions_table=settings.subscriptions_table,
            drift_table=settings.drift_table,
        )
        logger.warning("record_store_in_memory", detail="State will not survive a restart")

    client_cache = ProviderClientCache(
        build_stripe_client, ttl_seconds=settings.stripe.client_cache_ttl_seconds
    )
    live_lookup, app_store_lookup = build_live_lookup(settings, client_cache)

    service = ReconciliationService(
        record_store,
        config=settings.reconcile,
        weights=settings.scoring,
        drift_config=settings.drift,
        live_check=live_lookup,
    )

    _app.state.supabase = supabase_client
    _app.state.record_store = record_store
    _app.state.client_cache = client_cache
    _app.state.reconciliation_service = service

    logger.info("services_initialized", live_lookup=live_lookup is not None)

    yield

    if app_store_lookup is not None:
        await app_store_lookup.close()
    client_cache.clear()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Keeps one canonical entitlement per person in sync with Stripe, "
        "the App Store and historical account records."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReconcileError)
async def reconcile_error_handler(_request: Request, exc: ReconcileError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.code, 400)
    logger.info("reconcile_error_response", code=exc.code, status_code=status_code)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Include routers
app.include_router(entitlements_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Entitlement reconciliation across billing providers",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
