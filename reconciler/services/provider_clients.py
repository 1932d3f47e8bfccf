"""
Live provider lookups used by the precedence resolver for on-demand repair.

Both lookups are reached only through the resolver's live-check hook; the
resolver and writer never call a provider directly.

Usage:
    cache = ProviderClientCache(stripe.StripeClient, ttl_seconds=300)
    lookup = CompositeProviderLookup([
        StripeProviderLookup(settings.stripe, cache),
        AppStoreProviderLookup(settings.app_store),
    ])
    result = await lookup(identity)
"""

import asyncio
import hashlib
import time
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Protocol

import httpx
import stripe
import structlog
from pydantic import BaseModel, Field, ValidationError

from reconciler.config import AppStoreConfig, StripeConfig
from reconciler.errors import ProviderUnavailableError
from reconciler.models.enums import Provider, Tier, normalize_tier
from reconciler.models.identity import Identity
from reconciler.models.subscription import Subscription

logger = structlog.get_logger(__name__)


class LiveLookupResult(BaseModel):
    """Subscriptions a provider reports right now for one identity."""

    subscriptions: list[Subscription] = Field(default_factory=list)
    stripe_customer_id: str | None = None


class LiveProviderCheck(Protocol):
    async def __call__(self, identity: Identity) -> LiveLookupResult: ...


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _as_dict(obj: Any) -> dict:
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _mask(key: str) -> str:
    if len(key) < 12:
        return "***"
    return f"{key[:7]}...{key[-4:]}"


class ProviderClientCache:
    """Short-lived holder for one provider client object.

    The client is rebuilt when it is older than ``ttl_seconds`` or when the
    credential fingerprint changes. Owned and injected by the caller.
    """

    def __init__(
        self,
        factory: Callable[[str], Any],
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.factory = factory
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._client: Any = None
        self._fingerprint: str | None = None
        self._created_at = 0.0

    @staticmethod
    def fingerprint(credential: str) -> str:
        return hashlib.sha256(credential.encode("utf-8")).hexdigest()

    def get(self, credential: str, *, force_refresh: bool = False) -> Any:
        fingerprint = self.fingerprint(credential)
        now = self.clock()
        age = now - self._created_at
        if (
            force_refresh
            or self._client is None
            or fingerprint != self._fingerprint
            or age > self.ttl_seconds
        ):
            logger.info(
                "provider_client_created",
                key=_mask(credential),
                age_seconds=round(age, 1) if self._client is not None else None,
                forced=force_refresh,
            )
            self._client = self.factory(credential)
            self._fingerprint = fingerprint
            self._created_at = now
        return self._client

    def clear(self) -> None:
        self._client = None
        self._fingerprint = None
        self._created_at = 0.0


def build_stripe_client(secret_key: str) -> Any:
    return stripe.StripeClient(secret_key)


class StripeProviderLookup:
    """Re-derives web subscriptions from the live Stripe customer record."""

    def __init__(self, config: StripeConfig, cache: ProviderClientCache) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")
        if not config.secret_key.startswith("sk_"):
            raise ValueError("Stripe secret key must be a secret key (sk_)")
        self.config = config
        self.cache = cache

    async def __call__(self, identity: Identity) -> LiveLookupResult:
        client = self.cache.get(self.config.secret_key)
        try:
            customer_id = identity.stripe_customer_id or await self._find_customer_id(
                client, identity.email
            )
            if not customer_id:
                return LiveLookupResult()
            response = await asyncio.to_thread(
                client.subscriptions.list,
                params={"customer": customer_id, "status": "all", "limit": 10},
            )
        except stripe.StripeError as e:
            raise ProviderUnavailableError(
                "Stripe lookup failed", provider=Provider.STRIPE.value, detail=str(e)
            ) from e

        subscriptions = [
            self.subscription_from_object(obj, identity=identity)
            for obj in getattr(response, "data", None) or []
        ]
        return LiveLookupResult(subscriptions=subscriptions, stripe_customer_id=customer_id)

    async def _find_customer_id(self, client: Any, email: str) -> str | None:
        response = await asyncio.to_thread(
            client.customers.list, params={"email": email, "limit": 1}
        )
        customers = getattr(response, "data", None) or []
        if not customers:
            return None
        return str(_as_dict(customers[0]).get("id") or "") or None

    def subscription_from_object(self, subscription_obj: Any, *, identity: Identity) -> Subscription:
        sub = _as_dict(subscription_obj)
        items = (sub.get("items") or {}).get("data") or []
        first_item = _as_dict(items[0]) if items else {}
        price = first_item.get("price") or {}
        price_id = price.get("id")
        recurring = price.get("recurring") or {}

        tier = Tier.PRO if price_id in self.config.pro_price_ids else Tier.PREMIUM

        # Newer API versions moved the billing period onto the subscription item.
        period_start = sub.get("current_period_start") or first_item.get("current_period_start")
        period_end = sub.get("current_period_end") or first_item.get("current_period_end")

        return Subscription(
            user_id=identity.id,
            user_email=identity.email,
            provider=Provider.STRIPE,
            provider_subscription_id=str(sub.get("id", "")),
            status=sub.get("status"),
            tier=tier,
            billing_interval=recurring.get("interval"),
            current_period_start=_to_datetime(period_start),
            current_period_end=_to_datetime(period_end),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            started_at=_to_datetime(sub.get("start_date")),
        )


class AppStoreProviderLookup:
    """Looks up a mobile store transaction through the receipt verification service."""

    def __init__(self, config: AppStoreConfig, client: httpx.AsyncClient | None = None) -> None:
        if not config.verify_url:
            raise ValueError("App Store verification URL is required")
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post_with_retry(self, payload: dict) -> httpx.Response:
        """POST with exponential backoff on 5xx, timeouts and connection errors.

        4xx responses are not retried.
        """
        last_exception: Exception | None = None
        for attempt in range(self.config.max_retries):
            try:
                response = await self._client.post(self.config.verify_url, json=payload)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code < 500:
                    raise
                last_exception = exc
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_exception = exc

            delay = self.config.retry_base_delay_seconds * (2**attempt)
            logger.warning(
                "app_store_request_retry",
                attempt=attempt + 1,
                max_retries=self.config.max_retries,
                error=str(last_exception),
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)

        raise last_exception  # type: ignore[misc]

    async def __call__(self, identity: Identity) -> LiveLookupResult:
        transaction_id = identity.apple_original_transaction_id
        if not transaction_id:
            return LiveLookupResult()

        payload = {"original_transaction_id": transaction_id}
        if self.config.shared_secret:
            payload["shared_secret"] = self.config.shared_secret
        try:
            response = await self._post_with_retry(payload)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return LiveLookupResult()
            raise ProviderUnavailableError(
                "App Store lookup failed", provider=Provider.APPLE.value, detail=str(e)
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                "App Store lookup failed", provider=Provider.APPLE.value, detail=str(e)
            ) from e

        try:
            subscription = self._subscription_from_body(response.json(), identity, transaction_id)
        except (ValueError, ValidationError) as e:
            raise ProviderUnavailableError(
                "App Store returned an unreadable response",
                provider=Provider.APPLE.value,
                detail=str(e),
            ) from e
        return LiveLookupResult(subscriptions=[subscription])

    def _subscription_from_body(
        self, body: Any, identity: Identity, transaction_id: str
    ) -> Subscription:
        if not isinstance(body, dict):
            raise ValueError("expected a JSON object")
        product_id = str(body.get("product_id") or "")
        tier = normalize_tier(body.get("tier"))
        if tier == Tier.FREE:
            tier = Tier.PRO if "pro" in product_id.lower() else Tier.PREMIUM
        return Subscription(
            user_id=identity.id,
            user_email=identity.email,
            provider=Provider.APPLE,
            provider_subscription_id=transaction_id,
            status=body.get("status"),
            tier=tier,
            billing_interval=body.get("billing_interval"),
            current_period_start=body.get("purchase_date"),
            current_period_end=body.get("expires_at"),
        )


class CompositeProviderLookup:
    """Runs several live lookups and merges what they report.

    Fails only when every provider failed; a partial answer is still an answer.
    """

    def __init__(self, lookups: list[Callable[[Identity], Awaitable[LiveLookupResult]]]) -> None:
        self.lookups = lookups

    async def __call__(self, identity: Identity) -> LiveLookupResult:
        if not self.lookups:
            return LiveLookupResult()

        outcomes = await asyncio.gather(
            *(lookup(identity) for lookup in self.lookups), return_exceptions=True
        )
        merged = LiveLookupResult()
        failures: list[BaseException] = []
        for outcome in outcomes:
            if isinstance(outcome, ProviderUnavailableError):
                failures.append(outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            merged.subscriptions.extend(outcome.subscriptions)
            merged.stripe_customer_id = merged.stripe_customer_id or outcome.stripe_customer_id

        if failures and len(failures) == len(outcomes):
            raise ProviderUnavailableError(
                "All live provider lookups failed",
                providers=[f.context.get("provider") for f in failures],
            )
        for failure in failures:
            logger.warning(
                "provider_lookup_partial_failure",
                identity_id=identity.id,
                provider=failure.context.get("provider"),
                error=failure.message,
            )
        return merged
