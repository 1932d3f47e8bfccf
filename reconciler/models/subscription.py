"""Provider subscription model."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, field_validator

from reconciler.models.enums import (
    Provider,
    SubscriptionStatus,
    Tier,
    normalize_subscription_status,
    normalize_tier,
)
from reconciler.models.identity import ensure_utc, normalize_email


class Subscription(BaseModel):
    """One provider's view of a recurring grant.

    ``(provider, provider_subscription_id)`` is unique. Rows are never
    hard-deleted; they move to canceled/expired instead.
    """

    id: str | None = None
    user_id: str | None = None
    user_email: str | None = None
    provider: Provider
    provider_subscription_id: str
    status: SubscriptionStatus
    tier: Tier = Tier.FREE
    billing_interval: Literal["month", "year"] | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> SubscriptionStatus:
        return normalize_subscription_status(value)

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: object) -> Tier:
        return normalize_tier(value)

    @field_validator("user_email", mode="before")
    @classmethod
    def _normalize_email(cls, value: object) -> str | None:
        return normalize_email(value) or None

    @field_validator("billing_interval", mode="before")
    @classmethod
    def _normalize_interval(cls, value: object) -> str | None:
        cleaned = str(value or "").strip().lower()
        if cleaned in {"month", "monthly"}:
            return "month"
        if cleaned in {"year", "yearly", "annual"}:
            return "year"
        return None

    @field_validator(
        "current_period_start",
        "current_period_end",
        "started_at",
        "created_at",
        "updated_at",
        mode="after",
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def key(self) -> tuple[Provider, str]:
        return (self.provider, self.provider_subscription_id)

    def to_record(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class MobilePurchase(BaseModel):
    """Client-reported mobile store purchase event."""

    # Missing when the store receipt has not been verified yet
    original_transaction_id: str | None = None
    product_id: str = ""
    active: bool
    expires_at: datetime | None = None
    tier: Tier | None = None

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: object) -> Tier | None:
        if value is None or value == "":
            return None
        return normalize_tier(value)
