"""Identity (per-person account record) model and stored-shape normalization."""

from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field, field_validator, model_validator

from reconciler.constants import STRIPE_CUSTOMER_PREFIX
from reconciler.models.enums import (
    EntitlementLevel,
    EntitlementStatus,
    Platform,
    Provider,
    Role,
    SyncState,
    Tier,
    normalize_entitlement_status,
    normalize_platform,
    normalize_tier,
)

logger = structlog.get_logger(__name__)

CURRENT_RECORD_VERSION = 2

# Key under which an old write bug nested a copy of the record inside itself.
NESTED_NAMESPACE_KEY = "data"


def normalize_email(email: object) -> str:
    """Case-insensitive identity key."""
    return str(email or "").strip().lower()


def ensure_utc(value: datetime | None) -> datetime | None:
    """Stored timestamps without an offset are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def flatten_record(raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Collapse nested ``data`` namespaces into a single flat record.

    Keys closer to the top level win; deeper levels only fill gaps.

    Returns:
        (flat_record, was_nested)
    """
    flat = {k: v for k, v in raw.items() if k != NESTED_NAMESPACE_KEY}
    nested = raw.get(NESTED_NAMESPACE_KEY)
    was_nested = NESTED_NAMESPACE_KEY in raw
    while isinstance(nested, dict):
        for key, value in nested.items():
            if key != NESTED_NAMESPACE_KEY and key not in flat:
                flat[key] = value
        nested = nested.get(NESTED_NAMESPACE_KEY)
    return flat, was_nested


class Identity(BaseModel):
    """One person's account record holding the stored entitlement state."""

    id: str
    email: str
    full_name: str | None = None
    role: Role = Role.USER
    platform: Platform | None = None

    entitlement_tier: Tier = Tier.FREE
    entitlement_level: EntitlementLevel = EntitlementLevel.FREE
    entitlement_status: EntitlementStatus = EntitlementStatus.INACTIVE

    stripe_customer_id: str | None = None
    apple_original_transaction_id: str | None = None
    billing_provider: str | None = None
    subscription_provider: str | None = None

    is_founding_member: bool = False
    merged_into: str | None = None
    disabled: bool = False

    entitlement_last_synced_at: datetime | None = None
    entitlement_sync_error: str | None = None
    entitlement_sync_state: SyncState = SyncState.NONE

    created_at: datetime | None = None
    updated_at: datetime | None = None
    record_version: int = CURRENT_RECORD_VERSION

    # Set on read when the stored row carried a nested namespace; never persisted.
    needs_flatten: bool = Field(default=False, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _flatten_stored_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict) or NESTED_NAMESPACE_KEY not in data:
            return data
        flat, _ = flatten_record(data)
        logger.warning(
            "identity_record_malformed",
            identity_id=flat.get("id"),
            detail="nested record namespace flattened on read",
        )
        flat["needs_flatten"] = True
        return flat

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: object) -> str:
        return normalize_email(value)

    @field_validator("entitlement_tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: object) -> Tier:
        return normalize_tier(value)

    @field_validator("entitlement_status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> EntitlementStatus:
        return normalize_entitlement_status(value)

    @field_validator("entitlement_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> EntitlementLevel:
        cleaned = str(value or "").strip().lower()
        return EntitlementLevel.PAID if cleaned == "paid" else EntitlementLevel.FREE

    @field_validator("platform", mode="before")
    @classmethod
    def _normalize_platform(cls, value: object) -> Platform | None:
        return normalize_platform(value)

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: object) -> Role:
        return Role.ADMIN if str(value or "").strip().lower() == "admin" else Role.USER

    @field_validator("billing_provider", "subscription_provider", mode="before")
    @classmethod
    def _normalize_provider_field(cls, value: object) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip().lower()
        return cleaned or None

    @field_validator(
        "entitlement_last_synced_at", "created_at", "updated_at", mode="after"
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def has_web_customer(self) -> bool:
        customer_id = self.stripe_customer_id
        return bool(customer_id and customer_id.startswith(STRIPE_CUSTOMER_PREFIX))

    @property
    def has_mobile_transaction(self) -> bool:
        return bool(self.apple_original_transaction_id)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_paid(self) -> bool:
        return self.entitlement_level == EntitlementLevel.PAID or self.entitlement_tier != Tier.FREE

    def provider_signal(self) -> Provider | None:
        """Strongest provider hint carried by this record alone."""
        if (
            self.has_web_customer
            or self.platform == Platform.WEB
            or self.subscription_provider == Provider.STRIPE.value
        ):
            return Provider.STRIPE
        if (
            self.has_mobile_transaction
            or self.platform == Platform.IOS
            or self.subscription_provider == Provider.APPLE.value
        ):
            return Provider.APPLE
        return None

    def to_record(self) -> dict[str, Any]:
        """Flat, JSON-ready row for persistence."""
        record = self.model_dump(mode="json")
        record["record_version"] = CURRENT_RECORD_VERSION
        return record
