"""Closed enums for entitlement state and the normalizers that produce them.

Raw tier/status strings arrive from several providers and from years of
hand-edited records with inconsistent casing. Everything that reads them goes
through ``normalize_tier`` / ``normalize_entitlement_status`` /
``normalize_subscription_status``; nothing compares raw strings.
"""

from enum import Enum


class Tier(str, Enum):
    """Entitlement tier controlling feature access."""

    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"


class EntitlementLevel(str, Enum):
    """Coarse paid/free flag derived from the tier."""

    FREE = "free"
    PAID = "paid"


class EntitlementStatus(str, Enum):
    """Status stored on an identity."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class SubscriptionStatus(str, Enum):
    """Status of a provider subscription."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"
    EXPIRED = "expired"


class Provider(str, Enum):
    """Billing providers that can grant a subscription."""

    STRIPE = "stripe"
    APPLE = "apple"
    MANUAL = "manual"


class Platform(str, Enum):
    WEB = "web"
    IOS = "ios"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class SyncState(str, Enum):
    NONE = "none"
    OK = "ok"
    ERROR = "error"


class DriftType(str, Enum):
    """Kinds of entitlement drift the detector reports."""

    STALE_SYNC = "stale_sync"
    SYNC_ERROR = "sync_error"
    PAID_BUT_FREE = "paid_but_free"
    PROVIDER_MISMATCH = "provider_mismatch"
    ENTITLEMENT_MISMATCH = "entitlement_mismatch"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Provider value recorded when nothing granted the entitlement, or when the
# stored state was kept because the live provider could not answer.
PROVIDER_NONE = "none"
PROVIDER_PRESERVED = "preserved"

_TIER_RANK = {Tier.FREE: 0, Tier.PREMIUM: 1, Tier.PRO: 2}

_ENTITLEMENT_STATUS_ALIASES = {
    "trial": EntitlementStatus.TRIALING,
    "cancelled": EntitlementStatus.CANCELED,
    "none": EntitlementStatus.INACTIVE,
    "": EntitlementStatus.INACTIVE,
}

_SUBSCRIPTION_STATUS_ALIASES = {
    "trial": SubscriptionStatus.TRIALING,
    "cancelled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def _clean(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        value = value.value
    return str(value).strip().lower()


def normalize_tier(value: object) -> Tier:
    """Map any raw tier value to a Tier; unknown or garbled input is FREE."""
    cleaned = _clean(value)
    try:
        return Tier(cleaned)
    except ValueError:
        return Tier.FREE


def normalize_entitlement_status(value: object) -> EntitlementStatus:
    cleaned = _clean(value)
    if cleaned in _ENTITLEMENT_STATUS_ALIASES:
        return _ENTITLEMENT_STATUS_ALIASES[cleaned]
    try:
        return EntitlementStatus(cleaned)
    except ValueError:
        return EntitlementStatus.INACTIVE


def normalize_subscription_status(value: object) -> SubscriptionStatus:
    """Map a provider status string to a SubscriptionStatus.

    Unknown statuses become EXPIRED so they can never grant access.
    """
    cleaned = _clean(value)
    if cleaned in _SUBSCRIPTION_STATUS_ALIASES:
        return _SUBSCRIPTION_STATUS_ALIASES[cleaned]
    try:
        return SubscriptionStatus(cleaned)
    except ValueError:
        return SubscriptionStatus.EXPIRED


def normalize_provider(value: object) -> Provider | None:
    cleaned = _clean(value)
    try:
        return Provider(cleaned)
    except ValueError:
        return None


def normalize_platform(value: object) -> Platform | None:
    cleaned = _clean(value)
    try:
        return Platform(cleaned)
    except ValueError:
        return None


def tier_rank(tier: Tier) -> int:
    return _TIER_RANK[tier]


def level_for_tier(tier: Tier) -> EntitlementLevel:
    return EntitlementLevel.FREE if tier == Tier.FREE else EntitlementLevel.PAID
