"""Cross-provider precedence rules for billing identifier writes."""

from typing import Any, Iterable

import structlog

from reconciler.errors import ConflictError
from reconciler.models.identity import Identity
from reconciler.models.subscription import Subscription

logger = structlog.get_logger(__name__)

MOBILE_IDENTIFIER_FIELDS = ("apple_original_transaction_id",)


def guard_identifier_updates(
    identity: Identity, updates: dict[str, Any]
) -> tuple[dict[str, Any], list[str]]:
    """Drop mobile-store identifiers from a write when a web customer exists.

    The rest of the write goes through untouched.

    Returns:
        (allowed_updates, withheld_field_names)
    """
    if not identity.has_web_customer:
        return dict(updates), []

    withheld = [f for f in MOBILE_IDENTIFIER_FIELDS if updates.get(f)]
    if not withheld:
        return dict(updates), []

    logger.info(
        "mobile_identifier_withheld",
        identity_id=identity.id,
        stripe_customer_id=identity.stripe_customer_id,
        fields=withheld,
    )
    return {k: v for k, v in updates.items() if k not in withheld}, withheld


def ensure_mobile_link_available(
    existing: Subscription | None, identity_id: str, aliases: Iterable[str] = ()
) -> None:
    """First writer wins: refuse to relink a mobile transaction to someone else.

    ``aliases`` are other identity ids of the same person (duplicates being
    merged); a link held by one of them is not a conflict.
    """
    if existing is None or not existing.user_id:
        return
    if existing.user_id == identity_id or existing.user_id in set(aliases):
        return
    logger.warning(
        "mobile_link_conflict",
        provider_subscription_id=existing.provider_subscription_id,
        linked_identity_id=existing.user_id,
        requested_identity_id=identity_id,
    )
    raise ConflictError(
        "This mobile store subscription is already linked to a different account",
        provider_subscription_id=existing.provider_subscription_id,
        existing_user_id=existing.user_id,
    )
