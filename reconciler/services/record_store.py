"""Record store contract and its in-memory / Supabase implementations."""

import copy
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from pydantic import ValidationError
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from reconciler.errors import MalformedRecordError
from reconciler.models.enums import Provider, Tier
from reconciler.models.identity import Identity, normalize_email
from reconciler.models.reconcile import DriftRecord
from reconciler.models.subscription import Subscription

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _parse_identity(row: dict[str, Any]) -> Identity:
    try:
        return Identity.model_validate(row)
    except ValidationError as e:
        raise MalformedRecordError(
            "Stored identity could not be normalized",
            identity_id=row.get("id"),
            detail=str(e),
        ) from e


def _parse_listed_identities(rows: list[dict[str, Any]]) -> list[Identity]:
    """Parse a listing; rows that cannot be normalized are logged and left out."""
    identities: list[Identity] = []
    for row in rows:
        try:
            identities.append(_parse_identity(row))
        except MalformedRecordError as e:
            logger.warning("identity_row_skipped", identity_id=row.get("id"), detail=e.message)
    return identities


def _parse_subscription(row: dict[str, Any]) -> Subscription:
    try:
        return Subscription.model_validate(row)
    except ValidationError as e:
        raise MalformedRecordError(
            "Stored subscription could not be normalized",
            subscription_id=row.get("id"),
            detail=str(e),
        ) from e


def _parse_listed_subscriptions(rows: list[dict[str, Any]]) -> list[Subscription]:
    """Parse a listing; rows that cannot be normalized are logged and left out."""
    subscriptions: list[Subscription] = []
    for row in rows:
        try:
            subscriptions.append(_parse_subscription(row))
        except MalformedRecordError as e:
            logger.warning(
                "subscription_row_skipped", subscription_id=row.get("id"), detail=e.message
            )
    return subscriptions


def _newest_first(identities: list[Identity]) -> list[Identity]:
    return sorted(identities, key=lambda i: i.created_at or _EPOCH, reverse=True)


class RecordStore(Protocol):
    """Storage contract for identities, subscriptions, owned rows and drift."""

    async def list_identities(
        self, *, limit: int | None = None, tier: Tier | None = None
    ) -> list[Identity]:
        """Non-disabled identities, newest first."""

    async def get_identity(self, identity_id: str) -> Identity | None:
        """Fetch one identity by id."""

    async def find_identities_by_email(self, email: str) -> list[Identity]:
        """All identities (disabled included) sharing a normalized email."""

    async def create_identity(self, identity: Identity) -> Identity:
        """Persist a new identity."""

    async def update_identity(self, identity_id: str, values: dict[str, Any]) -> None:
        """Patch fields on an identity."""

    async def replace_identity(self, identity: Identity) -> None:
        """Overwrite the whole stored row with the flat form of ``identity``."""

    async def list_subscriptions(self, user_ids: list[str]) -> list[Subscription]:
        """Subscriptions owned by any of the given identity ids."""

    async def list_subscriptions_by_email(
        self, email: str, provider: Provider
    ) -> list[Subscription]:
        """Subscriptions joined by denormalized owner email for one provider."""

    async def get_subscription(
        self, provider: Provider, provider_subscription_id: str
    ) -> Subscription | None:
        """Fetch a subscription by its provider key."""

    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        """Insert or update on (provider, provider_subscription_id)."""

    async def list_owned(self, table: str, field: str, value: str) -> list[dict[str, Any]]:
        """Rows of an owned-entity table whose owner field equals ``value``."""

    async def update_owned(self, table: str, record_id: str, field: str, value: str) -> None:
        """Rewrite the owner field of one owned row."""

    async def clear_drift_records(self, user_ids: list[str] | None = None) -> int:
        """Delete unresolved drift records in scope; returns the count."""

    async def insert_drift_records(self, records: list[DriftRecord]) -> None:
        """Persist drift findings."""

    async def list_drift_records(self) -> list[DriftRecord]:
        """All stored drift findings."""


class InMemoryRecordStore:
    """In-memory record store used for tests and local fallback.

    Rows are kept as raw dicts (like Supabase rows) so tests can seed
    malformed shapes; every read and write deep-copies.
    """

    def __init__(
        self,
        identities_table: str = "users",
        subscriptions_table: str = "subscriptions",
        drift_table: str = "entitlement_drift",
    ) -> None:
        self.identities_table = identities_table
        self.subscriptions_table = subscriptions_table
        self.drift_table = drift_table
        self.tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        for row in rows:
            stored = copy.deepcopy(row)
            stored.setdefault("id", str(uuid.uuid4()))
            self.tables[table][stored["id"]] = stored

    def snapshot(self) -> dict[str, dict[str, dict[str, Any]]]:
        return copy.deepcopy({name: rows for name, rows in self.tables.items() if rows})

    def _rows(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self.tables[table].values()]

    async def list_identities(
        self, *, limit: int | None = None, tier: Tier | None = None
    ) -> list[Identity]:
        identities = _parse_listed_identities(
            [r for r in self._rows(self.identities_table) if not r.get("disabled")]
        )
        if tier is not None:
            identities = [i for i in identities if i.entitlement_tier == tier]
        identities = _newest_first(identities)
        return identities[:limit] if limit is not None else identities

    async def get_identity(self, identity_id: str) -> Identity | None:
        row = self.tables[self.identities_table].get(identity_id)
        return _parse_identity(copy.deepcopy(row)) if row else None

    async def find_identities_by_email(self, email: str) -> list[Identity]:
        target = normalize_email(email)
        return [
            _parse_identity(r)
            for r in self._rows(self.identities_table)
            if normalize_email(r.get("email")) == target
        ]

    async def create_identity(self, identity: Identity) -> Identity:
        self.tables[self.identities_table][identity.id] = identity.to_record()
        return identity.model_copy(deep=True)

    async def update_identity(self, identity_id: str, values: dict[str, Any]) -> None:
        row = self.tables[self.identities_table].get(identity_id)
        if row is None:
            return
        row.update(copy.deepcopy(values))

    async def replace_identity(self, identity: Identity) -> None:
        self.tables[self.identities_table][identity.id] = identity.to_record()

    async def list_subscriptions(self, user_ids: list[str]) -> list[Subscription]:
        wanted = set(user_ids)
        return _parse_listed_subscriptions(
            [r for r in self._rows(self.subscriptions_table) if r.get("user_id") in wanted]
        )

    async def list_subscriptions_by_email(
        self, email: str, provider: Provider
    ) -> list[Subscription]:
        target = normalize_email(email)
        return _parse_listed_subscriptions(
            [
                r
                for r in self._rows(self.subscriptions_table)
                if normalize_email(r.get("user_email")) == target and r.get("provider") == provider.value
            ]
        )

    async def get_subscription(
        self, provider: Provider, provider_subscription_id: str
    ) -> Subscription | None:
        for row in self._rows(self.subscriptions_table):
            if (
                row.get("provider") == provider.value
                and row.get("provider_subscription_id") == provider_subscription_id
            ):
                return _parse_subscription(row)
        return None

    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        existing = await self.get_subscription(
            subscription.provider, subscription.provider_subscription_id
        )
        stored = subscription.model_copy(deep=True)
        stored.id = (existing.id if existing else None) or stored.id or str(uuid.uuid4())
        self.tables[self.subscriptions_table][stored.id] = stored.to_record()
        return stored.model_copy(deep=True)

    async def list_owned(self, table: str, field: str, value: str) -> list[dict[str, Any]]:
        return [r for r in self._rows(table) if r.get(field) == value]

    async def update_owned(self, table: str, record_id: str, field: str, value: str) -> None:
        row = self.tables[table].get(record_id)
        if row is not None:
            row[field] = value

    async def clear_drift_records(self, user_ids: list[str] | None = None) -> int:
        rows = self.tables[self.drift_table]
        scope = set(user_ids) if user_ids is not None else None
        doomed = [
            record_id
            for record_id, row in rows.items()
            if not row.get("resolved") and (scope is None or row.get("user_id") in scope)
        ]
        for record_id in doomed:
            del rows[record_id]
        return len(doomed)

    async def insert_drift_records(self, records: list[DriftRecord]) -> None:
        for record in records:
            row = record.to_record()
            row.setdefault("id", str(uuid.uuid4()))
            self.tables[self.drift_table][row["id"]] = row

    async def list_drift_records(self) -> list[DriftRecord]:
        return [DriftRecord.model_validate(r) for r in self._rows(self.drift_table)]


class SupabaseRecordStore:
    """Supabase-backed record store."""

    def __init__(
        self,
        client: AsyncSupabaseClient,
        identities_table: str = "users",
        subscriptions_table: str = "subscriptions",
        drift_table: str = "entitlement_drift",
    ) -> None:
        self.client = client
        self.identities_table = identities_table
        self.subscriptions_table = subscriptions_table
        self.drift_table = drift_table

    async def list_identities(
        self, *, limit: int | None = None, tier: Tier | None = None
    ) -> list[Identity]:
        query = (
            self.client.table(self.identities_table)
            .select("*")
            .or_("disabled.is.null,disabled.eq.false")
            .order("created_at", desc=True)
        )
        if tier is not None:
            query = query.eq("entitlement_tier", tier.value)
        if limit is not None:
            query = query.limit(limit)
        response = await query.execute()
        return _parse_listed_identities(response.data or [])

    async def get_identity(self, identity_id: str) -> Identity | None:
        response = (
            await self.client.table(self.identities_table)
            .select("*")
            .eq("id", identity_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return _parse_identity(rows[0]) if rows else None

    async def find_identities_by_email(self, email: str) -> list[Identity]:
        target = normalize_email(email)
        response = (
            await self.client.table(self.identities_table)
            .select("*")
            .ilike("email", target)
            .execute()
        )
        # ilike treats "_" as a wildcard; keep exact normalized matches only.
        return [
            _parse_identity(r)
            for r in response.data or []
            if normalize_email(r.get("email")) == target
        ]

    async def create_identity(self, identity: Identity) -> Identity:
        response = (
            await self.client.table(self.identities_table).insert(identity.to_record()).execute()
        )
        rows = response.data or []
        return _parse_identity(rows[0]) if rows else identity

    async def update_identity(self, identity_id: str, values: dict[str, Any]) -> None:
        await (
            self.client.table(self.identities_table)
            .update(values)
            .eq("id", identity_id)
            .execute()
        )

    async def replace_identity(self, identity: Identity) -> None:
        record = identity.to_record()
        # Explicit null drops the legacy nested column on upsert.
        record["data"] = None
        await (
            self.client.table(self.identities_table)
            .upsert(record, on_conflict="id")
            .execute()
        )

    async def list_subscriptions(self, user_ids: list[str]) -> list[Subscription]:
        if not user_ids:
            return []
        response = (
            await self.client.table(self.subscriptions_table)
            .select("*")
            .in_("user_id", user_ids)
            .execute()
        )
        return _parse_listed_subscriptions(response.data or [])

    async def list_subscriptions_by_email(
        self, email: str, provider: Provider
    ) -> list[Subscription]:
        response = (
            await self.client.table(self.subscriptions_table)
            .select("*")
            .eq("user_email", normalize_email(email))
            .eq("provider", provider.value)
            .execute()
        )
        return _parse_listed_subscriptions(response.data or [])

    async def get_subscription(
        self, provider: Provider, provider_subscription_id: str
    ) -> Subscription | None:
        response = (
            await self.client.table(self.subscriptions_table)
            .select("*")
            .eq("provider", provider.value)
            .eq("provider_subscription_id", provider_subscription_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return _parse_subscription(rows[0]) if rows else None

    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        payload = subscription.to_record()
        payload.pop("id", None)
        response = (
            await self.client.table(self.subscriptions_table)
            .upsert(payload, on_conflict="provider,provider_subscription_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return subscription
        return _parse_subscription(rows[0])

    async def list_owned(self, table: str, field: str, value: str) -> list[dict[str, Any]]:
        response = await self.client.table(table).select("*").eq(field, value).execute()
        return response.data or []

    async def update_owned(self, table: str, record_id: str, field: str, value: str) -> None:
        await self.client.table(table).update({field: value}).eq("id", record_id).execute()

    async def clear_drift_records(self, user_ids: list[str] | None = None) -> int:
        query = self.client.table(self.drift_table).delete().eq("resolved", False)
        if user_ids is not None:
            if not user_ids:
                return 0
            query = query.in_("user_id", user_ids)
        response = await query.execute()
        return len(response.data or [])

    async def insert_drift_records(self, records: list[DriftRecord]) -> None:
        if not records:
            return
        await (
            self.client.table(self.drift_table)
            .insert([r.to_record() for r in records])
            .execute()
        )

    async def list_drift_records(self) -> list[DriftRecord]:
        response = await self.client.table(self.drift_table).select("*").execute()
        return [DriftRecord.model_validate(r) for r in response.data or []]
