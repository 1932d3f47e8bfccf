"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups are env-overridable via the double-underscore
delimiter, e.g.:
    RECONCILE__MAX_CONCURRENCY=8
    RECONCILE__DOWNGRADE_ON_PROVIDER_MISS=true
    RECONCILE__PRO_LAUNCH_CUTOFF=2026-02-01T00:00:00Z
    SCORING__FOUNDING_MEMBER=400
    STRIPE__SECRET_KEY=sk_live_...
    DRIFT__STALE_AFTER_DAYS=3
"""

from datetime import UTC, datetime
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from reconciler.models.enums import Provider


class ReconcileConfig(BaseModel):
    """Reconciliation pipeline behaviour."""

    max_concurrency: int = Field(default=5, ge=1)
    provider_timeout_seconds: float = Field(default=10.0, gt=0)
    # When the live provider has no answer for a currently-paid identity with
    # no stored subscription evidence: False keeps the stored state, True
    # downgrades to free/inactive.
    downgrade_on_provider_miss: bool = False
    # Provider whose rows predate user_id linking and are joined by email.
    legacy_default_provider: Provider = Provider.STRIPE
    batch_max_limit: int = Field(default=500, ge=1)
    # Premium subscriptions started before this instant keep every pro feature.
    pro_launch_cutoff: datetime = datetime(2026, 2, 1, tzinfo=UTC)

    @field_validator("pro_launch_cutoff", mode="after")
    @classmethod
    def _cutoff_is_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=UTC)


class ScoringWeights(BaseModel):
    """Canonical-identity scoring weights.

    Only the relative order (tier > founding member > billing id > recency >
    age) matters; the absolute values are business policy.
    """

    active_pro: int = 1000
    active_premium: int = 800
    founding_member: int = 500
    web_customer_id: int = 200
    most_recently_updated: int = 50
    oldest_created: int = 10


class DriftConfig(BaseModel):
    stale_after_days: int = Field(default=7, ge=1)
    # Also compare stored state against a fresh aggregation + resolution
    check_resolution: bool = True


class StripeConfig(BaseModel):
    """Stripe live-lookup configuration."""

    secret_key: str = ""
    price_pro_monthly: str = ""
    price_pro_annual: str = ""
    client_cache_ttl_seconds: float = Field(default=300.0, gt=0, le=300.0)
    request_timeout_seconds: float = 8.0

    @property
    def pro_price_ids(self) -> set[str]:
        return {p for p in (self.price_pro_monthly, self.price_pro_annual) if p}


class AppStoreConfig(BaseModel):
    """Mobile store receipt verification endpoint."""

    verify_url: str = ""
    shared_secret: str = ""
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = 0.5
    request_timeout_seconds: float = 8.0


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase
    supabase_url: str = ""
    supabase_secret_key: str = ""

    # Tables
    identities_table: str = "users"
    subscriptions_table: str = "subscriptions"
    drift_table: str = "entitlement_drift"

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    drift: DriftConfig = Field(default_factory=DriftConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    app_store: AppStoreConfig = Field(default_factory=AppStoreConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
