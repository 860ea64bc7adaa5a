# backend/bloom_booking/core/config.py
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional, Set

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


NON_PROD_SITE_MODES: Set[str] = {
    "local",
    "dev",
    "development",
    "test",
    "stg",
    "stage",
    "staging",
    "preview",
}
PROD_SITE_MODES: Set[str] = {"prod", "production", "live"}


def _classify_site_mode(raw_site_mode: str | None) -> tuple[str, bool, bool]:
    """Return normalized site mode with production/non-prod classification."""

    normalized = (raw_site_mode or "").strip().lower()
    is_prod = normalized in PROD_SITE_MODES
    is_non_prod = normalized in NON_PROD_SITE_MODES
    return normalized, is_prod, is_non_prod


class Settings(BaseSettings):
    """Runtime configuration, handed to services and clients at construction."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    site_mode: str = Field(
        default="local",
        alias="SITE_MODE",
        description="Deployment mode (local|dev|staging|preview|prod)",
    )

    # Database / broker
    database_url: str = Field(
        default="sqlite:///./bloom_booking.db",
        validation_alias=AliasChoices("DATABASE_URL", "database_url"),
        description="SQLAlchemy URL for the booking store",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("REDIS_URL", "redis_url"),
        description="Redis URL used as Celery broker",
    )

    # Stripe
    stripe_secret_key: Optional[SecretStr] = Field(
        default=None,
        alias="STRIPE_SECRET_KEY",
        description="Stripe secret key; unset runs the gateway in mock mode outside production",
    )
    stripe_currency: str = Field(default="aud", description="Default ISO currency for quotes")
    stripe_timeout_seconds: int = Field(default=8, description="Stripe HTTP timeout")

    # External practice-management (scheduling + practitioner directory)
    scheduling_api_base: str = Field(
        default="https://au-api.halaxy.com/fhir",
        validation_alias=AliasChoices("SCHEDULING_API_BASE", "HALAXY_FHIR_URL"),
        description="FHIR base URL of the practice-management system",
    )
    scheduling_token_url: str = Field(
        default="https://au-api.halaxy.com/oauth2/token",
        validation_alias=AliasChoices("SCHEDULING_TOKEN_URL", "HALAXY_TOKEN_URL"),
    )
    scheduling_client_id: str = Field(
        default="",
        validation_alias=AliasChoices("SCHEDULING_CLIENT_ID", "HALAXY_CLIENT_ID"),
    )
    scheduling_client_secret: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("SCHEDULING_CLIENT_SECRET", "HALAXY_CLIENT_SECRET"),
    )
    scheduling_timeout_seconds: float = Field(default=30.0)
    scheduling_practitioner_role_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SCHEDULING_PRACTITIONER_ROLE_ID", "HALAXY_PRACTITIONER_ROLE_ID"
        ),
    )
    scheduling_healthcare_service_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SCHEDULING_HEALTHCARE_SERVICE_ID", "HALAXY_HEALTHCARE_SERVICE_ID"
        ),
    )
    scheduling_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("SCHEDULING_WEBHOOK_SECRET", "HALAXY_WEBHOOK_SECRET"),
        description="Shared secret for the practice-management webhook signature",
    )
    external_booking_enabled: bool = Field(
        default=False,
        description="Create the appointment in the practice-management system during Book",
    )
    clinic_timezone: str = Field(
        default="Australia/Brisbane",
        description="Timezone used when rendering slot display times",
    )

    # Reservation engine
    slot_lease_minutes: int = Field(default=10, ge=1)
    reservation_max_attempts: int = Field(default=3, ge=1)

    # Availability sync
    sync_interval_minutes: int = Field(default=15, ge=1)
    sync_horizon_weeks: int = Field(default=12, ge=1)
    sync_stale_after_minutes: int = Field(default=60, ge=1)

    # Payment saga
    capture_retry_attempts: int = Field(default=3, ge=1)
    capture_retry_base_seconds: int = Field(default=2, ge=1)
    capture_max_attempts: int = Field(
        default=10,
        ge=1,
        description="Capture attempts after which a booked saga is halted for manual follow-up",
    )
    reconcile_interval_seconds: int = Field(default=60, ge=5)

    # Onboarding
    onboarding_base_url: str = Field(
        default="http://localhost:5173",
        alias="ONBOARDING_BASE_URL",
        description="Public base URL used to build accept-offer links",
    )

    @field_validator("site_mode", mode="before")
    @classmethod
    def _normalize_site_mode(cls, value: object) -> str:
        return str(value or "local").strip().lower()

    @property
    def environment(self) -> str:
        _, is_prod, _ = _classify_site_mode(self.site_mode)
        return "production" if is_prod else "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_secret_key.get_secret_value())

    @property
    def scheduling_configured(self) -> bool:
        return bool(
            self.scheduling_client_id and self.scheduling_client_secret.get_secret_value()
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


settings = get_settings()
