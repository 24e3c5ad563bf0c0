"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import AuthError, ValidationError


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Tenant that storefront routes and the cron job act for
    SERVICE_TENANT_ID: Optional[str] = None

    # Storefront origins allowed to call /events/* (comma separated, empty = any)
    EVENT_ALLOWED_ORIGINS: str = ""

    # Secrets
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    INTERNAL_ADMIN_TOKEN: Optional[str] = None  # X-Internal-Token (scheduler, operators)
    INTERNAL_CRON_SECRET: Optional[str] = None  # X-Cron-Secret (send-batch trigger)
    EXTERNAL_ID_SALT: str = "bb"

    # Process-wide Meta defaults (tenant settings take precedence)
    META_PIXEL_ID: Optional[str] = None
    META_ACCESS_TOKEN: Optional[str] = None
    META_TEST_EVENT_CODE: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v18.0"
    META_CAPI_TIMEOUT_SECONDS: float = 30.0

    # Delivery worker
    CAPI_BATCH_SIZE: int = 200
    CAPI_WORKER_DEFAULT_LIMIT: int = 25
    CAPI_CLAIM_LEASE_SECONDS: int = 600

    # Redis (ARQ cron)
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def allowed_origins(self) -> set[str]:
        return {o.strip() for o in self.EVENT_ALLOWED_ORIGINS.split(",") if o.strip()}


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def parse_tenant_id(value: Optional[str], settings: Settings) -> UUID:
    """Resolve the tenant a request acts for.

    Explicit value first, then SERVICE_TENANT_ID.

    Raises:
        ValidationError: If neither is set or the value is not a UUID.
    """
    raw = value or settings.SERVICE_TENANT_ID
    if not raw:
        raise ValidationError("Missing tenant_id query or SERVICE_TENANT_ID")
    try:
        return UUID(str(raw))
    except ValueError:
        raise ValidationError("Invalid tenant_id format")


def get_service_tenant_id(settings: Settings = Depends(get_settings)) -> UUID:
    """Tenant for public storefront routes (always the configured service tenant)."""
    return parse_tenant_id(None, settings)


def _secret_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_internal_token(
    x_internal_token: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Static shared-secret check for scheduler and operator calls."""
    if not _secret_matches(x_internal_token, settings.INTERNAL_ADMIN_TOKEN):
        raise AuthError("Invalid or missing internal token")


def require_cron_secret(
    x_cron_secret: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Shared-secret check for the send-batch trigger."""
    if not _secret_matches(x_cron_secret, settings.INTERNAL_CRON_SECRET):
        raise AuthError("Unauthorized")
