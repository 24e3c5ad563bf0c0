"""Meta CAPI credential resolution.

Configuration Priority (per field):
    1. Tenant row in capi_tenant_settings (set via PUT /internal/capi/settings)
    2. Process-wide defaults: META_PIXEL_ID, META_ACCESS_TOKEN, META_TEST_EVENT_CODE
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from capi_relay.database import dialect_insert
from capi_relay.deps import Settings
from capi_relay.exceptions import MissingCredentials
from capi_relay.models import TenantMarketingSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionsCredentials:
    pixel_id: str
    access_token: str
    test_event_code: Optional[str] = None


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_tenant_settings(db: Session, tenant_id: UUID) -> Optional[TenantMarketingSettings]:
    return db.get(TenantMarketingSettings, tenant_id)


def resolve_credentials(db: Session, tenant_id: UUID, settings: Settings) -> ConversionsCredentials:
    """Resolve pixel id, access token and test event code for a tenant.

    Raises:
        MissingCredentials: Neither level provides a pixel id and access token
    """
    tenant = get_tenant_settings(db, tenant_id)

    pixel_id = _blank_to_none(tenant.meta_pixel_id if tenant else None) or _blank_to_none(settings.META_PIXEL_ID)
    access_token = (
        _blank_to_none(tenant.meta_access_token if tenant else None)
        or _blank_to_none(settings.META_ACCESS_TOKEN)
    )
    test_event_code = (
        _blank_to_none(tenant.meta_test_event_code if tenant else None)
        or _blank_to_none(settings.META_TEST_EVENT_CODE)
    )

    if not pixel_id or not access_token:
        logger.warning("[CAPI_CONFIG] No Meta credentials for tenant %s", tenant_id)
        raise MissingCredentials("Missing Meta credentials in tenant settings or env")

    return ConversionsCredentials(
        pixel_id=pixel_id,
        access_token=access_token,
        test_event_code=test_event_code,
    )


def save_tenant_settings(
    db: Session,
    tenant_id: UUID,
    meta_pixel_id: Optional[str] = None,
    meta_access_token: Optional[str] = None,
    meta_test_event_code: Optional[str] = None,
) -> TenantMarketingSettings:
    """Create or update the tenant's Meta settings.

    Fields left as None keep their stored value; blank strings clear them.
    """
    provided = {
        name: _blank_to_none(value)
        for name, value in (
            ("meta_pixel_id", meta_pixel_id),
            ("meta_access_token", meta_access_token),
            ("meta_test_event_code", meta_test_event_code),
        )
        if value is not None
    }
    now = datetime.utcnow()

    # Single upsert so concurrent first-time saves for a tenant cannot collide
    stmt = dialect_insert(db, TenantMarketingSettings).values(
        tenant_id=tenant_id, updated_at=now, **provided
    )
    set_ = {name: getattr(stmt.excluded, name) for name in provided}
    set_["updated_at"] = stmt.excluded.updated_at
    stmt = stmt.on_conflict_do_update(
        index_elements=[TenantMarketingSettings.tenant_id],
        set_=set_,
    )
    db.execute(stmt)
    db.commit()

    row = db.execute(
        select(TenantMarketingSettings)
        .where(TenantMarketingSettings.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    ).scalar_one()
    logger.info("[CAPI_CONFIG] Updated Meta settings for tenant %s", tenant_id)
    return row
