"""Touchpoint resolver: session-scoped attribution cache.

WHAT:
    Upserts campaign tags and click identifiers per (tenant_id, session_id)
    and lets the normalizer look them up when a later event from the same
    session arrives.

WHY:
    Storefront scripts send UTMs and click ids only on some calls (usually
    the landing page). Keeping them per session lets AddToCart and
    InitiateCheckout events carry match keys they would otherwise lack.

MERGE RULE:
    Last-non-null-wins per field: a sighting overwrites only the columns it
    actually carries. Implemented as a single
    INSERT ... ON CONFLICT DO UPDATE SET col = COALESCE(excluded.col, col)
    so concurrent sightings of one session never lose fields.

    Touchpoints are read-only from the delivery worker's perspective.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from capi_relay.database import dialect_insert
from capi_relay.models import Touchpoint

logger = logging.getLogger(__name__)

MERGED_FIELDS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "click_id_primary",
    "click_id_secondary",
    "landing_url",
    "referrer",
    "user_agent",
    "ip",
)


def upsert_touchpoint(
    db: Session,
    tenant_id: UUID,
    session_id: str,
    **fields: Optional[str],
) -> Touchpoint:
    """Insert or merge the touchpoint for a session.

    Args:
        db: Database session (committed by this call)
        tenant_id: Owning tenant
        session_id: Storefront marketing session id
        **fields: Any of MERGED_FIELDS; None/blank values leave stored data untouched

    Returns:
        The merged Touchpoint row
    """
    unknown = set(fields) - set(MERGED_FIELDS)
    if unknown:
        raise TypeError(f"Unknown touchpoint fields: {sorted(unknown)}")

    values = {}
    for name in MERGED_FIELDS:
        value = fields.get(name)
        if isinstance(value, str):
            value = value.strip() or None
        values[name] = value

    now = datetime.utcnow()
    stmt = dialect_insert(db, Touchpoint).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        session_id=session_id,
        first_seen_at=now,
        last_seen_at=now,
        **values,
    )
    set_ = {
        name: func.coalesce(getattr(stmt.excluded, name), getattr(Touchpoint, name))
        for name in MERGED_FIELDS
    }
    set_["last_seen_at"] = stmt.excluded.last_seen_at
    stmt = stmt.on_conflict_do_update(
        index_elements=[Touchpoint.tenant_id, Touchpoint.session_id],
        set_=set_,
    )
    db.execute(stmt)
    db.commit()

    touchpoint = get_touchpoint(db, tenant_id, session_id)
    logger.info(
        "[TOUCHPOINT] Upserted touchpoint",
        extra={
            "tenant_id": str(tenant_id),
            "touchpoint_id": str(touchpoint.id),
            "fields": sorted(k for k, v in values.items() if v is not None),
        },
    )
    return touchpoint


def get_touchpoint(db: Session, tenant_id: UUID, session_id: str) -> Optional[Touchpoint]:
    """Return the stored touchpoint for a session, if any."""
    return db.execute(
        select(Touchpoint)
        .where(Touchpoint.tenant_id == tenant_id, Touchpoint.session_id == session_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
