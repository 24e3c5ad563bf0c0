"""Internal CAPI endpoints: delivery triggers and operator tools.

WHAT:
    - POST /internal/capi/send-batch          cron trigger (X-Cron-Secret)
    - POST /internal/capi/worker              scheduler trigger (X-Internal-Token)
    - GET  /internal/capi/events              inspect the queue
    - POST /internal/capi/events/{id}/requeue replay a failed/dead-lettered event
    - GET/PUT /internal/capi/settings         tenant Meta credentials

WHY:
    Delivery runs out of band from ingestion. External schedulers hit the
    trigger endpoints; the ARQ cron job calls the same delivery worker
    in-process. Overlapping invocations are safe because claiming is atomic
    in the event store.

AUTH:
    Static shared secrets compared in constant time (see capi_relay/deps.py).
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from capi_relay.database import get_db
from capi_relay.deps import Settings, get_settings, parse_tenant_id, require_cron_secret, require_internal_token
from capi_relay.models import CapiEventNameEnum, CapiEventStatusEnum
from capi_relay.schemas import (
    ConversionEventOut,
    EventListResponse,
    MarketingSettingsOut,
    MarketingSettingsUpdate,
    RequeueResponse,
    SendBatchSummary,
    WorkerSummary,
)
from capi_relay.services import event_store
from capi_relay.services.credentials import get_tenant_settings, resolve_credentials, save_tenant_settings
from capi_relay.services.delivery_worker import run_delivery_batch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/capi", tags=["CAPI Internal"])


# =============================================================================
# DELIVERY TRIGGERS
# =============================================================================


@router.post(
    "/send-batch",
    response_model=SendBatchSummary,
    dependencies=[Depends(require_cron_secret)],
)
async def send_batch(
    batch_size: Optional[int] = Query(None, ge=1, le=1000),
    tenant_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Drain up to `batch_size` events (default CAPI_BATCH_SIZE).

    `failed` in the response counts events dead-lettered by this batch.
    """
    tenant = parse_tenant_id(tenant_id, settings)
    credentials = resolve_credentials(db, tenant, settings)

    result = await run_delivery_batch(
        db, tenant, credentials, limit=batch_size or settings.CAPI_BATCH_SIZE
    )
    logger.info(
        f"[CAPI_WORKER] send-batch processed={result.processed} sent={result.sent}",
        extra={"tenant_id": str(tenant)},
    )
    return SendBatchSummary(
        processed=result.processed,
        sent=result.sent,
        retry=result.retry,
        failed=result.deadlettered,
    )


@router.post(
    "/worker",
    response_model=WorkerSummary,
    dependencies=[Depends(require_internal_token)],
)
async def run_worker(
    limit: Optional[int] = Query(None, ge=1, le=100),
    tenant_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Drain up to `limit` events (default CAPI_WORKER_DEFAULT_LIMIT)."""
    tenant = parse_tenant_id(tenant_id, settings)
    credentials = resolve_credentials(db, tenant, settings)

    result = await run_delivery_batch(
        db, tenant, credentials, limit=limit or settings.CAPI_WORKER_DEFAULT_LIMIT
    )
    return WorkerSummary(
        processed=result.processed,
        sent=result.sent,
        failed=result.retry,
        deadlettered=result.deadlettered,
    )


# =============================================================================
# OPERATOR TOOLS
# =============================================================================


@router.get(
    "/events",
    response_model=EventListResponse,
    dependencies=[Depends(require_internal_token)],
)
def list_capi_events(
    status: Optional[CapiEventStatusEnum] = Query(None),
    event_name: Optional[CapiEventNameEnum] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Most recent events first, with per-status totals for the tenant."""
    tenant = parse_tenant_id(tenant_id, settings)
    events = event_store.list_events(
        db,
        tenant,
        status=status.value if status else None,
        event_name=event_name.value if event_name else None,
        since=since,
        until=until,
        limit=limit,
    )
    return EventListResponse(
        events=[ConversionEventOut.model_validate(e) for e in events],
        status_counts=event_store.count_by_status(db, tenant),
    )


@router.post(
    "/events/{event_id}/requeue",
    response_model=RequeueResponse,
    dependencies=[Depends(require_internal_token)],
)
def requeue_capi_event(
    event_id: str,
    tenant_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Put a failed or dead-lettered event back in the queue (404/409 otherwise)."""
    tenant = parse_tenant_id(tenant_id, settings)
    event = event_store.requeue(db, tenant, event_id)
    return RequeueResponse(event_id=event.event_id, status=event.status)


def _settings_out(tenant, row) -> MarketingSettingsOut:
    return MarketingSettingsOut(
        tenant_id=tenant,
        meta_pixel_id=row.meta_pixel_id if row else None,
        has_access_token=bool(row and row.meta_access_token),
        meta_test_event_code=row.meta_test_event_code if row else None,
    )


@router.get(
    "/settings",
    response_model=MarketingSettingsOut,
    dependencies=[Depends(require_internal_token)],
)
def get_marketing_settings(
    tenant_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Tenant-level Meta settings (env fallbacks are not shown)."""
    tenant = parse_tenant_id(tenant_id, settings)
    return _settings_out(tenant, get_tenant_settings(db, tenant))


@router.put(
    "/settings",
    response_model=MarketingSettingsOut,
    dependencies=[Depends(require_internal_token)],
)
def update_marketing_settings(
    payload: MarketingSettingsUpdate,
    tenant_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Update tenant Meta settings. Omitted fields are kept, blank strings clear."""
    tenant = parse_tenant_id(tenant_id, settings)
    row = save_tenant_settings(
        db,
        tenant,
        meta_pixel_id=payload.meta_pixel_id,
        meta_access_token=payload.meta_access_token,
        meta_test_event_code=payload.meta_test_event_code,
    )
    return _settings_out(tenant, row)
