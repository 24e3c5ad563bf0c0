"""Delivery worker: drains queued conversion events to Meta CAPI.

WHAT:
    One invocation claims a batch, sends each event sequentially and records
    the outcome on the row.

WHY:
    Invocations are triggered by the ARQ cron job, the internal worker
    endpoint and the send-batch endpoint, and may overlap. All mutual
    exclusion lives in event_store.claim_batch; this module only does the
    per-event bookkeeping.

RETRY POLICY:
    Every failure (no match keys, transport error, platform rejection, or
    an unexpected error while building or encoding the request)
    consumes one attempt. The attempt that brings attempt_count to
    MAX_DELIVERY_ATTEMPTS moves the event to `deadletter` and reports it to
    Sentry. There is no backoff; the next invocation retries `failed` rows.

REFERENCES:
    - capi_relay/services/event_store.py
    - capi_relay/services/meta_capi_service.py
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from capi_relay.deps import get_settings
from capi_relay.exceptions import ConversionsDeliveryError, Deadlettered, NoMatchKeys
from capi_relay.services import event_store
from capi_relay.services.credentials import ConversionsCredentials
from capi_relay.services.meta_capi_service import MetaCAPIService
from capi_relay.telemetry import capture_exception

logger = logging.getLogger(__name__)

# Any one of these on user_data is enough for Meta to attempt a match
SINGLE_MATCH_KEYS = ("fbc", "fbp", "external_id", "em", "ph")


@dataclass
class DeliveryBatchResult:
    processed: int = 0
    sent: int = 0
    retry: int = 0
    deadlettered: int = 0


def build_request_body(payload: Dict[str, Any], test_event_code: Optional[str] = None) -> Dict[str, Any]:
    """Wrap a stored payload into a CAPI request body.

    Payloads that already carry a `data` list are passed through as an
    envelope; single events are wrapped as {"data": [payload]}.
    """
    if isinstance(payload.get("data"), list):
        body = dict(payload)
    else:
        body = {"data": [payload]}
    if test_event_code and not body.get("test_event_code"):
        body["test_event_code"] = test_event_code
    return body


def _has_value(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_has_value(v) for v in value)
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


def has_match_keys(event: Dict[str, Any]) -> bool:
    user_data = event.get("user_data") if isinstance(event, dict) else None
    if not isinstance(user_data, dict):
        return False
    if any(_has_value(user_data.get(key)) for key in SINGLE_MATCH_KEYS):
        return True
    return _has_value(user_data.get("client_user_agent")) and _has_value(user_data.get("client_ip_address"))


def check_match_keys(body: Dict[str, Any]) -> None:
    """Raise NoMatchKeys unless every event in the body can be matched."""
    events = body.get("data") or []
    if not events or not all(has_match_keys(event) for event in events):
        raise NoMatchKeys()


def _record_failure(
    db: Session,
    tenant_id: UUID,
    event_id: str,
    event_name: str,
    attempt_count: int,
    claim_token: Optional[str],
    detail: str,
    result: DeliveryBatchResult,
) -> None:
    deadletter = event_store.should_deadletter(attempt_count)
    updated = event_store.mark_failed(
        db, tenant_id, event_id, detail, deadletter, claim_token=claim_token
    )
    if not updated:
        return
    if deadletter:
        result.deadlettered += 1
        logger.error(
            f"[CAPI_WORKER] Event {event_id} dead-lettered after {attempt_count + 1} attempts",
            extra={"tenant_id": str(tenant_id), "event_name": event_name, "error": detail},
        )
        capture_exception(
            Deadlettered(event_id, attempt_count + 1, detail),
            extra={"tenant_id": str(tenant_id), "event_name": event_name},
        )
    else:
        result.retry += 1
        logger.warning(
            f"[CAPI_WORKER] Event {event_id} failed (attempt {attempt_count + 1}): {detail}",
            extra={"tenant_id": str(tenant_id), "event_name": event_name},
        )


async def run_delivery_batch(
    db: Session,
    tenant_id: UUID,
    credentials: ConversionsCredentials,
    *,
    limit: int,
    client: Optional[MetaCAPIService] = None,
    lease_seconds: Optional[int] = None,
) -> DeliveryBatchResult:
    """Claim up to `limit` events for a tenant and deliver them.

    Args:
        db: Database session
        tenant_id: Tenant whose queue is drained
        credentials: Resolved pixel id / token / test event code
        limit: Batch size
        client: Pre-built CAPI client (defaults to one built from credentials)
        lease_seconds: Override for the stale-claim lease

    Returns:
        DeliveryBatchResult counters for this invocation
    """
    settings = get_settings()
    if client is None:
        client = MetaCAPIService(
            pixel_id=credentials.pixel_id,
            access_token=credentials.access_token,
            api_version=settings.META_GRAPH_API_VERSION,
            timeout=settings.META_CAPI_TIMEOUT_SECONDS,
        )
    if lease_seconds is None:
        lease_seconds = settings.CAPI_CLAIM_LEASE_SECONDS

    claimed = event_store.claim_batch(db, tenant_id, limit, lease_seconds=lease_seconds)
    # Snapshot before the per-event commits expire the ORM instances
    batch = [
        (row.event_id, row.event_name, dict(row.payload or {}), row.attempt_count, row.claim_token)
        for row in claimed
    ]

    result = DeliveryBatchResult(processed=len(batch))
    for event_id, event_name, payload, attempt_count, claim_token in batch:
        try:
            body = build_request_body(payload, credentials.test_event_code)
            check_match_keys(body)
            await client.send_events(body)
        except ConversionsDeliveryError as e:
            _record_failure(db, tenant_id, event_id, event_name, attempt_count, claim_token, e.detail, result)
            continue
        except Exception as e:
            # Anything else (e.g. an unencodable payload) still consumes one attempt
            logger.exception(f"[CAPI_WORKER] Unexpected error delivering {event_id}")
            detail = f"{e.__class__.__name__}: {e}"
            _record_failure(db, tenant_id, event_id, event_name, attempt_count, claim_token, detail, result)
            continue

        if event_store.mark_sent(db, tenant_id, event_id, claim_token=claim_token):
            result.sent += 1

    logger.info(
        f"[CAPI_WORKER] Batch done: processed={result.processed} sent={result.sent} "
        f"retry={result.retry} deadlettered={result.deadlettered}",
        extra={"tenant_id": str(tenant_id)},
    )
    return result
