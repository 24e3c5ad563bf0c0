"""Shopify paid-order webhook.

WHAT:
    Verifies the HMAC signature of orders/paid deliveries and enqueues a
    Purchase event for Meta CAPI.

WHY:
    orders/paid means real revenue (not an abandoned checkout). Shopify
    redelivers webhooks on timeouts, so the Purchase event_id is derived
    from the order id and re-ingestion overwrites the queued row.

FLOW:
    1. Read the raw body (signature covers the exact bytes)
    2. Verify X-Shopify-Hmac-SHA256 (401 and nothing written on mismatch)
    3. Parse JSON (400 on failure)
    4. Look up the storefront touchpoint via the order's session note attribute
    5. Normalize and upsert

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
"""

import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from capi_relay.database import get_db
from capi_relay.deps import Settings, get_settings, parse_tenant_id
from capi_relay.exceptions import AuthError, ValidationError
from capi_relay.schemas import WebhookAck
from capi_relay.services import event_store
from capi_relay.services.normalizer import normalize_purchase_webhook, order_session_id
from capi_relay.services.signature import SIGNATURE_HEADER, verify_webhook_signature
from capi_relay.services.touchpoints import get_touchpoint

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Shopify Webhooks"])


@router.post("/order-paid", response_model=WebhookAck)
async def handle_order_paid(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Handle orders/paid webhook and enqueue the Purchase event."""
    body = await request.body()
    hmac_header = request.headers.get(SIGNATURE_HEADER)
    shop_domain = request.headers.get("X-Shopify-Shop-Domain")

    if not verify_webhook_signature(body, hmac_header, settings.SHOPIFY_WEBHOOK_SECRET):
        logger.warning(f"[SHOPIFY_WEBHOOK] orders/paid - Invalid signature (shop={shop_domain})")
        raise AuthError("Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.error(f"[SHOPIFY_WEBHOOK] Failed to parse JSON: {e}")
        raise ValidationError("Invalid JSON payload")

    tenant_id = parse_tenant_id(None, settings)

    touchpoint = None
    session_id = order_session_id(payload) if isinstance(payload, dict) else None
    if session_id:
        touchpoint = get_touchpoint(db, tenant_id, session_id)

    event = normalize_purchase_webhook(
        payload, salt=settings.EXTERNAL_ID_SALT, touchpoint=touchpoint
    )

    logger.info(
        "[SHOPIFY_WEBHOOK] orders/paid received",
        extra={
            "shop_domain": shop_domain,
            "event_id": event.event_id,
            "has_touchpoint": touchpoint is not None,
        }
    )

    event_store.upsert_queued(
        db,
        tenant_id,
        event.event_id,
        event.payload,
        event_name=event.event_name,
        event_time=event.event_time,
        event_source_url=event.event_source_url,
        touchpoint_id=touchpoint.id if touchpoint else None,
    )
    return WebhookAck()
