"""Storefront event endpoints.

WHAT:
    Receives touchpoint, add-to-cart and initiate-checkout calls from the
    storefront theme script and enqueues normalized CAPI events.

WHY:
    Browser pixels are blocked or throttled for a large share of shoppers.
    Re-sending the same events server-side (with the same event_id) lets
    Meta deduplicate against the pixel while recovering lost conversions.

FLOW (per request):
    1. Origin check against EVENT_ALLOWED_ORIGINS (403 otherwise)
    2. Body validation (400 on malformed input, nothing written)
    3. Attribution signals: body -> cookies -> headers
    4. Touchpoint lookup/upsert for the session
    5. Normalize (bots are acknowledged but not enqueued)
    6. Idempotent upsert into capi_events

REFERENCES:
    - capi_relay/services/normalizer.py
    - capi_relay/services/attribution.py
"""

import logging
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from capi_relay.database import get_db
from capi_relay.deps import Settings, get_settings, parse_tenant_id
from capi_relay.exceptions import OriginNotAllowed, ValidationError
from capi_relay.schemas import (
    AddToCartRequest,
    EventEnqueuedResponse,
    InitiateCheckoutRequest,
    TouchpointRequest,
    TouchpointResponse,
)
from capi_relay.services import event_store
from capi_relay.services.attribution import extract_request_signals
from capi_relay.services.normalizer import (
    NormalizedEvent,
    normalize_add_to_cart,
    normalize_initiate_checkout,
    normalize_page_view,
)
from capi_relay.services.touchpoints import get_touchpoint, upsert_touchpoint

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["Storefront Events"])

BOT_IGNORED = "bot_ignored"

ModelT = TypeVar("ModelT", bound=BaseModel)


# =============================================================================
# CORS HELPERS
# =============================================================================
# WHAT: Storefront scripts call these routes cross-origin from the shop domain
# WHY: Only the configured shop origins may enqueue events


def resolve_allowed_origin(request: Request, settings: Settings) -> Optional[str]:
    """Return the value to echo in Access-Control-Allow-Origin, or None if refused."""
    origin = request.headers.get("origin")
    allowed = settings.allowed_origins
    if not allowed:
        return origin or "*"
    if origin and origin in allowed:
        return origin
    return None


def add_cors_headers(response: Response, origin: str) -> Response:
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Vary"] = "Origin"
    return response


def _require_origin(request: Request, settings: Settings) -> str:
    origin = resolve_allowed_origin(request, settings)
    if origin is None:
        logger.warning(f"[EVENTS] Origin not allowed: {request.headers.get('origin')}")
        raise OriginNotAllowed("Origin not allowed")
    return origin


@router.options("/touchpoint")
@router.options("/add-to-cart")
@router.options("/initiate-checkout")
async def preflight(request: Request, settings: Settings = Depends(get_settings)):
    """CORS preflight for the storefront routes."""
    origin = resolve_allowed_origin(request, settings)
    if origin is None:
        return Response(status_code=403)

    response = Response(status_code=200)
    add_cors_headers(response, origin)
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "content-type"
    response.headers["Access-Control-Max-Age"] = "86400"
    return response


# =============================================================================
# BODY PARSING
# =============================================================================


async def _read_json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid request body", details="Body is not valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body", details="Body must be a JSON object")
    return body


def _validate(model: Type[ModelT], body: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError("Invalid request body", details=str(e))


def _enqueue(db: Session, tenant_id, event: NormalizedEvent, touchpoint_id=None):
    return event_store.upsert_queued(
        db,
        tenant_id,
        event.event_id,
        event.payload,
        event_name=event.event_name,
        event_time=event.event_time,
        event_source_url=event.event_source_url,
        touchpoint_id=touchpoint_id,
    )


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post("/touchpoint", response_model=TouchpointResponse)
async def record_touchpoint(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Upsert the session touchpoint and enqueue a PageView.

    The PageView event_id is stable per (session, landing URL), so the
    script re-firing on reload overwrites the same queued row.
    """
    origin = _require_origin(request, settings)
    tenant_id = parse_tenant_id(None, settings)

    body = await _read_json_body(request)
    req = _validate(TouchpointRequest, body)
    signals = extract_request_signals(
        request, body, explicit_ip=req.ip, explicit_user_agent=req.user_agent
    )

    touchpoint = upsert_touchpoint(
        db,
        tenant_id,
        req.session_id.strip(),
        utm_source=req.utm_source,
        utm_medium=req.utm_medium,
        utm_campaign=req.utm_campaign,
        utm_content=req.utm_content,
        utm_term=req.utm_term,
        click_id_primary=signals.fbc,
        click_id_secondary=signals.fbp,
        landing_url=req.landing_url,
        referrer=req.referrer,
        user_agent=signals.user_agent,
        ip=signals.client_ip,
    )

    event = normalize_page_view(req, signals, salt=settings.EXTERNAL_ID_SALT)
    if event is not None:
        _enqueue(db, tenant_id, event, touchpoint_id=touchpoint.id)
    else:
        logger.info("[EVENTS] PageView from bot user agent not enqueued")

    response = JSONResponse(
        content=TouchpointResponse(touchpoint_id=str(touchpoint.id)).model_dump()
    )
    return add_cors_headers(response, origin)


@router.post("/add-to-cart", response_model=EventEnqueuedResponse)
async def add_to_cart(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Enqueue an AddToCart event for the shopper's session."""
    origin = _require_origin(request, settings)
    tenant_id = parse_tenant_id(None, settings)

    body = await _read_json_body(request)
    req = _validate(AddToCartRequest, body)
    signals = extract_request_signals(
        request, body, explicit_ip=req.client_ip, explicit_user_agent=req.client_user_agent
    )
    touchpoint = get_touchpoint(db, tenant_id, req.session_id.strip())

    event = normalize_add_to_cart(
        req, signals, salt=settings.EXTERNAL_ID_SALT, touchpoint=touchpoint
    )
    if event is None:
        row_id = BOT_IGNORED
    else:
        row_id = str(_enqueue(db, tenant_id, event, touchpoint.id if touchpoint else None))

    response = JSONResponse(content=EventEnqueuedResponse(event_row_id=row_id).model_dump())
    return add_cors_headers(response, origin)


@router.post("/initiate-checkout", response_model=EventEnqueuedResponse)
async def initiate_checkout(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Enqueue an InitiateCheckout event for the shopper's session."""
    origin = _require_origin(request, settings)
    tenant_id = parse_tenant_id(None, settings)

    body = await _read_json_body(request)
    req = _validate(InitiateCheckoutRequest, body)
    signals = extract_request_signals(
        request, body, explicit_ip=req.client_ip, explicit_user_agent=req.client_user_agent
    )
    touchpoint = get_touchpoint(db, tenant_id, req.session_id.strip())

    event = normalize_initiate_checkout(
        req, signals, salt=settings.EXTERNAL_ID_SALT, touchpoint=touchpoint
    )
    if event is None:
        row_id = BOT_IGNORED
    else:
        row_id = str(_enqueue(db, tenant_id, event, touchpoint.id if touchpoint else None))

    response = JSONResponse(content=EventEnqueuedResponse(event_row_id=row_id).model_dump())
    return add_cors_headers(response, origin)
