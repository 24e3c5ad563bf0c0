"""Conversion event normalization.

WHAT:
    Turns each storefront trigger (touchpoint, add-to-cart, checkout-initiated,
    paid-order webhook) into a canonical Meta CAPI event payload.

WHY:
    - The delivery worker only ever sees one payload shape
    - PII is hashed here, before anything is stored
    - Event ids are derived deterministically so producer retries collapse
      onto the same (tenant_id, event_id) row

HOW:
    Each normalize_* function returns a NormalizedEvent, or None when the
    request came from a known bot/crawler (accepted but not enqueued).
    Missing identifying fields raise ValidationError before any store write.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters
    - capi_relay/services/event_store.py (consumer)
"""

import hashlib
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from capi_relay.exceptions import ValidationError
from capi_relay.models import CapiEventNameEnum, Touchpoint
from capi_relay.schemas import AddToCartRequest, InitiateCheckoutRequest, TouchpointRequest
from capi_relay.services.attribution import RequestSignals, first_forwarded_ip

logger = logging.getLogger(__name__)

ACTION_SOURCE = "website"
DEFAULT_CURRENCY = "INR"

# Case-insensitive substrings of crawler user agents
BOT_USER_AGENT_MARKERS = (
    "facebookexternalhit",
    "meta-externalads",
    "crawler",
    "bot",
    "spider",
)

# Cart attribute names the storefront uses to pass the marketing session id
SESSION_NOTE_ATTRIBUTES = ("session_id", "bb_mkt_sid")


@dataclass
class NormalizedEvent:
    """Canonical event ready for Event Store upsert."""
    event_name: str
    event_id: str
    event_time: datetime
    event_source_url: Optional[str]
    payload: Dict[str, Any]


# =============================================================================
# HASHING & IDENTITY
# =============================================================================

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    """Digits only (Meta expects country code + number, no symbols)."""
    return "".join(ch for ch in phone if ch.isdigit())


def hash_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    normalized = normalize_email(email)
    return sha256_hex(normalized) if normalized else None


def hash_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    normalized = normalize_phone(phone)
    return sha256_hex(normalized) if normalized else None


def external_id_for_session(session_id: str, salt: str) -> str:
    """Pseudonymous, stable identity for a storefront session."""
    return sha256_hex(f"{salt}:{session_id.strip()}")


def is_bot_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    lowered = user_agent.lower()
    return any(marker in lowered for marker in BOT_USER_AGENT_MARKERS)


def _stable_event_id(prefix: str, *parts: str) -> str:
    digest = sha256_hex("|".join(parts))[:24]
    return f"{prefix}_{digest}"


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _unix_seconds(moment: datetime) -> int:
    return int(moment.timestamp())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_number(value: float) -> str:
    # 499.0 and 499 must hash identically
    return repr(int(value)) if float(value).is_integer() else repr(float(value))


# =============================================================================
# PAYLOAD ASSEMBLY
# =============================================================================

def build_user_data(
    *,
    external_id: str,
    signals: Optional[RequestSignals] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    touchpoint: Optional[Touchpoint] = None,
) -> Dict[str, Any]:
    """Assemble user_data with hashed PII; null entries are dropped.

    Request values win; a stored touchpoint for the same session fills gaps.
    """
    fbp = signals.fbp if signals else None
    fbc = signals.fbc if signals else None
    user_agent = signals.user_agent if signals else None
    client_ip = signals.client_ip if signals else None

    if touchpoint is not None:
        fbc = fbc or touchpoint.click_id_primary
        fbp = fbp or touchpoint.click_id_secondary
        user_agent = user_agent or touchpoint.user_agent
        client_ip = client_ip or touchpoint.ip

    em = hash_email(email)
    ph = hash_phone(phone)

    user_data: Dict[str, Any] = {
        "external_id": [external_id],
        "fbp": fbp,
        "fbc": fbc,
        "client_user_agent": user_agent,
        "client_ip_address": client_ip,
        "em": [em] if em else None,
        "ph": [ph] if ph else None,
    }
    return {k: v for k, v in user_data.items() if v is not None}


def _event_payload(
    *,
    event_name: str,
    event_id: str,
    event_time: datetime,
    event_source_url: Optional[str],
    user_data: Dict[str, Any],
    custom_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "event_name": event_name,
        "event_time": _unix_seconds(event_time),
        "event_id": event_id,  # CRITICAL for deduplication with the browser pixel
        "action_source": ACTION_SOURCE,
        "event_source_url": event_source_url,
        "user_data": user_data,
    }
    if custom_data is not None:
        payload["custom_data"] = custom_data
    return payload


# =============================================================================
# TRIGGERS
# =============================================================================

def normalize_page_view(
    req: TouchpointRequest,
    signals: RequestSignals,
    *,
    salt: str,
    now: Optional[datetime] = None,
) -> Optional[NormalizedEvent]:
    """PageView enqueued alongside every touchpoint sighting."""
    if is_bot_user_agent(signals.user_agent):
        return None

    session_id = req.session_id.strip()
    if not session_id:
        raise ValidationError("session_id is required")

    event_time = now or _now()
    event_source_url = _clean(req.landing_url)
    event_id = _stable_event_id("tp", session_id, event_source_url or "")

    payload = _event_payload(
        event_name=CapiEventNameEnum.page_view.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        user_data=build_user_data(
            external_id=external_id_for_session(session_id, salt),
            signals=signals,
        ),
    )
    return NormalizedEvent(
        event_name=CapiEventNameEnum.page_view.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        payload=payload,
    )


def normalize_add_to_cart(
    req: AddToCartRequest,
    signals: RequestSignals,
    *,
    salt: str,
    touchpoint: Optional[Touchpoint] = None,
    now: Optional[datetime] = None,
) -> Optional[NormalizedEvent]:
    """Normalize an AddToCart storefront call.

    Raises:
        ValidationError: No session id or no item identifier
    """
    if is_bot_user_agent(signals.user_agent):
        logger.info("[NORMALIZER] Ignoring AddToCart from bot user agent")
        return None

    session_id = req.session_id.strip()
    item_id = _clean(req.sku) or _clean(req.shopify_variant_id) or _clean(req.variant_id)
    if not session_id:
        raise ValidationError("session_id is required")
    if not item_id:
        raise ValidationError("One of sku, shopify_variant_id, or variant_id is required")

    quantity = req.quantity or req.qty or 1
    event_source_url = _clean(req.event_source_url)
    event_id = _clean(req.event_id) or _stable_event_id(
        "atc", session_id, item_id, str(quantity), event_source_url or ""
    )
    event_time = now or _now()

    payload = _event_payload(
        event_name=CapiEventNameEnum.add_to_cart.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        user_data=build_user_data(
            external_id=external_id_for_session(session_id, salt),
            signals=signals,
            email=req.email,
            phone=req.phone,
            touchpoint=touchpoint,
        ),
        custom_data={
            "currency": (_clean(req.currency) or DEFAULT_CURRENCY).upper(),
            "value": req.value if req.value is not None else 0,
            "content_type": "product",
            "contents": [{"id": item_id, "quantity": quantity}],
        },
    )
    return NormalizedEvent(
        event_name=CapiEventNameEnum.add_to_cart.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        payload=payload,
    )


def normalize_initiate_checkout(
    req: InitiateCheckoutRequest,
    signals: RequestSignals,
    *,
    salt: str,
    touchpoint: Optional[Touchpoint] = None,
    now: Optional[datetime] = None,
) -> Optional[NormalizedEvent]:
    """Normalize an InitiateCheckout storefront call."""
    if is_bot_user_agent(signals.user_agent):
        logger.info("[NORMALIZER] Ignoring InitiateCheckout from bot user agent")
        return None

    session_id = req.session_id.strip()
    if not session_id:
        raise ValidationError("session_id is required")

    contents: List[Dict[str, Any]] = []
    for item in req.contents:
        item_id = item.id.strip()
        if not item_id:
            raise ValidationError("contents[].id must not be blank")
        entry: Dict[str, Any] = {"id": item_id, "quantity": item.quantity}
        if item.item_price is not None:
            entry["item_price"] = item.item_price
        contents.append(entry)

    event_source_url = _clean(req.event_source_url)
    event_id = _clean(req.event_id) or _stable_event_id(
        "ic",
        session_id,
        _format_number(req.value),
        ",".join(f"{c['id']}:{c['quantity']}" for c in contents),
    )
    event_time = now or _now()

    payload = _event_payload(
        event_name=CapiEventNameEnum.initiate_checkout.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        user_data=build_user_data(
            external_id=external_id_for_session(session_id, salt),
            signals=signals,
            email=req.email,
            phone=req.phone,
            touchpoint=touchpoint,
        ),
        custom_data={
            "currency": req.currency.strip().upper(),
            "value": req.value,
            "content_type": "product",
            "contents": contents,
        },
    )
    return NormalizedEvent(
        event_name=CapiEventNameEnum.initiate_checkout.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        payload=payload,
    )


# =============================================================================
# PAID-ORDER WEBHOOK
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept unix seconds, numeric strings, or ISO 8601 strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromtimestamp(int(float(text)), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def order_session_id(order: Mapping[str, Any]) -> Optional[str]:
    """Marketing session id carried in the order's note attributes, if any."""
    attributes = order.get("note_attributes")
    if not isinstance(attributes, list):
        return None
    for attribute in attributes:
        if not isinstance(attribute, Mapping):
            continue
        if attribute.get("name") in SESSION_NOTE_ATTRIBUTES:
            value = _clean(attribute.get("value"))
            if value:
                return value
    return None


def _client_details(order: Mapping[str, Any]) -> Mapping[str, Any]:
    details = order.get("client_details")
    return details if isinstance(details, Mapping) else {}


def _order_ip(order: Mapping[str, Any]) -> Optional[str]:
    client_details = _client_details(order)
    candidates = (
        order.get("browser_ip"),
        client_details.get("browser_ip"),
        client_details.get("ip_address"),
    )
    for candidate in candidates:
        ip = first_forwarded_ip(candidate)
        if ip:
            return ip
    return None


def _order_user_agent(order: Mapping[str, Any]) -> Optional[str]:
    client_details = _client_details(order)
    return (
        _clean(client_details.get("user_agent"))
        or _clean(client_details.get("browser_user_agent"))
        or _clean(order.get("user_agent"))
    )


def _order_money(order: Mapping[str, Any]) -> tuple:
    currency = (_clean(order.get("currency")) or DEFAULT_CURRENCY).upper()
    raw = order.get("total_price")
    if raw is None:
        raw = order.get("current_total_price")
    if raw is None:
        raw = order.get("subtotal_price")
    try:
        value = float(raw) if raw is not None else 0.0
    except (TypeError, ValueError):
        value = 0.0
    if not math.isfinite(value):
        value = 0.0
    return value, currency


def _order_contents(order: Mapping[str, Any]) -> List[Dict[str, Any]]:
    line_items = order.get("line_items")
    if not isinstance(line_items, list):
        return []
    contents = []
    for line in line_items:
        if not isinstance(line, Mapping):
            continue
        item_id = (
            _clean(line.get("variant_id"))
            or _clean(line.get("product_id"))
            or _clean(line.get("sku"))
        )
        if not item_id:
            continue
        try:
            quantity = int(line.get("quantity") or 1)
        except (TypeError, ValueError):
            quantity = 1
        contents.append({"id": item_id, "quantity": quantity if quantity > 0 else 1})
    return contents


def purchase_external_id(order: Mapping[str, Any], salt: str) -> str:
    """Deterministic identity for orders that carry no marketing session."""
    customer = order.get("customer")
    if not isinstance(customer, Mapping):
        customer = {}
    parts = [
        salt,
        _clean(customer.get("id")) or "",
        normalize_email(str(order["email"])) if order.get("email") else "",
        normalize_phone(str(order["phone"])) if order.get("phone") else "",
        _clean(order.get("id")) or "",
    ]
    return sha256_hex("|".join(parts))


def normalize_purchase_webhook(
    order: Mapping[str, Any],
    *,
    salt: str,
    touchpoint: Optional[Touchpoint] = None,
    now: Optional[datetime] = None,
) -> NormalizedEvent:
    """Normalize a paid-order webhook body into a Purchase event.

    Same order id always yields the same event_id, so webhook redeliveries
    overwrite the queued row instead of duplicating it.

    Raises:
        ValidationError: Body is not an object or has no order id
    """
    if not isinstance(order, Mapping):
        raise ValidationError("Webhook body must be a JSON object")

    order_id = _clean(order.get("id"))
    if not order_id:
        raise ValidationError("Missing order.id in webhook payload")

    event_id = f"shopify_purchase_{order_id}"
    event_time = (
        parse_timestamp(order.get("processed_at"))
        or parse_timestamp(order.get("paid_at"))
        or parse_timestamp(order.get("created_at"))
        or now
        or _now()
    )
    event_source_url = _clean(order.get("order_status_url")) or _clean(order.get("landing_site"))

    session_id = order_session_id(order)
    external_id = (
        external_id_for_session(session_id, salt)
        if session_id
        else purchase_external_id(order, salt)
    )

    signals = RequestSignals(
        fbp=None,
        fbc=None,
        client_ip=_order_ip(order),
        user_agent=_order_user_agent(order),
    )
    value, currency = _order_money(order)

    payload = _event_payload(
        event_name=CapiEventNameEnum.purchase.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        user_data=build_user_data(
            external_id=external_id,
            signals=signals,
            email=_clean(order.get("email")),
            phone=_clean(order.get("phone")),
            touchpoint=touchpoint,
        ),
        custom_data={
            "currency": currency,
            "value": value,
            "content_type": "product",
            "contents": _order_contents(order),
            "order_id": order_id,
        },
    )
    return NormalizedEvent(
        event_name=CapiEventNameEnum.purchase.value,
        event_id=event_id,
        event_time=event_time,
        event_source_url=event_source_url,
        payload=payload,
    )
