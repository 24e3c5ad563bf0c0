"""Pydantic request/response schemas for the HTTP surface.

Storefront bodies are validated explicitly in the routers (not via FastAPI
body injection) so a malformed body maps to the pipeline's 400
ValidationError and the raw dict stays available for attribution lookups.
"""

import math
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

# Blank or whitespace-only session ids are rejected before anything is written
SessionId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


# =============================================================================
# STOREFRONT REQUESTS
# =============================================================================


def _stringify_numeric_id(v: Any) -> Any:
    if isinstance(v, bool):
        return v
    if isinstance(v, int):
        return str(v)
    if isinstance(v, float):
        if math.isfinite(v) and v.is_integer():
            return str(int(v))
        raise ValueError("numeric ids must be whole numbers")
    return v


class ClickIds(BaseModel):
    """Nested `user_data` hints some storefront scripts send."""
    fbp: Optional[str] = None
    fbc: Optional[str] = None


class TouchpointRequest(BaseModel):
    """Session sighting with campaign/click metadata.

    Example:
        {
            "session_id": "9b1f...",
            "utm_source": "facebook",
            "utm_campaign": "diwali",
            "fbc": "fb.1.1700000000.AbCd",
            "landing_url": "https://store.example/products/kurta"
        }
    """
    session_id: SessionId
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    landing_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None


class AddToCartRequest(BaseModel):
    """AddToCart call from the storefront theme.

    One of `sku`, `shopify_variant_id` or `variant_id` identifies the item.
    """
    session_id: SessionId
    sku: Optional[str] = None
    shopify_variant_id: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)
    qty: Optional[int] = Field(None, ge=1)
    value: Optional[float] = Field(None, allow_inf_nan=False)
    currency: Optional[str] = None
    event_source_url: Optional[str] = None
    event_id: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    user_data: Optional[ClickIds] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    client_ip: Optional[str] = None
    client_user_agent: Optional[str] = None

    @field_validator("sku", "shopify_variant_id", "variant_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v: Any) -> Any:
        # Shopify variant ids arrive as numbers from cart.js
        return _stringify_numeric_id(v)


class CheckoutContent(BaseModel):
    id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    item_price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> Any:
        return _stringify_numeric_id(v)


class InitiateCheckoutRequest(BaseModel):
    """InitiateCheckout call fired when the shopper clicks checkout."""
    session_id: SessionId
    event_id: Optional[str] = None
    event_source_url: Optional[str] = None
    currency: str = Field(..., min_length=1)
    value: float = Field(..., ge=0, allow_inf_nan=False)
    contents: List[CheckoutContent] = Field(..., min_length=1)
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    user_data: Optional[ClickIds] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    client_ip: Optional[str] = None
    client_user_agent: Optional[str] = None


# =============================================================================
# RESPONSES
# =============================================================================


class TouchpointResponse(BaseModel):
    ok: bool = True
    touchpoint_id: str


class EventEnqueuedResponse(BaseModel):
    """`event_row_id` is the ConversionEvent UUID, or "bot_ignored"."""
    ok: bool = True
    event_row_id: str


class WebhookAck(BaseModel):
    ok: bool = True


class SendBatchSummary(BaseModel):
    """Result of POST /internal/capi/send-batch.

    `failed` counts events dead-lettered by this batch; `retry` counts
    events that failed but stay eligible for another attempt.
    """
    ok: bool = True
    processed: int
    sent: int
    retry: int
    failed: int


class WorkerSummary(BaseModel):
    """Result of POST /internal/capi/worker."""
    ok: bool = True
    processed: int
    sent: int
    failed: int
    deadlettered: int


class ConversionEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: str
    event_name: str
    event_time: datetime
    status: str
    attempt_count: int
    last_error: Optional[str] = None
    event_source_url: Optional[str] = None
    payload: Dict[str, Any]
    created_at: datetime
    sent_at: Optional[datetime] = None


class EventListResponse(BaseModel):
    events: List[ConversionEventOut]
    status_counts: Dict[str, int]


class RequeueResponse(BaseModel):
    ok: bool = True
    event_id: str
    status: str


class MarketingSettingsUpdate(BaseModel):
    """PUT /internal/capi/settings body. Blank strings clear a value."""
    meta_pixel_id: Optional[str] = None
    meta_access_token: Optional[str] = None
    meta_test_event_code: Optional[str] = None


class MarketingSettingsOut(BaseModel):
    """Settings view; the access token is never echoed back."""
    tenant_id: UUID
    meta_pixel_id: Optional[str] = None
    has_access_token: bool
    meta_test_event_code: Optional[str] = None
