"""SQLAlchemy ORM models and enums.

This module defines the conversion pipeline schema: the idempotent event
queue, the session-scoped attribution cache, and per-tenant Meta settings.
All tables are keyed by `tenant_id` so one deployment can serve several
storefronts.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Integer, JSON, Text, UniqueConstraint, Index, Uuid
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class CapiEventStatusEnum(str, enum.Enum):
    """Delivery state of a queued conversion event.

    queued -> sending -> sent
                      -> failed -> sending -> ... -> deadletter
    """
    queued = "queued"
    sending = "sending"  # claimed by a worker invocation, in flight
    sent = "sent"
    failed = "failed"
    deadletter = "deadletter"  # terminal until an operator requeues it


class CapiEventNameEnum(str, enum.Enum):
    page_view = "PageView"
    add_to_cart = "AddToCart"
    initiate_checkout = "InitiateCheckout"
    purchase = "Purchase"


# Pipeline models ------------------------------------------------

class ConversionEvent(Base):
    """One logical conversion event waiting for (or done with) delivery.

    WHAT:
        Stores the canonical Meta CAPI payload plus delivery bookkeeping.

    WHY:
        The (tenant_id, event_id) unique constraint makes producer retries
        safe: re-ingesting overwrites the payload instead of adding a row.

    Rows are never deleted. Dead-lettered rows stay for inspection and
    manual requeue.
    """
    __tablename__ = "capi_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "event_id", name="uq_capi_event_tenant_event"),
        Index("ix_capi_events_claim", "tenant_id", "status", "created_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    event_name = Column(String, nullable=False)
    event_time = Column(DateTime, nullable=False)  # when the customer acted
    event_id = Column(String, nullable=False)  # producer idempotency key
    action_source = Column(String, nullable=False, default="website")
    event_source_url = Column(Text, nullable=True)
    touchpoint_id = Column(Uuid(as_uuid=True), nullable=True)

    payload = Column(JSON, nullable=False)

    status = Column(String, nullable=False, default=CapiEventStatusEnum.queued.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # Claim bookkeeping (set by claim_batch)
    claim_token = Column(String, nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)

    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __str__(self):
        return f"{self.event_name} {self.event_id} ({self.status})"


class Touchpoint(Base):
    """Session-scoped attribution snapshot.

    Every column is merged last-non-null-wins: a later sighting of the same
    session only overwrites the fields it actually carries.
    """
    __tablename__ = "capi_touchpoints"
    __table_args__ = (
        UniqueConstraint("tenant_id", "session_id", name="uq_capi_touchpoint_session"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False)
    session_id = Column(String, nullable=False)

    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)

    # Meta identifiers: fbc (click) and fbp (browser)
    click_id_primary = Column(String, nullable=True)
    click_id_secondary = Column(String, nullable=True)

    landing_url = Column(Text, nullable=True)
    referrer = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    ip = Column(String, nullable=True)

    first_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __str__(self):
        return f"Touchpoint {self.session_id}"


class TenantMarketingSettings(Base):
    """Per-tenant Meta pixel credentials.

    Missing values fall back to the process-wide defaults in Settings
    (see services/credentials.py).
    """
    __tablename__ = "capi_tenant_settings"

    tenant_id = Column(Uuid(as_uuid=True), primary_key=True)
    meta_pixel_id = Column(String, nullable=True)
    meta_access_token = Column(Text, nullable=True)
    meta_test_event_code = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __str__(self):
        return f"Settings {self.tenant_id}"
