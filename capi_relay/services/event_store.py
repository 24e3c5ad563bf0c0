"""Idempotent conversion event store.

WHAT:
    All reads and writes of the `capi_events` queue:
    - upsert_queued: ingestion write, idempotent on (tenant_id, event_id)
    - claim_batch:   atomic hand-off of eligible rows to one worker invocation
    - mark_sent / mark_failed: delivery outcome bookkeeping
    - requeue:       operator reset of failed/dead-lettered rows
    - list_events / count_by_status: operator inspection

WHY:
    Delivery must be at-least-once and idempotent even when producers retry
    and worker invocations overlap. Every state transition here is a single
    conditional statement executed by the database, never a
    read-then-write in Python.

STATE MACHINE:
    queued -> sending -> sent
                      -> failed -> sending -> ... -> deadletter (terminal)
    deadletter/failed -> queued only through requeue().

REFERENCES:
    - capi_relay/services/delivery_worker.py (main consumer)
    - capi_relay/models.py: ConversionEvent
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from capi_relay.database import dialect_insert
from capi_relay.exceptions import EventNotFound, InvalidEventState
from capi_relay.models import CapiEventStatusEnum, ConversionEvent

logger = logging.getLogger(__name__)

# Fixed retry budget: the 8th failed attempt dead-letters the event
MAX_DELIVERY_ATTEMPTS = 8

DEFAULT_CLAIM_LEASE_SECONDS = 600
MAX_ERROR_LENGTH = 2000

CLAIMABLE_STATUSES = (CapiEventStatusEnum.queued.value, CapiEventStatusEnum.failed.value)
REQUEUEABLE_STATUSES = (CapiEventStatusEnum.failed.value, CapiEventStatusEnum.deadletter.value)


def should_deadletter(attempt_count: int) -> bool:
    """True when one more failure exhausts the retry budget."""
    return attempt_count + 1 >= MAX_DELIVERY_ATTEMPTS


def _to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


# =============================================================================
# INGESTION WRITE
# =============================================================================

def upsert_queued(
    db: Session,
    tenant_id: UUID,
    event_id: str,
    payload: Dict[str, Any],
    *,
    event_name: str,
    event_time: datetime,
    event_source_url: Optional[str] = None,
    touchpoint_id: Optional[UUID] = None,
) -> UUID:
    """Insert or replace a queued event.

    On conflict on (tenant_id, event_id) the payload is replaced and delivery
    state is reset (status=queued, attempt_count=0, last_error=None), so
    producer retries never create a second row.

    Returns:
        Row id of the (single) stored event
    """
    now = datetime.utcnow()
    stmt = dialect_insert(db, ConversionEvent).values(
        id=uuid.uuid4(),
        tenant_id=tenant_id,
        event_id=event_id,
        event_name=event_name,
        event_time=_to_naive_utc(event_time),
        action_source="website",
        event_source_url=event_source_url,
        touchpoint_id=touchpoint_id,
        payload=payload,
        status=CapiEventStatusEnum.queued.value,
        attempt_count=0,
        last_error=None,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ConversionEvent.tenant_id, ConversionEvent.event_id],
        set_={
            "event_name": stmt.excluded.event_name,
            "event_time": stmt.excluded.event_time,
            "event_source_url": stmt.excluded.event_source_url,
            "touchpoint_id": func.coalesce(stmt.excluded.touchpoint_id, ConversionEvent.touchpoint_id),
            "payload": stmt.excluded.payload,
            "status": CapiEventStatusEnum.queued.value,
            "attempt_count": 0,
            "last_error": None,
            "claim_token": None,
            "claimed_at": None,
            "sent_at": None,
            "updated_at": now,
        },
    )
    db.execute(stmt)
    db.commit()

    row_id = db.execute(
        select(ConversionEvent.id).where(
            ConversionEvent.tenant_id == tenant_id,
            ConversionEvent.event_id == event_id,
        )
    ).scalar_one()

    logger.info(
        "[CAPI_STORE] Queued %s event %s", event_name, event_id,
        extra={"tenant_id": str(tenant_id), "event_row_id": str(row_id)},
    )
    return row_id


# =============================================================================
# WORKER OPERATIONS
# =============================================================================

def claim_batch(
    db: Session,
    tenant_id: UUID,
    limit: int,
    lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS,
) -> List[ConversionEvent]:
    """Atomically claim up to `limit` deliverable events.

    WHAT:
        One conditional UPDATE moves eligible rows (queued, failed, or
        `sending` claims older than the lease) to `sending` and stamps them
        with a fresh claim token. Rows bearing that token are returned.

    WHY:
        The status predicate is re-checked by the database for every row it
        updates, so two overlapping invocations can never both claim the
        same event. On PostgreSQL the candidate subquery also uses
        FOR UPDATE SKIP LOCKED so concurrent claimers don't queue up behind
        each other.

    Args:
        db: Database session (committed by this call)
        tenant_id: Tenant whose queue is drained
        limit: Maximum rows to claim
        lease_seconds: Age after which an unfinished claim may be taken over

    Returns:
        Claimed ConversionEvent rows, oldest first
    """
    if limit <= 0:
        return []

    now = datetime.utcnow()
    stale_before = now - timedelta(seconds=lease_seconds)
    token = uuid.uuid4().hex

    eligible = or_(
        ConversionEvent.status.in_(CLAIMABLE_STATUSES),
        and_(
            ConversionEvent.status == CapiEventStatusEnum.sending.value,
            ConversionEvent.claimed_at < stale_before,
        ),
    )
    candidates = (
        select(ConversionEvent.id)
        .where(ConversionEvent.tenant_id == tenant_id, eligible)
        .order_by(ConversionEvent.created_at, ConversionEvent.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .correlate(None)
    )
    stmt = (
        update(ConversionEvent)
        .where(ConversionEvent.id.in_(candidates), eligible)
        .values(
            status=CapiEventStatusEnum.sending.value,
            claim_token=token,
            claimed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.commit()

    claimed = list(
        db.execute(
            select(ConversionEvent)
            .where(ConversionEvent.claim_token == token)
            .order_by(ConversionEvent.created_at, ConversionEvent.id)
            .execution_options(populate_existing=True)
        ).scalars()
    )
    logger.info(
        "[CAPI_STORE] Claimed %d event(s)", len(claimed),
        extra={"tenant_id": str(tenant_id), "claim_token": token, "limit": limit},
    )
    return claimed


def _outcome_filter(tenant_id: UUID, event_id: str, claim_token: Optional[str]):
    conditions = [
        ConversionEvent.tenant_id == tenant_id,
        ConversionEvent.event_id == event_id,
    ]
    if claim_token is not None:
        # A re-ingested or re-claimed row no longer belongs to this worker
        conditions.append(ConversionEvent.claim_token == claim_token)
    return conditions


def mark_sent(
    db: Session,
    tenant_id: UUID,
    event_id: str,
    claim_token: Optional[str] = None,
) -> bool:
    """Record a successful delivery.

    Returns:
        False if the row was not updated (claim lost to re-ingestion/requeue)
    """
    now = datetime.utcnow()
    result = db.execute(
        update(ConversionEvent)
        .where(*_outcome_filter(tenant_id, event_id, claim_token))
        .values(
            status=CapiEventStatusEnum.sent.value,
            last_error=None,
            sent_at=now,
            claim_token=None,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.warning("[CAPI_STORE] mark_sent skipped for %s: claim no longer held", event_id)
        return False
    return True


def mark_failed(
    db: Session,
    tenant_id: UUID,
    event_id: str,
    error: str,
    deadletter: bool,
    claim_token: Optional[str] = None,
) -> bool:
    """Record a failed delivery attempt.

    attempt_count is incremented by exactly one. Status becomes
    `deadletter` when the caller flags the budget as exhausted, else
    `failed` (eligible for the next claim).

    Returns:
        False if the row was not updated (claim lost to re-ingestion/requeue)
    """
    status = CapiEventStatusEnum.deadletter if deadletter else CapiEventStatusEnum.failed
    now = datetime.utcnow()
    result = db.execute(
        update(ConversionEvent)
        .where(*_outcome_filter(tenant_id, event_id, claim_token))
        .values(
            status=status.value,
            attempt_count=ConversionEvent.attempt_count + 1,
            last_error=(error or "unknown_error")[:MAX_ERROR_LENGTH],
            claim_token=None,
            claimed_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.warning("[CAPI_STORE] mark_failed skipped for %s: claim no longer held", event_id)
        return False
    return True


# =============================================================================
# OPERATOR OPERATIONS
# =============================================================================

def get_event(db: Session, tenant_id: UUID, event_id: str) -> Optional[ConversionEvent]:
    return db.execute(
        select(ConversionEvent)
        .where(ConversionEvent.tenant_id == tenant_id, ConversionEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def requeue(db: Session, tenant_id: UUID, event_id: str) -> ConversionEvent:
    """Manually put a failed or dead-lettered event back in the queue.

    Resets status, attempt_count and last_error. This is the only path out
    of `deadletter` and the only way attempt_count decreases.

    Raises:
        EventNotFound: No such (tenant_id, event_id)
        InvalidEventState: Event is queued, in flight, or already sent
    """
    event = get_event(db, tenant_id, event_id)
    if event is None:
        raise EventNotFound(f"CAPI event {event_id} not found")

    result = db.execute(
        update(ConversionEvent)
        .where(
            ConversionEvent.id == event.id,
            ConversionEvent.status.in_(REQUEUEABLE_STATUSES),
        )
        .values(
            status=CapiEventStatusEnum.queued.value,
            attempt_count=0,
            last_error=None,
            sent_at=None,
            claim_token=None,
            claimed_at=None,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount == 0:
        raise InvalidEventState(
            f"CAPI event {event_id} is {event.status}; only failed or deadletter events can be requeued"
        )

    logger.info(
        "[CAPI_STORE] Requeued event %s (was %s)", event_id, event.status,
        extra={"tenant_id": str(tenant_id)},
    )
    return get_event(db, tenant_id, event_id)


def list_events(
    db: Session,
    tenant_id: UUID,
    status: Optional[str] = None,
    event_name: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 100,
) -> List[ConversionEvent]:
    """Most recent events first, optionally filtered."""
    query = select(ConversionEvent).where(ConversionEvent.tenant_id == tenant_id)
    if status:
        query = query.where(ConversionEvent.status == status)
    if event_name:
        query = query.where(ConversionEvent.event_name == event_name)
    if since:
        query = query.where(ConversionEvent.created_at >= _to_naive_utc(since))
    if until:
        query = query.where(ConversionEvent.created_at <= _to_naive_utc(until))
    query = query.order_by(ConversionEvent.created_at.desc()).limit(limit)
    return list(db.execute(query).scalars())


def count_by_status(db: Session, tenant_id: UUID) -> Dict[str, int]:
    rows = db.execute(
        select(ConversionEvent.status, func.count(ConversionEvent.id))
        .where(ConversionEvent.tenant_id == tenant_id)
        .group_by(ConversionEvent.status)
    ).all()
    return {status: count for status, count in rows}
