"""
Deduplicating outbound notification queue (communication_events).

Producers call enqueue_notification() as often as they like, including on
retries after a partial failure. Requests that mean the same thing share a
dedupe key, and the unique index on that key collapses them into one row:

- no row yet        -> insert as queued
- row is failed     -> reset to queued (retry)
- anything else     -> left untouched

Enqueueing is best-effort relative to the order or payment change that
triggered it. It runs in a savepoint and never raises; errors come back as
EnqueueResult(success=False, non_blocking=True).

Delivery itself belongs to an external dispatcher, which uses claim_batch()
and report_delivery(). reclaim_stuck() and archive_terminal() are sweeps.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import case, select, update

from . import audit, config
from .database import insert, utcnow
from .errors import EventNotFound, ValidationError
from .models import TERMINAL_EVENT_STATUSES, CommunicationEvent, EventStatus

logger = logging.getLogger(__name__)

# Order status -> template used for the customer notification.
STATUS_TEMPLATES = {
    "confirmed": "order_confirmation",
    "preparing": "order_preparing",
    "ready": "order_ready",
    "out_for_delivery": "shipping_notification",
    "delivered": "order_delivered",
    "completed": "order_completed",
    "cancelled": "order_cancellation",
    "refunded": "order_refunded",
}

DISPATCH_OUTCOMES = {
    EventStatus.SENT.value,
    EventStatus.DELIVERED.value,
    EventStatus.FAILED.value,
    EventStatus.BOUNCED.value,
}


@dataclass
class EnqueueResult:
    success: bool
    action: str
    event_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    reason: Optional[str] = None
    existing_status: Optional[str] = None
    non_blocking: bool = False
    error: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.action in ("deduplicated", "skipped")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["skipped"] = self.skipped
        return data


def build_dedupe_key(event_type, order_id, recipient, template_key=None, at=None, nonce=None):
    """
    Deterministic key for a notification request.

    The last component separates legitimately repeated notifications from
    retries of the same one: the caller's nonce if given, otherwise the UTC
    minute the request was made in.
    """
    bucket = nonce if nonce is not None else (at or utcnow()).strftime("%Y%m%d%H%M")
    return ":".join([
        event_type,
        str(order_id or "-"),
        (recipient or "").strip().lower(),
        template_key or "-",
        str(bucket),
    ])


def enqueue_notification(
    db,
    event_type: str,
    recipient: Optional[str],
    template_key: Optional[str] = None,
    variables: Optional[dict] = None,
    order_id: Optional[str] = None,
    dedupe_key: Optional[str] = None,
    *,
    nonce: Optional[str] = None,
    source: str = "system",
    priority: str = "normal",
    now: Optional[datetime] = None,
) -> EnqueueResult:
    """Queue a notification. Never raises; the caller commits."""
    try:
        with db.begin_nested():
            return _enqueue(
                db, event_type, recipient, template_key, variables, order_id,
                dedupe_key, nonce, source, priority, now or utcnow(),
            )
    except Exception as exc:
        logger.exception("Failed to enqueue %s for order %s", event_type, order_id)
        audit.record_safely(
            db,
            "communication_event_insertion_failed",
            "Email System",
            f"Failed to insert communication event: {exc}",
            entity_id=order_id,
            event_type=event_type,
            template_key=template_key,
            error=str(exc),
        )
        return EnqueueResult(success=False, action="error", non_blocking=True, error=str(exc))


def _enqueue(db, event_type, recipient, template_key, variables, order_id, dedupe_key, nonce,
             source, priority, now):
    if not event_type:
        raise ValidationError("event_type is required")

    if not recipient or not recipient.strip():
        audit.record(
            db,
            "communication_event_skipped",
            "Email System",
            "Communication event skipped: missing recipient",
            entity_id=order_id,
            event_type=event_type,
            template_key=template_key,
            reason="missing_recipient",
        )
        return EnqueueResult(success=True, action="skipped", reason="missing_recipient")

    key = dedupe_key or build_dedupe_key(event_type, order_id, recipient, template_key, at=now, nonce=nonce)

    stmt = (
        insert(db, CommunicationEvent)
        .values(
            dedupe_key=key,
            event_type=event_type,
            recipient=recipient.strip(),
            template_key=template_key,
            template_variables=jsonable_encoder(variables or {}),
            status=EventStatus.QUEUED.value,
            retry_count=0,
            source=source,
            priority=priority,
            order_id=order_id,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
        .returning(CommunicationEvent.id)
    )
    event_id = db.execute(stmt).scalar()
    if event_id is not None:
        logger.info("Queued %s (%s) for %s", event_type, key, recipient)
        return EnqueueResult(success=True, action="created", event_id=event_id, dedupe_key=key)

    requeued_id = db.execute(
        update(CommunicationEvent)
        .where(
            CommunicationEvent.dedupe_key == key,
            CommunicationEvent.status == EventStatus.FAILED.value,
        )
        .values(
            status=EventStatus.QUEUED.value,
            processing_started_at=None,
            archived_at=None,
            updated_at=now,
        )
        .returning(CommunicationEvent.id)
        .execution_options(synchronize_session=False)
    ).scalar()
    if requeued_id is not None:
        logger.info("Re-queued failed event %s (%s)", requeued_id, key)
        return EnqueueResult(success=True, action="requeued", event_id=requeued_id, dedupe_key=key)

    existing = db.execute(
        select(CommunicationEvent.id, CommunicationEvent.status)
        .where(CommunicationEvent.dedupe_key == key)
    ).first()
    logger.debug("Deduplicated %s (%s)", event_type, key)
    audit.record(
        db,
        "communication_event_deduplicated",
        "Email System",
        "Duplicate communication event prevented by dedupe_key",
        entity_id=order_id,
        event_type=event_type,
        dedupe_key=key,
        existing_event_id=existing.id if existing else None,
        existing_status=existing.status if existing else None,
    )
    return EnqueueResult(
        success=True,
        action="deduplicated",
        event_id=existing.id if existing else None,
        dedupe_key=key,
        reason="duplicate",
        existing_status=existing.status if existing else None,
    )


def notify_status_change(db, order, entry) -> Optional[EnqueueResult]:
    """Queue the customer notification for a recorded status change, if it has a template."""
    template_key = STATUS_TEMPLATES.get(entry.new_status)
    if template_key is None:
        return None
    return enqueue_notification(
        db,
        "order_status_update",
        order.customer_email,
        template_key,
        {
            "order_number": order.order_number,
            "customer_name": order.customer_name,
            "old_status": entry.previous_status,
            "new_status": entry.new_status,
            "fulfillment_type": order.fulfillment_type,
        },
        order_id=order.id,
        nonce=f"{entry.previous_status}->{entry.new_status}#{entry.id}",
        source="order_status",
    )


# --- Dispatcher side ---

def claim_batch(db, limit: int = 10, now: Optional[datetime] = None) -> List[CommunicationEvent]:
    """Move up to `limit` queued events to processing and return them."""
    now = now or utcnow()
    ids = db.execute(
        select(CommunicationEvent.id)
        .where(
            CommunicationEvent.status == EventStatus.QUEUED.value,
            CommunicationEvent.archived_at.is_(None),
        )
        .order_by(CommunicationEvent.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).scalars().all()
    if not ids:
        db.commit()
        return []

    claimed = db.execute(
        update(CommunicationEvent)
        .where(
            CommunicationEvent.id.in_(ids),
            CommunicationEvent.status == EventStatus.QUEUED.value,
        )
        .values(status=EventStatus.PROCESSING.value, processing_started_at=now, updated_at=now)
        .returning(CommunicationEvent.id)
        .execution_options(synchronize_session=False)
    ).scalars().all()
    events = (
        db.query(CommunicationEvent)
        .filter(CommunicationEvent.id.in_(claimed))
        .order_by(CommunicationEvent.created_at)
        .populate_existing()
        .all()
    ) if claimed else []
    db.commit()
    return events


def report_delivery(db, event_id: str, status: str, error: Optional[str] = None,
                    max_retries: int = config.NOTIFICATION_MAX_RETRIES,
                    now: Optional[datetime] = None) -> CommunicationEvent:
    """
    Record the dispatcher's outcome for a claimed event.

    A failure goes back to queued until the event has failed max_retries
    times; after that it stays failed.
    """
    if status not in DISPATCH_OUTCOMES:
        raise ValidationError(f"Unsupported delivery status '{status}'", {"status": status})

    now = now or utcnow()
    event = db.get(CommunicationEvent, event_id)
    if event is None:
        raise EventNotFound(event_id)

    if status == EventStatus.FAILED.value:
        event.retry_count = (event.retry_count or 0) + 1
        event.error_message = error
        event.status = EventStatus.QUEUED.value if event.retry_count < max_retries else EventStatus.FAILED.value
        event.processing_started_at = None
        logger.warning("Delivery of event %s failed (attempt %d/%d): %s",
                       event_id, event.retry_count, max_retries, error)
    else:
        event.status = status
        event.error_message = error
        if status in (EventStatus.SENT.value, EventStatus.DELIVERED.value) and event.sent_at is None:
            event.sent_at = now
    event.updated_at = now
    db.commit()
    return event


def reclaim_stuck(db, timeout_seconds: int = config.PROCESSING_TIMEOUT_SECONDS,
                  max_retries: int = config.NOTIFICATION_MAX_RETRIES,
                  now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
    """
    Put events stuck in processing past the timeout back in the queue.

    A reclaim counts as a failed attempt: an event whose dispatcher keeps
    dying ends up failed after max_retries reclaims instead of looping.
    """
    now = now or utcnow()
    stuck = (
        CommunicationEvent.status == EventStatus.PROCESSING.value,
        CommunicationEvent.processing_started_at <= now - timedelta(seconds=timeout_seconds),
    )
    attempts = CommunicationEvent.retry_count + 1
    stmt = (
        update(CommunicationEvent)
        .where(*stuck)
        .values(
            status=case((attempts >= max_retries, EventStatus.FAILED.value), else_=EventStatus.QUEUED.value),
            retry_count=attempts,
            error_message="Processing timed out",
            processing_started_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if limit is not None:
        batch = (
            select(CommunicationEvent.id)
            .where(*stuck)
            .order_by(CommunicationEvent.processing_started_at)
            .limit(limit)
        )
        stmt = stmt.where(CommunicationEvent.id.in_(batch.scalar_subquery()))
    result = db.execute(stmt)
    db.commit()
    if result.rowcount:
        logger.warning("Reclaimed %d events stuck in processing", result.rowcount)
    return result.rowcount or 0


def archive_terminal(db, older_than_days: int = config.ARCHIVE_AFTER_DAYS,
                     now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
    now = now or utcnow()
    done = (
        CommunicationEvent.status.in_(TERMINAL_EVENT_STATUSES),
        CommunicationEvent.archived_at.is_(None),
        CommunicationEvent.updated_at <= now - timedelta(days=older_than_days),
    )
    stmt = (
        update(CommunicationEvent)
        .where(*done)
        .values(archived_at=now)
        .execution_options(synchronize_session=False)
    )
    if limit is not None:
        batch = select(CommunicationEvent.id).where(*done).order_by(CommunicationEvent.updated_at).limit(limit)
        stmt = stmt.where(CommunicationEvent.id.in_(batch.scalar_subquery()))
    result = db.execute(stmt)
    db.commit()
    return result.rowcount or 0
