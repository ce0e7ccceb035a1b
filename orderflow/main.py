import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import config, locks, notifications, orders, payments, sweeps
from .database import Base, engine, get_db
from .errors import OrderFlowError
from .messaging.bus import get_producer
from .provider import PaymentProviderClient, ProviderError, parse_timestamp
from .schemas import (
    ArchiveRequest,
    ClaimRequest,
    CourierAssignmentRequest,
    DeliveryReportRequest,
    LockRequest,
    NotificationRequest,
    OrderCreateRequest,
    PaymentWebhookRequest,
    StatusChangeRequest,
)
from .state_machine import allowed_transitions

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables on startup if they don't exist.
Base.metadata.create_all(bind=engine)

app = FastAPI(title="orderflow")


def get_provider_client():
    return PaymentProviderClient()


@app.exception_handler(OrderFlowError)
def handle_orderflow_error(request: Request, exc: OrderFlowError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def _publish(producer, routing_key, message):
    # Best-effort, after commit.
    if producer is not None:
        producer.publish(routing_key, message)


def _order_payload(order):
    return {
        "id": order.id,
        "order_number": order.order_number,
        "fulfillment_type": order.fulfillment_type,
        "status": order.status,
        "payment_status": order.payment_status,
        "assigned_courier_id": order.assigned_courier_id,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "customer_email": order.customer_email,
        "payment_reference": order.payment_reference,
        "needs_reconciliation": order.needs_reconciliation,
        "reconciliation_note": order.reconciliation_note,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
        "archived_at": order.archived_at.isoformat() if order.archived_at else None,
        "allowed_transitions": allowed_transitions(order.status),
    }


def _history_payload(entry):
    return {
        "id": entry.id,
        "previous_status": entry.previous_status,
        "new_status": entry.new_status,
        "changed_by": entry.changed_by,
        "changed_at": entry.changed_at.isoformat(),
        "is_override": entry.is_override,
        "notes": entry.notes,
    }


@app.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Order service is running"}


@app.get("/health")
def health():
    return {"status": "ok"}


# --- Orders ---

@app.post("/api/v1/orders", status_code=201)
def create_order(req: OrderCreateRequest, db: Session = Depends(get_db)):
    order = orders.create_order(
        db,
        req.fulfillment_type,
        req.total_amount,
        currency=req.currency,
        customer_email=req.customer_email,
        customer_name=req.customer_name,
        payment_reference=req.payment_reference,
    )
    return _order_payload(order)


@app.get("/api/v1/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db)):
    return _order_payload(orders.get_order(db, order_id))


@app.get("/api/v1/orders/{order_id}/history")
def get_order_history(order_id: str, db: Session = Depends(get_db)):
    return [_history_payload(entry) for entry in orders.get_history(db, order_id)]


@app.post("/api/v1/orders/{order_id}/status")
def change_order_status(order_id: str, req: StatusChangeRequest, db: Session = Depends(get_db),
                        producer=Depends(get_producer)):
    result = orders.change_order_status(
        db, order_id, req.status, req.actor_id, override=req.override, notes=req.notes
    )
    entry = result.audit_entry
    if entry is not None:
        _publish(producer, "order.status_changed", {
            "order_id": order_id,
            "previous_status": entry.previous_status,
            "new_status": entry.new_status,
            "changed_by": entry.changed_by,
        })
    return {
        "order": _order_payload(result.order),
        "audit_entry": _history_payload(entry) if entry is not None else None,
        "notification": result.notification.to_dict() if result.notification else None,
    }


@app.post("/api/v1/orders/{order_id}/courier")
def assign_courier(order_id: str, req: CourierAssignmentRequest, db: Session = Depends(get_db)):
    order = orders.assign_courier(db, order_id, req.courier_id, req.actor_id)
    return _order_payload(order)


@app.post("/api/v1/orders/{order_id}/archive")
def archive_order(order_id: str, req: ArchiveRequest, db: Session = Depends(get_db)):
    return _order_payload(orders.archive_order(db, order_id, req.actor_id))


# --- Locks ---

@app.get("/api/v1/orders/{order_id}/lock")
def get_lock(order_id: str, db: Session = Depends(get_db)):
    info = locks.lock_manager.current_lock(db, order_id)
    return {"locked": info is not None, "lock": info.to_dict() if info else None}


@app.post("/api/v1/orders/{order_id}/lock")
def acquire_lock(order_id: str, req: LockRequest, db: Session = Depends(get_db)):
    orders.get_order(db, order_id)
    return locks.lock_manager.acquire(db, order_id, req.holder_id, req.ttl_seconds).to_dict()


@app.put("/api/v1/orders/{order_id}/lock")
def renew_lock(order_id: str, req: LockRequest, db: Session = Depends(get_db)):
    return locks.lock_manager.renew(db, order_id, req.holder_id, req.ttl_seconds).to_dict()


@app.delete("/api/v1/orders/{order_id}/lock")
def release_lock(order_id: str, holder_id: str = Query(...), db: Session = Depends(get_db)):
    released = locks.lock_manager.release(db, order_id, holder_id)
    return {"released": released}


# --- Payments ---

@app.post("/api/v1/payments/webhook")
def payment_webhook(req: PaymentWebhookRequest, db: Session = Depends(get_db),
                    producer=Depends(get_producer)):
    outcome = payments.record_payment_attempt(
        db,
        req.reference,
        req.order_id,
        req.amount,
        req.currency,
        req.status,
        req.payload,
        channel=req.channel,
        paid_at=parse_timestamp(req.paid_at),
    )
    db.commit()
    if outcome.converged:
        _publish(producer, "payment.converged", outcome.to_dict())
    return outcome.to_dict()


@app.post("/api/v1/payments/{reference}/verify")
def verify_payment(reference: str, db: Session = Depends(get_db),
                   client: PaymentProviderClient = Depends(get_provider_client),
                   producer=Depends(get_producer)):
    try:
        verification = client.verify(reference)
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    outcome = payments.record_payment_attempt(
        db,
        verification.reference,
        verification.order_id,
        verification.amount,
        verification.currency,
        verification.status,
        verification.raw,
        channel=verification.channel,
        paid_at=verification.paid_at,
    )
    db.commit()
    if outcome.converged:
        _publish(producer, "payment.converged", outcome.to_dict())
    return outcome.to_dict()


# --- Notifications ---

@app.post("/api/v1/notifications")
def enqueue_notification(req: NotificationRequest, db: Session = Depends(get_db)):
    result = notifications.enqueue_notification(
        db,
        req.event_type,
        req.recipient,
        req.template_key,
        req.variables,
        order_id=req.order_id,
        dedupe_key=req.dedupe_key,
        nonce=req.nonce,
        source=req.source,
        priority=req.priority,
    )
    db.commit()
    return result.to_dict()


@app.post("/api/v1/notifications/claim")
def claim_notifications(req: ClaimRequest, db: Session = Depends(get_db)):
    events = notifications.claim_batch(db, req.limit)
    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "recipient": e.recipient,
            "template_key": e.template_key,
            "template_variables": e.template_variables,
            "priority": e.priority,
            "order_id": e.order_id,
            "retry_count": e.retry_count,
        }
        for e in events
    ]


@app.post("/api/v1/notifications/{event_id}/report")
def report_notification(event_id: str, req: DeliveryReportRequest, db: Session = Depends(get_db)):
    event = notifications.report_delivery(db, event_id, req.status, req.error)
    return {"id": event.id, "status": event.status, "retry_count": event.retry_count}


# --- Sweeps ---

@app.post("/api/v1/sweeps/{name}")
def run_sweep(name: str, batch_size: Optional[int] = Query(default=None, gt=0),
              db: Session = Depends(get_db)):
    if name not in sweeps.SWEEPS:
        raise HTTPException(status_code=404, detail=f"Unknown sweep '{name}'")
    return {"sweep": name, "report": sweeps.run_sweep(name, db, batch_size)}
