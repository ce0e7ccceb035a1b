import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from . import audit
from .database import utcnow
from .errors import OrderNotFound, ValidationError
from .locks import LockManager, lock_manager
from .models import FulfillmentType, Order, OrderStatus, OrderStatusChange, PaymentStatus
from .notifications import EnqueueResult, notify_status_change
from .state_machine import TERMINAL, OrderStateMachine, parse_status

logger = logging.getLogger(__name__)

_state_machine = OrderStateMachine()


@dataclass
class StatusChangeResult:
    order: Order
    audit_entry: Optional[OrderStatusChange]
    notification: Optional[EnqueueResult] = None

    @property
    def changed(self) -> bool:
        return self.audit_entry is not None


def generate_order_number(now=None):
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


# Creates a new order at checkout. Every order starts pending/pending.
def create_order(db, fulfillment_type, total_amount, currency="NGN", customer_email=None,
                 customer_name=None, payment_reference=None) -> Order:
    try:
        fulfillment = FulfillmentType(fulfillment_type).value
    except ValueError:
        raise ValidationError(f"Unknown fulfillment type '{fulfillment_type}'",
                              {"fulfillment_type": fulfillment_type}) from None

    total = Decimal(str(total_amount))
    if total < 0:
        raise ValidationError("Order total cannot be negative", {"total_amount": str(total)})

    order = Order(
        order_number=generate_order_number(),
        fulfillment_type=fulfillment,
        _status=OrderStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        total_amount=total,
        currency=currency,
        customer_email=customer_email,
        customer_name=customer_name,
        payment_reference=payment_reference,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Created order %s (%s, %s %s)", order.order_number, fulfillment, total, currency)
    return order


def get_order(db, order_id) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def get_history(db, order_id) -> List[OrderStatusChange]:
    get_order(db, order_id)
    return (
        db.query(OrderStatusChange)
        .filter(OrderStatusChange.order_id == order_id)
        .order_by(OrderStatusChange.changed_at, OrderStatusChange.id)
        .all()
    )


def change_order_status(
    db,
    order_id: str,
    new_status,
    actor_id: str,
    *,
    override: bool = False,
    notes: Optional[str] = None,
    locks: Optional[LockManager] = None,
    state_machine: Optional[OrderStateMachine] = None,
) -> StatusChangeResult:
    """
    Human-initiated status change.

    Takes the order's edit lock (or renews it if the actor already holds
    it), validates and applies the transition, queues the customer
    notification and commits. Raises AlreadyLocked, InvalidTransition or
    MissingCourierAssignment without changing anything.
    """
    locks = locks or lock_manager
    state_machine = state_machine or _state_machine
    parse_status(new_status)
    get_order(db, order_id)

    with locks.held(db, order_id, actor_id):
        order = db.query(Order).filter(Order.id == order_id).with_for_update().one()
        entry = state_machine.transition(db, order, new_status, actor_id, override=override, notes=notes)
        notification = notify_status_change(db, order, entry) if entry is not None else None
        db.commit()

    return StatusChangeResult(order=order, audit_entry=entry, notification=notification)


def assign_courier(db, order_id: str, courier_id: str, actor_id: str,
                   locks: Optional[LockManager] = None) -> Order:
    locks = locks or lock_manager
    if not courier_id:
        raise ValidationError("courier_id is required")
    order = get_order(db, order_id)
    if not order.is_delivery:
        raise ValidationError("Pickup orders do not take a courier", {"order_id": order_id})

    with locks.held(db, order_id, actor_id):
        order = db.query(Order).filter(Order.id == order_id).with_for_update().one()
        if parse_status(order.status) in TERMINAL:
            raise ValidationError(f"Order is already {order.status}", {"order_id": order_id})
        previous = order.assigned_courier_id
        order.assigned_courier_id = courier_id
        audit.record(
            db,
            "courier_assigned",
            "Delivery Management",
            f"Courier {courier_id} assigned to order {order.order_number}",
            entity_id=order.id,
            user_id=actor_id,
            previous_courier_id=previous,
            courier_id=courier_id,
        )
        db.commit()

    logger.info("Order %s assigned to courier %s by %s", order_id, courier_id, actor_id)
    return order


def archive_order(db, order_id: str, actor_id: str) -> Order:
    """Soft-archive a finished order. Orders are never deleted."""
    order = get_order(db, order_id)
    if parse_status(order.status) not in TERMINAL:
        raise ValidationError(f"Only finished orders can be archived, order is {order.status}",
                              {"order_id": order_id})
    if order.archived_at is None:
        order.archived_at = utcnow()
        audit.record(db, "order_archived", "Order Management", f"Order {order.order_number} archived",
                     entity_id=order.id, user_id=actor_id)
        db.commit()
    return order
