"""
Order status state machine.

This is the only code that writes an order's status. Every change is checked
against TRANSITIONS, checked against the courier rule for delivery orders,
and appended to order_status_changes before the caller commits.

Happy path:
    pending -> confirmed -> preparing -> ready -> out_for_delivery -> delivered -> completed

completed, cancelled and refunded are terminal except completed -> refunded.
A failed order can go back to pending (payment retried) or be cancelled.
"""
import logging
from typing import Dict, FrozenSet, Optional

from . import audit
from .database import utcnow
from .errors import InvalidTransition, MissingCourierAssignment, UnknownStatus
from .models import OrderStatus, OrderStatusChange

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED, S.REFUNDED, S.FAILED}),
    S.CONFIRMED: frozenset({S.PREPARING, S.READY, S.CANCELLED, S.REFUNDED}),
    S.PREPARING: frozenset({S.READY, S.CANCELLED}),
    S.READY: frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED, S.CANCELLED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED, S.COMPLETED, S.CANCELLED}),
    S.DELIVERED: frozenset({S.COMPLETED, S.REFUNDED}),
    S.COMPLETED: frozenset({S.REFUNDED}),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
    S.FAILED: frozenset({S.PENDING, S.CANCELLED}),
}

# Delivery orders need a courier before entering these.
COURIER_REQUIRED = frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED, S.COMPLETED})

TERMINAL = frozenset({S.COMPLETED, S.CANCELLED, S.REFUNDED})

_NOTES = {
    S.READY: "Order ready for delivery/pickup",
    S.OUT_FOR_DELIVERY: "Order dispatched for delivery",
    S.DELIVERED: "Order successfully delivered",
}


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        raise UnknownStatus(str(value)) from None


def can_transition(old, new) -> bool:
    return parse_status(new) in TRANSITIONS[parse_status(old)]


def allowed_transitions(status):
    return sorted(s.value for s in TRANSITIONS[parse_status(status)])


class OrderStateMachine:
    """
    Validates and applies order status transitions.

    Usage:
        sm = OrderStateMachine()
        entry = sm.transition(db, order, "confirmed", actor_id="admin-1")
        db.commit()

    transition() never commits; it runs inside the caller's transaction so
    the status write, the history row and anything else the caller does
    succeed or fail together.
    """

    def transition(
        self,
        db,
        order,
        new_status,
        actor_id: Optional[str],
        *,
        override: bool = False,
        notes: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> Optional[OrderStatusChange]:
        new = parse_status(new_status)
        old = parse_status(order.status)

        if old == new:
            return None

        if new not in TRANSITIONS[old]:
            raise InvalidTransition(old.value, new.value)

        if new in COURIER_REQUIRED and order.is_delivery and not order.assigned_courier_id:
            raise MissingCourierAssignment(order.id, new.value)

        now = utcnow()
        entry = OrderStatusChange(
            order_id=order.id,
            previous_status=old.value,
            new_status=new.value,
            changed_by=actor_id,
            changed_at=now,
            is_override=override,
            notes=notes or _NOTES.get(new, "Status updated"),
            details={
                "fulfillment_type": order.fulfillment_type,
                "previous_status": old.value,
                "new_status": new.value,
                **(details or {}),
            },
        )
        db.add(entry)
        db.flush()

        order._status = new.value
        order.updated_at = now

        if override:
            audit.record(
                db,
                "order_status_override",
                "Order Management",
                f"Administrative override {old.value} -> {new.value}",
                entity_id=order.id,
                user_id=actor_id,
                previous_status=old.value,
                new_status=new.value,
                notes=notes,
            )

        db.flush()
        logger.info("Order %s: %s -> %s by %s%s", order.id, old.value, new.value, actor_id,
                    " (override)" if override else "")
        return entry
