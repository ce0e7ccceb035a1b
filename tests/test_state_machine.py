from decimal import Decimal

import pytest

from orderflow.errors import InvalidTransition, MissingCourierAssignment, UnknownStatus
from orderflow.models import AuditLog, Order, OrderStatus, OrderStatusChange
from orderflow.state_machine import (
    COURIER_REQUIRED,
    TERMINAL,
    TRANSITIONS,
    OrderStateMachine,
    allowed_transitions,
    can_transition,
    parse_status,
)


class TestTransitionTable:
    def test_happy_path_is_allowed(self):
        path = ["pending", "confirmed", "preparing", "ready", "out_for_delivery", "delivered", "completed"]
        for old, new in zip(path, path[1:]):
            assert can_transition(old, new), f"{old} -> {new}"

    def test_terminal_states_only_allow_refund_from_completed(self):
        assert TRANSITIONS[OrderStatus.COMPLETED] == {OrderStatus.REFUNDED}
        assert TRANSITIONS[OrderStatus.CANCELLED] == frozenset()
        assert TRANSITIONS[OrderStatus.REFUNDED] == frozenset()
        assert TERMINAL == {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}

    def test_failed_can_retry_or_cancel(self):
        assert allowed_transitions("failed") == ["cancelled", "pending"]

    def test_backwards_moves_are_rejected(self):
        assert not can_transition("ready", "preparing")
        assert not can_transition("delivered", "out_for_delivery")
        assert not can_transition("cancelled", "confirmed")

    def test_parse_status_normalises_case(self):
        assert parse_status(" Confirmed ") == OrderStatus.CONFIRMED

    def test_parse_status_rejects_unknown_values(self):
        with pytest.raises(UnknownStatus):
            parse_status("shipped")

    def test_courier_required_states(self):
        assert COURIER_REQUIRED == {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.COMPLETED}


class TestOrderStateMachine:
    def test_transition_updates_status_and_appends_history(self, db, make_order):
        order = make_order()
        entry = OrderStateMachine().transition(db, order, "confirmed", "admin-1")
        db.commit()

        assert order.status == "confirmed"
        assert entry.previous_status == "pending"
        assert entry.new_status == "confirmed"
        assert entry.changed_by == "admin-1"
        assert entry.is_override is False
        assert db.query(OrderStatusChange).filter_by(order_id=order.id).count() == 1

    def test_same_status_is_a_noop(self, db, make_order):
        order = make_order()
        assert OrderStateMachine().transition(db, order, "pending", "admin-1") is None
        assert db.query(OrderStatusChange).count() == 0

    def test_invalid_transition_changes_nothing(self, db, make_order):
        order = make_order()
        with pytest.raises(InvalidTransition) as excinfo:
            OrderStateMachine().transition(db, order, "delivered", "admin-1")

        assert excinfo.value.old_status == "pending"
        assert excinfo.value.new_status == "delivered"
        assert order.status == "pending"
        assert db.query(OrderStatusChange).count() == 0

    def test_delivery_order_needs_courier_before_dispatch(self, db, make_order, advance):
        order = advance(make_order(), "confirmed", "preparing", "ready")
        with pytest.raises(MissingCourierAssignment):
            OrderStateMachine().transition(db, order, "out_for_delivery", "admin-1")
        assert order.status == "ready"

    def test_delivery_order_needs_courier_before_direct_delivery(self, db, make_order, advance):
        order = advance(make_order(), "confirmed", "ready")
        with pytest.raises(MissingCourierAssignment) as excinfo:
            OrderStateMachine().transition(db, order, "delivered", "admin-1")

        assert excinfo.value.context["new_status"] == "delivered"
        assert order.status == "ready"
        assert db.query(OrderStatusChange).filter_by(order_id=order.id).count() == 2

    @pytest.mark.parametrize("old", list(OrderStatus), ids=lambda s: s.value)
    def test_every_pair_outside_the_table_is_rejected(self, db, old):
        for new in OrderStatus:
            if new == old or new in TRANSITIONS[old]:
                continue
            order = Order(id=f"order-{old.value}", order_number="ORD-T", fulfillment_type="pickup",
                          _status=old.value, payment_status="pending", total_amount=Decimal("10"))
            with pytest.raises(InvalidTransition) as excinfo:
                OrderStateMachine().transition(db, order, new, "admin-1")
            assert (excinfo.value.old_status, excinfo.value.new_status) == (old.value, new.value)
            assert order.status == old.value
        assert db.query(OrderStatusChange).count() == 0

    def test_pickup_order_skips_courier_rule(self, db, make_order, advance):
        order = advance(make_order(fulfillment_type="pickup"), "confirmed", "ready")
        OrderStateMachine().transition(db, order, "delivered", "admin-1")
        db.commit()
        assert order.status == "delivered"

    def test_override_is_recorded_in_history_and_audit_log(self, db, make_order):
        order = make_order()
        entry = OrderStateMachine().transition(db, order, "cancelled", "admin-9", override=True,
                                               notes="Customer called")
        db.commit()

        assert entry.is_override is True
        assert entry.notes == "Customer called"
        audit = db.query(AuditLog).filter_by(action="order_status_override").one()
        assert audit.entity_id == order.id
        assert audit.user_id == "admin-9"
        assert audit.new_values["new_status"] == "cancelled"

    def test_override_does_not_bypass_the_table(self, db, make_order):
        order = make_order()
        with pytest.raises(InvalidTransition):
            OrderStateMachine().transition(db, order, "completed", "admin-9", override=True)
