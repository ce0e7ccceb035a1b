from datetime import datetime
from decimal import Decimal

import pytest

from orderflow.errors import InvalidPaymentReference, ValidationError
from orderflow.models import AuditLog, CommunicationEvent, OrderStatusChange, PaymentTransaction
from orderflow.payments import PaymentLedger, normalize_status, reconcile_payments, record_payment_attempt


def _history(db, order):
    return [
        (row.previous_status, row.new_status)
        for row in db.query(OrderStatusChange)
        .filter_by(order_id=order.id)
        .order_by(OrderStatusChange.id)
    ]


class TestNormalizeStatus:
    @pytest.mark.parametrize("raw,expected", [
        ("success", "success"),
        ("SUCCESSFUL", "success"),
        ("abandoned", "failed"),
        ("ongoing", "pending"),
        ("reversed", "refunded"),
    ])
    def test_provider_vocabulary(self, raw, expected):
        assert normalize_status(raw) == expected

    def test_unknown_status_is_rejected(self):
        with pytest.raises(ValidationError):
            normalize_status("chargeback-maybe")


class TestRecordPaymentAttempt:
    def test_success_marks_order_paid_and_confirmed(self, db, make_order):
        order = make_order()

        outcome = record_payment_attempt(db, "ref-1", order.id, "1500.00", "NGN", "success",
                                         {"gateway": "paystack"}, channel="card")
        db.commit()

        assert outcome.converged is True
        assert outcome.order_status == "confirmed"
        assert outcome.payment_status == "paid"
        assert outcome.needs_reconciliation is False
        assert outcome.notification.action == "created"

        db.refresh(order)
        assert order.payment_status == "paid"
        assert order.paid_at is not None
        assert order.payment_reference == "ref-1"
        assert _history(db, order) == [("pending", "confirmed")]

        txn = db.query(PaymentTransaction).filter_by(provider_reference="ref-1").one()
        assert txn.status == "success"
        assert txn.order_id == order.id
        assert txn.amount == Decimal("1500.00")
        assert txn.channel == "card"
        assert txn.provider_metadata == {"gateway": "paystack"}

    def test_duplicate_webhook_is_idempotent(self, db, make_order):
        order = make_order()

        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()
        second = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()

        assert second.converged is False
        assert second.order_status == "confirmed"
        assert db.query(PaymentTransaction).count() == 1
        assert _history(db, order) == [("pending", "confirmed")]
        assert db.query(CommunicationEvent).filter_by(event_type="payment_confirmed").count() == 1

    def test_stale_pending_after_success_is_ignored(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()

        outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "pending")
        db.commit()

        assert outcome.status == "success"
        db.refresh(order)
        assert order.payment_status == "paid"
        assert order.status == "confirmed"

    def test_failed_after_success_does_not_unpay(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()

        outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "failed")
        db.commit()

        assert outcome.status == "success"
        assert outcome.payment_status == "paid"

    def test_out_of_order_pending_then_success(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "pending")
        db.commit()
        db.refresh(order)
        assert order.payment_status == "pending"
        assert order.paid_at is None

        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()
        db.refresh(order)
        assert order.payment_status == "paid"
        assert order.paid_at is not None

    def test_failed_payment_moves_pending_order_to_failed(self, db, make_order):
        order = make_order()

        outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "failed")
        db.commit()

        assert outcome.order_status == "failed"
        assert outcome.payment_status == "failed"
        db.refresh(order)
        assert order.paid_at is None

    def test_retry_after_failure_goes_back_through_pending(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "failed")
        db.commit()

        outcome = record_payment_attempt(db, "ref-2", order.id, 1500, "NGN", "success")
        db.commit()

        assert outcome.order_status == "confirmed"
        assert _history(db, order) == [
            ("pending", "failed"),
            ("failed", "pending"),
            ("pending", "confirmed"),
        ]

    def test_payment_for_cancelled_order_is_flagged(self, db, make_order, advance):
        order = advance(make_order(), "cancelled")

        outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()

        assert outcome.needs_reconciliation is True
        db.refresh(order)
        assert order.status == "cancelled"
        assert order.payment_status == "paid"
        assert order.paid_at is not None
        assert order.needs_reconciliation is True
        assert "cancelled" in order.reconciliation_note
        assert db.query(AuditLog).filter_by(action="payment_needs_reconciliation",
                                            entity_id=order.id).count() == 1

    def test_order_resolved_through_payment_reference(self, db, make_order):
        order = make_order(payment_reference="ref-checkout")

        outcome = record_payment_attempt(db, "ref-checkout", None, 1500, "NGN", "success")
        db.commit()

        assert outcome.order_resolved is True
        assert outcome.order_id == order.id
        assert outcome.order_status == "confirmed"

    def test_order_resolved_through_earlier_event(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "pending")
        db.commit()

        outcome = record_payment_attempt(db, "ref-1", None, 1500, "NGN", "success")
        db.commit()

        assert outcome.order_id == order.id
        assert outcome.converged is True

    def test_unresolved_payment_is_recorded_and_audited(self, db):
        outcome = record_payment_attempt(db, "ref-orphan", "no-such-order", 700, "NGN", "success")
        db.commit()

        assert outcome.order_resolved is False
        assert outcome.converged is False
        txn = db.query(PaymentTransaction).filter_by(provider_reference="ref-orphan").one()
        assert txn.order_id is None
        assert txn.status == "success"
        assert db.query(AuditLog).filter_by(action="payment_order_unresolved").count() == 1

    def test_amount_mismatch_is_audited_but_not_blocking(self, db, make_order):
        order = make_order(total_amount=Decimal("1500.00"))

        outcome = record_payment_attempt(db, "ref-1", order.id, "1000.00", "NGN", "success")
        db.commit()

        assert outcome.amount_mismatch is True
        assert outcome.payment_status == "paid"
        audit = db.query(AuditLog).filter_by(action="payment_amount_mismatch").one()
        assert audit.new_values["expected"] == "1500.00"
        assert audit.new_values["received"] == "1000.00"

    def test_refund_after_success(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()

        outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "refunded")
        db.commit()

        assert outcome.status == "refunded"
        assert outcome.order_status == "refunded"
        assert outcome.payment_status == "refunded"

    def test_refund_that_the_order_cannot_take_is_flagged(self, db, make_order, advance):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()
        advance(order, "preparing")

        outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "refunded")
        db.commit()

        assert outcome.needs_reconciliation is True
        assert outcome.order_status == "preparing"
        assert outcome.payment_status == "refunded"

    def test_late_success_after_refund_keeps_the_refund(self, db, make_order):
        order = make_order()
        for status in ("success", "refunded", "success"):
            outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", status)
            db.commit()

        assert outcome.status == "refunded"
        assert outcome.converged is False
        txn = db.query(PaymentTransaction).filter_by(provider_reference="ref-1").one()
        assert txn.status == "refunded"
        db.refresh(order)
        assert order.payment_status == "refunded"
        assert order.status == "refunded"
        assert _history(db, order) == [("pending", "confirmed"), ("confirmed", "refunded")]
        assert db.query(CommunicationEvent).filter_by(event_type="payment_confirmed").count() == 1

    def test_new_success_does_not_repay_a_refunded_order(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "refunded")
        db.commit()

        outcome = record_payment_attempt(db, "ref-2", order.id, 1500, "NGN", "success")
        db.commit()

        assert outcome.status == "success"
        assert outcome.converged is False
        assert outcome.payment_status == "refunded"
        assert outcome.order_status == "refunded"

    def test_reference_linked_to_another_order_is_not_reused(self, db, make_order):
        first, second = make_order(), make_order()
        record_payment_attempt(db, "ref-1", first.id, 1500, "NGN", "success")
        db.commit()

        outcome = record_payment_attempt(db, "ref-1", second.id, 1500, "NGN", "success")
        db.commit()

        assert outcome.converged is False
        assert outcome.needs_reconciliation is True
        assert outcome.order_id == first.id
        db.refresh(first)
        db.refresh(second)
        assert first.payment_status == "paid"
        assert second.payment_status == "pending"
        assert second.status == "pending"
        assert second.paid_at is None
        txn = db.query(PaymentTransaction).filter_by(provider_reference="ref-1").one()
        assert txn.order_id == first.id
        assert txn.needs_reconciliation is True
        conflict = db.query(AuditLog).filter_by(action="payment_order_conflict").one()
        assert conflict.entity_id == second.id
        assert conflict.new_values["linked_order_id"] == first.id
        assert db.query(CommunicationEvent).filter_by(event_type="payment_confirmed").count() == 1

    def test_paid_at_comes_from_provider_when_given(self, db, make_order):
        order = make_order()
        paid_at = datetime(2024, 2, 29, 9, 30)

        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success", paid_at=paid_at)
        db.commit()

        db.refresh(order)
        assert order.paid_at == paid_at

    def test_blank_reference_is_rejected(self, db, make_order):
        order = make_order()
        with pytest.raises(InvalidPaymentReference):
            record_payment_attempt(db, "  ", order.id, 1500, "NGN", "success")

    def test_customer_without_email_still_converges(self, db, make_order):
        order = make_order(customer_email=None)

        outcome = record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        db.commit()

        assert outcome.order_status == "confirmed"
        assert outcome.notification.action == "skipped"
        assert db.query(CommunicationEvent).count() == 0


class TestReconcile:
    def test_success_row_without_paid_order_is_repaired(self, db, make_order):
        order = make_order()
        db.add(PaymentTransaction(
            provider_reference="ref-lost",
            order_id=order.id,
            amount=Decimal("1500.00"),
            currency="NGN",
            status="success",
            paid_at=datetime(2024, 3, 1, 8, 0),
        ))
        db.commit()

        report = reconcile_payments(db)

        assert report.scanned == 1
        assert report.repaired == 1
        assert report.failed == 0
        db.refresh(order)
        assert order.payment_status == "paid"
        assert order.paid_at == datetime(2024, 3, 1, 8, 0)
        assert order.status == "confirmed"
        assert _history(db, order) == [("pending", "confirmed")]
        entry = db.query(OrderStatusChange).filter_by(order_id=order.id).one()
        assert entry.changed_by == "system:reconciliation"
        assert db.query(AuditLog).filter_by(action="payment_reconciliation").count() == 1

        again = reconcile_payments(db)
        assert again.scanned == 0

    def test_late_order_is_linked_and_converged(self, db, make_order):
        record_payment_attempt(db, "ref-late", None, 1500, "NGN", "success")
        db.commit()
        order = make_order(payment_reference="ref-late")

        report = reconcile_payments(db)

        assert report.repaired == 1
        txn = db.query(PaymentTransaction).filter_by(provider_reference="ref-late").one()
        assert txn.order_id == order.id
        db.refresh(order)
        assert order.payment_status == "paid"

    def test_refunded_order_is_left_alone(self, db, make_order):
        order = make_order()
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "success")
        record_payment_attempt(db, "ref-1", order.id, 1500, "NGN", "refunded")
        db.add(PaymentTransaction(provider_reference="ref-2", order_id=order.id,
                                  amount=Decimal("1500.00"), currency="NGN", status="success"))
        db.commit()

        report = reconcile_payments(db)

        assert report.scanned == 0
        db.refresh(order)
        assert order.payment_status == "refunded"
        assert order.status == "refunded"

    def test_transaction_waiting_for_manual_review_is_skipped(self, db, make_order):
        order = make_order()
        db.add(PaymentTransaction(provider_reference="ref-disputed", order_id=order.id,
                                  amount=Decimal("1500.00"), currency="NGN", status="success",
                                  needs_reconciliation=True))
        db.commit()

        assert reconcile_payments(db).scanned == 0
        db.refresh(order)
        assert order.payment_status == "pending"

    def test_unconvergeable_order_is_flagged(self, db, make_order, advance):
        order = advance(make_order(), "cancelled")
        db.add(PaymentTransaction(provider_reference="ref-x", order_id=order.id,
                                  amount=Decimal("1500.00"), currency="NGN", status="success"))
        db.commit()

        report = reconcile_payments(db)

        assert report.flagged == 1
        db.refresh(order)
        assert order.needs_reconciliation is True
        assert order.payment_status == "paid"

    def test_failure_on_one_row_does_not_stop_the_sweep(self, db, make_order, monkeypatch):
        good, bad = make_order(), make_order()
        for ref, order in (("ref-good", good), ("ref-bad", bad)):
            db.add(PaymentTransaction(provider_reference=ref, order_id=order.id,
                                      amount=Decimal("1500.00"), currency="NGN", status="success"))
        db.commit()

        ledger = PaymentLedger()
        original = ledger._converge_paid

        def flaky(db_, order, txn, now, actor):
            if txn.provider_reference == "ref-bad":
                raise RuntimeError("database hiccup")
            return original(db_, order, txn, now, actor)

        monkeypatch.setattr(ledger, "_converge_paid", flaky)
        report = ledger.reconcile(db)

        assert report.scanned == 2
        assert report.repaired == 1
        assert report.failed == 1
        assert report.errors[0]["order_id"] == bad.id
        db.refresh(good)
        db.refresh(bad)
        assert good.payment_status == "paid"
        assert bad.payment_status == "pending"
