"""
Payment reconciliation ledger.

Provider events (webhooks, verification calls, queue messages) arrive at
least once and in any order. Each one is upserted into payment_transactions
keyed by the provider reference, then the linked order is converged:

    transaction success  -> order paid, paid_at set, pending -> confirmed
    transaction failed   -> order payment failed, pending -> failed
    transaction refunded -> order payment refunded, -> refunded if allowed

A success is never overwritten by a later pending/failed event for the same
reference, and a refund is never overwritten at all. A reference stays linked
to the first order it was recorded against; an event naming a different order
flags the transaction for manual reconciliation and converges nothing.

If the order cannot take the implied transition (for example it was
cancelled before the money arrived) the payment is still recorded as paid
and the order is flagged needs_reconciliation instead of failing.

reconcile() is the sweep that re-applies convergence to any success row whose
order is neither paid nor refunded yet, healing partial failures of the
real-time path.
"""
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import and_, func, or_, update

from . import audit, config
from .database import insert, utcnow
from .errors import InvalidPaymentReference, InvalidTransition, MissingCourierAssignment, ValidationError
from .models import Order, OrderStatus, PaymentStatus, PaymentTransaction, TransactionStatus
from .notifications import EnqueueResult, enqueue_notification
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:payments"
RECONCILIATION_ACTOR = "system:reconciliation"

# Provider vocabulary -> ledger status.
PROVIDER_STATUSES = {
    "success": TransactionStatus.SUCCESS,
    "successful": TransactionStatus.SUCCESS,
    "paid": TransactionStatus.SUCCESS,
    "pending": TransactionStatus.PENDING,
    "ongoing": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "queued": TransactionStatus.PENDING,
    "failed": TransactionStatus.FAILED,
    "abandoned": TransactionStatus.FAILED,
    "declined": TransactionStatus.FAILED,
    "refunded": TransactionStatus.REFUNDED,
    "reversed": TransactionStatus.REFUNDED,
}


def normalize_status(value) -> str:
    try:
        return PROVIDER_STATUSES[str(value).strip().lower()].value
    except KeyError:
        raise ValidationError(f"Unknown payment status '{value}'", {"status": value}) from None


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount '{value}'", {"amount": value}) from None


@dataclass
class PaymentOutcome:
    transaction_id: str
    provider_reference: str
    status: str
    order_id: Optional[str] = None
    order_resolved: bool = False
    converged: bool = False
    needs_reconciliation: bool = False
    amount_mismatch: bool = False
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    notification: Optional[EnqueueResult] = None

    def to_dict(self):
        data = asdict(self)
        data["notification"] = self.notification.to_dict() if self.notification else None
        return data


@dataclass
class ReconciliationReport:
    scanned: int = 0
    repaired: int = 0
    flagged: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


class PaymentLedger:
    """
    Records provider payment events and converges orders to the outcome.

    Usage:
        ledger = PaymentLedger()
        outcome = ledger.record_payment_attempt(
            db, "ref_123", order_id, 1500, "NGN", "success", payload)
        db.commit()

    The caller owns the transaction: the ledger row, the order update, the
    status history entry and the notification are committed together.
    """

    def __init__(self, state_machine: Optional[OrderStateMachine] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.state_machine = state_machine or OrderStateMachine()
        self.clock = clock

    def record_payment_attempt(
        self,
        db,
        provider_reference: str,
        order_id: Optional[str],
        amount,
        currency: Optional[str],
        status: str,
        raw_payload: Optional[dict] = None,
        channel: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> PaymentOutcome:
        reference = (provider_reference or "").strip()
        if not reference:
            raise InvalidPaymentReference(provider_reference)

        txn_status = normalize_status(status)
        amount = _to_decimal(amount)
        now = self.clock()

        order = self._resolve_order(db, reference, order_id)
        if order is None:
            logger.warning("Payment %s does not resolve to an order (order_id=%s)", reference, order_id)
            audit.record(
                db,
                "payment_order_unresolved",
                "Payment Processing",
                f"Payment {reference} recorded without a matching order",
                entity_id=order_id,
                reference=reference,
                status=txn_status,
                amount=amount,
            )

        self._upsert(db, reference, order, amount, currency, txn_status, raw_payload, channel, paid_at, now)
        txn = (
            db.query(PaymentTransaction)
            .filter(PaymentTransaction.provider_reference == reference)
            .populate_existing()
            .one()
        )

        outcome = PaymentOutcome(
            transaction_id=txn.id,
            provider_reference=reference,
            status=txn.status,
            order_id=order.id if order else None,
            order_resolved=order is not None,
        )
        if order is None:
            return outcome

        if txn.order_id != order.id:
            self._flag_order_conflict(db, txn, order)
            outcome.order_id = txn.order_id
            outcome.needs_reconciliation = True
            return outcome

        if amount is not None and txn_status == TransactionStatus.SUCCESS.value:
            outcome.amount_mismatch = self._check_amount(db, order, reference, amount)

        if txn.status == TransactionStatus.SUCCESS.value:
            if order.payment_status not in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
                outcome.needs_reconciliation = not self._converge_paid(db, order, txn, now, SYSTEM_ACTOR)
                outcome.converged = True
                outcome.notification = self._notify_paid(db, order, txn)
        elif txn.status == TransactionStatus.FAILED.value:
            self._converge_failed(db, order)
        elif txn.status == TransactionStatus.REFUNDED.value:
            outcome.needs_reconciliation = not self._converge_refunded(db, order, reference)

        db.flush()
        outcome.order_status = order.status
        outcome.payment_status = order.payment_status
        outcome.needs_reconciliation = outcome.needs_reconciliation or bool(order.needs_reconciliation)
        return outcome

    def reconcile(self, db, batch_size: int = config.SWEEP_BATCH_SIZE) -> ReconciliationReport:
        """Converge orders whose successful payment never made it onto the order. Commits."""
        report = ReconciliationReport()
        now = self.clock()

        self._link_unresolved(db, batch_size)

        rows = (
            db.query(PaymentTransaction.id, PaymentTransaction.order_id)
            .join(Order, Order.id == PaymentTransaction.order_id)
            .filter(
                PaymentTransaction.status == TransactionStatus.SUCCESS.value,
                Order.payment_status.notin_([PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value]),
                PaymentTransaction.needs_reconciliation.is_(False),
            )
            .order_by(PaymentTransaction.updated_at)
            .limit(batch_size)
            .all()
        )
        report.scanned = len(rows)

        for txn_id, order_id in rows:
            try:
                with db.begin_nested():
                    order = db.query(Order).filter(Order.id == order_id).with_for_update().one()
                    if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
                        continue
                    txn = db.get(PaymentTransaction, txn_id)
                    old_status = order.status
                    clean = self._converge_paid(db, order, txn, now, RECONCILIATION_ACTOR)
                    audit.record(
                        db,
                        "payment_reconciliation",
                        "Payment Processing",
                        f"Reconciled payment {txn.provider_reference}",
                        entity_id=order.id,
                        user_id=RECONCILIATION_ACTOR,
                        reference=txn.provider_reference,
                        old_order_status=old_status,
                        new_order_status=order.status,
                        needs_reconciliation=not clean,
                    )
                    self._notify_paid(db, order, txn)
                if clean:
                    report.repaired += 1
                else:
                    report.flagged += 1
            except Exception as exc:
                logger.exception("Reconciliation failed for transaction %s (order %s)", txn_id, order_id)
                report.failed += 1
                report.errors.append({"transaction_id": txn_id, "order_id": order_id, "error": str(exc)})

        db.commit()
        logger.info("Payment reconciliation: %s", report.to_dict())
        return report

    def _resolve_order(self, db, reference, order_id):
        if not order_id:
            order_id = db.query(PaymentTransaction.order_id).filter(
                PaymentTransaction.provider_reference == reference
            ).scalar()

        query = db.query(Order).with_for_update()
        if order_id:
            return query.filter(Order.id == order_id).first()
        return query.filter(Order.payment_reference == reference).first()

    def _upsert(self, db, reference, order, amount, currency, txn_status, raw_payload, channel, paid_at, now):
        if txn_status == TransactionStatus.SUCCESS.value:
            paid_at = paid_at or now
        else:
            paid_at = None

        stmt = insert(db, PaymentTransaction).values(
            id=str(uuid.uuid4()),
            provider_reference=reference,
            order_id=order.id if order else None,
            amount=amount,
            currency=currency,
            status=txn_status,
            channel=channel,
            paid_at=paid_at,
            provider_metadata=jsonable_encoder(raw_payload or {}),
            needs_reconciliation=False,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_reference"],
            set_={
                "status": excluded.status,
                "amount": func.coalesce(excluded.amount, PaymentTransaction.amount),
                "currency": func.coalesce(excluded.currency, PaymentTransaction.currency),
                "channel": func.coalesce(excluded.channel, PaymentTransaction.channel),
                "paid_at": func.coalesce(PaymentTransaction.paid_at, excluded.paid_at),
                "provider_metadata": excluded.provider_metadata,
                "order_id": func.coalesce(PaymentTransaction.order_id, excluded.order_id),
                "updated_at": excluded.updated_at,
            },
            # A confirmed payment only moves on to refunded; a refund is final.
            where=or_(
                PaymentTransaction.status.in_([TransactionStatus.PENDING.value, TransactionStatus.FAILED.value]),
                and_(
                    PaymentTransaction.status == TransactionStatus.SUCCESS.value,
                    excluded.status == TransactionStatus.REFUNDED.value,
                ),
            ),
        )
        db.execute(stmt)

        if order is not None:
            db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.provider_reference == reference,
                    PaymentTransaction.order_id.is_(None),
                )
                .values(order_id=order.id)
                .execution_options(synchronize_session=False)
            )

    def _check_amount(self, db, order, reference, amount) -> bool:
        expected = _to_decimal(order.total_amount)
        if expected == amount:
            return False
        logger.warning("Amount mismatch on order %s: expected %s, provider reported %s (ref %s)",
                       order.id, expected, amount, reference)
        audit.record(
            db,
            "payment_amount_mismatch",
            "Payment Processing",
            f"Payment {reference} amount differs from order total",
            entity_id=order.id,
            reference=reference,
            expected=expected,
            received=amount,
        )
        return True

    def _converge_paid(self, db, order, txn, now, actor) -> bool:
        """Mark the order paid and move it to confirmed. False when it had to be flagged."""
        order.payment_status = PaymentStatus.PAID.value
        order.paid_at = txn.paid_at or now
        if not order.payment_reference:
            order.payment_reference = txn.provider_reference

        try:
            if order.status == OrderStatus.FAILED.value:
                self.state_machine.transition(db, order, OrderStatus.PENDING, actor,
                                              notes="Payment retried successfully")
            if order.status in (OrderStatus.PENDING.value, OrderStatus.CANCELLED.value,
                                OrderStatus.REFUNDED.value):
                self.state_machine.transition(db, order, OrderStatus.CONFIRMED, actor,
                                              notes="Payment confirmed",
                                              details={"reference": txn.provider_reference})
        except (InvalidTransition, MissingCourierAssignment) as exc:
            self._flag(db, order, txn.provider_reference, exc.message)
            return False
        return True

    def _converge_failed(self, db, order):
        if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
            return
        order.payment_status = PaymentStatus.FAILED.value
        if order.status == OrderStatus.PENDING.value:
            self.state_machine.transition(db, order, OrderStatus.FAILED, SYSTEM_ACTOR, notes="Payment failed")

    def _converge_refunded(self, db, order, reference) -> bool:
        if order.payment_status == PaymentStatus.REFUNDED.value:
            return True
        order.payment_status = PaymentStatus.REFUNDED.value
        try:
            self.state_machine.transition(db, order, OrderStatus.REFUNDED, SYSTEM_ACTOR, notes="Payment refunded")
        except InvalidTransition as exc:
            self._flag(db, order, reference, exc.message)
            return False
        return True

    def _flag(self, db, order, reference, reason):
        order.needs_reconciliation = True
        order.reconciliation_note = f"Payment {reference} recorded but order is '{order.status}': {reason}"
        logger.warning("Order %s needs reconciliation: %s", order.id, order.reconciliation_note)
        audit.record(
            db,
            "payment_needs_reconciliation",
            "Payment Processing",
            order.reconciliation_note,
            entity_id=order.id,
            reference=reference,
            order_status=order.status,
            payment_status=order.payment_status,
        )

    def _flag_order_conflict(self, db, txn, order):
        """The reference is already linked to another order; nothing converges until someone looks."""
        logger.warning("Payment %s is linked to order %s but was reported for order %s",
                       txn.provider_reference, txn.order_id, order.id)
        txn.needs_reconciliation = True
        audit.record(
            db,
            "payment_order_conflict",
            "Payment Processing",
            f"Payment {txn.provider_reference} reported for order {order.id} "
            f"but already linked to order {txn.order_id}",
            entity_id=order.id,
            reference=txn.provider_reference,
            linked_order_id=txn.order_id,
            status=txn.status,
        )

    def _notify_paid(self, db, order, txn):
        return enqueue_notification(
            db,
            "payment_confirmed",
            order.customer_email,
            "payment_confirmation",
            {
                "order_number": order.order_number,
                "customer_name": order.customer_name,
                "amount": txn.amount,
                "currency": txn.currency,
                "reference": txn.provider_reference,
            },
            order_id=order.id,
            nonce=txn.provider_reference,
            source="payments",
            priority="high",
        )

    def _link_unresolved(self, db, batch_size):
        pairs = (
            db.query(PaymentTransaction.id, Order.id)
            .join(Order, Order.payment_reference == PaymentTransaction.provider_reference)
            .filter(
                PaymentTransaction.order_id.is_(None),
                PaymentTransaction.status == TransactionStatus.SUCCESS.value,
            )
            .limit(batch_size)
            .all()
        )
        for txn_id, order_id in pairs:
            db.execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.id == txn_id, PaymentTransaction.order_id.is_(None))
                .values(order_id=order_id)
                .execution_options(synchronize_session=False)
            )
        if pairs:
            logger.info("Linked %d unresolved payments to orders", len(pairs))


ledger = PaymentLedger()


def record_payment_attempt(db, provider_reference, order_id, amount, currency, status,
                           raw_payload=None, channel=None, paid_at=None) -> PaymentOutcome:
    return ledger.record_payment_attempt(db, provider_reference, order_id, amount, currency, status,
                                         raw_payload, channel=channel, paid_at=paid_at)


def reconcile_payments(db, batch_size: int = config.SWEEP_BATCH_SIZE) -> ReconciliationReport:
    return ledger.reconcile(db, batch_size)
