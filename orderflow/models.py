import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.ext.hybrid import hybrid_property

from .database import Base, utcnow


def _uuid():
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class FulfillmentType(str, enum.Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class EventStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"
    BOUNCED = "bounced"


TERMINAL_EVENT_STATUSES = {
    EventStatus.SENT.value,
    EventStatus.FAILED.value,
    EventStatus.DELIVERED.value,
    EventStatus.BOUNCED.value,
}


# An order placed at checkout. Never hard-deleted.
class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    fulfillment_type = Column(String(16), nullable=False, default=FulfillmentType.DELIVERY.value)
    # Written only by OrderStateMachine.transition(); read through `status`.
    _status = Column("status", String(32), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    assigned_courier_id = Column(String(64), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="NGN")
    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    payment_reference = Column(String(128), nullable=True, index=True)
    needs_reconciliation = Column(Boolean, nullable=False, default=False)
    reconciliation_note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    paid_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    archived_at = Column(DateTime, nullable=True)

    @hybrid_property
    def status(self):
        return self._status

    @property
    def is_delivery(self):
        return self.fulfillment_type == FulfillmentType.DELIVERY.value


# Append-only audit trail of status transitions.
class OrderStatusChange(Base):
    __tablename__ = "order_status_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    previous_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=False)
    changed_by = Column(String(64), nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utcnow)
    is_override = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_order_status_changes_order_status", "order_id", "new_status"),
    )


# One row per provider reference; written only through upsert.
class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider_reference = Column(String(128), unique=True, nullable=False)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(8), nullable=True)
    status = Column(String(16), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    channel = Column(String(32), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    provider_metadata = Column(JSON, nullable=False, default=dict)
    needs_reconciliation = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# Advisory edit lock. Released rows are retained for audit.
class OrderLock(Base):
    __tablename__ = "order_update_locks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), nullable=False)
    holder_id = Column(String(64), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    released_at = Column(DateTime, nullable=True)
    renewed_at = Column(DateTime, nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        # At most one unreleased lock per order.
        Index(
            "uq_order_update_locks_active",
            "order_id",
            unique=True,
            postgresql_where=released_at.is_(None),
            sqlite_where=released_at.is_(None),
        ),
        Index("ix_order_update_locks_expiry", "released_at", "expires_at"),
    )


# Outbound notification request. Delivered by an external dispatcher.
class CommunicationEvent(Base):
    __tablename__ = "communication_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    dedupe_key = Column(String(512), unique=True, nullable=False)
    event_type = Column(String(64), nullable=False)
    recipient = Column(String(255), nullable=False)
    template_key = Column(String(128), nullable=True)
    template_variables = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default=EventStatus.QUEUED.value)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    source = Column(String(64), nullable=False, default="system")
    priority = Column(String(16), nullable=False, default="normal")
    order_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processing_started_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_communication_events_status_created", "status", "created_at"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False, index=True)
    category = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    user_id = Column(String(64), nullable=True)
    entity_id = Column(String(64), nullable=True, index=True)
    new_values = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
