from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OrderCreateRequest(BaseModel):
    """An order placed at checkout."""
    fulfillment_type: str = "delivery"
    total_amount: Decimal = Field(ge=0)
    currency: str = "NGN"
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    payment_reference: Optional[str] = None


class StatusChangeRequest(BaseModel):
    """An admin asking to move an order to a new status."""
    status: str
    actor_id: str
    override: bool = False
    notes: Optional[str] = None


class CourierAssignmentRequest(BaseModel):
    courier_id: str
    actor_id: str


class ArchiveRequest(BaseModel):
    actor_id: str


class LockRequest(BaseModel):
    """Acquire or renew the edit lock on an order."""
    holder_id: str
    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=600)


class PaymentWebhookRequest(BaseModel):
    """A payment provider event, already verified by the webhook receiver."""
    reference: str
    status: str
    order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class NotificationRequest(BaseModel):
    event_type: str
    recipient: Optional[str] = None
    template_key: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    order_id: Optional[str] = None
    dedupe_key: Optional[str] = None
    nonce: Optional[str] = None
    source: str = "api"
    priority: str = "normal"


class ClaimRequest(BaseModel):
    limit: int = Field(default=10, gt=0, le=500)


class DeliveryReportRequest(BaseModel):
    """Outcome reported by the notification dispatcher."""
    status: str
    error: Optional[str] = None
