"""
Typed errors for the order lifecycle engine.

Three families, each handled differently by callers:

- ValidationError: the request is wrong. The mutation is aborted and the
  caller gets the error back (HTTP 422).
- ContentionError: someone else is editing the order, or the caller's lock
  lapsed. Expected and frequent; surfaced for retry (HTTP 409).
- OrderNotFound: the order id does not resolve (HTTP 404).

Best-effort failures (notification enqueue, per-row sweep failures) never
become exceptions at the caller; see notifications.EnqueueResult and
payments.ReconciliationReport.
"""
from typing import Any, Dict, Optional


class OrderFlowError(Exception):
    error_code = "ORDERFLOW_ERROR"
    http_status = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.context:
            return f"[{self.error_code}] {self.message}"
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"[{self.error_code}] {self.message} ({ctx})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


# --- Validation ---

class ValidationError(OrderFlowError):
    error_code = "VALIDATION_ERROR"
    http_status = 422


class UnknownStatus(ValidationError):
    error_code = "UNKNOWN_STATUS"

    def __init__(self, status: str):
        super().__init__(f"Unknown status '{status}'", {"status": status})


class InvalidTransition(ValidationError):
    error_code = "INVALID_TRANSITION"

    def __init__(self, old_status: str, new_status: str):
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Cannot move order from '{old_status}' to '{new_status}'",
            {"old_status": old_status, "new_status": new_status},
        )


class MissingCourierAssignment(ValidationError):
    error_code = "MISSING_COURIER_ASSIGNMENT"

    def __init__(self, order_id: str, new_status: str):
        super().__init__(
            f"Delivery order must have a courier assigned before '{new_status}'",
            {"order_id": order_id, "new_status": new_status},
        )


class AmountMismatch(ValidationError):
    error_code = "AMOUNT_MISMATCH"

    def __init__(self, order_id: str, expected, received):
        super().__init__(
            "Payment amount does not match order total",
            {"order_id": order_id, "expected": str(expected), "received": str(received)},
        )


class InvalidPaymentReference(ValidationError):
    error_code = "INVALID_PAYMENT_REFERENCE"

    def __init__(self, reference=None):
        super().__init__("Provider reference is required", {"reference": reference})


# --- Contention ---

class ContentionError(OrderFlowError):
    error_code = "CONTENTION"
    http_status = 409


class AlreadyLocked(ContentionError):
    error_code = "ALREADY_LOCKED"

    def __init__(self, order_id: str, holder_id: str, seconds_remaining: int):
        self.holder_id = holder_id
        self.seconds_remaining = seconds_remaining
        super().__init__(
            f"Order is being edited by {holder_id}, retry in {seconds_remaining}s",
            {
                "order_id": order_id,
                "holder_id": holder_id,
                "retry_after_seconds": seconds_remaining,
            },
        )


class NotHolder(ContentionError):
    error_code = "NOT_HOLDER"

    def __init__(self, order_id: str, holder_id: str, current_holder: Optional[str] = None):
        super().__init__(
            "Caller does not hold the lock on this order",
            {"order_id": order_id, "holder_id": holder_id, "current_holder": current_holder},
        )


class LockExpired(ContentionError):
    error_code = "LOCK_EXPIRED"

    def __init__(self, order_id: str, holder_id: str):
        super().__init__(
            "Lock expired before it was renewed",
            {"order_id": order_id, "holder_id": holder_id},
        )


# --- Lookup ---

class OrderNotFound(OrderFlowError):
    error_code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id=None, reference=None):
        super().__init__("Order not found", {"order_id": order_id, "reference": reference})


class EventNotFound(OrderFlowError):
    error_code = "EVENT_NOT_FOUND"
    http_status = 404

    def __init__(self, event_id):
        super().__init__("Communication event not found", {"event_id": event_id})
