"""
Synchronous verification against the payment provider.

Only asks the provider what it thinks happened to a reference; the answer is
fed into the ledger like any webhook. Authorizing payments is not done here.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import requests

from . import config

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider could not be reached or returned something unusable."""


@dataclass
class ProviderVerification:
    reference: str
    status: str
    amount: Optional[Decimal]
    currency: Optional[str]
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    order_id: Optional[str] = None
    raw: dict = field(default_factory=dict)


def parse_timestamp(value):
    """Provider timestamp (ISO string or datetime) as naive UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class PaymentProviderClient:
    """Client for the provider's transaction verification endpoint (Paystack-style)."""

    def __init__(self, base_url=config.PAYSTACK_BASE_URL, secret_key=config.PAYSTACK_SECRET_KEY,
                 timeout=config.PROVIDER_TIMEOUT_SECONDS, session=None):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def verify(self, reference: str) -> ProviderVerification:
        url = f"{self.base_url}/transaction/verify/{reference}"
        try:
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()  # Raises an exception for 4xx/5xx status codes
            body = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            logger.warning("Verification of %s failed: %s", reference, exc)
            raise ProviderError(f"Provider verification failed for {reference}: {exc}") from exc

        if not body.get("status") or not isinstance(body.get("data"), dict):
            raise ProviderError(f"Provider rejected verification of {reference}: {body.get('message')}")

        data = body["data"]
        amount = data.get("amount")
        metadata = data.get("metadata") or {}
        return ProviderVerification(
            reference=data.get("reference") or reference,
            status=data.get("status", "pending"),
            # Amounts come back in minor units (kobo).
            amount=(Decimal(str(amount)) / 100) if amount is not None else None,
            currency=data.get("currency"),
            channel=data.get("channel"),
            paid_at=parse_timestamp(data.get("paid_at") or data.get("paidAt")),
            order_id=metadata.get("order_id") if isinstance(metadata, dict) else None,
            raw=data,
        )
