import json
import logging
import threading
import time
from decimal import Decimal

import pika

from . import config
from .database import SessionLocal
from .errors import ValidationError
from .payments import ledger as default_ledger
from .provider import parse_timestamp

logger = logging.getLogger(__name__)

PAYMENT_QUEUE = "orderflow.payment.webhook"
PAYMENT_ROUTING_KEY = "payment.webhook"

# Provider webhook event names that fix the outcome regardless of data.status.
PROVIDER_EVENTS = {
    "charge.success": "success",
    "charge.failed": "failed",
    "refund.processed": "refunded",
}


def parse_payment_event(event):
    """
    Turn a queued payment event into ledger arguments.

    Accepts either the provider's raw webhook shape ({"event": ..., "data":
    {...}}, amounts in minor units) or the flat shape the webhook receiver
    forwards ({"reference", "order_id", "amount", "currency", "status", ...}).
    """
    if not isinstance(event, dict):
        raise ValueError("Payment event must be a JSON object")

    if "data" in event and isinstance(event["data"], dict):
        data = event["data"]
        metadata = data.get("metadata") or {}
        amount = data.get("amount")
        return {
            "provider_reference": data.get("reference") or data.get("transaction_reference"),
            "order_id": metadata.get("order_id") if isinstance(metadata, dict) else None,
            "amount": (Decimal(str(amount)) / 100) if amount is not None else None,
            "currency": data.get("currency"),
            "status": PROVIDER_EVENTS.get(event.get("event"), data.get("status")),
            "raw_payload": event,
            "channel": data.get("channel"),
            "paid_at": parse_timestamp(data.get("paid_at") or data.get("paidAt")),
        }

    return {
        "provider_reference": event.get("reference"),
        "order_id": event.get("order_id"),
        "amount": event.get("amount"),
        "currency": event.get("currency"),
        "status": event.get("status"),
        "raw_payload": event.get("payload") or event,
        "channel": event.get("channel"),
        "paid_at": parse_timestamp(event.get("paid_at")),
    }


class PaymentEventConsumer:
    """Feeds payment provider events from RabbitMQ into the ledger."""

    def __init__(self, session_factory=SessionLocal, ledger=None, host=config.RABBITMQ_HOST):
        self.session_factory = session_factory
        self.ledger = ledger or default_ledger
        self.host = host
        self.connection = None
        self.channel = None

    def connect(self):
        """Connects to RabbitMQ, waiting until it is ready."""
        while True:
            try:
                credentials = pika.PlainCredentials(config.RABBITMQ_USER, config.RABBITMQ_PASSWORD)
                parameters = pika.ConnectionParameters(self.host, credentials=credentials,
                                                       heartbeat=600, blocked_connection_timeout=300)
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()

                self.channel.exchange_declare(exchange=config.EVENT_EXCHANGE, exchange_type="topic", durable=True)
                self.channel.queue_declare(queue=PAYMENT_QUEUE, durable=True)
                self.channel.queue_bind(
                    exchange=config.EVENT_EXCHANGE, queue=PAYMENT_QUEUE, routing_key=PAYMENT_ROUTING_KEY
                )
                self.channel.basic_qos(prefetch_count=1)

                logger.info("Payment consumer connected to RabbitMQ")
                break
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready, retrying in %ss", config.BUS_RETRY_DELAY_SECONDS)
                time.sleep(config.BUS_RETRY_DELAY_SECONDS)

    def process_payment_event(self, ch, method, properties, body):
        """
        Received 'payment.webhook'.
        Action: record the attempt and converge the order, then ack.

        Malformed events are dropped; anything else is requeued so the
        provider's at-least-once delivery is preserved.
        """
        db = self.session_factory()
        try:
            event = json.loads(body)
            kwargs = parse_payment_event(event)
            outcome = self.ledger.record_payment_attempt(db, **kwargs)
            db.commit()
            logger.info("Payment %s recorded as %s (order %s)",
                        outcome.provider_reference, outcome.status, outcome.order_id)
            ch.basic_ack(delivery_tag=method.delivery_tag)
        except (ValueError, ValidationError) as exc:
            db.rollback()
            logger.error("Dropping malformed payment event: %s", exc)
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        except Exception:
            db.rollback()
            logger.exception("Error processing payment event, requeueing")
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
        finally:
            db.close()

    def start_listening(self):
        """Starts the consuming loop."""
        if not self.connection:
            self.connect()

        self.channel.basic_consume(queue=PAYMENT_QUEUE, on_message_callback=self.process_payment_event)

        logger.info("Payment consumer waiting for events...")
        self.channel.start_consuming()


def start_consumer_thread():
    """Helper to run consumer in a background thread."""
    consumer = PaymentEventConsumer()
    thread = threading.Thread(target=consumer.start_listening, daemon=True)
    thread.start()
    return thread
