import json
import logging
import time

import pika
from fastapi.encoders import jsonable_encoder

from .. import config

logger = logging.getLogger(__name__)


class RabbitMQProducer:
    """
    Handles the connection to RabbitMQ and publishing of domain events.

    Events are published after the database commit that produced them and
    are informational: a failed publish is logged and never undoes the
    order or payment change.
    """

    def __init__(self, exchange_name=config.EVENT_EXCHANGE, exchange_type="topic",
                 host=config.RABBITMQ_HOST, attempts=config.BUS_CONNECT_ATTEMPTS,
                 retry_delay=config.BUS_RETRY_DELAY_SECONDS):
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.host = host
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.connection = None
        self.channel = None

    def connect(self):
        """Establishes a connection to RabbitMQ, retrying a bounded number of times."""
        for attempt in range(1, self.attempts + 1):
            try:
                credentials = pika.PlainCredentials(config.RABBITMQ_USER, config.RABBITMQ_PASSWORD)
                parameters = pika.ConnectionParameters(host=self.host, credentials=credentials)

                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()

                # Declare the exchange (durable ensures it survives restarts)
                self.channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True,
                )
                logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)
                return
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready (attempt %d/%d)", attempt, self.attempts)
                if attempt < self.attempts:
                    time.sleep(self.retry_delay)
        raise ConnectionError(f"Could not connect to RabbitMQ at {self.host}")

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.status_changed').
            message (dict): The data payload to send.

        Returns:
            bool: Whether the message was handed to the broker.
        """
        try:
            # Reconnect if the connection was lost
            if not self.connection or self.connection.is_closed:
                self.connect()

            self.channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(jsonable_encoder(message)),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Make message persistent
                    content_type="application/json",
                ),
            )
            logger.debug("Sent event %s: %s", routing_key, message)
            return True
        except Exception:
            logger.exception("Failed to publish %s", routing_key)
            return False

    def close(self):
        """Closes the connection cleanly."""
        if self.connection and not self.connection.is_closed:
            self.connection.close()


_producer = None


def get_producer():
    """FastAPI dependency: the shared producer, or None when the bus is disabled."""
    global _producer
    if not config.EVENT_BUS_ENABLED:
        return None
    if _producer is None:
        _producer = RabbitMQProducer()
    return _producer
