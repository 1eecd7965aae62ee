"""
RabbitMQ Event Publisher for order lifecycle events
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

import pika

from furniture_shop.config import settings

logger = logging.getLogger(__name__)

ROUTING_KEYS = {
    "OrderCreated": "order.created",
    "OrderStatusChanged": "order.status.changed",
    "OrderPaid": "order.paid",
}


def order_event_payload(order) -> Dict:
    """Flatten the fields notification consumers need from an order"""
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_name": order.customer_full_name,
        "customer_email": order.customer_email,
        "items": [
            {"name": item.name, "price": item.price, "quantity": item.quantity}
            for item in order.items
        ],
        "subtotal": order.subtotal,
        "delivery_fee": order.delivery_fee,
        "total": order.total,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "order_status": order.order_status,
        "mpesa_receipt_number": order.mpesa_receipt_number,
    }


class EventPublisher:
    """Publisher for sending order events to RabbitMQ"""

    def __init__(self, enabled: Optional[bool] = None):
        self.rabbitmq_url = settings.RABBITMQ_URL
        self.exchange = settings.RABBITMQ_EXCHANGE
        self.enabled = settings.EVENTS_ENABLED if enabled is None else enabled

    def publish(self, event_type: str, data: Dict) -> bool:
        """
        Publish an event to the orders exchange

        Args:
            event_type: One of OrderCreated, OrderStatusChanged, OrderPaid
            data: Event payload

        Returns:
            True if published successfully, False otherwise
        """
        if not self.enabled:
            logger.debug("Event publishing disabled, dropping %s", event_type)
            return False

        event = {
            "event_type": event_type,
            "event_id": str(uuid.uuid4()),
            "event_version": "1.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": settings.SERVICE_NAME,
            "data": data
        }

        try:
            connection = pika.BlockingConnection(
                pika.URLParameters(self.rabbitmq_url)
            )
            try:
                channel = connection.channel()

                channel.exchange_declare(
                    exchange=self.exchange,
                    exchange_type='topic',
                    durable=True
                )

                # Enable publisher confirms
                channel.confirm_delivery()

                channel.basic_publish(
                    exchange=self.exchange,
                    routing_key=ROUTING_KEYS[event_type],
                    body=json.dumps(event, default=str),
                    properties=pika.BasicProperties(
                        delivery_mode=2,  # Persistent message
                        content_type='application/json',
                        correlation_id=event["event_id"]
                    ),
                    mandatory=False
                )
            finally:
                connection.close()
        except pika.exceptions.AMQPError as e:
            logger.error("Error publishing %s event: %s", event_type, e)
            return False

        logger.info("Event published: %s (ID: %s)", event_type, event["event_id"])
        return True

    def publish_order_created(self, order) -> bool:
        return self.publish("OrderCreated", order_event_payload(order))

    def publish_order_status_changed(self, order, old_status: str) -> bool:
        data = order_event_payload(order)
        data["old_status"] = old_status
        data["new_status"] = order.order_status
        return self.publish("OrderStatusChanged", data)

    def publish_order_paid(self, order) -> bool:
        return self.publish("OrderPaid", order_event_payload(order))
