"""
RabbitMQ Consumer for order events that trigger customer notifications
"""
import json
import logging
import sys

import pika

from furniture_shop.config import settings
from furniture_shop.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

BINDING_KEY = "order.#"


def callback(ch, method, properties, body):
    """
    Callback function to process order events
    
    Args:
        ch: Channel
        method: Method
        properties: Properties
        body: Message body (JSON string)
    """
    try:
        event = json.loads(body)
        logger.info("Received event: %s (ID: %s)", event.get("event_type"), event.get("event_id"))
        
        if NotificationService().handle_event(event):
            ch.basic_ack(delivery_tag=method.delivery_tag)
        else:
            # Reject and don't requeue (send to DLQ if configured)
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
            logger.warning("Event %s notification failed", event.get("event_id"))
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON: %s", e)
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
    except Exception as e:
        logger.exception("Error processing event: %s", e)
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)


def start_consumer():
    """
    Start RabbitMQ consumer
    
    Connects to RabbitMQ and consumes every order.* event
    """
    logger.info("Connecting to RabbitMQ: %s", settings.RABBITMQ_URL)
    try:
        connection = pika.BlockingConnection(
            pika.URLParameters(settings.RABBITMQ_URL)
        )
    except pika.exceptions.AMQPConnectionError as e:
        logger.error("Error starting consumer: %s", e)
        sys.exit(1)
    
    channel = connection.channel()
    
    channel.exchange_declare(
        exchange=settings.RABBITMQ_EXCHANGE,
        exchange_type='topic',
        durable=True
    )
    channel.queue_declare(
        queue=settings.RABBITMQ_QUEUE,
        durable=True
    )
    channel.queue_bind(
        exchange=settings.RABBITMQ_EXCHANGE,
        queue=settings.RABBITMQ_QUEUE,
        routing_key=BINDING_KEY
    )
    
    # Set prefetch count (QoS)
    channel.basic_qos(prefetch_count=10)
    
    channel.basic_consume(
        queue=settings.RABBITMQ_QUEUE,
        on_message_callback=callback,
        auto_ack=False  # Manual acknowledgement
    )
    
    logger.info("Notification consumer waiting for events on queue: %s", settings.RABBITMQ_QUEUE)
    
    try:
        channel.start_consuming()
    except KeyboardInterrupt:
        logger.info("Consumer stopped by user")
        channel.stop_consuming()
    finally:
        connection.close()


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    start_consumer()
