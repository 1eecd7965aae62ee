#!/usr/bin/env python
"""
Script to run the RabbitMQ consumer that sends order notifications
"""
import logging

from furniture_shop.config import settings
from furniture_shop.consumers.notification_consumer import start_consumer

if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    start_consumer()
