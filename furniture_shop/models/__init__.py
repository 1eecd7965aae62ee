"""
Models package
"""
from furniture_shop.models.product import Product
from furniture_shop.models.order import (
    Order,
    OrderItem,
    OrderStatusHistory,
    PaymentAttempt,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
    AttemptStatus,
)

__all__ = [
    "Product",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "PaymentAttempt",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "AttemptStatus",
]
