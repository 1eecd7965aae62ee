"""
Repositories package
"""
from furniture_shop.repositories.order_repository import OrderRepository
from furniture_shop.repositories.product_repository import ProductRepository

__all__ = ["OrderRepository", "ProductRepository"]
