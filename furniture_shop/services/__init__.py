"""
Services package
"""
from furniture_shop.services.stock_ledger import StockLedger
from furniture_shop.services.order_service import OrderService
from furniture_shop.services.mpesa_client import MpesaClient
from furniture_shop.services.payment_service import PaymentService
from furniture_shop.services.notification_service import NotificationService

__all__ = ["StockLedger", "OrderService", "MpesaClient", "PaymentService", "NotificationService"]
