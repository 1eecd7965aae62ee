"""
Notification Service - customer emails for order events
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Dict

from furniture_shop.config import settings

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "confirmed": "Your order has been confirmed and will be prepared for delivery.",
    "processing": "Your order is being prepared.",
    "shipped": "Your order is on its way.",
    "delivered": "Your order has been delivered. Enjoy your furniture!",
    "cancelled": "Your order has been cancelled.",
}


def format_price(amount) -> str:
    return f"KES {amount or 0:,.0f}"


class NotificationService:
    """Service for sending order notifications"""
    
    def __init__(self, email_service: str = None):
        self.email_service = email_service or settings.EMAIL_SERVICE
    
    def handle_event(self, event: Dict) -> bool:
        """Dispatch an order event to the matching notification"""
        event_type = event.get("event_type")
        data = event.get("data") or {}
        
        if event_type == "OrderCreated":
            return self.send_order_confirmation(data)
        if event_type == "OrderStatusChanged":
            return self.send_order_status_update(data)
        if event_type == "OrderPaid":
            return self.send_payment_receipt(data)
        
        logger.info("No notification for event type %s", event_type)
        return True
    
    def send_order_confirmation(self, order_data: Dict) -> bool:
        order_number = order_data.get("order_number")
        lines = "\n".join(
            f"  {item.get('quantity')} x {item.get('name')} @ {format_price(item.get('price'))}"
            for item in order_data.get("items", [])
        )
        body = f"""Hi {order_data.get('customer_name', '')},

Thank you for your order!

Order Number: {order_number}
{lines}

Subtotal: {format_price(order_data.get('subtotal'))}
Delivery: {format_price(order_data.get('delivery_fee'))}
Total: {format_price(order_data.get('total'))}

Payment method: {order_data.get('payment_method')}

---
Furniture Hub
"""
        return self.send_email(order_data.get("customer_email"), f"Order Confirmation - {order_number}", body)
    
    def send_order_status_update(self, order_data: Dict) -> bool:
        order_number = order_data.get("order_number")
        new_status = order_data.get("new_status") or order_data.get("order_status")
        body = f"""Hi {order_data.get('customer_name', '')},

Order Number: {order_number}
New Status: {new_status}

{STATUS_MESSAGES.get(new_status, '')}

---
Furniture Hub
"""
        return self.send_email(order_data.get("customer_email"), f"Order Update - {order_number}", body)
    
    def send_payment_receipt(self, order_data: Dict) -> bool:
        order_number = order_data.get("order_number")
        body = f"""Hi {order_data.get('customer_name', '')},

We have received your payment of {format_price(order_data.get('total'))}.

Order Number: {order_number}
M-Pesa Receipt: {order_data.get('mpesa_receipt_number') or 'pending'}

---
Furniture Hub
"""
        return self.send_email(order_data.get("customer_email"), f"Payment Received - {order_number}", body)
    
    def send_email(self, to: str, subject: str, body: str) -> bool:
        """Send through the configured email service"""
        if not to:
            logger.warning("No recipient for '%s', skipping", subject)
            return False
        
        if self.email_service == "console":
            return self._send_console_notification(to, subject, body)
        elif self.email_service == "smtp":
            return self._send_smtp_notification(to, subject, body)
        else:
            logger.error("Unknown email service: %s", self.email_service)
            return False
    
    def _send_console_notification(self, to: str, subject: str, body: str) -> bool:
        """Log the email instead of sending it; for development"""
        logger.info("EMAIL (console mode)\nTo: %s\nSubject: %s\n\n%s", to, subject, body)
        return True
    
    def _send_smtp_notification(self, to: str, subject: str, body: str) -> bool:
        """Send email via the SMTP relay"""
        message = EmailMessage()
        message["From"] = settings.EMAIL_FROM
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        
        try:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
                if settings.SMTP_USE_TLS:
                    smtp.starttls()
                if settings.SMTP_USER:
                    smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send '%s' to %s: %s", subject, to, e)
            return False
        
        logger.info("Email '%s' sent to %s", subject, to)
        return True
