"""
SQLAlchemy Order model, line items, status history and payment attempts
"""
from datetime import timedelta
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, ForeignKey, CheckConstraint
)
from sqlalchemy.orm import relationship

from furniture_shop.database import Base
from furniture_shop.errors import InvalidTransition
from furniture_shop.time_utils import utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    CARD = "card"
    COD = "cod"


class AttemptStatus(str, Enum):
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUPERSEDED = "superseded"


# Forward-only fulfillment edges. Cancellation goes through cancel_order.
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

CANCELLABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


def validate_transition(current: str, new: str) -> None:
    """Raise InvalidTransition unless current -> new is a legal edge"""
    current_status = OrderStatus(current)
    new_status = OrderStatus(new)
    if current_status == OrderStatus.CANCELLED:
        raise InvalidTransition("Cancelled orders cannot change status", current_status.value)
    if new_status == OrderStatus.CANCELLED:
        raise InvalidTransition(
            "Use order cancellation to cancel an order", current_status.value
        )
    if new_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransition(
            f"Cannot change order status from {current_status.value} to {new_status.value}",
            current_status.value,
        )


def _in_clause(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


class Order(Base):
    """Order database model"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    # Customer snapshot
    customer_full_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(20), nullable=False)
    customer_address = Column(String(500), nullable=False)
    customer_city = Column(String(100), nullable=False)
    customer_county = Column(String(100), nullable=True)

    subtotal = Column(Float, nullable=False)
    delivery_fee = Column(Float, nullable=False, default=0)
    total = Column(Float, nullable=False)

    payment_method = Column(String(20), nullable=False, default=PaymentMethod.MPESA.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)

    # Payment details
    transaction_id = Column(String(100), nullable=True, index=True)
    merchant_request_id = Column(String(100), nullable=True)
    mpesa_receipt_number = Column(String(50), nullable=True, index=True)
    mpesa_transaction_date = Column(String(14), nullable=True)
    payment_phone_number = Column(String(20), nullable=True)
    amount_paid = Column(Float, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    payment_failure_reason = Column(String(500), nullable=True)
    payment_gaps = Column(String(255), nullable=True)
    payment_in_flight_since = Column(DateTime, nullable=True)

    order_status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    notes = Column(Text, nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    delivery_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "OrderItem", back_populates="order", order_by="OrderItem.position",
        cascade="all, delete-orphan"
    )
    status_history = relationship(
        "OrderStatusHistory", back_populates="order", order_by="OrderStatusHistory.id",
        cascade="all, delete-orphan"
    )
    payment_attempts = relationship(
        "PaymentAttempt", back_populates="order", order_by="PaymentAttempt.id",
        cascade="all, delete-orphan"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint('subtotal >= 0', name='check_subtotal_non_negative'),
        CheckConstraint('delivery_fee >= 0', name='check_delivery_fee_non_negative'),
        CheckConstraint('total >= 0', name='check_total_non_negative'),
        CheckConstraint(f"order_status IN ({_in_clause(OrderStatus)})", name='check_order_status_valid'),
        CheckConstraint(f"payment_status IN ({_in_clause(PaymentStatus)})", name='check_payment_status_valid'),
        CheckConstraint(f"payment_method IN ({_in_clause(PaymentMethod)})", name='check_payment_method_valid'),
    )

    @property
    def is_completed(self) -> bool:
        return self.order_status == OrderStatus.DELIVERED.value

    @property
    def can_be_cancelled(self) -> bool:
        return self.order_status in {status.value for status in CANCELLABLE_STATUSES}

    @property
    def delivery_estimate(self) -> dict:
        """Delivery window of 3 to 5 days from order creation"""
        return {
            "min": self.created_at + timedelta(days=3),
            "max": self.created_at + timedelta(days=5),
        }

    def __repr__(self):
        return (
            f"<Order(id={self.id}, order_number='{self.order_number}', "
            f"order_status='{self.order_status}', payment_status='{self.payment_status}')>"
        )


class OrderItem(Base):
    """Line item snapshot; product_id is kept without a foreign key so deleted products leave history intact"""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    image = Column(String(500), nullable=False, default="")

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint('quantity >= 1', name='check_item_quantity_positive'),
        CheckConstraint('price >= 0', name='check_item_price_non_negative'),
    )

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


class OrderStatusHistory(Base):
    """Append-only audit trail of fulfillment status changes"""

    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    note = Column(String(500), nullable=True)
    actor_id = Column(String(64), nullable=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="status_history")


class PaymentAttempt(Base):
    """One push-payment attempt; never deleted, only closed with an outcome"""

    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    checkout_request_id = Column(String(100), nullable=False, unique=True, index=True)
    merchant_request_id = Column(String(100), nullable=True)
    phone_number = Column(String(20), nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=AttemptStatus.INITIATED.value, index=True)
    result_code = Column(String(20), nullable=True)
    result_desc = Column(String(500), nullable=True)
    receipt_number = Column(String(50), nullable=True)
    initiated_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    order = relationship("Order", back_populates="payment_attempts")

    __table_args__ = (
        CheckConstraint(f"status IN ({_in_clause(AttemptStatus)})", name='check_attempt_status_valid'),
    )

    @property
    def is_open(self) -> bool:
        return self.status == AttemptStatus.INITIATED.value

    def __repr__(self):
        return f"<PaymentAttempt(checkout_request_id='{self.checkout_request_id}', status='{self.status}')>"
