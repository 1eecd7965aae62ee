"""
Order Repository - Data Access Layer
"""
from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import desc, or_

from furniture_shop.models.order import (
    Order,
    OrderStatusHistory,
    PaymentAttempt,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
    AttemptStatus,
)


class OrderRepository:
    """Repository for Order reads and conditional writes"""
    
    def __init__(self, db: Session):
        self.db = db
    
    def get_all(self, skip: int = 0, limit: int = 50, status: Optional[str] = None) -> List[Order]:
        """Get orders with pagination, newest first"""
        query = self.db.query(Order)
        if status:
            query = query.filter(Order.order_status == status)
        return query.order_by(desc(Order.created_at), desc(Order.id)).offset(skip).limit(limit).all()
    
    def count(self, status: Optional[str] = None) -> int:
        """Get total count of orders"""
        query = self.db.query(Order)
        if status:
            query = query.filter(Order.order_status == status)
        return query.count()
    
    def get_by_id(self, order_id: int) -> Optional[Order]:
        """Get order by ID"""
        return self.db.query(Order).filter(Order.id == order_id).first()
    
    def get_by_order_number(self, order_number: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.order_number == order_number).first()
    
    def get_by_user(self, user_id: str, limit: int = 50) -> List[Order]:
        """Get a customer's orders, newest first"""
        return self.db.query(Order).filter(
            Order.user_id == user_id
        ).order_by(desc(Order.created_at), desc(Order.id)).limit(limit).all()
    
    def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        """Get the order whose current payment attempt has this checkout request ID"""
        return self.db.query(Order).filter(Order.transaction_id == transaction_id).first()
    
    def count_created_since(self, since: datetime) -> int:
        return self.db.query(Order).filter(Order.created_at >= since).count()
    
    def add(self, order: Order) -> Order:
        """Stage a new order together with its items and history"""
        self.db.add(order)
        self.db.flush()
        return order
    
    def append_history(self, order_id: int, status: str, note: Optional[str], actor_id: Optional[str]) -> OrderStatusHistory:
        """Append an audit entry; entries are never updated or removed"""
        entry = OrderStatusHistory(
            order_id=order_id,
            status=status,
            note=note,
            actor_id=actor_id
        )
        self.db.add(entry)
        self.db.flush()
        return entry
    
    def compare_and_set_order_status(
        self, order_id: int, expected: Iterable[str], new_status: str, **values
    ) -> bool:
        """Set order_status only if it is currently one of `expected`"""
        updated = self.db.query(Order).filter(
            Order.id == order_id,
            Order.order_status.in_(list(expected))
        ).update({Order.order_status: new_status, **values}, synchronize_session=False)
        return updated == 1
    
    def mark_paid_if_unpaid(self, order_id: int, **values) -> bool:
        """Transition payment_status to paid unless it already is"""
        updated = self.db.query(Order).filter(
            Order.id == order_id,
            Order.payment_status != PaymentStatus.PAID.value
        ).update(
            {Order.payment_status: PaymentStatus.PAID.value, **values},
            synchronize_session=False
        )
        return updated == 1
    
    def mark_failed_if_pending(self, order_id: int, transaction_id: str, reason: Optional[str]) -> bool:
        """Record a failed outcome for the order's current attempt"""
        updated = self.db.query(Order).filter(
            Order.id == order_id,
            Order.transaction_id == transaction_id,
            Order.payment_status == PaymentStatus.PENDING.value
        ).update(
            {
                Order.payment_status: PaymentStatus.FAILED.value,
                Order.payment_failure_reason: reason,
                Order.payment_in_flight_since: None,
            },
            synchronize_session=False
        )
        return updated == 1
    
    def claim_payment_slot(self, order_id: int, now: datetime, stale_before: datetime) -> bool:
        """
        Reserve the right to start a push payment for an order
        
        Succeeds when the order is unpaid and has no attempt started after
        `stale_before`.
        """
        updated = self.db.query(Order).filter(
            Order.id == order_id,
            Order.payment_status != PaymentStatus.PAID.value,
            Order.order_status != OrderStatus.CANCELLED.value,
            or_(
                Order.payment_in_flight_since.is_(None),
                Order.payment_in_flight_since < stale_before
            )
        ).update({Order.payment_in_flight_since: now}, synchronize_session=False)
        return updated == 1
    
    def release_payment_slot(self, order_id: int, claimed_at: datetime) -> bool:
        """Undo a claim whose push never reached the gateway"""
        updated = self.db.query(Order).filter(
            Order.id == order_id,
            Order.payment_in_flight_since == claimed_at
        ).update({Order.payment_in_flight_since: None}, synchronize_session=False)
        return updated == 1
    
    def get_expired_unpaid(self, created_before: datetime, in_flight_before: datetime) -> List[Order]:
        """Pending, unpaid, prepaid orders whose reservation has outlived its TTL"""
        return self.db.query(Order).filter(
            Order.order_status == OrderStatus.PENDING.value,
            Order.payment_status != PaymentStatus.PAID.value,
            Order.payment_method != PaymentMethod.COD.value,
            Order.created_at < created_before,
            or_(
                Order.payment_in_flight_since.is_(None),
                Order.payment_in_flight_since < in_flight_before
            )
        ).order_by(Order.created_at).all()
    
    # Payment attempts
    
    def get_attempt(self, checkout_request_id: str) -> Optional[PaymentAttempt]:
        return self.db.query(PaymentAttempt).filter(
            PaymentAttempt.checkout_request_id == checkout_request_id
        ).first()
    
    def add_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        self.db.add(attempt)
        self.db.flush()
        return attempt
    
    def supersede_open_attempts(self, order_id: int, now: datetime) -> int:
        """Close every still-open attempt of an order as superseded"""
        return self.db.query(PaymentAttempt).filter(
            PaymentAttempt.order_id == order_id,
            PaymentAttempt.status == AttemptStatus.INITIATED.value
        ).update(
            {
                PaymentAttempt.status: AttemptStatus.SUPERSEDED.value,
                PaymentAttempt.completed_at: now,
            },
            synchronize_session=False
        )
    
    def close_attempt(self, checkout_request_id: str, status: str, **values) -> bool:
        """Record an outcome on an attempt that has none yet"""
        updated = self.db.query(PaymentAttempt).filter(
            PaymentAttempt.checkout_request_id == checkout_request_id,
            PaymentAttempt.status.in_([AttemptStatus.INITIATED.value, AttemptStatus.SUPERSEDED.value])
        ).update({PaymentAttempt.status: status, **values}, synchronize_session=False)
        return updated == 1
    
    def get_open_attempts(self, initiated_before: datetime) -> List[PaymentAttempt]:
        """Attempts still waiting for an outcome, oldest first"""
        return self.db.query(PaymentAttempt).filter(
            PaymentAttempt.status == AttemptStatus.INITIATED.value,
            PaymentAttempt.initiated_at < initiated_before
        ).order_by(PaymentAttempt.initiated_at).all()
    
    def commit(self):
        self.db.commit()
    
    def rollback(self):
        self.db.rollback()
    
    def refresh(self, order: Order) -> Order:
        self.db.refresh(order)
        return order
