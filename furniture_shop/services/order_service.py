"""
Order Service - Business Logic Layer
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from furniture_shop.config import settings
from furniture_shop.errors import Forbidden, InvalidState, InvalidTransition, NotFound
from furniture_shop.models.order import (
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderStatus,
    PaymentStatus,
    CANCELLABLE_STATUSES,
    validate_transition,
)
from furniture_shop.publishers.event_publisher import EventPublisher
from furniture_shop.repositories.order_repository import OrderRepository
from furniture_shop.repositories.product_repository import ProductRepository
from furniture_shop.schemas.order import OrderCreate
from furniture_shop.services.stock_ledger import StockLedger
from furniture_shop.time_utils import local_day_start, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
ORDER_NUMBER_ATTEMPTS = 3

# Order payment columns and the callback metadata item that supplies each
GAP_FIELDS = {
    "mpesa_receipt_number": "MpesaReceiptNumber",
    "mpesa_transaction_date": "TransactionDate",
    "amount_paid": "Amount",
    "payment_phone_number": "PhoneNumber",
}

DELIVERY_RATES = {
    "nairobi": 0,
    "mombasa": 1000,
    "kisumu": 1500,
    "nakuru": 800,
    "eldoret": 1200,
    "thika": 500,
}


def calculate_delivery_fee(city: str) -> float:
    """Flat delivery fee by destination city"""
    normalized_city = (city or "").strip().lower()
    return DELIVERY_RATES.get(normalized_city, settings.DEFAULT_DELIVERY_FEE)


def format_order_number(local_date: datetime, sequence: int) -> str:
    """ORD-YYYYMMDD-NNNN, NNNN being the order's position within the local day"""
    return f"ORD-{local_date.strftime('%Y%m%d')}-{sequence:04d}"


class OrderService:
    """Service layer for the order aggregate and its status machine"""

    def __init__(self, db: Session, event_publisher: Optional[EventPublisher] = None):
        self.db = db
        self.repository = OrderRepository(db)
        self.product_repository = ProductRepository(db)
        self.stock_ledger = StockLedger(db)
        self.event_publisher = event_publisher or EventPublisher()

    # Queries

    def get_order(self, order_id: int, actor=None) -> Order:
        """
        Get order by ID

        Raises:
            NotFound: If the order does not exist
            Forbidden: If `actor` is given and neither owns the order nor is an admin
        """
        order = self.repository.get_by_id(order_id)
        if not order:
            raise NotFound(f"Order with id={order_id} not found")
        if actor is not None:
            self.ensure_access(order, actor)
        return order

    @staticmethod
    def ensure_access(order: Order, actor, allow_admin: bool = True) -> None:
        if order.user_id == actor.user_id:
            return
        if allow_admin and actor.is_admin:
            return
        raise Forbidden("Not authorized to access this order")

    def get_all_orders(self, skip: int = 0, limit: int = 50, status: Optional[str] = None) -> Tuple[List[Order], int]:
        """Get orders with pagination and the total matching count"""
        orders = self.repository.get_all(skip=skip, limit=limit, status=status)
        total = self.repository.count(status=status)
        return orders, total

    def get_user_orders(self, user_id: str, limit: int = 50) -> List[Order]:
        return self.repository.get_by_user(user_id, limit=limit)

    # Creation

    def create_order(self, order_data: OrderCreate, user_id: str) -> Order:
        """
        Create new order

        Steps:
        1. Look up each product and snapshot name, effective price and image
        2. Reserve stock for each line item through the stock ledger
        3. Release every reservation made so far if any step fails
        4. Save order with its first status history entry in one commit
        5. Publish OrderCreated event

        Raises:
            NotFound: If a product does not exist
            InsufficientStock: If a product cannot cover the requested quantity
        """
        reserved: List[Tuple[int, int]] = []
        line_items: List[Dict] = []
        subtotal = 0.0

        try:
            for requested in order_data.items:
                product = self.product_repository.get_by_id(requested.product_id)
                if not product:
                    raise NotFound(f"Product {requested.product_id} not found")

                self.stock_ledger.reserve(product.id, requested.quantity)
                reserved.append((product.id, requested.quantity))

                unit_price = product.effective_price
                line_items.append({
                    "product_id": product.id,
                    "name": product.name,
                    "price": unit_price,
                    "quantity": requested.quantity,
                    "image": product.image_url or "",
                })
                subtotal += unit_price * requested.quantity

            delivery_fee = calculate_delivery_fee(order_data.customer.city)
            order = self._save_new_order(order_data, user_id, line_items, subtotal, delivery_fee)
        except Exception:
            self.repository.rollback()
            self._release_reservations(reserved)
            raise

        logger.info(
            "Order %s created for user %s: %d item(s), total %.2f",
            order.order_number, user_id, len(order.items), order.total
        )
        self._notify(self.event_publisher.publish_order_created, order)
        return order

    def _save_new_order(
        self,
        order_data: OrderCreate,
        user_id: str,
        line_items: List[Dict],
        subtotal: float,
        delivery_fee: float,
    ) -> Order:
        subtotal = round(subtotal, 2)
        total = round(subtotal + delivery_fee, 2)

        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            created_at = utcnow()
            start_of_day = local_day_start(created_at, settings.MPESA_UTC_OFFSET_HOURS)
            sequence = self.repository.count_created_since(start_of_day) + 1 + attempt
            local_date = start_of_day + timedelta(hours=settings.MPESA_UTC_OFFSET_HOURS)

            order = Order(
                order_number=format_order_number(local_date, sequence),
                user_id=user_id,
                customer_full_name=order_data.customer.full_name,
                customer_email=order_data.customer.email.lower(),
                customer_phone=order_data.customer.phone,
                customer_address=order_data.customer.address,
                customer_city=order_data.customer.city,
                customer_county=order_data.customer.county,
                subtotal=subtotal,
                delivery_fee=delivery_fee,
                total=total,
                payment_method=order_data.payment_method,
                payment_status=PaymentStatus.PENDING.value,
                order_status=OrderStatus.PENDING.value,
                notes=order_data.notes,
                created_at=created_at,
                items=[OrderItem(position=index, **item) for index, item in enumerate(line_items)],
                status_history=[
                    OrderStatusHistory(
                        status=OrderStatus.PENDING.value,
                        note="Order created",
                        actor_id=user_id,
                        timestamp=created_at,
                    )
                ],
            )
            try:
                self.repository.add(order)
                self.repository.commit()
            except IntegrityError:
                self.repository.rollback()
                logger.warning("Order number %s already taken, retrying", order.order_number)
                continue
            return order

        raise RuntimeError("Could not allocate a unique order number")

    def _release_reservations(self, reserved: List[Tuple[int, int]]) -> None:
        for product_id, quantity in reserved:
            self.stock_ledger.release(product_id, quantity)
        if reserved:
            logger.info("Rolled back %d stock reservation(s)", len(reserved))

    # Status machine

    def update_status(self, order_id: int, new_status: str, note: Optional[str] = None, actor_id: Optional[str] = None) -> Order:
        """
        Move an order along the fulfillment status machine

        Raises:
            NotFound: If order not found
            InvalidTransition: If the edge is not allowed or the order moved concurrently
        """
        order = self.get_order(order_id)
        old_status = order.order_status
        validate_transition(old_status, new_status)

        extra = {}
        if new_status == OrderStatus.DELIVERED.value:
            extra["delivery_date"] = utcnow()

        self._transition(order, old_status, new_status, note, actor_id, **extra)
        self.repository.commit()
        self.repository.refresh(order)

        logger.info("Order %s status %s -> %s", order.order_number, old_status, new_status)
        self._notify(self.event_publisher.publish_order_status_changed, order, old_status)
        return order

    def _transition(self, order: Order, expected: str, new_status: str, note: Optional[str], actor_id: Optional[str], **values) -> None:
        """Compare-and-set the status and append history; caller commits"""
        if not self.repository.compare_and_set_order_status(order.id, [expected], new_status, **values):
            self.repository.rollback()
            self.repository.refresh(order)
            raise InvalidTransition(
                f"Order status changed concurrently; it is now {order.order_status}",
                order.order_status,
            )
        self.repository.append_history(
            order.id, new_status, note or f"Status changed to {new_status}", actor_id
        )

    def mark_as_paid(self, order: Order, payment_details: Dict, gaps: Optional[List[str]] = None) -> bool:
        """
        Record a successful payment and confirm a pending order

        Only the first call transitions the order; later calls with the same
        receipt change nothing. A later call may fill in a receipt number the
        first one lacked.

        Returns:
            True if this call moved the order to paid
        """
        now = utcnow()
        values = {
            "paid_at": now,
            "payment_in_flight_since": None,
            "payment_failure_reason": None,
            "payment_gaps": ",".join(gaps) if gaps else None,
        }
        for field in ("transaction_id", *GAP_FIELDS):
            if payment_details.get(field) is not None:
                values[field] = payment_details[field]

        if not self.repository.mark_paid_if_unpaid(order.id, **values):
            self.repository.rollback()
            self.repository.refresh(order)
            self._backfill_receipt(order, payment_details)
            return False

        old_status = order.order_status
        confirmed = self.repository.compare_and_set_order_status(
            order.id, [OrderStatus.PENDING.value], OrderStatus.CONFIRMED.value
        )
        if confirmed:
            self.repository.append_history(
                order.id, OrderStatus.CONFIRMED.value,
                "Payment received and order confirmed", SYSTEM_ACTOR
            )
        self.repository.commit()
        self.repository.refresh(order)

        if order.order_status == OrderStatus.CANCELLED.value:
            logger.warning("Order %s was paid after cancellation; refund required", order.order_number)

        logger.info(
            "Order %s paid (receipt %s)", order.order_number, order.mpesa_receipt_number or "missing"
        )
        self._notify(self.event_publisher.publish_order_paid, order)
        if confirmed:
            self._notify(self.event_publisher.publish_order_status_changed, order, old_status)
        return True

    @staticmethod
    def is_other_payment(order: Order, payment_details: Dict) -> bool:
        """True when the details belong to a different charge than the one recorded on the order"""
        for field in ("transaction_id", "mpesa_receipt_number"):
            recorded = getattr(order, field)
            incoming = payment_details.get(field)
            if recorded is not None and incoming is not None and recorded != incoming:
                return True
        return False

    def _backfill_receipt(self, order: Order, payment_details: Dict) -> bool:
        """Fill payment fields a previous outcome lacked; never touches status or history"""
        if self.is_other_payment(order, payment_details):
            return False

        gaps = order.payment_gaps.split(",") if order.payment_gaps else []
        supplied = set()
        changed = False
        for field, gap in GAP_FIELDS.items():
            value = payment_details.get(field)
            if value is None:
                continue
            supplied.add(gap)
            if getattr(order, field) is None:
                setattr(order, field, value)
                changed = True

        remaining = [gap for gap in gaps if gap not in supplied]
        if not changed and remaining == gaps:
            return False
        order.payment_gaps = ",".join(remaining) or None
        self.repository.commit()
        logger.info("Order %s payment details backfilled", order.order_number)
        return True

    def cancel_order(self, order_id: int, reason: Optional[str], actor=None, actor_id: Optional[str] = None) -> Order:
        """
        Cancel an order and return every reserved unit to stock

        The status change, the history entry and the stock releases commit
        together; only the caller that wins the status change releases stock.

        Raises:
            NotFound: If order not found
            Forbidden: If the actor neither owns the order nor is an admin
            InvalidState: If the order is past the cancellable stages
        """
        order = self.get_order(order_id, actor)
        if actor is not None:
            actor_id = actor.user_id
        reason = reason or "Cancelled by customer"

        if not order.can_be_cancelled:
            raise InvalidState(
                f"Order cannot be cancelled at this stage (status: {order.order_status})",
                order.order_status,
            )

        old_status = order.order_status
        won = self.repository.compare_and_set_order_status(
            order.id,
            [status.value for status in CANCELLABLE_STATUSES],
            OrderStatus.CANCELLED.value,
            cancel_reason=reason,
            payment_in_flight_since=None,
        )
        if not won:
            self.repository.rollback()
            self.repository.refresh(order)
            raise InvalidState(
                f"Order cannot be cancelled at this stage (status: {order.order_status})",
                order.order_status,
            )

        self.repository.append_history(order.id, OrderStatus.CANCELLED.value, reason, actor_id)
        for item in order.items:
            self.stock_ledger.release(item.product_id, item.quantity, commit=False)
        self.repository.commit()
        self.repository.refresh(order)

        if order.payment_status == PaymentStatus.PAID.value:
            logger.warning("Cancelled order %s was already paid; refund required", order.order_number)
        logger.info("Order %s cancelled by %s: %s", order.order_number, actor_id, reason)
        self._notify(self.event_publisher.publish_order_status_changed, order, old_status)
        return order

    def expire_unpaid_orders(self, now: Optional[datetime] = None) -> List[str]:
        """
        Cancel prepaid orders that stayed unpaid past the reservation TTL

        Orders with a push payment still in flight are left alone.

        Returns:
            Order numbers that were cancelled
        """
        now = now or utcnow()
        created_before = now - timedelta(minutes=settings.RESERVATION_TTL_MINUTES)
        in_flight_before = now - timedelta(seconds=settings.PAYMENT_ATTEMPT_TIMEOUT_SECONDS)

        expired = []
        for order in self.repository.get_expired_unpaid(created_before, in_flight_before):
            try:
                self.cancel_order(
                    order.id,
                    "Reservation expired: payment not received",
                    actor_id=SYSTEM_ACTOR,
                )
            except InvalidState as e:
                logger.info("Skipping expiry of %s: %s", order.order_number, e)
                continue
            expired.append(order.order_number)

        if expired:
            logger.info("Released reservations of %d unpaid order(s)", len(expired))
        return expired

    def _notify(self, publish, *args) -> None:
        """Fire-and-forget event publishing; failures never reach the caller"""
        try:
            publish(*args)
        except Exception as e:
            logger.warning("Failed to publish order event: %s", e)
