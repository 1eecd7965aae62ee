import re
from datetime import datetime, timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from furniture_shop.api.dependencies import Actor
from furniture_shop.errors import Forbidden, InsufficientStock, InvalidState, InvalidTransition, NotFound
from furniture_shop.models import Order, Product
from furniture_shop.repositories.order_repository import OrderRepository
from furniture_shop.repositories.product_repository import ProductRepository
from furniture_shop.schemas.order import OrderResponse
from furniture_shop.services.order_service import OrderService, calculate_delivery_fee
from furniture_shop.time_utils import utcnow
from tests.conftest import RecordingPublisher, run_concurrently


@pytest.fixture
def table(make_product):
    return make_product(name="Oak Dining Table", price=25000, stock=10)


@pytest.fixture
def chair(make_product):
    return make_product(name="Mahogany Chair", price=5000, sale_price=4000, stock=4)


def stock_of(db_session, product):
    return ProductRepository(db_session).get_stock(product.id)


class TestCreateOrder:

    def test_totals_snapshot_and_stock(self, db_session, place_order, publisher, table, chair):
        order = place_order([(table.id, 1), (chair.id, 2)], city="Mombasa")

        assert re.fullmatch(r"ORD-\d{8}-0001", order.order_number)
        assert order.subtotal == 33000
        assert order.delivery_fee == 1000
        assert order.total == 34000
        assert [(item.name, item.price, item.quantity) for item in order.items] == [
            ("Oak Dining Table", 25000, 1),
            ("Mahogany Chair", 4000, 2),
        ]
        assert order.order_status == "pending"
        assert order.payment_status == "pending"
        assert order.payment_method == "mpesa"
        assert order.customer_email == "wanjiru@example.com"
        assert order.customer_phone == "254712345678"
        assert [(entry.status, entry.note, entry.actor_id) for entry in order.status_history] == [
            ("pending", "Order created", "user-1"),
        ]
        assert stock_of(db_session, table) == 9
        assert stock_of(db_session, chair) == 2
        assert publisher.types() == ["OrderCreated"]

    def test_nairobi_delivery_is_free(self, place_order, table):
        order = place_order([(table.id, 1)])

        assert order.delivery_fee == 0
        assert order.total == 25000

    def test_order_numbers_follow_daily_sequence(self, place_order, table):
        first = place_order([(table.id, 1)])
        second = place_order([(table.id, 1)])

        assert first.order_number.endswith("-0001")
        assert second.order_number.endswith("-0002")

    def test_order_number_uses_the_local_day(self, monkeypatch, place_order, table):
        monkeypatch.setattr(
            "furniture_shop.services.order_service.utcnow", lambda: datetime(2026, 10, 17, 22, 30)
        )

        order = place_order([(table.id, 1)])

        assert order.order_number == "ORD-20261018-0001"

    def test_delivery_estimate_spans_three_to_five_days(self, place_order, table):
        order = place_order([(table.id, 1)])

        estimate = OrderResponse.from_order(order).delivery_estimate

        assert estimate.min - order.created_at == timedelta(days=3)
        assert estimate.max - order.created_at == timedelta(days=5)

    def test_insufficient_stock_releases_earlier_lines(self, db_session, place_order, publisher, table, chair):
        with pytest.raises(InsufficientStock):
            place_order([(table.id, 2), (chair.id, 5)])

        assert stock_of(db_session, table) == 10
        assert stock_of(db_session, chair) == 4
        assert db_session.query(Order).count() == 0
        assert publisher.events == []

    def test_unknown_product_releases_earlier_lines(self, db_session, place_order, table):
        with pytest.raises(NotFound):
            place_order([(table.id, 3), (4242, 1)])

        assert stock_of(db_session, table) == 10

    def test_publisher_failure_does_not_abort(self, db_session, order_request, table):
        service = OrderService(db_session, event_publisher=RecordingPublisher(fail=True))

        order = service.create_order(order_request([(table.id, 1)]), user_id="user-1")

        assert order.id is not None
        assert stock_of(db_session, table) == 9

    def test_failed_insert_still_returns_stock(self, db_session, place_order, table):
        def fail_insert(mapper, connection, target):
            raise OperationalError("INSERT INTO orders", {}, Exception("disk I/O error"))

        event.listen(Order, "before_insert", fail_insert)
        try:
            with pytest.raises(OperationalError):
                place_order([(table.id, 2)])
        finally:
            event.remove(Order, "before_insert", fail_insert)

        assert stock_of(db_session, table) == 10
        assert db_session.query(Order).count() == 0

    def test_concurrent_orders_for_the_last_unit(self, file_session_factory, order_request):
        Session = file_session_factory
        with Session() as session:
            product = Product(name="Last Armchair", price=18000, stock=1)
            session.add(product)
            session.commit()
            product_id = product.id

        def buy():
            with Session() as session:
                service = OrderService(session, event_publisher=RecordingPublisher())
                try:
                    return service.create_order(order_request([(product_id, 1)]), user_id="user-1").order_number
                except InsufficientStock:
                    return "sold out"

        outcomes = run_concurrently(2, buy)

        assert outcomes.count("sold out") == 1
        with Session() as session:
            assert session.get(Product, product_id).stock == 0
            assert session.query(Order).count() == 1


class TestStatusMachine:

    def test_forward_path_to_delivered(self, order_service, place_order, publisher, table):
        order = place_order([(table.id, 1)])

        for status in ("processing", "shipped", "delivered"):
            order = order_service.update_status(order.id, status, actor_id="admin-1")

        assert order.order_status == "delivered"
        assert order.is_completed
        assert order.delivery_date is not None
        assert [entry.status for entry in order.status_history] == [
            "pending", "processing", "shipped", "delivered",
        ]
        assert order.status_history[-1].actor_id == "admin-1"
        assert publisher.types().count("OrderStatusChanged") == 3

    @pytest.mark.parametrize("target", ["shipped", "delivered", "pending"])
    def test_skipping_or_repeating_steps_is_rejected(self, order_service, place_order, table, target):
        order = place_order([(table.id, 1)])

        with pytest.raises(InvalidTransition):
            order_service.update_status(order.id, target)

    def test_cancellation_is_not_a_status_update(self, order_service, place_order, table):
        order = place_order([(table.id, 1)])

        with pytest.raises(InvalidTransition):
            order_service.update_status(order.id, "cancelled")

    def test_no_moving_backwards(self, order_service, place_order, table):
        order = place_order([(table.id, 1)])
        order_service.update_status(order.id, "processing")
        order_service.update_status(order.id, "shipped")

        with pytest.raises(InvalidTransition) as exc_info:
            order_service.update_status(order.id, "processing")

        assert exc_info.value.current_status == "shipped"

    def test_unknown_order(self, order_service):
        with pytest.raises(NotFound):
            order_service.update_status(77, "processing")


class TestCancelOrder:

    def test_cancel_returns_stock_once(self, db_session, order_service, place_order, table, chair):
        order = place_order([(table.id, 1), (chair.id, 3)])
        assert stock_of(db_session, chair) == 1

        cancelled = order_service.cancel_order(order.id, "Changed my mind", actor=Actor("user-1"))

        assert cancelled.order_status == "cancelled"
        assert cancelled.cancel_reason == "Changed my mind"
        assert cancelled.status_history[-1].status == "cancelled"
        assert cancelled.status_history[-1].actor_id == "user-1"
        assert stock_of(db_session, table) == 10
        assert stock_of(db_session, chair) == 4

        with pytest.raises(InvalidState):
            order_service.cancel_order(order.id, None, actor=Actor("user-1"))
        assert stock_of(db_session, chair) == 4

    def test_default_reason(self, order_service, place_order, table):
        order = place_order([(table.id, 1)])

        cancelled = order_service.cancel_order(order.id, None, actor=Actor("user-1"))

        assert cancelled.cancel_reason == "Cancelled by customer"

    def test_confirmed_order_can_be_cancelled(self, db_session, order_service, place_order, table):
        order = place_order([(table.id, 2)])
        order_service.update_status(order.id, "confirmed")

        order_service.cancel_order(order.id, None, actor=Actor("admin-1", role="admin"))

        assert stock_of(db_session, table) == 10

    @pytest.mark.parametrize("path", [["processing"], ["processing", "shipped"], ["processing", "shipped", "delivered"]])
    def test_too_late_to_cancel(self, db_session, order_service, place_order, table, path):
        order = place_order([(table.id, 2)])
        for status in path:
            order_service.update_status(order.id, status)

        with pytest.raises(InvalidState) as exc_info:
            order_service.cancel_order(order.id, None, actor=Actor("user-1"))

        assert "cannot be cancelled" in exc_info.value.message
        assert stock_of(db_session, table) == 8

    def test_other_customer_cannot_cancel(self, db_session, order_service, place_order, table):
        order = place_order([(table.id, 1)])

        with pytest.raises(Forbidden):
            order_service.cancel_order(order.id, None, actor=Actor("user-2"))
        assert stock_of(db_session, table) == 9


class TestMarkAsPaid:

    def test_first_call_pays_and_confirms(self, order_service, place_order, publisher, table):
        order = place_order([(table.id, 1)])
        details = {"mpesa_receipt_number": "QKL1AB2CD3", "transaction_id": "ws_CO_1", "amount_paid": 25000.0}

        assert order_service.mark_as_paid(order, details) is True

        assert order.payment_status == "paid"
        assert order.order_status == "confirmed"
        assert order.mpesa_receipt_number == "QKL1AB2CD3"
        assert order.paid_at is not None
        assert order.status_history[-1].note == "Payment received and order confirmed"
        assert order.status_history[-1].actor_id == "system"
        assert "OrderPaid" in publisher.types()

    def test_repeat_call_changes_nothing(self, order_service, place_order, publisher, table):
        order = place_order([(table.id, 1)])
        details = {"mpesa_receipt_number": "QKL1AB2CD3", "transaction_id": "ws_CO_1"}
        order_service.mark_as_paid(order, details)
        paid_at = order.paid_at
        history_length = len(order.status_history)

        assert order_service.mark_as_paid(order, details) is False

        assert order.paid_at == paid_at
        assert len(order.status_history) == history_length
        assert publisher.types().count("OrderPaid") == 1

    def test_paying_processing_order_keeps_its_status(self, order_service, place_order, table):
        order = place_order([(table.id, 1)], payment_method="cod")
        order_service.update_status(order.id, "processing")

        order_service.mark_as_paid(order, {"mpesa_receipt_number": "QKL1AB2CD3"})

        assert order.payment_status == "paid"
        assert order.order_status == "processing"

    def test_later_call_backfills_missing_receipt(self, order_service, place_order, table):
        order = place_order([(table.id, 1)])
        order_service.mark_as_paid(order, {"transaction_id": "ws_CO_1"}, gaps=["MpesaReceiptNumber", "Amount"])
        assert order.payment_gaps == "MpesaReceiptNumber,Amount"

        order_service.mark_as_paid(order, {"mpesa_receipt_number": "QKL1AB2CD3", "transaction_id": "ws_CO_1"})

        assert order.mpesa_receipt_number == "QKL1AB2CD3"
        assert order.payment_gaps == "Amount"
        assert order.order_status == "confirmed"

    def test_other_charge_never_backfills(self, order_service, place_order, table):
        order = place_order([(table.id, 1)])
        order_service.mark_as_paid(order, {"transaction_id": "ws_CO_1"}, gaps=["MpesaReceiptNumber"])

        order_service.mark_as_paid(order, {"mpesa_receipt_number": "R2BBBBBBB2", "transaction_id": "ws_CO_2"})

        assert order.mpesa_receipt_number is None
        assert order.transaction_id == "ws_CO_1"
        assert order.payment_gaps == "MpesaReceiptNumber"


class TestExpireUnpaidOrders:

    def test_stale_unpaid_orders_release_stock(self, db_session, order_service, place_order, table):
        order = place_order([(table.id, 3)])

        expired = order_service.expire_unpaid_orders(now=utcnow() + timedelta(minutes=61))

        assert expired == [order.order_number]
        db_session.refresh(order)
        assert order.order_status == "cancelled"
        assert order.status_history[-1].actor_id == "system"
        assert stock_of(db_session, table) == 10

    def test_fresh_cod_and_in_flight_orders_are_kept(self, db_session, order_service, place_order, table):
        fresh = place_order([(table.id, 1)])
        cod = place_order([(table.id, 1)], payment_method="cod")
        in_flight = place_order([(table.id, 1)])
        later = utcnow() + timedelta(minutes=61)
        in_flight.payment_in_flight_since = later - timedelta(seconds=30)
        db_session.commit()

        assert order_service.expire_unpaid_orders(now=utcnow()) == []
        expired = order_service.expire_unpaid_orders(now=later)

        assert expired == [fresh.order_number]
        assert OrderRepository(db_session).get_by_order_number(cod.order_number).order_status == "pending"
        assert OrderRepository(db_session).get_by_order_number(in_flight.order_number).order_status == "pending"
        assert stock_of(db_session, table) == 8


class TestQueries:

    def test_customer_sees_only_own_orders(self, order_service, place_order, table):
        mine = place_order([(table.id, 1)])
        place_order([(table.id, 1)], user_id="user-2")

        assert [order.id for order in order_service.get_user_orders("user-1")] == [mine.id]
        with pytest.raises(Forbidden):
            order_service.get_order(mine.id, Actor("user-2"))
        assert order_service.get_order(mine.id, Actor("admin-1", role="admin")).id == mine.id

    def test_admin_listing_filters_by_status(self, order_service, place_order, table):
        first = place_order([(table.id, 1)])
        place_order([(table.id, 1)])
        order_service.update_status(first.id, "processing")

        orders, total = order_service.get_all_orders(status="processing")

        assert total == 1
        assert [order.id for order in orders] == [first.id]


@pytest.mark.parametrize("city, fee", [
    ("Nairobi", 0),
    (" mombasa ", 1000),
    ("KISUMU", 1500),
    ("Nakuru", 800),
    ("Eldoret", 1200),
    ("Thika", 500),
    ("Garissa", 1000),
])
def test_delivery_fee_by_city(city, fee):
    assert calculate_delivery_fee(city) == fee
