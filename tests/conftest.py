"""
Pytest fixtures for the furniture shop service tests.

Provides an in-memory database, product factories, a recording event
publisher, a fake Daraja API behind httpx.MockTransport and a test client.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENTS_ENABLED", "false")

import json
import threading

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from furniture_shop import models  # noqa: F401
from furniture_shop.config import MpesaConfig, MPESA_ENDPOINTS
from furniture_shop.database import Base, get_db
from furniture_shop.models import Product
from furniture_shop.schemas.order import OrderCreate
from furniture_shop.services.mpesa_client import MpesaClient
from furniture_shop.services.order_service import OrderService
from furniture_shop.services.payment_service import PaymentService

SHORTCODE = "174379"
PASSKEY = "bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919"


class RecordingPublisher:
    """Stands in for EventPublisher and remembers what was published"""

    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    def _record(self, event_type, order):
        if self.fail:
            raise RuntimeError("broker down")
        self.events.append((event_type, order.order_number, order.order_status))
        return True

    def publish_order_created(self, order):
        return self._record("OrderCreated", order)

    def publish_order_status_changed(self, order, old_status):
        return self._record("OrderStatusChanged", order)

    def publish_order_paid(self, order):
        return self._record("OrderPaid", order)

    def types(self):
        return [event[0] for event in self.events]


class FakeDaraja:
    """Routes MockTransport requests to canned Daraja responses"""

    def __init__(self):
        self.requests = []
        self.token_calls = 0
        self.token_response = httpx.Response(200, json={"access_token": "token-1", "expires_in": "3599"})
        self.push_responses = []
        self.query_responses = []
        self.checkout_counter = 0

    def accept_push(self):
        self.checkout_counter += 1
        return httpx.Response(200, json={
            "MerchantRequestID": f"29115-{self.checkout_counter}",
            "CheckoutRequestID": f"ws_CO_{self.checkout_counter:04d}",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        })

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/oauth"):
            self.token_calls += 1
            return _resolve(self.token_response, request)
        if path.endswith("/stkpush/v1/processrequest"):
            if self.push_responses:
                return _resolve(self.push_responses.pop(0), request)
            return self.accept_push()
        if path.endswith("/stkpushquery/v1/query"):
            return _resolve(self.query_responses.pop(0), request)
        return httpx.Response(404)

    def last_json(self, path_suffix: str) -> dict:
        for request in reversed(self.requests):
            if request.url.path.endswith(path_suffix):
                return json.loads(request.content)
        raise AssertionError(f"No request to {path_suffix}")


def _resolve(response, request):
    if isinstance(response, Exception):
        raise response
    if callable(response):
        return response(request)
    return response


def make_mpesa_config(**overrides) -> MpesaConfig:
    endpoints = MPESA_ENDPOINTS["sandbox"]
    values = dict(
        consumer_key="key",
        consumer_secret="secret",
        shortcode=SHORTCODE,
        passkey=PASSKEY,
        callback_url="https://shop.example.com/payments/mpesa/callback",
        oauth_url=endpoints["oauth"],
        stk_push_url=endpoints["stk_push"],
        stk_query_url=endpoints["stk_query"],
        timeout=5.0,
        max_retries=3,
        retry_delay=0,
    )
    values.update(overrides)
    return MpesaConfig(**values)


def stk_callback(checkout_request_id, result_code=0, receipt="QKL1AB2CD3", amount=None, phone=254712345678, metadata=True):
    """Build an STK callback body the way Safaricom sends it"""
    callback = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0 and metadata:
        items = [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": 20261017102115},
            {"Name": "PhoneNumber", "Value": phone},
        ]
        callback["CallbackMetadata"] = {"Item": [item for item in items if item.get("Value", 0) is not None]}
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_product(db_session):
    """Factory creating committed products"""
    def _make(name="Oak Dining Table", price=25000, stock=10, sale_price=None, image_url=None):
        product = Product(
            name=name,
            price=price,
            sale_price=sale_price,
            stock=stock,
            image_url=image_url or f"https://cdn.example.com/{name.lower().replace(' ', '-')}.jpg",
        )
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def order_service(db_session, publisher):
    return OrderService(db_session, event_publisher=publisher)


@pytest.fixture
def daraja():
    return FakeDaraja()


@pytest.fixture
def mpesa_client(daraja):
    return MpesaClient(make_mpesa_config(), transport=httpx.MockTransport(daraja))


@pytest.fixture
def payment_service(db_session, mpesa_client, order_service):
    return PaymentService(db_session, mpesa_client, order_service=order_service)


@pytest.fixture
def customer():
    return {
        "fullName": "Wanjiru Kamau",
        "email": "Wanjiru@Example.com",
        "phone": "0712345678",
        "address": "12 Riverside Drive",
        "city": "Nairobi",
    }


@pytest.fixture
def order_request(customer):
    """Factory for OrderCreate payloads"""
    def _build(items, city=None, payment_method="mpesa"):
        data = dict(customer)
        if city:
            data["city"] = city
        return OrderCreate(
            customer=data,
            items=[{"product": product_id, "quantity": quantity} for product_id, quantity in items],
            paymentMethod=payment_method,
        )
    return _build


@pytest.fixture
def place_order(order_service, order_request):
    """Create an order for user-1 from (product_id, quantity) pairs"""
    def _place(items, user_id="user-1", **kwargs):
        return order_service.create_order(order_request(items, **kwargs), user_id=user_id)
    return _place


@pytest.fixture
def client(session_factory, publisher, mpesa_client):
    from furniture_shop.api.dependencies import get_event_publisher, get_mpesa_client
    from furniture_shop.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on a file database, so each thread gets its own connection"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'shop.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def run_concurrently(count, target):
    """Start `count` threads on `target` at once and collect what each returns"""
    barrier = threading.Barrier(count)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        result = target()
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results
