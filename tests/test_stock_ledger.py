import pytest

from furniture_shop.errors import InsufficientStock, NotFound, ValidationError
from furniture_shop.models import Product
from furniture_shop.repositories.product_repository import ProductRepository
from furniture_shop.services.stock_ledger import StockLedger
from tests.conftest import run_concurrently


def test_reserve_decrements_stock(db_session, make_product):
    product = make_product(stock=5)

    StockLedger(db_session).reserve(product.id, 2)

    assert ProductRepository(db_session).get_stock(product.id) == 3


def test_reserve_exact_remaining_stock(db_session, make_product):
    product = make_product(stock=2)

    StockLedger(db_session).reserve(product.id, 2)

    assert ProductRepository(db_session).get_stock(product.id) == 0


def test_reserve_more_than_available_raises_and_keeps_stock(db_session, make_product):
    product = make_product(name="Velvet Sofa", stock=1)

    with pytest.raises(InsufficientStock) as exc_info:
        StockLedger(db_session).reserve(product.id, 3)

    assert exc_info.value.status_code == 409
    assert exc_info.value.available == 1
    assert exc_info.value.requested == 3
    assert "Velvet Sofa" in exc_info.value.message
    assert ProductRepository(db_session).get_stock(product.id) == 1


def test_reserve_unknown_product(db_session):
    with pytest.raises(NotFound):
        StockLedger(db_session).reserve(999, 1)


def test_reserve_rejects_non_positive_quantity(db_session, make_product):
    product = make_product(stock=5)

    with pytest.raises(ValidationError):
        StockLedger(db_session).reserve(product.id, 0)


def test_release_returns_units(db_session, make_product):
    product = make_product(stock=4)
    ledger = StockLedger(db_session)

    ledger.reserve(product.id, 3)
    ledger.release(product.id, 3)

    assert ProductRepository(db_session).get_stock(product.id) == 4


def test_release_of_deleted_product_is_logged_not_raised(db_session, caplog):
    StockLedger(db_session).release(12345, 2)

    assert "no longer exists" in caplog.text


def test_concurrent_reservations_never_oversell(file_session_factory):
    Session = file_session_factory
    with Session() as session:
        product = Product(name="Last Armchair", price=18000, stock=1)
        session.add(product)
        session.commit()
        product_id = product.id

    def buy():
        with Session() as session:
            try:
                StockLedger(session).reserve(product_id, 1)
                return "reserved"
            except InsufficientStock:
                session.rollback()
                return "sold out"

    outcomes = run_concurrently(4, buy)

    assert sorted(outcomes) == ["reserved", "sold out", "sold out", "sold out"]
    with Session() as session:
        assert session.get(Product, product_id).stock == 0
