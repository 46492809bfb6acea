from types import SimpleNamespace

import pytest
from sqlalchemy import select

from dealerhub.app.core.errors import InsufficientStockError, NotFound
from dealerhub.app.db.models.core_types import MovementType, StockStatus
from dealerhub.app.db.models.models_v1 import Product, StockMovement
from dealerhub.services.stock import StockLedger, aggregate_lines, stock_status


def line(product, qty):
    return SimpleNamespace(product_id=product.id, quantity=qty)


def stock_of(db, product):
    return db.execute(select(Product.stock_quantity).where(Product.id == product.id)).scalar_one()


def test_reserve_then_release_restores_stock(db_session, factory, clock):
    """
    GIVEN
    - deux produits (stock 20 et 7)
    - une réservation multi-lignes puis sa libération

    THEN
    - le stock revient exactement à sa valeur initiale
    """
    p1, _ = factory.product(stock=20)
    p2, _ = factory.product(stock=7)
    ledger = StockLedger(clock=clock)
    items = [line(p1, 5), line(p2, 3), line(p1, 2)]

    after = ledger.reserve(db_session, items, order_id=None)
    assert after == {p1.id: 13, p2.id: 4}

    ledger.release(db_session, items, order_id=None)
    assert stock_of(db_session, p1) == 20
    assert stock_of(db_session, p2) == 7


def test_reserve_clamps_at_zero_by_default(db_session, factory, clock):
    product, _ = factory.product(stock=3)
    ledger = StockLedger(clock=clock)

    after = ledger.reserve(db_session, [line(product, 5)])

    assert after[product.id] == 0
    assert stock_of(db_session, product) == 0


def test_strict_mode_refuses_and_leaves_stock_untouched(db_session, factory, clock):
    product, _ = factory.product(stock=3)
    ledger = StockLedger(strict=True, clock=clock)

    with pytest.raises(InsufficientStockError) as exc:
        ledger.reserve(db_session, [line(product, 5)])
    db_session.rollback()

    assert exc.value.product_id == product.id
    assert "requested=5" in exc.value.detail
    assert stock_of(db_session, product) == 3


def test_strict_mode_reserves_exact_stock(db_session, factory, clock):
    product, _ = factory.product(stock=4)
    ledger = StockLedger(strict=True, clock=clock)

    ledger.reserve(db_session, [line(product, 4)])

    assert stock_of(db_session, product) == 0


def test_stock_never_negative_over_sequence(db_session, factory, clock):
    product, _ = factory.product(stock=5)
    ledger = StockLedger(clock=clock)

    for qty in (2, 4, 1, 3):
        ledger.reserve(db_session, [line(product, qty)])
        assert stock_of(db_session, product) >= 0
    ledger.release(db_session, [line(product, 2)])

    assert stock_of(db_session, product) == 2


def test_movements_are_tracked(db_session, factory, clock):
    product, _ = factory.product(stock=10)
    ledger = StockLedger(clock=clock)

    ledger.reserve(db_session, [line(product, 4)], reason="test reserve")
    ledger.release(db_session, [line(product, 1)], reason="test release")
    db_session.flush()

    movements = db_session.execute(
        select(StockMovement).where(StockMovement.product_id == product.id).order_by(StockMovement.id)
    ).scalars().all()
    assert [(m.movement_type, m.quantity, m.stock_after) for m in movements] == [
        (MovementType.order_reserved, 4, 6),
        (MovementType.order_cancelled_return, 1, 7),
    ]
    assert all(m.happened_at == clock() for m in movements)


def test_find_insufficient_reports_first_line_in_request_order(db_session, factory, clock):
    p1, _ = factory.product(stock=10)
    p2, _ = factory.product(stock=1)
    p3, _ = factory.product(stock=0)
    ledger = StockLedger(clock=clock)

    product, qty = ledger.find_insufficient(db_session, [line(p1, 2), line(p2, 2), line(p3, 1)])

    assert product.id == p2.id
    assert qty == 2
    assert ledger.find_insufficient(db_session, [line(p1, 10)]) is None


def test_duplicate_lines_are_checked_together(db_session, factory, clock):
    product, _ = factory.product(stock=5)
    ledger = StockLedger(clock=clock)

    with pytest.raises(InsufficientStockError):
        ledger.check_availability(db_session, [line(product, 3), line(product, 3)])


def test_unknown_product(db_session, clock):
    ledger = StockLedger(clock=clock)
    ghost = SimpleNamespace(product_id=999_999, quantity=1)

    with pytest.raises(NotFound):
        ledger.release(db_session, [ghost])


def test_aggregate_and_status_helpers():
    items = [SimpleNamespace(product_id=2, quantity=1), SimpleNamespace(product_id=1, quantity=2),
             SimpleNamespace(product_id=2, quantity=4)]

    assert list(aggregate_lines(items).items()) == [(2, 5), (1, 2)]
    assert stock_status(0, 10) == StockStatus.out_of_stock
    assert stock_status(10, 10) == StockStatus.low_stock
    assert stock_status(11, 10) == StockStatus.in_stock
