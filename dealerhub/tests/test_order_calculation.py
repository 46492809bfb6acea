from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from dealerhub.app.core.errors import DiscountRejectedError, InvalidArgument, InvalidState, NotFound
from dealerhub.app.db.models.core_types import DiscountType, StockStatus
from dealerhub.app.db.models.models_v1 import DiscountUsage, Order, Product
from dealerhub.services.discounts import RejectionReason
from dealerhub.services.order_calculation import OrderLineRequest, OrderRequest
from dealerhub.tests.conftest import order_request


def test_quote_prices_lines_and_applies_discount(db_session, factory, manager):
    user = factory.user()
    _, p1 = factory.product(price="100.00", stock=50)
    _, p2 = factory.product(price="50.00", stock=50)
    discount = factory.discount(discount_value=Decimal("10"))

    calc = manager.calculate_order_total(
        db_session, order_request(user.dealer_id, (p1, 3), (p2, 2), discount_id=discount.id), user
    )

    assert calc.subtotal == Decimal("400.00")
    assert calc.discount_amount == Decimal("40.00")
    assert calc.total_amount == Decimal("360.00")
    assert calc.rejection is None
    assert [i.total_price for i in calc.items] == [Decimal("300.00"), Decimal("100.00")]
    assert [i.discount_share for i in calc.items] == [Decimal("30.00"), Decimal("10.00")]
    assert calc.all_in_stock


def test_quote_never_persists(db_session, factory, manager):
    user = factory.user()
    product, price = factory.product(stock=5)
    discount = factory.discount()

    manager.calculate_order_total(db_session, order_request(user.dealer_id, (price, 2), discount_id=discount.id), user)

    assert db_session.execute(select(func.count()).select_from(Order)).scalar_one() == 0
    assert db_session.execute(select(func.count()).select_from(DiscountUsage)).scalar_one() == 0
    assert db_session.get(Product, product.id, populate_existing=True).stock_quantity == 5


def test_quote_soft_fails_on_rejected_discount(db_session, factory, manager):
    user = factory.user()
    _, price = factory.product(price="20.00")
    discount = factory.discount(minimum_order_amount=Decimal("100.00"))

    calc = manager.calculate_order_total(
        db_session, order_request(user.dealer_id, (price, 2), discount_id=discount.id), user
    )

    assert calc.discount_amount == Decimal("0.00")
    assert calc.total_amount == Decimal("40.00")
    assert calc.rejection.reason == RejectionReason.minimum_order_not_met
    assert calc.discount_description.startswith("Discount not applied")


def test_quote_reports_invalid_percentage_as_advisory(db_session, factory, manager):
    user = factory.user()
    _, price = factory.product()
    discount = factory.discount(discount_value=Decimal("150"))

    calc = manager.calculate_order_total(
        db_session, order_request(user.dealer_id, (price, 1), discount_id=discount.id), user
    )

    assert calc.discount_amount == Decimal("0.00")
    assert calc.rejection.reason == RejectionReason.invalid_value


def test_create_hard_fails_on_rejected_discount(db_session, factory, manager):
    user = factory.user()
    product, price = factory.product(price="20.00", stock=10)
    discount = factory.discount(minimum_order_amount=Decimal("100.00"))

    with pytest.raises(DiscountRejectedError) as exc:
        manager.create_order(db_session, order_request(user.dealer_id, (price, 2), discount_id=discount.id), user)

    assert exc.value.reason == RejectionReason.minimum_order_not_met
    assert db_session.get(Product, product.id, populate_existing=True).stock_quantity == 10


def test_stock_flags_in_quote(db_session, factory, manager):
    user = factory.user()
    _, plenty = factory.product(stock=100)
    _, low = factory.product(stock=8)
    _, short = factory.product(stock=2)

    calc = manager.calculate_order_total(
        db_session, order_request(user.dealer_id, (plenty, 1), (low, 1), (short, 5)), user
    )

    assert [i.stock_status for i in calc.items] == [
        StockStatus.in_stock,
        StockStatus.low_stock,
        StockStatus.low_stock,
    ]
    assert [i.stock_sufficient for i in calc.items] == [True, True, False]
    assert not calc.all_in_stock
    assert any("Insufficient stock" in w for w in calc.stock_warnings)


def test_missing_price(db_session, factory, manager):
    user = factory.user()
    request = OrderRequest(dealer_id=user.dealer_id, items=[OrderLineRequest(product_price_id=987654, quantity=1)])

    with pytest.raises(NotFound):
        manager.calculate_order_total(db_session, request, user)


def test_expired_price(db_session, factory, manager, clock):
    user = factory.user()
    _, price = factory.product()
    price.valid_until = clock() - timedelta(minutes=1)
    db_session.commit()

    with pytest.raises(InvalidState):
        manager.calculate_order_total(db_session, order_request(user.dealer_id, (price, 1)), user)


def test_mixed_currencies_refused(db_session, factory, manager):
    user = factory.user()
    _, try_price = factory.product(currency="TRY")
    _, eur_price = factory.product(currency="EUR")

    with pytest.raises(InvalidArgument):
        manager.calculate_order_total(db_session, order_request(user.dealer_id, (try_price, 1), (eur_price, 1)), user)


def test_order_quantity_bounds(db_session, factory, manager):
    user = factory.user()
    _, price = factory.product(minimum_order_quantity=5, maximum_order_quantity=10)

    with pytest.raises(InvalidArgument):
        manager.calculate_order_total(db_session, order_request(user.dealer_id, (price, 4)), user)
    with pytest.raises(InvalidArgument):
        manager.calculate_order_total(db_session, order_request(user.dealer_id, (price, 11)), user)

    calc = manager.calculate_order_total(db_session, order_request(user.dealer_id, (price, 5)), user)
    assert calc.items[0].quantity == 5


def test_inactive_product_refused(db_session, factory, manager):
    user = factory.user()
    _, price = factory.product(active=False)

    with pytest.raises(InvalidArgument):
        manager.calculate_order_total(db_session, order_request(user.dealer_id, (price, 1)), user)


def test_empty_order_refused(db_session, factory, manager):
    user = factory.user()

    with pytest.raises(InvalidArgument):
        manager.calculate_order_total(db_session, order_request(user.dealer_id), user)


def test_fixed_discount_quote(db_session, factory, manager):
    user = factory.user()
    _, price = factory.product(price="30.00")
    discount = factory.discount(discount_type=DiscountType.fixed_amount, discount_value=Decimal("100"))

    calc = manager.calculate_order_total(
        db_session, order_request(user.dealer_id, (price, 2), discount_id=discount.id), user
    )

    assert calc.discount_amount == Decimal("60.00")
    assert calc.total_amount == Decimal("0.00")


def test_quote_for_other_dealer_warns_without_discount(db_session, factory, manager):
    """
    GIVEN
    - un utilisateur du bayi A demande un devis SANS remise pour le bayi B

    THEN
    - le devis est calculé (pas d'erreur) mais signale que la commande serait refusée
    - un devis pour son propre bayi ne porte aucun avertissement
    """
    user = factory.user()
    other = factory.dealer()
    _, price = factory.product(price="10.00")

    calc = manager.calculate_order_total(db_session, order_request(other.id, (price, 1)), user)

    assert calc.total_amount == Decimal("10.00")
    assert len(calc.order_warnings) == 1
    assert "own dealer" in calc.order_warnings[0]

    own = manager.calculate_order_total(db_session, order_request(user.dealer_id, (price, 1)), user)
    assert own.order_warnings == []


def test_quote_by_user_without_dealer_warns(db_session, factory, manager):
    admin = factory.admin()
    dealer = factory.dealer()
    _, price = factory.product()

    calc = manager.calculate_order_total(db_session, order_request(dealer.id, (price, 1)), admin)

    assert calc.order_warnings == ["Order would be refused: User is not attached to a dealer"]
