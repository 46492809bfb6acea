import itertools
import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from dealerhub.app.core.config import Settings
from dealerhub.app.db.base import Base
from dealerhub.app.db.models import models_v1  # noqa: F401  (tables)
from dealerhub.app.db.models.core_types import DiscountType, Role
from dealerhub.app.db.models.models_v1 import Dealer, Discount, Product, ProductPrice, User
from dealerhub.services.order_calculation import OrderLineRequest, OrderRequest
from dealerhub.services.orders import OrderLifecycleManager

T0 = datetime(2026, 1, 15, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def types(self):
        return [e.event_type for e in self.events]


class Factory:
    """Données maître hermétiques : noms uniques par test."""

    def __init__(self, db: Session, clock: FakeClock):
        self.db = db
        self.clock = clock
        self._seq = itertools.count(1)

    def dealer(self, name: str | None = None) -> Dealer:
        dealer = Dealer(name=name or f"TEST-DEALER-{next(self._seq)}", active=True)
        self.db.add(dealer)
        self.db.commit()
        return dealer

    def user(self, dealer: Dealer | None = None, role: Role = Role.dealer) -> User:
        if dealer is None and role == Role.dealer:
            dealer = self.dealer()
        user = User(
            name=f"TEST-USER-{next(self._seq)}",
            role=role,
            dealer_id=dealer.id if dealer else None,
            active=True,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def admin(self) -> User:
        return self.user(role=Role.admin)

    def product(
        self,
        *,
        stock: int = 100,
        price: str = "100.00",
        currency: str = "TRY",
        **kwargs,
    ) -> tuple[Product, ProductPrice]:
        n = next(self._seq)
        product = Product(code=f"TEST-P{n}", name=f"Test product {n}", stock_quantity=stock, **kwargs)
        self.db.add(product)
        self.db.flush()
        product_price = ProductPrice(
            product_id=product.id,
            currency=currency,
            amount=Decimal(price),
            valid_from=self.clock() - timedelta(days=30),
            active=True,
        )
        self.db.add(product_price)
        self.db.commit()
        return product, product_price

    def discount(self, **kwargs) -> Discount:
        values = dict(
            name=f"TEST-DISC-{next(self._seq)}",
            discount_type=DiscountType.percentage,
            discount_value=Decimal("10"),
            start_date=self.clock() - timedelta(days=1),
            end_date=self.clock() + timedelta(days=30),
            is_active=True,
        )
        values.update(kwargs)
        discount = Discount(**values)
        self.db.add(discount)
        self.db.commit()
        return discount


def order_request(dealer_id, *lines, discount_id=None, notes=None) -> OrderRequest:
    """lines = (ProductPrice, quantity), ..."""
    return OrderRequest(
        dealer_id=dealer_id,
        items=[OrderLineRequest(product_price_id=p.id, quantity=q) for p, q in lines],
        discount_id=discount_id,
        notes=notes,
    )


@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    Base jetable par test.

    SQLite fichier par défaut (partagé entre threads pour les tests de
    concurrence) ; TEST_DATABASE_URL pour tourner sur PostgreSQL.
    """
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'dealerhub-test.db'}"
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    eng = create_engine(url, connect_args=connect_args)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        auto_cancel_enabled=True,
        auto_cancel_hours=48,
        auto_cancel_batch_size=50,
        auto_cancel_interval_seconds=3600,
        discount_expiry_enabled=True,
        discount_one_use_per_dealer=True,
        stock_strict_mode=False,
        low_stock_threshold=10,
    )


@pytest.fixture
def manager(settings, clock, notifier):
    return OrderLifecycleManager.from_settings(settings, notifier=notifier, clock=clock)


@pytest.fixture
def factory(db_session, clock):
    return Factory(db_session, clock)
