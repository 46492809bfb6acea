from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy.orm import Session

from dealerhub.app.core.clock import Clock, utcnow
from dealerhub.app.db.models.models_v1 import Product, ProductPrice


@dataclass(frozen=True)
class PriceQuote:
    product_price_id: int
    product: Product
    unit_amount: Decimal
    currency: str
    valid_now: bool


class PriceResolver(Protocol):
    def resolve(self, db: Session, product_price_id: int) -> PriceQuote | None:
        ...


class DbPriceResolver:
    """Résolution de prix à partir de la table product_prices."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def resolve(self, db: Session, product_price_id: int) -> PriceQuote | None:
        price = db.get(ProductPrice, product_price_id)
        if not price:
            return None

        now = self.clock()
        valid_now = (
            price.active
            and (price.valid_from is None or price.valid_from <= now)
            and (price.valid_until is None or price.valid_until > now)
        )
        return PriceQuote(
            product_price_id=price.id,
            product=price.product,
            unit_amount=Decimal(price.amount),
            currency=price.currency,
            valid_now=bool(valid_now),
        )
