"""
Calcul d'une commande candidate : prix, sous-total, remise, total, stock.

Utilisé tel quel par le devis (soft=True : une remise refusée devient un
avertissement, remise 0) et par la création (soft=False : DiscountRejectedError).
Ne persiste rien, ne réserve rien, n'enregistre aucun usage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.orm import Session

from dealerhub.app.core.errors import (
    DiscountRejectedError,
    InvalidArgument,
    InvalidDiscountValueError,
    InvalidState,
    NotFound,
)
from dealerhub.app.db.models.core_types import StockStatus
from dealerhub.app.db.models.models_v1 import Discount, Product, User
from dealerhub.services.discounts import (
    DiscountValidator,
    Rejection,
    RejectionReason,
    allocate,
    compute_amount,
    describe,
)
from dealerhub.services.money import ZERO, money
from dealerhub.services.pricing import PriceResolver
from dealerhub.services.stock import aggregate_lines, stock_status


@dataclass(frozen=True)
class OrderLineRequest:
    product_price_id: int
    quantity: int


@dataclass(frozen=True)
class OrderRequest:
    dealer_id: int
    items: list[OrderLineRequest]
    discount_id: int | None = None
    notes: str | None = None


@dataclass
class ItemCalculation:
    product_id: int
    product_code: str
    product_name: str
    product_price_id: int
    currency: str
    unit_price: Decimal
    quantity: int
    total_price: Decimal
    stock_quantity: int = 0
    stock_sufficient: bool = True
    stock_status: StockStatus = StockStatus.in_stock
    discount_share: Decimal = ZERO


@dataclass
class OrderCalculation:
    items: list[ItemCalculation]
    currency: str
    subtotal: Decimal
    discount: Discount | None = None
    discount_amount: Decimal = ZERO
    discount_description: str | None = None
    rejection: Rejection | None = None
    stock_warnings: list[str] = field(default_factory=list)
    order_warnings: list[str] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return money(self.subtotal - self.discount_amount)

    @property
    def all_in_stock(self) -> bool:
        return all(i.stock_sufficient for i in self.items)


class OrderCalculator:
    def __init__(self, prices: PriceResolver, validator: DiscountValidator, *, low_stock_threshold: int = 10):
        self.prices = prices
        self.validator = validator
        self.low_stock_threshold = low_stock_threshold

    def calculate(self, db: Session, request: OrderRequest, user: User, *, soft: bool) -> OrderCalculation:
        items = self.price_lines(db, request.items)
        calc = OrderCalculation(
            items=items,
            currency=items[0].currency,
            subtotal=money(sum((i.total_price for i in items), ZERO)),
        )
        if request.discount_id is not None:
            self.apply_discount(db, calc, request.discount_id, request.dealer_id, user, soft=soft)
        self.flag_stock(db, calc)
        return calc

    def price_lines(self, db: Session, lines: list[OrderLineRequest]) -> list[ItemCalculation]:
        if not lines:
            raise InvalidArgument("Order must contain at least one item")

        items: list[ItemCalculation] = []
        for line in lines:
            if line.quantity is None or int(line.quantity) <= 0:
                raise InvalidArgument(f"Quantity must be positive (price={line.product_price_id})")

            quote = self.prices.resolve(db, line.product_price_id)
            if quote is None:
                raise NotFound(f"Price not found: {line.product_price_id}")
            if not quote.valid_now:
                raise InvalidState(f"Price {line.product_price_id} is not valid at this time")

            product = quote.product
            self._check_product(product, int(line.quantity))

            unit = money(quote.unit_amount)
            items.append(
                ItemCalculation(
                    product_id=product.id,
                    product_code=product.code,
                    product_name=product.name,
                    product_price_id=quote.product_price_id,
                    currency=quote.currency,
                    unit_price=unit,
                    quantity=int(line.quantity),
                    total_price=money(unit * int(line.quantity)),
                )
            )

        currencies = {i.currency for i in items}
        if len(currencies) > 1:
            raise InvalidArgument(f"All items must share one currency (got {', '.join(sorted(currencies))})")
        return items

    def apply_discount(
        self,
        db: Session,
        calc: OrderCalculation,
        discount_id: int,
        dealer_id: int,
        user: User,
        *,
        soft: bool,
    ) -> None:
        outcome = self.validator.validate(db, discount_id, dealer_id, calc.subtotal, calc.items, user)
        if isinstance(outcome, Rejection):
            self._reject(calc, outcome, soft)
            return

        try:
            amount = compute_amount(outcome, calc.subtotal, calc.items)
        except InvalidDiscountValueError as exc:
            if not soft:
                raise
            self._reject(calc, Rejection(RejectionReason.invalid_value, exc.detail), soft)
            return

        calc.discount = outcome
        calc.discount_amount = amount
        calc.discount_description = describe(outcome)
        for item, share in zip(calc.items, allocate(amount, calc.items)):
            item.discount_share = share

    def flag_stock(self, db: Session, calc: OrderCalculation) -> None:
        requested = aggregate_lines(calc.items)
        for item in calc.items:
            product = db.get(Product, item.product_id, populate_existing=True)
            item.stock_quantity = product.stock_quantity
            item.stock_sufficient = product.stock_quantity >= requested[item.product_id]
            item.stock_status = stock_status(product.stock_quantity, self.low_stock_threshold)
            if not item.stock_sufficient:
                calc.stock_warnings.append(
                    f"Insufficient stock: {product.name} "
                    f"(requested={requested[item.product_id]}, available={product.stock_quantity})"
                )
            elif item.stock_status == StockStatus.low_stock:
                calc.stock_warnings.append(f"Low stock: {product.name} ({product.stock_quantity} left)")

    # ---------- helpers ----------
    @staticmethod
    def _check_product(product: Product, quantity: int) -> None:
        if not product.active:
            raise InvalidArgument(f"Product is not available: {product.name}")
        if quantity < product.minimum_order_quantity:
            raise InvalidArgument(
                f"Minimum order quantity for {product.name} is {product.minimum_order_quantity}"
            )
        if product.maximum_order_quantity is not None and quantity > product.maximum_order_quantity:
            raise InvalidArgument(
                f"Maximum order quantity for {product.name} is {product.maximum_order_quantity}"
            )

    @staticmethod
    def _reject(calc: OrderCalculation, rejection: Rejection, soft: bool) -> None:
        if not soft:
            raise DiscountRejectedError(rejection.message, reason=rejection.reason)
        calc.rejection = rejection
        calc.discount = None
        calc.discount_amount = ZERO
        calc.discount_description = f"Discount not applied: {rejection.message}"
