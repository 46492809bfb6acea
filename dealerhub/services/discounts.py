"""
Moteur de remises.

validate() enchaîne les contrôles dans un ordre FIXE et s'arrête au premier
échec : l'ordre détermine le message que voit l'appelant. Le résultat est soit
la remise, soit un Rejection (pas d'exception) : create_order le transforme en
erreur, le devis (calculate_order_total) en simple avertissement.

compute_amount() applique la règle du type de remise (table _RULES), puis le
plafond maximum_discount_amount et le plancher zéro.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Iterable, Protocol

from sqlalchemy.orm import Session

from dealerhub.app.core.clock import Clock, utcnow
from dealerhub.app.core.errors import InvalidDiscountValueError
from dealerhub.app.db.models.core_types import DiscountType
from dealerhub.app.db.models.models_v1 import Discount, User
from dealerhub.services.discount_usage import DiscountUsageTracker
from dealerhub.services.money import CENT, ZERO, money

logger = logging.getLogger("dealerhub.discounts")

HUNDRED = Decimal("100")


class RejectionReason(str, enum.Enum):
    not_found = "NOT_FOUND"
    inactive = "INACTIVE"
    not_in_validity_window = "NOT_IN_VALIDITY_WINDOW"
    usage_limit_reached = "USAGE_LIMIT_REACHED"
    customer_limit_reached = "CUSTOMER_LIMIT_REACHED"
    dealer_already_used = "DEALER_ALREADY_USED"
    dealer_not_eligible = "DEALER_NOT_ELIGIBLE"
    products_not_eligible = "PRODUCTS_NOT_ELIGIBLE"
    minimum_order_not_met = "MINIMUM_ORDER_NOT_MET"
    dealer_mismatch = "DEALER_MISMATCH"
    unavailable = "UNAVAILABLE"
    invalid_value = "INVALID_VALUE"


@dataclass(frozen=True)
class Rejection:
    reason: RejectionReason
    message: str


class DiscountLine(Protocol):
    product_id: int
    total_price: Decimal


# ---------- calcul du montant ----------
def _percentage_amount(discount: Discount, subtotal: Decimal) -> Decimal:
    value = Decimal(discount.discount_value)
    if value > HUNDRED:
        raise InvalidDiscountValueError(f"Percentage discount cannot exceed 100% (got {value})")
    return subtotal * value / HUNDRED


def _fixed_amount(discount: Discount, subtotal: Decimal) -> Decimal:
    return min(Decimal(discount.discount_value), subtotal)


_RULES: dict[DiscountType, Callable[[Discount, Decimal], Decimal]] = {
    DiscountType.percentage: _percentage_amount,
    DiscountType.fixed_amount: _fixed_amount,
}


def compute_amount(discount: Discount, subtotal: Decimal, items: Iterable[DiscountLine] = ()) -> Decimal:
    """
    Montant de remise pour un sous-total donné.

    items est accepté pour les futures règles par ligne ; les règles actuelles
    ne dépendent que du sous-total.
    """
    rule = _RULES.get(discount.discount_type)
    if rule is None:
        raise InvalidDiscountValueError(f"Unsupported discount type: {discount.discount_type}")

    amount = rule(discount, Decimal(subtotal))
    if discount.maximum_discount_amount is not None:
        amount = min(amount, Decimal(discount.maximum_discount_amount))
    if amount < ZERO:
        amount = ZERO
    return money(amount)


def allocate(amount: Decimal, items: list[DiscountLine]) -> list[Decimal]:
    """
    Répartit la remise au prorata du total de chaque ligne (plus forts restes).

    Chaque part est tronquée au centime, les centimes restants vont aux lignes
    dont le reste tronqué est le plus grand (à égalité, ordre des lignes).
    La somme vaut exactement amount et aucune part n'est négative.
    """
    if not items:
        return []
    amount = money(amount)
    subtotal = sum((Decimal(i.total_price) for i in items), ZERO)
    if subtotal <= ZERO or amount <= ZERO:
        return [ZERO for _ in items]

    raw = [amount * Decimal(i.total_price) / subtotal for i in items]
    shares = [r.quantize(CENT, rounding=ROUND_DOWN) for r in raw]
    leftover = int((amount - sum(shares, ZERO)) / CENT)

    by_remainder = sorted(range(len(items)), key=lambda k: raw[k] - shares[k], reverse=True)
    for k in by_remainder[:leftover]:
        shares[k] += CENT
    return shares


def describe(discount: Discount) -> str:
    if discount.discount_type == DiscountType.percentage:
        label = f"{money(discount.discount_value)}%"
    else:
        label = f"{money(discount.discount_value)} fixed"
    return f"{discount.name} ({label})"


# ---------- validation ----------
class DiscountValidator:
    def __init__(
        self,
        tracker: DiscountUsageTracker,
        *,
        one_use_per_dealer: bool = True,
        clock: Clock = utcnow,
    ):
        self.tracker = tracker
        self.one_use_per_dealer = one_use_per_dealer
        self.clock = clock

    def validate(
        self,
        db: Session,
        discount_id: int,
        dealer_id: int,
        subtotal: Decimal,
        items: Iterable[DiscountLine],
        user: User,
    ) -> Discount | Rejection:
        discount = db.get(Discount, discount_id)
        if not discount:
            return Rejection(RejectionReason.not_found, f"Discount not found: {discount_id}")

        if not discount.is_active:
            return Rejection(RejectionReason.inactive, f"Discount '{discount.name}' is not active")

        now = self.clock()
        if not self._in_window(discount, now):
            return Rejection(
                RejectionReason.not_in_validity_window,
                f"Discount '{discount.name}' is only valid between {discount.start_date} and {discount.end_date}",
            )

        if self._global_limit_reached(db, discount):
            return Rejection(
                RejectionReason.usage_limit_reached,
                f"Discount '{discount.name}' has reached its usage limit ({discount.usage_limit})",
            )

        if discount.usage_limit_per_customer is not None:
            used = self.tracker.count_user_usage(db, discount.id, user.id)
            if used >= discount.usage_limit_per_customer:
                return Rejection(
                    RejectionReason.customer_limit_reached,
                    f"You have already used discount '{discount.name}' {used} time(s)",
                )

        if self.one_use_per_dealer and self.tracker.has_dealer_used(db, discount.id, dealer_id):
            return Rejection(
                RejectionReason.dealer_already_used,
                f"Your dealer has already used discount '{discount.name}'",
            )

        if discount.applicable_dealers and dealer_id not in {d.id for d in discount.applicable_dealers}:
            return Rejection(
                RejectionReason.dealer_not_eligible,
                f"Discount '{discount.name}' is not available for your dealer",
            )

        items = list(items)
        if discount.applicable_products:
            eligible = {p.id for p in discount.applicable_products}
            if not any(int(i.product_id) in eligible for i in items):
                return Rejection(
                    RejectionReason.products_not_eligible,
                    f"Discount '{discount.name}' does not apply to any product in this order",
                )

        if discount.minimum_order_amount is not None and Decimal(subtotal) < Decimal(discount.minimum_order_amount):
            return Rejection(
                RejectionReason.minimum_order_not_met,
                f"Minimum order amount for discount '{discount.name}' is {money(discount.minimum_order_amount)}",
            )

        if user.dealer_id != dealer_id:
            return Rejection(
                RejectionReason.dealer_mismatch,
                "Discount cannot be applied to an order of another dealer",
            )

        # relecture : la remise a pu être désactivée ou consommée entre-temps
        db.refresh(discount)
        if not discount.is_active or not self._in_window(discount, self.clock()) or self._global_limit_reached(db, discount):
            return Rejection(RejectionReason.unavailable, f"Discount '{discount.name}' is no longer available")

        return discount

    @staticmethod
    def _in_window(discount: Discount, now) -> bool:
        return discount.start_date <= now <= discount.end_date

    def _global_limit_reached(self, db: Session, discount: Discount) -> bool:
        if discount.usage_limit is None:
            return False
        return self.tracker.count_global_usage(db, discount.id) >= discount.usage_limit
