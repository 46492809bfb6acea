from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealerhub.app.core.clock import Clock, utcnow
from dealerhub.app.core.errors import InvalidState
from dealerhub.app.db.models.models_v1 import Discount, DiscountUsage, Order, User
from dealerhub.services.locks import KeyedLocks
from dealerhub.services.money import money

logger = logging.getLogger("dealerhub.discounts")


class DiscountUsageTracker:
    """
    Registre des usages de remise (source de vérité des limites d'usage).

    Une trace par commande au plus. Les compteurs sont dérivés des traces :
    supprimer la trace d'une commande restaure tous les compteurs.
    """

    def __init__(self, *, locks: KeyedLocks | None = None, clock: Clock = utcnow):
        self.locks = locks if locks is not None else KeyedLocks()
        self.clock = clock

    @contextmanager
    def locked(self, db: Session, discount_id: int) -> Iterator[None]:
        """
        Section critique par remise : vérification des limites + record().

        Doit englober le commit de la commande, sinon deux commandes
        concurrentes peuvent passer la vérification avant que l'une des
        deux traces ne soit visible.
        """
        with self.locks.hold(("discount", int(discount_id))):
            db.execute(select(Discount.id).where(Discount.id == discount_id).with_for_update())
            yield

    # ---------- lectures ----------
    def count_global_usage(self, db: Session, discount_id: int) -> int:
        return int(
            db.execute(
                select(func.count()).select_from(DiscountUsage).where(DiscountUsage.discount_id == discount_id)
            ).scalar_one()
        )

    def count_user_usage(self, db: Session, discount_id: int, user_id: int) -> int:
        return int(
            db.execute(
                select(func.count())
                .select_from(DiscountUsage)
                .where(DiscountUsage.discount_id == discount_id)
                .where(DiscountUsage.user_id == user_id)
            ).scalar_one()
        )

    def has_dealer_used(self, db: Session, discount_id: int, dealer_id: int) -> bool:
        found = db.execute(
            select(DiscountUsage.id)
            .where(DiscountUsage.discount_id == discount_id)
            .where(DiscountUsage.dealer_id == dealer_id)
            .limit(1)
        ).first()
        return found is not None

    def find_for_order(self, db: Session, order_id: int) -> DiscountUsage | None:
        return db.execute(select(DiscountUsage).where(DiscountUsage.order_id == order_id)).scalar_one_or_none()

    # ---------- écritures ----------
    def record(
        self,
        db: Session,
        *,
        discount: Discount,
        user: User,
        dealer_id: int,
        order: Order,
        amount: Decimal,
    ) -> DiscountUsage:
        if self.find_for_order(db, order.id):
            raise InvalidState(f"Discount usage already recorded for order {order.order_number}")

        usage = DiscountUsage(
            discount_id=discount.id,
            user_id=user.id,
            dealer_id=dealer_id,
            order_id=order.id,
            usage_date=self.clock(),
            discount_amount=money(amount),
            order_total=money(order.total_amount),
            order_status=order.status,
        )
        db.add(usage)
        try:
            db.flush()
        except IntegrityError as exc:
            raise InvalidState(f"Discount usage already recorded for order {order.order_number}") from exc

        logger.info(
            "Discount usage recorded: discount=%s order=%s user=%s dealer=%s amount=%s",
            discount.id,
            order.order_number,
            user.id,
            dealer_id,
            usage.discount_amount,
        )
        return usage

    def reverse(self, db: Session, order_id: int) -> bool:
        """Supprime la trace d'usage de la commande. Idempotent : False si aucune trace."""
        res = db.execute(delete(DiscountUsage).where(DiscountUsage.order_id == order_id))
        removed = res.rowcount > 0
        if removed:
            logger.info("Discount usage reversed for order id=%s", order_id)
        return removed
