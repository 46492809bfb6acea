from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Iterable, Protocol

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from dealerhub.app.core.clock import Clock, utcnow
from dealerhub.app.core.errors import InsufficientStockError, NotFound
from dealerhub.app.db.models.core_types import MovementType, StockStatus
from dealerhub.app.db.models.models_v1 import Product, StockMovement

logger = logging.getLogger("dealerhub.stock")


class StockLine(Protocol):
    product_id: int
    quantity: int


def aggregate_lines(items: Iterable[StockLine]) -> "OrderedDict[int, int]":
    """Regroupe les quantités par produit, en conservant l'ordre de la demande."""
    totals: OrderedDict[int, int] = OrderedDict()
    for item in items:
        pid = int(item.product_id)
        totals[pid] = totals.get(pid, 0) + int(item.quantity)
    return totals


class StockLedger:
    """
    Réservation / libération du stock produit.

    Règles :
    - chaque mouvement est UN seul UPDATE atomique par produit (pas de
      lecture-modification-écriture côté Python, donc pas de mise à jour perdue)
    - produits traités par id croissant : ordre de verrouillage stable
    - mode historique : clamp à zéro au lieu d'échouer
    - mode strict : décrément conditionnel (stock >= qty), sinon InsufficientStockError
    - chaque mouvement est tracé dans stock_movements
    """

    def __init__(self, *, strict: bool = False, clock: Clock = utcnow):
        self.strict = strict
        self.clock = clock

    def find_insufficient(self, db: Session, items: Iterable[StockLine]) -> tuple[Product, int] | None:
        """Première ligne (ordre de la demande) dont la quantité dépasse le stock courant."""
        for pid, qty in aggregate_lines(items).items():
            product = db.get(Product, pid, populate_existing=True)
            if not product:
                raise NotFound(f"Product not found: {pid}")
            if product.stock_quantity < qty:
                return product, qty
        return None

    def check_availability(self, db: Session, items: Iterable[StockLine]) -> None:
        missing = self.find_insufficient(db, items)
        if missing:
            product, qty = missing
            raise InsufficientStockError(
                f"Insufficient stock: {product.name} (requested={qty}, available={product.stock_quantity})",
                product_id=product.id,
            )

    def reserve(
        self,
        db: Session,
        items: Iterable[StockLine],
        *,
        order_id: int | None = None,
        actor_id: int | None = None,
        reason: str | None = None,
    ) -> dict[int, int]:
        """Décrémente le stock de chaque produit. Retourne {product_id: stock_after}."""
        result: dict[int, int] = {}
        for pid, qty in sorted(aggregate_lines(items).items()):
            if self.strict:
                stmt = (
                    update(Product)
                    .where(Product.id == pid)
                    .where(Product.stock_quantity >= qty)
                    .values(stock_quantity=Product.stock_quantity - qty)
                )
            else:
                stmt = (
                    update(Product)
                    .where(Product.id == pid)
                    .values(
                        stock_quantity=case(
                            (Product.stock_quantity >= qty, Product.stock_quantity - qty),
                            else_=0,
                        )
                    )
                )
            res = db.execute(stmt.execution_options(synchronize_session=False))
            if res.rowcount == 0:
                self._raise_for_missing_row(db, pid, qty)

            stock_after = self._current_stock(db, pid)
            self._track(db, pid, MovementType.order_reserved, qty, stock_after, order_id, actor_id, reason)
            result[pid] = stock_after
            logger.info("Reserved %s x product %s (order=%s) -> stock %s", qty, pid, order_id, stock_after)
        return result

    def release(
        self,
        db: Session,
        items: Iterable[StockLine],
        *,
        order_id: int | None = None,
        actor_id: int | None = None,
        reason: str | None = None,
    ) -> dict[int, int]:
        """Ré-incrémente le stock sans condition. Retourne {product_id: stock_after}."""
        result: dict[int, int] = {}
        for pid, qty in sorted(aggregate_lines(items).items()):
            res = db.execute(
                update(Product)
                .where(Product.id == pid)
                .values(stock_quantity=Product.stock_quantity + qty)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                raise NotFound(f"Product not found: {pid}")

            stock_after = self._current_stock(db, pid)
            self._track(db, pid, MovementType.order_cancelled_return, qty, stock_after, order_id, actor_id, reason)
            result[pid] = stock_after
            logger.info("Released %s x product %s (order=%s) -> stock %s", qty, pid, order_id, stock_after)
        return result

    # ---------- helpers ----------
    def _raise_for_missing_row(self, db: Session, pid: int, qty: int) -> None:
        product = db.get(Product, pid, populate_existing=True)
        if not product:
            raise NotFound(f"Product not found: {pid}")
        # seul le mode strict peut ne toucher aucune ligne sur un produit existant
        raise InsufficientStockError(
            f"Insufficient stock: {product.name} (requested={qty}, available={product.stock_quantity})",
            product_id=pid,
        )

    @staticmethod
    def _current_stock(db: Session, pid: int) -> int:
        return int(db.execute(select(Product.stock_quantity).where(Product.id == pid)).scalar_one())

    def _track(
        self,
        db: Session,
        pid: int,
        movement_type: MovementType,
        qty: int,
        stock_after: int,
        order_id: int | None,
        actor_id: int | None,
        reason: str | None,
    ) -> None:
        db.add(
            StockMovement(
                product_id=pid,
                movement_type=movement_type,
                quantity=qty,
                stock_after=stock_after,
                order_id=order_id,
                reason=reason,
                happened_at=self.clock(),
                created_by=actor_id,
            )
        )


def stock_status(quantity: int, low_threshold: int) -> StockStatus:
    if quantity <= 0:
        return StockStatus.out_of_stock
    if quantity <= low_threshold:
        return StockStatus.low_stock
    return StockStatus.in_stock
