"""
Cycle de vie des commandes bayi.

Chaque opération publique = une unité de travail : commit si tout passe,
rollback complet sinon (aucune réservation partielle ne survit).

Verrous :
- commande : FOR UPDATE sur la ligne + verrou applicatif ("order", id),
  deux annulations concurrentes ne peuvent pas rendre le stock deux fois
- remise : DiscountUsageTracker.locked() englobe contrôle des limites,
  record() ET commit

Les notifications partent après le commit et ne font jamais échouer l'opération.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import ExitStack, contextmanager
from decimal import Decimal
from typing import ContextManager, Iterator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dealerhub.app.core.clock import Clock, utcnow
from dealerhub.app.core.config import Settings
from dealerhub.app.core.errors import (
    DealerHubError,
    Forbidden,
    Internal,
    InvalidArgument,
    InvalidState,
    NotFound,
)
from dealerhub.app.db.models.core_types import OrderStatus, Role
from dealerhub.app.db.models.models_v1 import Discount, Order, OrderItem, User
from dealerhub.services import notifications as events
from dealerhub.services.discount_usage import DiscountUsageTracker
from dealerhub.services.discounts import DiscountValidator, compute_amount
from dealerhub.services.locks import KeyedLocks
from dealerhub.services.money import ZERO, money
from dealerhub.services.notifications import LoggingNotifier, Notifier, OrderEvent, dispatch
from dealerhub.services.order_calculation import (
    ItemCalculation,
    OrderCalculation,
    OrderCalculator,
    OrderLineRequest,
    OrderRequest,
)
from dealerhub.services.pricing import DbPriceResolver, PriceResolver
from dealerhub.services.stock import StockLedger

logger = logging.getLogger("dealerhub.orders")

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.approved, OrderStatus.rejected, OrderStatus.cancelled}),
    OrderStatus.approved: frozenset({OrderStatus.shipped, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.completed}),
    OrderStatus.edited_pending_approval: frozenset({OrderStatus.approved, OrderStatus.cancelled}),
    OrderStatus.rejected: frozenset(),
    OrderStatus.cancelled: frozenset(),
    OrderStatus.completed: frozenset(),
}

# statuts dont l'entrée rend le stock et annule l'usage de remise
RELEASING_STATUSES = frozenset({OrderStatus.cancelled, OrderStatus.rejected})
EDITABLE_STATUSES = frozenset({OrderStatus.pending, OrderStatus.approved})
MAX_PAGE_SIZE = 100


def new_order_number(now) -> str:
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def append_note(existing: str | None, text: str | None) -> str | None:
    if not text:
        return existing
    return f"{existing}\n{text}" if existing else text


class OrderLifecycleManager:
    def __init__(
        self,
        *,
        ledger: StockLedger,
        calculator: OrderCalculator,
        tracker: DiscountUsageTracker,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
        locks: KeyedLocks | None = None,
    ):
        self.ledger = ledger
        self.calculator = calculator
        self.tracker = tracker
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self.locks = locks if locks is not None else KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
        prices: PriceResolver | None = None,
    ) -> "OrderLifecycleManager":
        tracker = DiscountUsageTracker(clock=clock)
        validator = DiscountValidator(
            tracker,
            one_use_per_dealer=settings.discount_one_use_per_dealer,
            clock=clock,
        )
        calculator = OrderCalculator(
            prices or DbPriceResolver(clock),
            validator,
            low_stock_threshold=settings.low_stock_threshold,
        )
        return cls(
            ledger=StockLedger(strict=settings.stock_strict_mode, clock=clock),
            calculator=calculator,
            tracker=tracker,
            notifier=notifier,
            clock=clock,
        )

    # ---------- lecture ----------
    def get_order(self, db: Session, order_id: int, user: User) -> Order:
        order = db.get(Order, order_id)
        if not order:
            raise NotFound(f"Order not found: {order_id}")
        if user.role != Role.admin and order.user_id != user.id:
            raise Forbidden("You can only view your own orders")
        return order

    def list_orders(
        self,
        db: Session,
        user: User,
        *,
        status: OrderStatus | str | None = None,
        page: int = 1,
        size: int = 20,
    ) -> list[Order]:
        """
        Commandes visibles par l'appelant, les plus récentes d'abord.

        - admin : toutes les commandes (status=PENDING : file d'approbation)
        - client : ses propres commandes (status=EDITED_PENDING_APPROVAL :
          modifications qui attendent sa réponse)
        """
        if page < 1 or not 1 <= size <= MAX_PAGE_SIZE:
            raise InvalidArgument(f"page must be >= 1 and size between 1 and {MAX_PAGE_SIZE}")

        stmt = select(Order)
        if user.role != Role.admin:
            stmt = stmt.where(Order.user_id == user.id)
        if status is not None:
            stmt = stmt.where(Order.status == self._parse_status(status))
        stmt = stmt.order_by(Order.order_date.desc(), Order.id.desc()).offset((page - 1) * size).limit(size)
        return list(db.execute(stmt).scalars().all())

    # ---------- création / devis ----------
    def calculate_order_total(self, db: Session, request: OrderRequest, user: User) -> OrderCalculation:
        try:
            calc = self.calculator.calculate(db, request, user, soft=True)
        except SQLAlchemyError as exc:
            logger.exception("Quote failed for dealer %s", request.dealer_id)
            raise Internal("Database error while calculating order") from exc

        # le devis ne refuse pas : il signale ce que create_order refuserait
        problem = self._dealer_problem(user, request.dealer_id)
        if problem is not None:
            calc.order_warnings.append(f"Order would be refused: {problem.detail}")
        return calc

    def create_order(self, db: Session, request: OrderRequest, user: User) -> Order:
        problem = self._dealer_problem(user, request.dealer_id)
        if problem is not None:
            raise problem

        sections = []
        if request.discount_id is not None:
            sections.append(self.tracker.locked(db, request.discount_id))

        with self._unit_of_work(db, *sections):
            calc = self.calculator.calculate(db, request, user, soft=False)
            self.ledger.check_availability(db, calc.items)

            now = self.clock()
            order = Order(
                order_number=new_order_number(now),
                user_id=user.id,
                dealer_id=request.dealer_id,
                status=OrderStatus.pending,
                currency=calc.currency,
                total_amount=calc.total_amount,
                discount_id=calc.discount.id if calc.discount else None,
                discount_amount=calc.discount_amount,
                order_date=now,
                notes=request.notes,
                updated_at=now,
            )
            order.items = [self._item_row(i) for i in calc.items]
            db.add(order)
            db.flush()

            self.ledger.reserve(
                db, order.items, order_id=order.id, actor_id=user.id, reason=f"Order {order.order_number}"
            )
            if calc.discount is not None and calc.discount_amount > ZERO:
                self.tracker.record(
                    db,
                    discount=calc.discount,
                    user=user,
                    dealer_id=request.dealer_id,
                    order=order,
                    amount=calc.discount_amount,
                )
            event = self._event(events.ORDER_CREATED, order, total=str(order.total_amount))

        logger.info(
            "Order %s created: dealer=%s total=%s discount=%s",
            event.order_number,
            request.dealer_id,
            event.extra["total"],
            request.discount_id,
        )
        dispatch(self.notifier, event)
        return order

    # ---------- transitions admin ----------
    def approve_order(self, db: Session, order_id: int, admin: User, note: str | None = None) -> Order:
        self._require_admin(admin)
        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            self._require_status(order, {OrderStatus.pending}, "approve")
            self._set_status(order, OrderStatus.approved)
            order.admin_notes = append_note(order.admin_notes, note)
            event = self._event(events.ORDER_APPROVED, order, actor=admin.id)

        logger.info("Order %s approved by %s", event.order_number, admin.id)
        dispatch(self.notifier, event)
        return order

    def reject_order(self, db: Session, order_id: int, admin: User, reason: str | None = None) -> Order:
        self._require_admin(admin)
        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            self._require_status(order, {OrderStatus.pending}, "reject")
            self._release(db, order, actor_id=admin.id, reason=f"Order {order.order_number} rejected")
            self._set_status(order, OrderStatus.rejected)
            if reason:
                order.admin_notes = append_note(order.admin_notes, f"Rejected: {reason}")
            event = self._event(events.ORDER_REJECTED, order, actor=admin.id, reason=reason)

        logger.info("Order %s rejected by %s", event.order_number, admin.id)
        dispatch(self.notifier, event)
        return order

    def update_order_status(
        self,
        db: Session,
        order_id: int,
        new_status: OrderStatus | str,
        admin: User,
        note: str | None = None,
    ) -> Order:
        self._require_admin(admin)
        target = self._parse_status(new_status)

        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            previous = order.status
            if target not in ALLOWED_TRANSITIONS[previous]:
                raise InvalidState(f"Transition {previous.value} -> {target.value} is not allowed")

            if target in RELEASING_STATUSES:
                self._release(db, order, actor_id=admin.id, reason=f"Order {order.order_number} {target.value.lower()}")
            self._set_status(order, target)
            order.admin_notes = append_note(order.admin_notes, note)
            event = self._event(
                events.ORDER_STATUS_CHANGED, order, actor=admin.id, previous=previous.value
            )

        logger.info("Order %s status %s -> %s by %s", event.order_number, previous.value, target.value, admin.id)
        dispatch(self.notifier, event)
        return order

    # ---------- actions client ----------
    def cancel_order_by_user(self, db: Session, order_id: int, user: User, reason: str | None = None) -> Order:
        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            self._require_owner(order, user)
            self._require_status(order, {OrderStatus.pending}, "cancel")
            self._release(db, order, actor_id=user.id, reason=f"Order {order.order_number} cancelled by customer")
            self._set_status(order, OrderStatus.cancelled)
            if reason:
                order.notes = append_note(order.notes, f"Cancelled: {reason}")
            event = self._event(events.ORDER_CANCELLED, order, actor=user.id, reason=reason)

        logger.info("Order %s cancelled by customer %s", event.order_number, user.id)
        dispatch(self.notifier, event)
        return order

    def respond_to_edit(
        self,
        db: Session,
        order_id: int,
        user: User,
        approved: bool,
        note: str | None = None,
    ) -> Order:
        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            self._require_owner(order, user)
            self._require_status(order, {OrderStatus.edited_pending_approval}, "respond to edit of")
            if approved:
                self._set_status(order, OrderStatus.approved)
                order.notes = append_note(order.notes, f"Edit accepted: {note}" if note else "Edit accepted")
                event = self._event(events.ORDER_EDIT_ACCEPTED, order, actor=user.id)
            else:
                self._release(db, order, actor_id=user.id, reason=f"Order {order.order_number} edit refused")
                self._set_status(order, OrderStatus.cancelled)
                order.notes = append_note(order.notes, f"Edit refused: {note}" if note else "Edit refused")
                event = self._event(events.ORDER_CANCELLED, order, actor=user.id, reason=note)

        logger.info("Order %s edit %s by customer %s", event.order_number, "accepted" if approved else "refused", user.id)
        dispatch(self.notifier, event)
        return order

    # ---------- modifications admin ----------
    def edit_order(
        self,
        db: Session,
        order_id: int,
        lines: list[OrderLineRequest],
        admin: User,
        reason: str | None = None,
    ) -> Order:
        self._require_admin(admin)
        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            self._require_status(order, EDITABLE_STATUSES, "edit")
            previous_total = money(order.total_amount)

            self.ledger.release(
                db, order.items, order_id=order.id, actor_id=admin.id, reason=f"Order {order.order_number} edited"
            )
            priced = self.calculator.price_lines(db, lines)
            self.ledger.check_availability(db, priced)

            order.items = [self._item_row(i) for i in priced]
            order.currency = priced[0].currency
            db.flush()
            self.ledger.reserve(
                db, order.items, order_id=order.id, actor_id=admin.id, reason=f"Order {order.order_number} edited"
            )
            self._reprice(db, order)

            self._set_status(order, OrderStatus.edited_pending_approval)
            summary = f"Edited by admin {admin.id}: total {previous_total} -> {money(order.total_amount)}"
            if reason:
                summary = f"{summary}. Reason: {reason}"
            order.admin_notes = append_note(order.admin_notes, summary)
            event = self._event(
                events.ORDER_EDITED,
                order,
                actor=admin.id,
                previous_total=str(previous_total),
                new_total=str(money(order.total_amount)),
            )

        logger.info("Order %s edited by %s, awaiting customer approval", event.order_number, admin.id)
        dispatch(self.notifier, event)
        return order

    def remove_item(
        self,
        db: Session,
        order_id: int,
        item_id: int,
        admin: User,
        reason: str | None = None,
    ) -> Order:
        self._require_admin(admin)
        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            self._require_status(order, EDITABLE_STATUSES, "remove items from")

            item = next((i for i in order.items if i.id == item_id), None)
            if item is None:
                raise NotFound(f"Item {item_id} not found in order {order.order_number}")
            if len(order.items) == 1:
                raise InvalidState("Cannot remove the last item of an order; cancel the order instead")

            self.ledger.release(
                db, [item], order_id=order.id, actor_id=admin.id, reason=f"Item removed from {order.order_number}"
            )
            order.items.remove(item)
            self._reprice(db, order)
            order.updated_at = self.clock()

            text = f"Item {item.product_id} x{item.quantity} removed by admin {admin.id}"
            if reason:
                text = f"{text}. Reason: {reason}"
            order.admin_notes = append_note(order.admin_notes, text)
            event = self._event(events.ORDER_EDITED, order, actor=admin.id, removed_item=item_id)

        logger.info("Item %s removed from order %s", item_id, event.order_number)
        dispatch(self.notifier, event)
        return order

    # ---------- point d'entrée du scheduler ----------
    def auto_cancel(self, db: Session, order_id: int, reason: str, hours_waited: float) -> bool:
        """Annule une commande modifiée restée sans réponse. False si elle n'est plus en attente."""
        with self._unit_of_work(db, self._order_section(order_id)):
            order = self._load_for_update(db, order_id)
            if order.status != OrderStatus.edited_pending_approval:
                logger.warning(
                    "Auto-cancel skipped for order %s: status is %s", order.order_number, order.status.value
                )
                return False

            self._release(db, order, actor_id=None, reason=reason)
            self._set_status(order, OrderStatus.cancelled)
            order.admin_notes = append_note(
                order.admin_notes,
                f"[SYSTEM] {reason} (waited {hours_waited:.1f}h without customer approval)",
            )
            event = self._event(events.ORDER_AUTO_CANCELLED, order, hours_waited=round(hours_waited, 1))

        logger.info("Order %s auto-cancelled after %.1fh", event.order_number, hours_waited)
        dispatch(self.notifier, event)
        return True

    # ---------- helpers ----------
    @contextmanager
    def _unit_of_work(self, db: Session, *sections: ContextManager) -> Iterator[None]:
        with ExitStack() as stack:
            try:
                for section in sections:
                    stack.enter_context(section)
                yield
                db.commit()
            except DealerHubError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("Order operation failed, rolled back")
                raise Internal("Database error while processing order") from exc
            except Exception:
                db.rollback()
                raise

    def _order_section(self, order_id: int) -> ContextManager:
        return self.locks.hold(("order", int(order_id)))

    @staticmethod
    def _load_for_update(db: Session, order_id: int) -> Order:
        order = db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not order:
            raise NotFound(f"Order not found: {order_id}")
        return order

    def _release(self, db: Session, order: Order, *, actor_id: int | None, reason: str) -> None:
        """Rend le stock puis annule l'usage de remise (l'échec de ce dernier n'empêche pas l'annulation)."""
        self.ledger.release(db, order.items, order_id=order.id, actor_id=actor_id, reason=reason)
        try:
            with db.begin_nested():
                self.tracker.reverse(db, order.id)
        except SQLAlchemyError:
            logger.exception("Discount usage reversal failed for order %s", order.order_number)

    def _reprice(self, db: Session, order: Order) -> None:
        subtotal = money(sum((Decimal(i.total_price) for i in order.items), ZERO))
        amount = ZERO
        discount = None
        if order.discount_id is not None:
            discount = db.get(Discount, order.discount_id)
            below_minimum = (
                discount is not None
                and discount.minimum_order_amount is not None
                and subtotal < Decimal(discount.minimum_order_amount)
            )
            if discount is None or below_minimum:
                logger.info("Discount dropped from order %s (subtotal %s)", order.order_number, subtotal)
                order.discount_id = None
                discount = None
            else:
                amount = compute_amount(discount, subtotal, order.items)

        order.discount_amount = amount
        order.total_amount = money(subtotal - amount)
        self._sync_usage(db, order, discount, amount)

    def _sync_usage(self, db: Session, order: Order, discount: Discount | None, amount: Decimal) -> None:
        """Une trace d'usage existe si et seulement si la remise réduit le total."""
        usage = self.tracker.find_for_order(db, order.id)
        if discount is None or amount <= ZERO:
            if usage is not None:
                self.tracker.reverse(db, order.id)
            return
        if usage is None:
            self.tracker.record(
                db,
                discount=discount,
                user=order.user,
                dealer_id=order.dealer_id,
                order=order,
                amount=amount,
            )
            return
        usage.discount_amount = amount
        usage.order_total = order.total_amount

    def _set_status(self, order: Order, status: OrderStatus) -> None:
        order.status = status
        order.updated_at = self.clock()

    @staticmethod
    def _item_row(item: ItemCalculation) -> OrderItem:
        return OrderItem(
            product_id=item.product_id,
            product_price_id=item.product_price_id,
            currency=item.currency,
            unit_price=item.unit_price,
            quantity=item.quantity,
            total_price=item.total_price,
        )

    @staticmethod
    def _parse_status(value: OrderStatus | str) -> OrderStatus:
        if isinstance(value, OrderStatus):
            return value
        try:
            return OrderStatus(str(value).upper())
        except ValueError:
            raise InvalidArgument(f"Unknown order status: {value}") from None

    @staticmethod
    def _require_status(order: Order, allowed, action: str) -> None:
        if order.status not in allowed:
            raise InvalidState(f"Cannot {action} order {order.order_number} in status {order.status.value}")

    @staticmethod
    def _require_admin(user: User) -> None:
        if user.role != Role.admin:
            raise Forbidden("Admin role required")

    @staticmethod
    def _dealer_problem(user: User, dealer_id: int) -> DealerHubError | None:
        if user.dealer_id is None:
            return InvalidArgument("User is not attached to a dealer")
        if user.dealer_id != dealer_id:
            return Forbidden("You can only order for your own dealer")
        return None

    @staticmethod
    def _require_owner(order: Order, user: User) -> None:
        if order.user_id != user.id:
            raise Forbidden("You can only act on your own orders")

    @staticmethod
    def _event(event_type: str, order: Order, **extra) -> OrderEvent:
        return OrderEvent(
            event_type=event_type,
            order_id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            user_id=order.user_id,
            extra={k: v for k, v in extra.items() if v is not None},
        )
