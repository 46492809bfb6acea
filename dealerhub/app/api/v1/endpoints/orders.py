from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from dealerhub.app.api.deps import get_current_user, get_db, get_order_manager, get_scheduler
from dealerhub.app.db.models.core_types import OrderStatus
from dealerhub.app.db.models.models_v1 import Order, User
from dealerhub.app.schemas.orders import (
    EditResponseIn,
    NoteIn,
    OrderCalculationRead,
    OrderCreate,
    OrderEditIn,
    OrderRead,
    ReasonIn,
    StatusUpdate,
)
from dealerhub.services.auto_expiry import AutoExpiryScheduler
from dealerhub.services.orders import MAX_PAGE_SIZE, OrderLifecycleManager

router = APIRouter(prefix="/orders")


def _read(order: Order, scheduler: AutoExpiryScheduler) -> OrderRead:
    out = OrderRead.model_validate(order)
    out.hours_until_auto_cancel = scheduler.hours_until_auto_cancel(order)
    return out


@router.get("", response_model=list[OrderRead])
def list_orders(
    status: OrderStatus | None = None,
    page: int = Query(default=1, ge=1),
    size: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
    scheduler: AutoExpiryScheduler = Depends(get_scheduler),
):
    """
    Liste paginée (READ ONLY)
    - admin : toutes les commandes ; ?status=PENDING = file d'approbation
    - client : ses commandes ; ?status=EDITED_PENDING_APPROVAL = modifications à accepter
    """
    orders = manager.list_orders(db, user, status=status, page=page, size=size)
    return [_read(o, scheduler) for o in orders]


@router.post("", response_model=OrderRead, status_code=201)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    return manager.create_order(db, payload.to_request(), user)


@router.post("/calculate", response_model=OrderCalculationRead)
def calculate_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    """
    Devis (READ ONLY)
    - rien n'est persisté, aucun stock réservé
    - une remise refusée donne discount_amount=0 + discount_description, jamais une erreur
    """
    calc = manager.calculate_order_total(db, payload.to_request(), user)
    return OrderCalculationRead.from_calculation(calc)


@router.get("/{order_id}", response_model=OrderRead)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
    scheduler: AutoExpiryScheduler = Depends(get_scheduler),
):
    return _read(manager.get_order(db, order_id, user), scheduler)


@router.post("/{order_id}/approve", response_model=OrderRead)
def approve_order(
    order_id: int,
    payload: NoteIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    return manager.approve_order(db, order_id, user, payload.note)


@router.post("/{order_id}/reject", response_model=OrderRead)
def reject_order(
    order_id: int,
    payload: ReasonIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    return manager.reject_order(db, order_id, user, payload.reason)


@router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: int,
    payload: ReasonIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    return manager.cancel_order_by_user(db, order_id, user, payload.reason)


@router.post("/{order_id}/status", response_model=OrderRead)
def update_status(
    order_id: int,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    return manager.update_order_status(db, order_id, payload.status, user, payload.note)


@router.post("/{order_id}/edit", response_model=OrderRead)
def edit_order(
    order_id: int,
    payload: OrderEditIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    lines = [i.to_request() for i in payload.items]
    return manager.edit_order(db, order_id, lines, user, payload.reason)


@router.post("/{order_id}/edit-response", response_model=OrderRead)
def respond_to_edit(
    order_id: int,
    payload: EditResponseIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    return manager.respond_to_edit(db, order_id, user, payload.approved, payload.note)


@router.delete("/{order_id}/items/{item_id}", response_model=OrderRead)
def remove_item(
    order_id: int,
    item_id: int,
    reason: str | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    manager: OrderLifecycleManager = Depends(get_order_manager),
):
    return manager.remove_item(db, order_id, item_id, user, reason)
