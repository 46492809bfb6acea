from __future__ import annotations

from typing import Generator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from dealerhub.app.db.models.models_v1 import User
from dealerhub.services.auto_expiry import AutoExpiryScheduler
from dealerhub.services.orders import OrderLifecycleManager


def get_db(request: Request) -> Generator:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    db: Session = Depends(get_db),
    user_id: int | None = Header(default=None, alias="X-User-Id"),
) -> User:
    # L'authentification est faite en amont : on ne fait que résoudre l'appelant.
    if user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = db.get(User, user_id)
    if not user or not user.active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user


def get_order_manager(request: Request) -> OrderLifecycleManager:
    return request.app.state.order_manager


def get_scheduler(request: Request) -> AutoExpiryScheduler:
    return request.app.state.scheduler
