from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from dealerhub.app.api.deps import get_db, get_scheduler
from dealerhub.services.auto_expiry import AutoExpiryScheduler

router = APIRouter(prefix="/health")


@router.get("")
def health(db: Session = Depends(get_db), scheduler: AutoExpiryScheduler = Depends(get_scheduler)):
    db.execute(text("SELECT 1"))
    info = scheduler.status()
    info["pending_cancellations"] = scheduler.pending_cancellation_count()
    return {"status": "ok", "scheduler": info}
