from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from dealerhub.app.api.deps import get_db
from dealerhub.app.db.models.core_types import StockStatus
from dealerhub.app.db.models.models_v1 import Product
from dealerhub.app.schemas.stock import ProductStockRead
from dealerhub.services.stock import stock_status

router = APIRouter(prefix="/stock")


@router.get(
    "",
    response_model=list[ProductStockRead],
)
def get_stock(
    request: Request,
    product_id: int | None = None,
    status: StockStatus | None = None,
    db: Session = Depends(get_db),
):
    """
    Stock produit (READ ONLY)
    - status est dérivé, jamais stocké
    - produits inactifs exclus
    """
    threshold = request.app.state.settings.low_stock_threshold

    stmt = select(Product).where(Product.active.is_(True)).order_by(Product.code)
    if product_id is not None:
        stmt = stmt.where(Product.id == product_id)

    rows = [
        ProductStockRead(
            product_id=p.id,
            code=p.code,
            name=p.name,
            stock_quantity=p.stock_quantity,
            status=stock_status(p.stock_quantity, threshold),
        )
        for p in db.execute(stmt).scalars().all()
    ]
    if status is not None:
        rows = [r for r in rows if r.status == status]
    return rows
