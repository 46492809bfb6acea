from pydantic import BaseModel

from dealerhub.app.db.models.core_types import StockStatus


class ProductStockRead(BaseModel):
    product_id: int
    code: str
    name: str

    stock_quantity: int
    status: StockStatus  # READ ONLY, dérivé du seuil LOW_STOCK_THRESHOLD

    class Config:
        from_attributes = True
