from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from dealerhub.app.db.models.core_types import OrderStatus, StockStatus
from dealerhub.services.order_calculation import OrderCalculation, OrderLineRequest, OrderRequest


# ---------- entrées ----------
class OrderLineIn(BaseModel):
    product_price_id: int
    quantity: int = Field(gt=0)

    def to_request(self) -> OrderLineRequest:
        return OrderLineRequest(product_price_id=self.product_price_id, quantity=self.quantity)


class OrderCreate(BaseModel):
    dealer_id: int
    items: list[OrderLineIn] = Field(min_length=1)
    discount_id: int | None = None
    notes: str | None = Field(default=None, max_length=2000)

    def to_request(self) -> OrderRequest:
        return OrderRequest(
            dealer_id=self.dealer_id,
            items=[i.to_request() for i in self.items],
            discount_id=self.discount_id,
            notes=self.notes,
        )


class NoteIn(BaseModel):
    note: str | None = None


class ReasonIn(BaseModel):
    reason: str | None = None


class StatusUpdate(BaseModel):
    status: str
    note: str | None = None


class OrderEditIn(BaseModel):
    items: list[OrderLineIn] = Field(min_length=1)
    reason: str | None = None


class EditResponseIn(BaseModel):
    approved: bool
    note: str | None = None


# ---------- sorties ----------
class OrderItemRead(BaseModel):
    id: int
    product_id: int
    product_price_id: int
    currency: str
    unit_price: Decimal
    quantity: int
    total_price: Decimal

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    id: int
    order_number: str
    user_id: int
    dealer_id: int
    status: OrderStatus
    currency: str
    total_amount: Decimal
    discount_id: int | None
    discount_amount: Decimal
    order_date: datetime
    notes: str | None
    admin_notes: str | None
    updated_at: datetime
    items: list[OrderItemRead]
    # READ ONLY, renseigné seulement pour EDITED_PENDING_APPROVAL
    hours_until_auto_cancel: float | None = None

    class Config:
        from_attributes = True


class ItemCalculationRead(BaseModel):
    product_id: int
    product_code: str
    product_name: str
    product_price_id: int
    currency: str
    unit_price: Decimal
    quantity: int
    total_price: Decimal
    discount_share: Decimal
    stock_quantity: int
    stock_sufficient: bool
    stock_status: StockStatus

    class Config:
        from_attributes = True


class OrderCalculationRead(BaseModel):
    items: list[ItemCalculationRead]
    currency: str
    subtotal: Decimal
    discount_id: int | None = None
    discount_amount: Decimal
    total_amount: Decimal
    discount_description: str | None = None
    rejection_reason: str | None = None
    stock_warnings: list[str] = Field(default_factory=list)
    order_warnings: list[str] = Field(default_factory=list)
    all_in_stock: bool

    @classmethod
    def from_calculation(cls, calc: OrderCalculation) -> "OrderCalculationRead":
        return cls(
            items=[ItemCalculationRead.model_validate(i) for i in calc.items],
            currency=calc.currency,
            subtotal=calc.subtotal,
            discount_id=calc.discount.id if calc.discount else None,
            discount_amount=calc.discount_amount,
            total_amount=calc.total_amount,
            discount_description=calc.discount_description,
            rejection_reason=calc.rejection.reason.value if calc.rejection else None,
            stock_warnings=list(calc.stock_warnings),
            order_warnings=list(calc.order_warnings),
            all_in_stock=calc.all_in_stock,
        )
