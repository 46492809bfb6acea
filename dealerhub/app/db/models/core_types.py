import enum

class Role(str, enum.Enum):
    admin = "admin"
    dealer = "dealer"

class OrderStatus(str, enum.Enum):
    pending = "PENDING"
    approved = "APPROVED"
    rejected = "REJECTED"
    shipped = "SHIPPED"
    completed = "COMPLETED"
    cancelled = "CANCELLED"
    edited_pending_approval = "EDITED_PENDING_APPROVAL"

class DiscountType(str, enum.Enum):
    percentage = "PERCENTAGE"
    fixed_amount = "FIXED_AMOUNT"

class MovementType(str, enum.Enum):
    order_reserved = "ORDER_RESERVED"
    order_cancelled_return = "ORDER_CANCELLED_RETURN"

class StockStatus(str, enum.Enum):
    in_stock = "IN_STOCK"
    low_stock = "LOW_STOCK"
    out_of_stock = "OUT_OF_STOCK"
