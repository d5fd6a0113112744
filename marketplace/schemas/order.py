import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr

from marketplace.models.order import OrderStatus

# Request schemas only check shapes and types; domain rules (non-empty item
# list, positive quantities, non-negative prices) are enforced by OrderService
# so that every entry point gets the same ValidationError.


class CustomerInfo(BaseModel):
    name: str
    phone: str
    email: EmailStr | None = None


class DeliveryInfo(BaseModel):
    address: str
    city: str
    region: str


class OrderItemCreate(BaseModel):
    product_id: uuid.UUID
    quantity: int
    # Caller-supplied snapshot of the catalog price; never re-read later.
    price: Decimal


class OrderCreate(BaseModel):
    customer: CustomerInfo
    delivery: DeliveryInfo
    items: list[OrderItemCreate]


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderFilter(BaseModel):
    by_user: uuid.UUID | None = None
    by_status: OrderStatus | None = None


class OrderItemResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    product_id: uuid.UUID
    quantity: int
    unit_price: Decimal
    subtotal: Decimal

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    customer_name: str
    customer_phone: str
    customer_email: str | None
    delivery_address: str
    city: str
    region: str
    status: OrderStatus
    total: Decimal
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
