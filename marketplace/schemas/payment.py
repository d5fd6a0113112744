import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, EmailStr

from marketplace.models.payment import PaymentStatus


class PayerInfo(BaseModel):
    name: str
    phone: str
    email: EmailStr | None = None
    medium: str | None = None  # "mobile money" | "orange money"; provider picks when unset


class DirectPaymentCreate(BaseModel):
    order_id: uuid.UUID
    name: str
    phone: str
    email: EmailStr | None = None
    medium: str | None = None

    def payer(self) -> PayerInfo:
        return PayerInfo(name=self.name, phone=self.phone, email=self.email, medium=self.medium)


class HostedPaymentCreate(DirectPaymentCreate):
    redirect_url: str


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus


class PaymentResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    amount: Decimal
    status: PaymentStatus
    payment_method: str
    provider: str
    transaction_id: str
    details: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class HostedPaymentResponse(BaseModel):
    payment: PaymentResponse
    payment_url: str
