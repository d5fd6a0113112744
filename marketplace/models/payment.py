import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Numeric, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base
from marketplace.errors import InvalidTransitionError
from marketplace.models.order import utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING

    def transition_to(self, target: "PaymentStatus") -> "PaymentStatus":
        if self is not PaymentStatus.PENDING or target is PaymentStatus.PENDING:
            raise InvalidTransitionError("payment", self.value, target.value)
        return target


# Statuses that block a new payment attempt for the same order.
ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.SUCCESS)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # Not a foreign key: payments are an audit trail and outlive their order.
    order_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, name="paymentstatus"), default=PaymentStatus.PENDING, nullable=False
    )
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="mobile_money")
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="fapshi")
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# At most one pending-or-successful payment per order.
Index(
    "uq_payments_active_order",
    Payment.order_id,
    unique=True,
    postgresql_where=Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
    sqlite_where=Payment.status.in_(ACTIVE_PAYMENT_STATUSES),
)
