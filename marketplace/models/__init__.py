# Import all models here so SQLAlchemy registers them with Base.metadata
from marketplace.models.order import ORDER_TRANSITIONS, Order, OrderItem, OrderStatus
from marketplace.models.payment import ACTIVE_PAYMENT_STATUSES, Payment, PaymentStatus

__all__ = [
    "ACTIVE_PAYMENT_STATUSES",
    "ORDER_TRANSITIONS",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentStatus",
]
