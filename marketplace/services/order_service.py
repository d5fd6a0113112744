import hashlib
import json
import logging
import uuid
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from marketplace.context import AppContext
from marketplace.database import read_session, transaction
from marketplace.errors import IdempotencyKeyReusedError, NotFoundError, StorageError, ValidationError
from marketplace.events import (
    ORDER_PLACED,
    ORDER_STATUS_CHANGED,
    OrderItemEvent,
    OrderPlacedEvent,
    OrderStatusChangedEvent,
    publish_quietly,
)
from marketplace.metrics import ORDER_TRANSITIONS, ORDERS_CREATED
from marketplace.models.order import Order, OrderItem, OrderStatus, utcnow
from marketplace.schemas.order import (
    CustomerInfo,
    DeliveryInfo,
    OrderFilter,
    OrderItemCreate,
    OrderItemResponse,
    OrderResponse,
)

logger = logging.getLogger(__name__)


class _IdempotencyConflict(Exception):
    """A concurrent request inserted an order with the same idempotency key."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _validate_items(items: list[OrderItemCreate]) -> Decimal:
    """Check every line item and return the order total."""
    if not items:
        raise ValidationError("An order needs at least one item")

    total = Decimal("0.00")
    for index, item in enumerate(items):
        if isinstance(item.quantity, bool) or item.quantity <= 0:
            raise ValidationError(f"Item {index}: quantity must be a positive integer")
        price = item.price
        if not price.is_finite() or price < 0:
            raise ValidationError(f"Item {index}: price must be a non-negative amount")
        if price.as_tuple().exponent < -2:
            raise ValidationError(f"Item {index}: price has more than 2 decimal places")
        total += price * item.quantity
    return total


def request_fingerprint(
    customer: CustomerInfo, delivery: DeliveryInfo, items: list[OrderItemCreate]
) -> str:
    """Stable digest of an order request; equal amounts hash equally (1500 == 1500.00)."""
    body = {
        "customer": customer.model_dump(mode="json"),
        "delivery": delivery.model_dump(mode="json"),
        "items": [
            [str(item.product_id), item.quantity, format(item.price.normalize(), "f")] for item in items
        ],
    }
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()


def apply_order_transition(order: Order, target: OrderStatus) -> OrderStatus:
    """Move ``order`` to ``target`` if the state machine allows it; return the old status."""
    previous = order.status
    order.status = previous.transition_to(target)
    order.updated_at = utcnow()
    return previous


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class OrderService:
    def __init__(self, context: AppContext) -> None:
        self._sessions = context.sessions
        self._publisher = context.publisher

    async def create_order(
        self,
        requester_id: uuid.UUID,
        customer: CustomerInfo,
        delivery: DeliveryInfo,
        items: list[OrderItemCreate],
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
    ) -> OrderResponse:
        """Persist an order and its items atomically.

        Replaying an idempotency key with the same request returns the original
        order; replaying it with a different request raises IdempotencyKeyReusedError.
        """
        total = _validate_items(items)
        fingerprint = request_fingerprint(customer, delivery, items) if idempotency_key else None

        if idempotency_key:
            existing = await self._find_by_idempotency_key(requester_id, idempotency_key, fingerprint)
            if existing is not None:
                ORDERS_CREATED.labels("replayed").inc()
                logger.info(
                    "Returning existing order for idempotency key",
                    extra={"order_id": str(existing.id), "request_id": correlation_id},
                )
                return existing

        # Order and items are flushed together; any failed insert rolls back both.
        try:
            async with transaction(self._sessions) as db:
                order = Order(
                    id=uuid.uuid4(),
                    user_id=requester_id,
                    customer_name=customer.name,
                    customer_phone=customer.phone,
                    customer_email=str(customer.email) if customer.email else None,
                    delivery_address=delivery.address,
                    city=delivery.city,
                    region=delivery.region,
                    status=OrderStatus.PENDING,
                    total=total,
                    idempotency_key=idempotency_key,
                    request_fingerprint=fingerprint,
                    items=[
                        OrderItem(
                            product_id=item.product_id,
                            quantity=item.quantity,
                            unit_price=item.price,
                            position=position,
                        )
                        for position, item in enumerate(items)
                    ],
                )
                db.add(order)
                try:
                    await db.flush()
                except IntegrityError as exc:
                    if idempotency_key is None:
                        raise
                    raise _IdempotencyConflict() from exc
                response = OrderResponse.model_validate(order)
        except _IdempotencyConflict:
            existing = await self._find_by_idempotency_key(requester_id, idempotency_key, fingerprint)
            if existing is None:
                raise StorageError("Order insert conflicted but no matching order was found")
            ORDERS_CREATED.labels("replayed").inc()
            return existing

        ORDERS_CREATED.labels("created").inc()
        logger.info(
            "Order persisted",
            extra={
                "order_id": str(response.id),
                "request_id": correlation_id,
                "amount": float(total),
                "item_count": len(items),
            },
        )

        await publish_quietly(
            self._publisher,
            ORDER_PLACED,
            str(response.id),
            OrderPlacedEvent(
                correlation_id=correlation_id,
                order_id=response.id,
                user_id=requester_id,
                total=total,
                items=[
                    OrderItemEvent(product_id=i.product_id, quantity=i.quantity, unit_price=i.price)
                    for i in items
                ],
            ),
        )
        return response

    async def get_order_by_id(self, order_id: uuid.UUID) -> OrderResponse | None:
        async with read_session(self._sessions) as db:
            order = await db.get(Order, order_id)
            if order is None:
                return None
            return OrderResponse.model_validate(order)

    async def list_orders(self, filters: OrderFilter | None = None) -> list[OrderResponse]:
        filters = filters or OrderFilter()
        query = select(Order)
        if filters.by_user is not None:
            query = query.where(Order.user_id == filters.by_user)
        if filters.by_status is not None:
            query = query.where(Order.status == filters.by_status)
        query = query.order_by(Order.created_at.desc())

        async with read_session(self._sessions) as db:
            result = await db.execute(query)
            return [OrderResponse.model_validate(o) for o in result.scalars().all()]

    async def get_order_items(self, order_id: uuid.UUID) -> list[OrderItemResponse]:
        async with read_session(self._sessions) as db:
            result = await db.execute(
                select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.position)
            )
            return [OrderItemResponse.model_validate(i) for i in result.scalars().all()]

    async def update_order_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        correlation_id: str | None = None,
    ) -> OrderResponse:
        async with transaction(self._sessions) as db:
            order = await db.get(Order, order_id, with_for_update=True)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            previous = apply_order_transition(order, new_status)
            response = OrderResponse.model_validate(order)

        ORDER_TRANSITIONS.labels(previous.value, new_status.value).inc()
        logger.info(
            "Order status updated",
            extra={
                "order_id": str(order_id),
                "request_id": correlation_id,
                "from_status": previous.value,
                "to_status": new_status.value,
            },
        )
        await publish_quietly(
            self._publisher,
            ORDER_STATUS_CHANGED,
            str(order_id),
            OrderStatusChangedEvent(
                correlation_id=correlation_id,
                order_id=order_id,
                previous_status=previous.value,
                status=new_status.value,
            ),
        )
        return response

    async def delete_order(self, order_id: uuid.UUID, correlation_id: str | None = None) -> None:
        # Payments are left in place: they are the financial audit trail.
        async with transaction(self._sessions) as db:
            found = await db.scalar(select(Order.id).where(Order.id == order_id).with_for_update())
            if found is None:
                raise NotFoundError(f"Order {order_id} not found")
            await db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
            await db.execute(delete(Order).where(Order.id == order_id))

        logger.info("Order deleted", extra={"order_id": str(order_id), "request_id": correlation_id})

    async def _find_by_idempotency_key(
        self, requester_id: uuid.UUID, key: str, fingerprint: str | None
    ) -> OrderResponse | None:
        async with read_session(self._sessions) as db:
            order = await db.scalar(
                select(Order).where(Order.user_id == requester_id, Order.idempotency_key == key)
            )
            if order is None:
                return None
            if order.request_fingerprint is not None and order.request_fingerprint != fingerprint:
                raise IdempotencyKeyReusedError(
                    f"Idempotency key '{key}' was already used for a different order request"
                )
            return OrderResponse.model_validate(order)
