import logging
import uuid

from fastapi import APIRouter, Depends, Header, Response, status

from marketplace.dependencies import get_order_service, get_payment_service, request_id, require
from marketplace.errors import ForbiddenError, NotFoundError
from marketplace.models.order import OrderStatus
from marketplace.policy import Caller, Capability
from marketplace.schemas.order import (
    OrderCreate,
    OrderFilter,
    OrderItemResponse,
    OrderResponse,
    OrderStatusUpdate,
)
from marketplace.schemas.payment import PaymentResponse
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


async def _load_visible_order(orders: OrderService, order_id: uuid.UUID, caller: Caller) -> OrderResponse:
    order = await orders.get_order_by_id(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    caller.ensure_owner(order.user_id)
    return order


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def place_order(
    body: OrderCreate,
    idempotency_key: str | None = Header(default=None),
    caller: Caller = Depends(require(Capability.PLACE_ORDER)),
    orders: OrderService = Depends(get_order_service),
    req_id: str = Depends(request_id),
) -> OrderResponse:
    logger.info(
        "Received place_order request",
        extra={"request_id": req_id, "user_id": str(caller.id), "item_count": len(body.items)},
    )
    return await orders.create_order(
        caller.id,
        body.customer,
        body.delivery,
        body.items,
        idempotency_key=idempotency_key,
        correlation_id=req_id,
    )


@router.get("", response_model=list[OrderResponse])
async def list_orders(
    user_id: uuid.UUID | None = None,
    status: OrderStatus | None = None,
    caller: Caller = Depends(require(Capability.VIEW_ORDERS)),
    orders: OrderService = Depends(get_order_service),
) -> list[OrderResponse]:
    if not caller.can(Capability.VIEW_ALL_ORDERS):
        if user_id is not None and user_id != caller.id:
            raise ForbiddenError("Cannot list another user's orders")
        user_id = caller.id
    return await orders.list_orders(OrderFilter(by_user=user_id, by_status=status))


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(require(Capability.VIEW_ORDERS)),
    orders: OrderService = Depends(get_order_service),
    req_id: str = Depends(request_id),
) -> OrderResponse:
    logger.info(
        "Received get_order request",
        extra={"request_id": req_id, "order_id": str(order_id)},
    )
    return await _load_visible_order(orders, order_id, caller)


@router.put("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    body: OrderStatusUpdate,
    caller: Caller = Depends(require(Capability.MANAGE_ORDERS)),
    orders: OrderService = Depends(get_order_service),
    req_id: str = Depends(request_id),
) -> OrderResponse:
    return await orders.update_order_status(order_id, body.status, correlation_id=req_id)


@router.get("/{order_id}/items", response_model=list[OrderItemResponse])
async def get_order_items(
    order_id: uuid.UUID,
    caller: Caller = Depends(require(Capability.VIEW_ORDERS)),
    orders: OrderService = Depends(get_order_service),
) -> list[OrderItemResponse]:
    await _load_visible_order(orders, order_id, caller)
    return await orders.get_order_items(order_id)


@router.get("/{order_id}/payment", response_model=PaymentResponse)
async def get_order_payment(
    order_id: uuid.UUID,
    caller: Caller = Depends(require(Capability.VIEW_ORDERS)),
    orders: OrderService = Depends(get_order_service),
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentResponse:
    await _load_visible_order(orders, order_id, caller)
    payment = await payments.get_payment_by_order_id(order_id)
    if payment is None:
        raise NotFoundError(f"No payment for order {order_id}")
    return payment


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(require(Capability.DELETE_ORDERS)),
    orders: OrderService = Depends(get_order_service),
    req_id: str = Depends(request_id),
) -> Response:
    await orders.delete_order(order_id, correlation_id=req_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
