import logging
import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, status

from marketplace.dependencies import get_order_service, get_payment_service, request_id, require
from marketplace.gateway.base import GatewayTransaction
from marketplace.policy import Caller, Capability
from marketplace.schemas.payment import (
    DirectPaymentCreate,
    HostedPaymentCreate,
    HostedPaymentResponse,
    PaymentResponse,
    PaymentStatusUpdate,
)
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


async def _ensure_payable_by(orders: OrderService, order_id: uuid.UUID, caller: Caller) -> None:
    # A missing order is reported by the payment service itself.
    order = await orders.get_order_by_id(order_id)
    if order is not None:
        caller.ensure_owner(order.user_id)


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    body: DirectPaymentCreate,
    caller: Caller = Depends(require(Capability.PAY)),
    orders: OrderService = Depends(get_order_service),
    payments: PaymentService = Depends(get_payment_service),
    req_id: str = Depends(request_id),
) -> PaymentResponse:
    logger.info(
        "Received create_payment request",
        extra={"request_id": req_id, "order_id": str(body.order_id), "user_id": str(caller.id)},
    )
    await _ensure_payable_by(orders, body.order_id, caller)
    return await payments.create_payment(
        body.order_id, body.payer(), requester_id=caller.id, correlation_id=req_id
    )


@router.post("/indirect", response_model=HostedPaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_hosted_payment(
    body: HostedPaymentCreate,
    caller: Caller = Depends(require(Capability.PAY)),
    orders: OrderService = Depends(get_order_service),
    payments: PaymentService = Depends(get_payment_service),
    req_id: str = Depends(request_id),
) -> HostedPaymentResponse:
    logger.info(
        "Received create_hosted_payment request",
        extra={"request_id": req_id, "order_id": str(body.order_id), "user_id": str(caller.id)},
    )
    await _ensure_payable_by(orders, body.order_id, caller)
    return await payments.create_hosted_payment(
        body.order_id,
        body.payer(),
        body.redirect_url,
        requester_id=caller.id,
        correlation_id=req_id,
    )


@router.get("", response_model=list[GatewayTransaction])
async def list_my_transactions(
    caller: Caller = Depends(require(Capability.PAY)),
    payments: PaymentService = Depends(get_payment_service),
) -> list[GatewayTransaction]:
    return await payments.list_transactions(caller.id)


@router.post("/webhook", status_code=status.HTTP_202_ACCEPTED)
async def gateway_webhook(
    payload: dict[str, Any] = Body(...),
    payments: PaymentService = Depends(get_payment_service),
    req_id: str = Depends(request_id),
) -> dict[str, Any]:
    payment = await payments.handle_notification(payload, correlation_id=req_id)
    return {
        "status": "accepted",
        "payment": payment.model_dump(mode="json") if payment else None,
    }


@router.get("/{transaction_id}", response_model=GatewayTransaction)
async def get_transaction_status(
    transaction_id: str,
    caller: Caller = Depends(require(Capability.INSPECT_TRANSACTIONS)),
    payments: PaymentService = Depends(get_payment_service),
) -> GatewayTransaction:
    return await payments.get_transaction_status(transaction_id)


@router.post("/{transaction_id}/reconcile", response_model=PaymentResponse)
async def reconcile_transaction(
    transaction_id: str,
    caller: Caller = Depends(require(Capability.INSPECT_TRANSACTIONS)),
    payments: PaymentService = Depends(get_payment_service),
    req_id: str = Depends(request_id),
) -> PaymentResponse:
    return await payments.reconcile(transaction_id, correlation_id=req_id)


@router.put("/{payment_id}/status", response_model=PaymentResponse)
async def update_payment_status(
    payment_id: uuid.UUID,
    body: PaymentStatusUpdate,
    caller: Caller = Depends(require(Capability.INSPECT_TRANSACTIONS)),
    payments: PaymentService = Depends(get_payment_service),
    req_id: str = Depends(request_id),
) -> PaymentResponse:
    return await payments.update_payment_status(payment_id, body.status, correlation_id=req_id)
