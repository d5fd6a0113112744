import uuid
from collections.abc import Callable, Coroutine
from typing import Any

from fastapi import Depends, Header, Request

from marketplace.context import AppContext
from marketplace.errors import AuthorizationError
from marketplace.policy import Caller, Capability, Role
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_order_service(context: AppContext = Depends(get_context)) -> OrderService:
    return OrderService(context)


def get_payment_service(context: AppContext = Depends(get_context)) -> PaymentService:
    return PaymentService(context)


def request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    if not x_user_id or not x_user_role:
        raise AuthorizationError("Missing caller identity")
    try:
        return Caller(id=uuid.UUID(x_user_id), role=Role(x_user_role.lower()))
    except ValueError as exc:
        raise AuthorizationError("Malformed caller identity") from exc


def require(capability: Capability) -> Callable[..., Coroutine[Any, Any, Caller]]:
    async def dependency(caller: Caller = Depends(get_caller)) -> Caller:
        caller.require(capability)
        return caller

    return dependency
