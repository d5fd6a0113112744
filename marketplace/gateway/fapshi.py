"""
HTTP adapter for the Fapshi mobile-money API.

  - Direct payments push a collection request to the payer's phone.
  - Indirect payments return a hosted checkout link for the payer.
  - Status checks and per-user transaction listings are plain GETs.

Every transport or protocol failure becomes a GatewayError subclass so the
payment service can tell "provider said no" from "provider never answered".
"""

import logging
import time
from decimal import Decimal
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from marketplace.errors import (
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    ValidationError,
)
from marketplace.gateway.base import DirectPaymentResult, GatewayTransaction, HostedPaymentResult
from marketplace.metrics import GATEWAY_LATENCY

logger = logging.getLogger(__name__)


def to_provider_amount(amount: Decimal) -> int:
    """Fapshi settles in whole XAF; refuse amounts it cannot represent."""
    if amount != amount.to_integral_value():
        raise ValidationError(f"Amount {amount} has a fractional part; the provider accepts whole units only")
    return int(amount)


class FapshiGateway:
    provider = "fapshi"

    def __init__(
        self,
        base_url: str,
        api_user: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"apiuser": api_user, "apikey": api_key},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # -----------------------------------------------------------------------
    # Payment initiation
    # -----------------------------------------------------------------------

    async def initiate_direct(
        self,
        amount: Decimal,
        payer_phone: str,
        external_reference: str,
        message: str,
        *,
        payer_name: str | None = None,
        payer_email: str | None = None,
        medium: str | None = None,
        user_id: str | None = None,
    ) -> DirectPaymentResult:
        payload = _compact(
            {
                "amount": to_provider_amount(amount),
                "phone": payer_phone,
                "medium": medium,
                "name": payer_name,
                "email": payer_email,
                "userId": user_id,
                "externalId": external_reference,
                "message": message,
            }
        )
        data = await self._request("POST", "/direct-pay", "initiate_direct", json=payload)
        return _parse(DirectPaymentResult, data, "initiate_direct")

    async def initiate_indirect(
        self,
        amount: Decimal,
        external_reference: str,
        redirect_url: str,
        message: str,
        *,
        payer_email: str | None = None,
        user_id: str | None = None,
    ) -> HostedPaymentResult:
        payload = _compact(
            {
                "amount": to_provider_amount(amount),
                "email": payer_email,
                "redirectUrl": redirect_url,
                "userId": user_id,
                "externalId": external_reference,
                "message": message,
            }
        )
        data = await self._request("POST", "/initiate-pay", "initiate_indirect", json=payload)
        return _parse(HostedPaymentResult, data, "initiate_indirect")

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def get_status(self, transaction_id: str) -> GatewayTransaction:
        data = await self._request("GET", f"/payment-status/{transaction_id}", "get_status")
        return _parse(GatewayTransaction, data, "get_status")

    async def list_transactions(self, user_id: str) -> list[GatewayTransaction]:
        data = await self._request("GET", f"/transaction/{user_id}", "list_transactions")
        if data is None:
            return []
        if not isinstance(data, list):
            raise GatewayRejectedError("Payment provider returned an unexpected body for list_transactions")
        return [_parse(GatewayTransaction, item, "list_transactions") for item in data]

    # -----------------------------------------------------------------------
    # Transport
    # -----------------------------------------------------------------------

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> Any:
        start = time.perf_counter()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway timed out", extra={"operation": operation, "path": path})
            raise GatewayTimeoutError(f"Payment provider did not respond in time ({operation})") from exc
        except httpx.RequestError as exc:
            logger.warning(
                "Gateway unreachable",
                extra={"operation": operation, "path": path, "error": str(exc)},
            )
            raise GatewayUnavailableError(f"Payment provider unreachable ({operation})") from exc
        finally:
            GATEWAY_LATENCY.labels(operation).observe(time.perf_counter() - start)

        if response.is_error:
            message = _provider_message(response)
            logger.warning(
                "Gateway rejected request",
                extra={"operation": operation, "status_code": response.status_code, "error": message},
            )
            raise GatewayRejectedError(
                f"Payment provider rejected {operation}: {message}",
                provider_status=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayRejectedError(
                f"Payment provider returned a non-JSON body for {operation}",
                provider_status=response.status_code,
            ) from exc


ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(model: type[ModelT], data: Any, operation: str) -> ModelT:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise GatewayRejectedError(f"Payment provider returned an unexpected body for {operation}") from exc


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


def _provider_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase
