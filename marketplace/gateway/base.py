from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from marketplace.models.payment import PaymentStatus

# Provider transaction states, as reported by the status endpoint and webhooks.
GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "CREATED": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
    "SUCCESSFUL": PaymentStatus.SUCCESS,
    "FAILED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
}


def map_gateway_status(raw: str) -> PaymentStatus:
    # Unknown states are treated as unconfirmed, never as success.
    return GATEWAY_STATUS_MAP.get(raw.upper(), PaymentStatus.PENDING)


class _GatewayModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DirectPaymentResult(_GatewayModel):
    transaction_id: str = Field(alias="transId")
    message: str | None = None
    date_initiated: str | None = Field(default=None, alias="dateInitiated")


class HostedPaymentResult(_GatewayModel):
    transaction_id: str = Field(alias="transId")
    link: str
    message: str | None = None
    date_initiated: str | None = Field(default=None, alias="dateInitiated")


class GatewayTransaction(_GatewayModel):
    transaction_id: str = Field(alias="transId")
    status: str
    amount: Decimal | None = None
    medium: str | None = None
    payer_name: str | None = Field(default=None, alias="payerName")
    email: str | None = None
    external_id: str | None = Field(default=None, alias="externalId")
    user_id: str | None = Field(default=None, alias="userId")
    financial_transaction_id: str | None = Field(default=None, alias="financialTransId")
    date_initiated: str | None = Field(default=None, alias="dateInitiated")
    date_confirmed: str | None = Field(default=None, alias="dateConfirmed")

    @property
    def payment_status(self) -> PaymentStatus:
        return map_gateway_status(self.status)


class PaymentGateway(Protocol):
    """Capabilities the payment service needs from a mobile-money provider.

    Implementations raise GatewayError subclasses for timeouts, network
    failures and non-2xx answers; they never report those as success.
    """

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
    ) -> DirectPaymentResult: ...

    async def initiate_indirect(
        self,
        amount: Decimal,
        external_reference: str,
        redirect_url: str,
        message: str,
        *,
        payer_email: str | None = None,
        user_id: str | None = None,
    ) -> HostedPaymentResult: ...

    async def get_status(self, transaction_id: str) -> GatewayTransaction: ...

    async def list_transactions(self, user_id: str) -> list[GatewayTransaction]: ...

    async def aclose(self) -> None: ...
