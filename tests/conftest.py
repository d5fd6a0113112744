import asyncio
import uuid
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.pool import StaticPool

import marketplace.models  # noqa: F401  registers tables on Base.metadata
from marketplace.config import Settings
from marketplace.context import AppContext
from marketplace.database import Base, build_engine, build_session_factory
from marketplace.errors import GatewayRejectedError
from marketplace.gateway import CircuitBreaker
from marketplace.gateway.base import DirectPaymentResult, GatewayTransaction, HostedPaymentResult
from marketplace.schemas.order import CustomerInfo, DeliveryInfo, OrderItemCreate
from marketplace.services.order_service import OrderService
from marketplace.services.payment_service import PaymentService


class FakeGateway:
    """In-memory stand-in for the mobile-money provider."""

    provider = "fake"

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.delay = 0.0
        self.error: Exception | None = None
        self.transactions: dict[str, GatewayTransaction] = {}
        self._seq = 0

    def calls_to(self, operation: str) -> list[dict]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def set_status(self, transaction_id: str, status: str, **changes) -> None:
        self.transactions[transaction_id] = self.transactions[transaction_id].model_copy(
            update={"status": status, **changes}
        )

    async def _enter(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    def _register(self, amount: Decimal, external_reference: str) -> str:
        self._seq += 1
        transaction_id = f"txn-{self._seq}"
        self.transactions[transaction_id] = GatewayTransaction(
            transaction_id=transaction_id,
            status="CREATED",
            amount=amount,
            external_id=external_reference,
        )
        return transaction_id

    async def initiate_direct(self, amount, payer_phone, external_reference, message, **kwargs):
        await self._enter(
            "initiate_direct",
            amount=amount,
            payer_phone=payer_phone,
            external_reference=external_reference,
            message=message,
            **kwargs,
        )
        transaction_id = self._register(amount, external_reference)
        return DirectPaymentResult(transaction_id=transaction_id, date_initiated="2024-05-01")

    async def initiate_indirect(self, amount, external_reference, redirect_url, message, **kwargs):
        await self._enter(
            "initiate_indirect",
            amount=amount,
            external_reference=external_reference,
            redirect_url=redirect_url,
            **kwargs,
        )
        transaction_id = self._register(amount, external_reference)
        return HostedPaymentResult(
            transaction_id=transaction_id,
            link=f"https://checkout.example/{transaction_id}",
            date_initiated="2024-05-01",
        )

    async def get_status(self, transaction_id):
        await self._enter("get_status", transaction_id=transaction_id)
        if transaction_id not in self.transactions:
            raise GatewayRejectedError("Transaction not found", provider_status=404)
        return self.transactions[transaction_id]

    async def list_transactions(self, user_id):
        await self._enter("list_transactions", user_id=user_id)
        return [t for t in self.transactions.values() if t.user_id == user_id]

    async def aclose(self) -> None:
        pass


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, object]] = []

    async def publish(self, topic, key, event) -> None:
        self.events.append((topic, key, event))

    def topics(self) -> list[str]:
        return [topic for topic, _, _ in self.events]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        gateway_timeout=0.5,
        gateway_max_retries=2,
        gateway_backoff_base=0.0,
        circuit_breaker_failure_threshold=3,
        circuit_breaker_recovery_timeout=60.0,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(
        settings.database_url,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def context(settings, engine, gateway, publisher) -> AppContext:
    return AppContext(
        settings=settings,
        engine=engine,
        sessions=build_session_factory(engine),
        gateway=gateway,
        breaker=CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_timeout,
        ),
        publisher=publisher,
    )


@pytest.fixture
def order_service(context) -> OrderService:
    return OrderService(context)


@pytest.fixture
def payment_service(context) -> PaymentService:
    return PaymentService(context)


@pytest.fixture
async def client(context):
    from marketplace.main import create_app

    app = create_app(context)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


PRODUCT_A = uuid.UUID("0b8d3c8e-7c1e-4a57-9d7f-6a0a4f6d1a01")
PRODUCT_B = uuid.UUID("0b8d3c8e-7c1e-4a57-9d7f-6a0a4f6d1a02")


def customer() -> CustomerInfo:
    return CustomerInfo(name="Ama Nkem", phone="677000111", email="ama.nkem@gmail.com")


def delivery() -> DeliveryInfo:
    return DeliveryInfo(address="12 Rue de la Joie", city="Douala", region="Littoral")


def sample_items() -> list[OrderItemCreate]:
    return [
        OrderItemCreate(product_id=PRODUCT_A, quantity=2, price=Decimal("1500")),
        OrderItemCreate(product_id=PRODUCT_B, quantity=1, price=Decimal("3000")),
    ]


async def place_order(order_service: OrderService, user_id: uuid.UUID | None = None, items=None, **kwargs):
    return await order_service.create_order(
        user_id or uuid.uuid4(),
        customer(),
        delivery(),
        items if items is not None else sample_items(),
        **kwargs,
    )


def identity(user_id: uuid.UUID, role: str = "buyer") -> dict[str, str]:
    return {"X-User-ID": str(user_id), "X-User-Role": role}
