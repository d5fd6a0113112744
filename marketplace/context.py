from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from marketplace.config import Settings
from marketplace.database import build_engine, build_session_factory
from marketplace.events import EventPublisher, KafkaEventPublisher
from marketplace.gateway import CircuitBreaker, FapshiGateway, PaymentGateway


@dataclass
class AppContext:
    """Everything a service needs, handed to its constructor explicitly."""

    settings: Settings
    engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    gateway: PaymentGateway
    breaker: CircuitBreaker
    publisher: EventPublisher | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppContext":
        engine = build_engine(settings.database_url)
        publisher = None
        if settings.kafka_bootstrap_servers:
            publisher = KafkaEventPublisher.from_servers(settings.kafka_bootstrap_servers)
        return cls(
            settings=settings,
            engine=engine,
            sessions=build_session_factory(engine),
            gateway=FapshiGateway(
                base_url=settings.gateway_base_url,
                api_user=settings.fapshi_api_user,
                api_key=settings.fapshi_api_key,
                timeout=settings.gateway_timeout,
            ),
            breaker=CircuitBreaker(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                recovery_timeout=settings.circuit_breaker_recovery_timeout,
            ),
            publisher=publisher,
        )

    async def aclose(self) -> None:
        if isinstance(self.publisher, KafkaEventPublisher):
            await self.publisher.stop()
        await self.gateway.aclose()
        await self.engine.dispose()
