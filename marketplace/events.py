"""
Domain events published after a transaction commits.

All events extend EventBase which carries correlation metadata. Publishing is
best-effort: the database is the source of truth, a lost event never rolls
back a committed order or payment.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ORDER_PLACED = "order.placed"
ORDER_STATUS_CHANGED = "order.status_changed"
PAYMENT_STATUS_CHANGED = "payment.status_changed"


class EventBase(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_version: int = 1
    correlation_id: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}


class OrderItemEvent(BaseModel):
    product_id: uuid.UUID
    quantity: int
    unit_price: Decimal


class OrderPlacedEvent(EventBase):
    order_id: uuid.UUID
    user_id: uuid.UUID
    total: Decimal
    items: list[OrderItemEvent]


class OrderStatusChangedEvent(EventBase):
    order_id: uuid.UUID
    previous_status: str
    status: str


class PaymentStatusChangedEvent(EventBase):
    payment_id: uuid.UUID
    order_id: uuid.UUID
    transaction_id: str
    previous_status: str
    status: str
    order_status: str | None = None


class EventPublisher(Protocol):
    async def publish(self, topic: str, key: str, event: EventBase) -> None: ...


class KafkaEventPublisher:
    def __init__(self, producer: AIOKafkaProducer) -> None:
        self._producer = producer

    @classmethod
    def from_servers(cls, bootstrap_servers: str) -> "KafkaEventPublisher":
        return cls(AIOKafkaProducer(bootstrap_servers=bootstrap_servers, enable_idempotence=True))

    async def start(self) -> None:
        await self._producer.start()

    async def stop(self) -> None:
        await self._producer.stop()

    async def publish(self, topic: str, key: str, event: EventBase) -> None:
        await self._producer.send_and_wait(
            topic,
            key=key.encode(),
            value=event.model_dump_json().encode(),
        )


async def publish_quietly(publisher: EventPublisher | None, topic: str, key: str, event: EventBase) -> None:
    if publisher is None:
        return
    try:
        await publisher.publish(topic, key, event)
    except Exception:
        logger.exception(
            "Failed to publish event",
            extra={"topic": topic, "key": key, "event_id": str(event.event_id)},
        )
        return
    logger.info("Published event", extra={"topic": topic, "key": key})
