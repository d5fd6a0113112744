"""
Payment initiation and reconciliation against the mobile-money gateway.

Guarantees:
  - No database transaction is held open across a gateway round-trip:
    precheck (read) -> gateway call -> record (short write transaction).
  - A gateway failure or timeout never creates a Payment row; the order stays
    pending and the caller may retry.
  - At most one pending-or-successful payment per order (check-then-insert
    under a transaction, backed by a partial unique index).
  - A payment moving to success advances its order pending -> processing in
    the same transaction.
  - Reconciliation is idempotent: duplicate or late gateway reports for a
    payment already in a terminal state change nothing.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.context import AppContext
from marketplace.database import read_session, transaction
from marketplace.errors import (
    CircuitBreakerOpenError,
    DuplicatePaymentError,
    GatewayError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    MarketplaceError,
    NotFoundError,
    ValidationError,
)
from marketplace.events import (
    ORDER_STATUS_CHANGED,
    PAYMENT_STATUS_CHANGED,
    OrderStatusChangedEvent,
    PaymentStatusChangedEvent,
    publish_quietly,
)
from marketplace.gateway.base import GatewayTransaction
from marketplace.metrics import ORDER_TRANSITIONS, PAYMENT_OUTCOMES
from marketplace.models.order import Order, OrderStatus, utcnow
from marketplace.models.payment import ACTIVE_PAYMENT_STATUSES, Payment, PaymentStatus
from marketplace.schemas.payment import HostedPaymentResponse, PayerInfo, PaymentResponse
from marketplace.services.order_service import apply_order_transition

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


async def _active_payment(db: AsyncSession, order_id: uuid.UUID) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(Payment.order_id == order_id, Payment.status.in_(ACTIVE_PAYMENT_STATUSES))
        .limit(1)
    )
    return result.scalars().first()


def _merge_details(payment: Payment, details: dict[str, Any]) -> None:
    # Reassign so the JSON column is flagged dirty.
    payment.details = {**(payment.details or {}), **details}


class PaymentService:
    def __init__(self, context: AppContext) -> None:
        self._settings = context.settings
        self._sessions = context.sessions
        self._gateway = context.gateway
        self._breaker = context.breaker
        self._publisher = context.publisher

    # -----------------------------------------------------------------------
    # Initiation
    # -----------------------------------------------------------------------

    async def create_payment(
        self,
        order_id: uuid.UUID,
        payer: PayerInfo,
        requester_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> PaymentResponse:
        """Direct mode: push a collection request to the payer's phone."""
        order = await self._check_payable(order_id)
        result = await self._call_gateway(
            "initiate_direct",
            lambda: self._gateway.initiate_direct(
                order.total,
                payer.phone,
                str(order.id),
                f"Payment for order {order.id}",
                payer_name=payer.name,
                payer_email=str(payer.email) if payer.email else None,
                medium=payer.medium,
                user_id=str(requester_id) if requester_id else None,
            ),
        )
        details = {
            "mode": "direct",
            "payer_name": payer.name,
            "payer_phone": payer.phone,
            "medium": payer.medium,
            "date_initiated": result.date_initiated,
        }
        return await self._record_payment(order, result.transaction_id, details, correlation_id)

    async def create_hosted_payment(
        self,
        order_id: uuid.UUID,
        payer: PayerInfo,
        redirect_url: str,
        requester_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> HostedPaymentResponse:
        """Indirect mode: the payer completes the payment on the provider's hosted page."""
        order = await self._check_payable(order_id)
        result = await self._call_gateway(
            "initiate_indirect",
            lambda: self._gateway.initiate_indirect(
                order.total,
                str(order.id),
                redirect_url,
                f"Payment for order {order.id}",
                payer_email=str(payer.email) if payer.email else None,
                user_id=str(requester_id) if requester_id else None,
            ),
        )
        details = {
            "mode": "indirect",
            "payer_name": payer.name,
            "payer_phone": payer.phone,
            "redirect_url": redirect_url,
            "payment_link": result.link,
            "date_initiated": result.date_initiated,
        }
        payment = await self._record_payment(order, result.transaction_id, details, correlation_id)
        return HostedPaymentResponse(payment=payment, payment_url=result.link)

    async def _check_payable(self, order_id: uuid.UUID) -> Order:
        async with read_session(self._sessions) as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            if order.status is not OrderStatus.PENDING:
                raise ValidationError(f"Order {order_id} is '{order.status.value}' and cannot be paid")
            if await _active_payment(db, order_id) is not None:
                raise DuplicatePaymentError(f"Order {order_id} already has an active or completed payment")
            return order

    async def _record_payment(
        self,
        order: Order,
        transaction_id: str,
        details: dict[str, Any],
        correlation_id: str | None,
    ) -> PaymentResponse:
        try:
            async with transaction(self._sessions) as db:
                current = await db.get(Order, order.id, with_for_update=True)
                if current is None:
                    raise NotFoundError(f"Order {order.id} was deleted during payment initiation")
                if current.status is not OrderStatus.PENDING:
                    raise ValidationError(f"Order {order.id} is '{current.status.value}' and cannot be paid")
                if await _active_payment(db, order.id) is not None:
                    raise DuplicatePaymentError(f"Order {order.id} already has an active or completed payment")

                payment = Payment(
                    order_id=order.id,
                    amount=current.total,
                    status=PaymentStatus.PENDING,
                    payment_method="mobile_money",
                    provider=getattr(self._gateway, "provider", "unknown"),
                    transaction_id=transaction_id,
                    details=details,
                )
                db.add(payment)
                try:
                    await db.flush()
                except IntegrityError as exc:
                    raise DuplicatePaymentError(
                        f"Order {order.id} already has an active or completed payment"
                    ) from exc
                response = PaymentResponse.model_validate(payment)
        except MarketplaceError as exc:
            # The provider already holds this transaction; keep its id in the logs
            # so it can be matched by hand.
            logger.error(
                "Gateway transaction initiated but not recorded",
                extra={
                    "order_id": str(order.id),
                    "transaction_id": transaction_id,
                    "request_id": correlation_id,
                    "error": exc.message,
                },
            )
            raise

        PAYMENT_OUTCOMES.labels("initiated").inc()
        logger.info(
            "Payment initiated",
            extra={
                "order_id": str(order.id),
                "payment_id": str(response.id),
                "transaction_id": transaction_id,
                "request_id": correlation_id,
                "amount": float(response.amount),
                "mode": details.get("mode"),
            },
        )
        return response

    # -----------------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------------

    async def get_payment_by_id(self, payment_id: uuid.UUID) -> PaymentResponse:
        async with read_session(self._sessions) as db:
            payment = await db.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            return PaymentResponse.model_validate(payment)

    async def get_payment_by_order_id(self, order_id: uuid.UUID) -> PaymentResponse | None:
        """Latest payment attempt for an order."""
        async with read_session(self._sessions) as db:
            payment = await db.scalar(
                select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc()).limit(1)
            )
            return PaymentResponse.model_validate(payment) if payment else None

    async def get_payment_by_transaction_id(self, transaction_id: str) -> PaymentResponse | None:
        async with read_session(self._sessions) as db:
            payment = await db.scalar(select(Payment).where(Payment.transaction_id == transaction_id))
            return PaymentResponse.model_validate(payment) if payment else None

    async def get_transaction_status(self, transaction_id: str) -> GatewayTransaction:
        """Live provider view of a transaction; needs no local Payment row."""
        return await self._query_gateway("get_status", lambda: self._gateway.get_status(transaction_id))

    async def list_transactions(self, user_id: uuid.UUID) -> list[GatewayTransaction]:
        return await self._query_gateway(
            "list_transactions", lambda: self._gateway.list_transactions(str(user_id))
        )

    # -----------------------------------------------------------------------
    # State changes
    # -----------------------------------------------------------------------

    async def update_payment_status(
        self,
        payment_id: uuid.UUID,
        new_status: PaymentStatus,
        details: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> PaymentResponse:
        order_change: tuple[OrderStatus, OrderStatus] | None = None

        async with transaction(self._sessions) as db:
            payment = await db.get(Payment, payment_id, with_for_update=True)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")

            previous = payment.status
            if previous is new_status:
                if details:
                    _merge_details(payment, details)
                    payment.updated_at = utcnow()
                return PaymentResponse.model_validate(payment)

            payment.status = previous.transition_to(new_status)
            payment.updated_at = utcnow()
            if details:
                _merge_details(payment, details)

            if new_status is PaymentStatus.SUCCESS:
                order = await db.get(Order, payment.order_id, with_for_update=True)
                if order is None:
                    logger.warning(
                        "Payment succeeded for an order that no longer exists",
                        extra={"payment_id": str(payment_id), "order_id": str(payment.order_id)},
                    )
                elif order.status is OrderStatus.PENDING:
                    order_change = (apply_order_transition(order, OrderStatus.PROCESSING), order.status)
                else:
                    logger.warning(
                        "Payment succeeded for order in status '%s'; order left unchanged",
                        order.status.value,
                        extra={"payment_id": str(payment_id), "order_id": str(order.id)},
                    )

            response = PaymentResponse.model_validate(payment)

        PAYMENT_OUTCOMES.labels(new_status.value).inc()
        logger.info(
            "Payment status updated",
            extra={
                "payment_id": str(payment_id),
                "order_id": str(response.order_id),
                "transaction_id": response.transaction_id,
                "request_id": correlation_id,
                "from_status": previous.value,
                "to_status": new_status.value,
            },
        )

        await publish_quietly(
            self._publisher,
            PAYMENT_STATUS_CHANGED,
            str(response.order_id),
            PaymentStatusChangedEvent(
                correlation_id=correlation_id,
                payment_id=response.id,
                order_id=response.order_id,
                transaction_id=response.transaction_id,
                previous_status=previous.value,
                status=new_status.value,
                order_status=order_change[1].value if order_change else None,
            ),
        )
        if order_change:
            ORDER_TRANSITIONS.labels(order_change[0].value, order_change[1].value).inc()
            await publish_quietly(
                self._publisher,
                ORDER_STATUS_CHANGED,
                str(response.order_id),
                OrderStatusChangedEvent(
                    correlation_id=correlation_id,
                    order_id=response.order_id,
                    previous_status=order_change[0].value,
                    status=order_change[1].value,
                ),
            )
        return response

    async def update_payment_details(self, payment_id: uuid.UUID, details: dict[str, Any]) -> PaymentResponse:
        async with transaction(self._sessions) as db:
            payment = await db.get(Payment, payment_id, with_for_update=True)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            _merge_details(payment, details)
            payment.updated_at = utcnow()
            return PaymentResponse.model_validate(payment)

    # -----------------------------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------------------------

    async def reconcile(self, transaction_id: str, correlation_id: str | None = None) -> PaymentResponse:
        """Pull the provider's status for a transaction and apply it locally.

        Gateway failures propagate and leave the local payment untouched.
        """
        payment = await self.get_payment_by_transaction_id(transaction_id)
        if payment is None:
            raise NotFoundError(f"No payment recorded for transaction {transaction_id}")

        txn = await self.get_transaction_status(transaction_id)
        if txn.external_id and txn.external_id != str(payment.order_id):
            raise ValidationError(
                f"Transaction {transaction_id} references order {txn.external_id}, "
                f"expected {payment.order_id}"
            )

        target = txn.payment_status
        if target is PaymentStatus.PENDING:
            logger.info(
                "Transaction still unconfirmed",
                extra={"transaction_id": transaction_id, "gateway_status": txn.status},
            )
            return payment

        if payment.status.is_terminal:
            if payment.status is not target:
                logger.warning(
                    "Ignoring conflicting gateway status for settled payment",
                    extra={
                        "transaction_id": transaction_id,
                        "local_status": payment.status.value,
                        "gateway_status": txn.status,
                    },
                )
            return payment

        return await self.update_payment_status(
            payment.id,
            target,
            details={
                "gateway_status": txn.status,
                "medium": txn.medium,
                "financial_transaction_id": txn.financial_transaction_id,
                "date_confirmed": txn.date_confirmed,
            },
            correlation_id=correlation_id,
        )

    async def handle_notification(
        self, payload: dict[str, Any], correlation_id: str | None = None
    ) -> PaymentResponse | None:
        """Webhook entry point. The payload is only a hint: status is re-read from the provider."""
        try:
            notice = GatewayTransaction.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"Malformed gateway notification: {exc.error_count()} error(s)") from exc

        if await self.get_payment_by_transaction_id(notice.transaction_id) is None:
            logger.warning(
                "Notification for unknown transaction ignored",
                extra={
                    "transaction_id": notice.transaction_id,
                    "external_id": notice.external_id,
                    "request_id": correlation_id,
                },
            )
            return None
        return await self.reconcile(notice.transaction_id, correlation_id=correlation_id)

    async def reconcile_pending(self, limit: int | None = None) -> int:
        """Reconcile the oldest pending payments; return how many reached a terminal status."""
        async with read_session(self._sessions) as db:
            query = (
                select(Payment.transaction_id)
                .where(Payment.status == PaymentStatus.PENDING)
                .order_by(Payment.created_at)
            )
            if limit:
                query = query.limit(limit)
            transaction_ids = list((await db.execute(query)).scalars().all())

        settled = 0
        for transaction_id in transaction_ids:
            try:
                payment = await self.reconcile(transaction_id)
            except CircuitBreakerOpenError:
                logger.warning("Circuit open, stopping reconciliation sweep")
                break
            except MarketplaceError as exc:
                logger.warning(
                    "Reconciliation failed",
                    extra={"transaction_id": transaction_id, "error": exc.message, "kind": exc.kind},
                )
                continue
            if payment.status.is_terminal:
                settled += 1

        if transaction_ids:
            logger.info(
                "Reconciliation sweep finished",
                extra={"checked": len(transaction_ids), "settled": settled},
            )
        return settled

    # -----------------------------------------------------------------------
    # Gateway plumbing
    # -----------------------------------------------------------------------

    async def _call_gateway(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        if not self._breaker.allow_request():
            PAYMENT_OUTCOMES.labels("circuit_open").inc()
            logger.warning(
                "Circuit breaker OPEN, rejecting without calling gateway",
                extra={"operation": operation},
            )
            raise CircuitBreakerOpenError("Payment provider temporarily unavailable")

        with tracer.start_as_current_span(f"gateway.{operation}"):
            try:
                result = await asyncio.wait_for(call(), timeout=self._settings.gateway_timeout)
            except asyncio.TimeoutError as exc:
                self._breaker.record_failure()
                PAYMENT_OUTCOMES.labels("timeout").inc()
                raise GatewayTimeoutError(
                    f"Payment provider did not respond within {self._settings.gateway_timeout}s"
                ) from exc
            except GatewayTimeoutError:
                self._breaker.record_failure()
                PAYMENT_OUTCOMES.labels("timeout").inc()
                raise
            except GatewayUnavailableError:
                self._breaker.record_failure()
                PAYMENT_OUTCOMES.labels("unavailable").inc()
                raise
            except GatewayRejectedError:
                self._breaker.record_success()
                PAYMENT_OUTCOMES.labels("rejected").inc()
                raise

        self._breaker.record_success()
        return result

    async def _query_gateway(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Read-only gateway calls are safe to repeat: retry transient failures with backoff."""
        max_attempts = max(1, self._settings.gateway_max_retries)
        for attempt in range(1, max_attempts + 1):
            try:
                return await self._call_gateway(operation, call)
            except (GatewayTimeoutError, GatewayUnavailableError) as exc:
                if attempt == max_attempts:
                    logger.error(
                        "Gateway %s failed after %d attempt(s)",
                        operation,
                        attempt,
                        extra={"operation": operation, "error": exc.message},
                    )
                    raise
                backoff_seconds = self._settings.gateway_backoff_base * 2 ** (attempt - 1)
                logger.info(
                    "Retrying gateway %s in %.2fs",
                    operation,
                    backoff_seconds,
                    extra={"operation": operation, "attempt": attempt, "backoff_s": backoff_seconds},
                )
                await asyncio.sleep(backoff_seconds)
        raise GatewayError(f"Gateway {operation} was not attempted")


async def run_reconciler(context: AppContext) -> None:
    """Background loop: periodically settle pending payments. Runs until cancelled."""
    interval = context.settings.reconcile_interval
    logger.info("Payment reconciler started", extra={"interval_s": interval})
    service = PaymentService(context)
    while True:
        await asyncio.sleep(interval)
        try:
            await service.reconcile_pending(context.settings.reconcile_batch_size)
        except MarketplaceError as exc:
            logger.error("Reconciliation sweep aborted", extra={"error": exc.message, "kind": exc.kind})
