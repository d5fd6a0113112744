import uuid
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from marketplace.errors import (
    CircuitBreakerOpenError,
    DuplicatePaymentError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from marketplace.events import ORDER_STATUS_CHANGED, PAYMENT_STATUS_CHANGED
from marketplace.gateway import GatewayTransaction
from marketplace.models import Payment
from marketplace.models.order import OrderStatus
from marketplace.models.payment import PaymentStatus
from marketplace.schemas.payment import PayerInfo

from .conftest import place_order

PAYER = PayerInfo(name="Ama Nkem", phone="677000111", medium="mobile money")


async def _paid_order(order_service, payment_service):
    order = await place_order(order_service)
    payment = await payment_service.create_payment(order.id, PAYER)
    return order, payment


async def test_create_payment_records_pending_payment(order_service, payment_service, gateway):
    order = await place_order(order_service)
    requester = uuid.uuid4()

    payment = await payment_service.create_payment(order.id, PAYER, requester_id=requester)

    assert payment.status is PaymentStatus.PENDING
    assert payment.amount == Decimal("6000")
    assert payment.order_id == order.id
    assert payment.transaction_id == "txn-1"
    assert payment.provider == "fake"
    assert payment.details["mode"] == "direct"

    (call,) = gateway.calls_to("initiate_direct")
    assert call["amount"] == Decimal("6000")
    assert call["payer_phone"] == "677000111"
    assert call["external_reference"] == str(order.id)
    assert call["user_id"] == str(requester)

    # Payment creation never moves the order.
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.PENDING


async def test_missing_order_never_reaches_gateway(payment_service, gateway):
    with pytest.raises(NotFoundError):
        await payment_service.create_payment(uuid.uuid4(), PAYER)

    assert gateway.calls == []


async def test_non_pending_order_cannot_be_paid(order_service, payment_service, gateway):
    order = await place_order(order_service)
    await order_service.update_order_status(order.id, OrderStatus.CANCELLED)

    with pytest.raises(ValidationError):
        await payment_service.create_payment(order.id, PAYER)

    assert gateway.calls == []


async def test_second_payment_for_same_order_is_rejected(order_service, payment_service, gateway):
    order, _ = await _paid_order(order_service, payment_service)

    with pytest.raises(DuplicatePaymentError):
        await payment_service.create_payment(order.id, PAYER)

    assert len(gateway.calls_to("initiate_direct")) == 1


async def test_gateway_timeout_leaves_no_payment_and_allows_retry(order_service, payment_service, gateway):
    order = await place_order(order_service)
    gateway.delay = 1.0

    with pytest.raises(GatewayTimeoutError):
        await payment_service.create_payment(order.id, PAYER)

    assert await payment_service.get_payment_by_order_id(order.id) is None
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.PENDING

    gateway.delay = 0.0
    payment = await payment_service.create_payment(order.id, PAYER)
    assert payment.status is PaymentStatus.PENDING


async def test_gateway_rejection_leaves_no_payment(order_service, payment_service, gateway):
    order = await place_order(order_service)
    gateway.error = GatewayRejectedError("Invalid phone number", provider_status=400)

    with pytest.raises(GatewayRejectedError):
        await payment_service.create_payment(order.id, PAYER)

    assert await payment_service.get_payment_by_order_id(order.id) is None


async def test_hosted_payment_returns_checkout_link(order_service, payment_service, gateway):
    order = await place_order(order_service)

    hosted = await payment_service.create_hosted_payment(
        order.id, PAYER, "https://shop.example/thanks"
    )

    assert hosted.payment_url == "https://checkout.example/txn-1"
    assert hosted.payment.status is PaymentStatus.PENDING
    assert hosted.payment.details["mode"] == "indirect"
    (call,) = gateway.calls_to("initiate_indirect")
    assert call["redirect_url"] == "https://shop.example/thanks"


async def test_active_payment_index_blocks_concurrent_inserts(order_service, context):
    order = await place_order(order_service)

    with pytest.raises(IntegrityError):
        async with context.sessions() as db:
            async with db.begin():
                for transaction_id in ("race-1", "race-2"):
                    db.add(
                        Payment(
                            order_id=order.id,
                            amount=order.total,
                            status=PaymentStatus.PENDING,
                            transaction_id=transaction_id,
                        )
                    )
                    await db.flush()


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def test_successful_payment_advances_order(order_service, payment_service, gateway, publisher):
    order, payment = await _paid_order(order_service, payment_service)
    gateway.set_status(payment.transaction_id, "SUCCESSFUL", financial_transaction_id="FT-9")

    settled = await payment_service.reconcile(payment.transaction_id)

    assert settled.status is PaymentStatus.SUCCESS
    assert settled.details["gateway_status"] == "SUCCESSFUL"
    assert settled.details["financial_transaction_id"] == "FT-9"
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.PROCESSING
    assert publisher.topics()[-2:] == [PAYMENT_STATUS_CHANGED, ORDER_STATUS_CHANGED]


async def test_failed_payment_keeps_order_pending_and_payable(order_service, payment_service, gateway):
    order, payment = await _paid_order(order_service, payment_service)
    gateway.set_status(payment.transaction_id, "EXPIRED")

    settled = await payment_service.reconcile(payment.transaction_id)

    assert settled.status is PaymentStatus.FAILED
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.PENDING

    retry = await payment_service.create_payment(order.id, PAYER)
    assert retry.transaction_id == "txn-2"
    latest = await payment_service.get_payment_by_order_id(order.id)
    assert latest.id == retry.id


async def test_unconfirmed_transaction_changes_nothing(order_service, payment_service, gateway):
    _, payment = await _paid_order(order_service, payment_service)

    result = await payment_service.reconcile(payment.transaction_id)

    assert result.status is PaymentStatus.PENDING


async def test_duplicate_notifications_apply_once(order_service, payment_service, gateway, publisher):
    order, payment = await _paid_order(order_service, payment_service)
    gateway.set_status(payment.transaction_id, "SUCCESSFUL")
    notice = {"transId": payment.transaction_id, "status": "SUCCESSFUL", "externalId": str(order.id)}

    first = await payment_service.handle_notification(notice)
    second = await payment_service.handle_notification(notice)

    assert first.status is second.status is PaymentStatus.SUCCESS
    assert publisher.topics().count(PAYMENT_STATUS_CHANGED) == 1
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.PROCESSING


async def test_notification_status_is_rechecked_with_gateway(order_service, payment_service, gateway):
    _, payment = await _paid_order(order_service, payment_service)

    # The webhook claims success, the provider still reports it as pending.
    result = await payment_service.handle_notification(
        {"transId": payment.transaction_id, "status": "SUCCESSFUL"}
    )

    assert result.status is PaymentStatus.PENDING


async def test_conflicting_report_for_settled_payment_is_ignored(order_service, payment_service, gateway):
    order, payment = await _paid_order(order_service, payment_service)
    gateway.set_status(payment.transaction_id, "SUCCESSFUL")
    await payment_service.reconcile(payment.transaction_id)

    gateway.set_status(payment.transaction_id, "FAILED")
    result = await payment_service.reconcile(payment.transaction_id)

    assert result.status is PaymentStatus.SUCCESS
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.PROCESSING


async def test_notification_for_unknown_transaction_is_ignored(payment_service, gateway):
    assert await payment_service.handle_notification({"transId": "nope", "status": "SUCCESSFUL"}) is None
    assert gateway.calls == []


async def test_malformed_notification_is_rejected(payment_service):
    with pytest.raises(ValidationError):
        await payment_service.handle_notification({"status": "SUCCESSFUL"})


async def test_transaction_for_another_order_is_rejected(order_service, payment_service, gateway):
    _, payment = await _paid_order(order_service, payment_service)
    gateway.set_status(payment.transaction_id, "SUCCESSFUL", external_id=str(uuid.uuid4()))

    with pytest.raises(ValidationError):
        await payment_service.reconcile(payment.transaction_id)

    assert (await payment_service.get_payment_by_id(payment.id)).status is PaymentStatus.PENDING


async def test_status_check_failure_leaves_state_untouched(order_service, payment_service, gateway):
    order, payment = await _paid_order(order_service, payment_service)
    gateway.error = GatewayUnavailableError("connection refused")

    with pytest.raises(GatewayUnavailableError):
        await payment_service.reconcile(payment.transaction_id)

    # Read-only checks are retried before giving up.
    assert len(gateway.calls_to("get_status")) == 2
    assert (await payment_service.get_payment_by_id(payment.id)).status is PaymentStatus.PENDING
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.PENDING


async def test_reconcile_unknown_transaction(payment_service):
    with pytest.raises(NotFoundError):
        await payment_service.reconcile("missing")


async def test_reconcile_pending_settles_confirmed_payments(order_service, payment_service, gateway):
    _, confirmed = await _paid_order(order_service, payment_service)
    _, waiting = await _paid_order(order_service, payment_service)
    gateway.set_status(confirmed.transaction_id, "SUCCESSFUL")

    settled = await payment_service.reconcile_pending(limit=10)

    assert settled == 1
    assert (await payment_service.get_payment_by_id(confirmed.id)).status is PaymentStatus.SUCCESS
    assert (await payment_service.get_payment_by_id(waiting.id)).status is PaymentStatus.PENDING


# ---------------------------------------------------------------------------
# Direct status updates
# ---------------------------------------------------------------------------


async def test_update_payment_status_enforces_state_machine(order_service, payment_service):
    _, payment = await _paid_order(order_service, payment_service)

    done = await payment_service.update_payment_status(payment.id, PaymentStatus.SUCCESS)
    assert done.status is PaymentStatus.SUCCESS

    again = await payment_service.update_payment_status(payment.id, PaymentStatus.SUCCESS)
    assert again.status is PaymentStatus.SUCCESS

    with pytest.raises(InvalidTransitionError):
        await payment_service.update_payment_status(payment.id, PaymentStatus.FAILED)


async def test_success_for_cancelled_order_leaves_order_alone(order_service, payment_service):
    order, payment = await _paid_order(order_service, payment_service)
    await order_service.update_order_status(order.id, OrderStatus.CANCELLED)

    done = await payment_service.update_payment_status(payment.id, PaymentStatus.SUCCESS)

    assert done.status is PaymentStatus.SUCCESS
    assert (await order_service.get_order_by_id(order.id)).status is OrderStatus.CANCELLED


async def test_update_payment_details_merges(order_service, payment_service):
    _, payment = await _paid_order(order_service, payment_service)

    updated = await payment_service.update_payment_details(payment.id, {"note": "called customer"})

    assert updated.details["note"] == "called customer"
    assert updated.details["mode"] == "direct"
    with pytest.raises(NotFoundError):
        await payment_service.update_payment_details(uuid.uuid4(), {})


async def test_payments_survive_order_deletion(order_service, payment_service):
    order, payment = await _paid_order(order_service, payment_service)

    await order_service.delete_order(order.id)

    kept = await payment_service.get_payment_by_order_id(order.id)
    assert kept.id == payment.id


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


async def test_circuit_opens_after_repeated_timeouts(order_service, payment_service, gateway):
    order = await place_order(order_service)
    gateway.error = GatewayTimeoutError("provider slow")

    for _ in range(3):
        with pytest.raises(GatewayTimeoutError):
            await payment_service.create_payment(order.id, PAYER)

    with pytest.raises(CircuitBreakerOpenError):
        await payment_service.create_payment(order.id, PAYER)

    assert len(gateway.calls_to("initiate_direct")) == 3


async def test_rejections_do_not_open_the_circuit(order_service, payment_service, gateway):
    order = await place_order(order_service)
    gateway.error = GatewayRejectedError("Invalid phone number", provider_status=400)

    for _ in range(5):
        with pytest.raises(GatewayRejectedError):
            await payment_service.create_payment(order.id, PAYER)

    assert len(gateway.calls_to("initiate_direct")) == 5


async def test_list_transactions_filters_by_user(payment_service, gateway):
    user_id = uuid.uuid4()
    gateway.transactions["t-1"] = GatewayTransaction(transaction_id="t-1", status="SUCCESSFUL", user_id=str(user_id))
    gateway.transactions["t-2"] = GatewayTransaction(transaction_id="t-2", status="FAILED", user_id="someone-else")

    result = await payment_service.list_transactions(user_id)

    assert [t.transaction_id for t in result] == ["t-1"]
    assert result[0].payment_status is PaymentStatus.SUCCESS
