"""Checkout callback verification: the signature decides, the status endpoint enriches."""
import logging

import pytest

from apps.orders.domain import OrderStatus, PaymentStatus
from apps.orders.errors import (
    AmountMismatchError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentNotCapturedError,
    SignatureVerificationError,
)
from apps.orders.models import OrderEventModel, PaymentModel

pytestmark = pytest.mark.django_db


@pytest.fixture
def placed(services, stock, make_draft):
    """A pending order with a gateway intent."""
    stock({"SKU-1": 10})
    result = services.checkout.place_order(make_draft())
    assert result.intent is not None
    return result


def test_verify_marks_order_paid(services, gateway, notifier, placed):
    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id, method="upi")

    result = services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)

    assert result.replayed is False
    assert result.order.status == OrderStatus.PAID
    assert result.order.payment_status == PaymentStatus.CAPTURED
    assert result.order.gateway_payment_id == payment_id
    assert result.order.paid_at is not None
    row = PaymentModel.objects.get(gateway_payment_id=payment_id)
    assert row.signature_verified is True
    assert row.amount_minor == placed.order.pricing.total
    assert row.method == "upi"
    assert OrderEventModel.objects.filter(order_id=placed.order.id, message="Payment received via upi").exists()
    assert (placed.order.number, "payment_confirmed") in notifier.sent


def test_tampered_payment_id_is_rejected(services, gateway, placed):
    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id)

    with pytest.raises(SignatureVerificationError):
        services.payments.verify(placed.intent.gateway_order_id, payment_id + "x", signature)

    order = services.state_machine.get(placed.order.number)
    assert order.status == OrderStatus.PENDING
    assert not PaymentModel.objects.exists()


def test_amount_mismatch_keeps_order_pending(services, gateway, stock, make_draft, settings):
    settings.TAX_RATE_BPS = 0
    stock({"TV-55": 1})
    placed = services.checkout.place_order(make_draft([("TV-55", 5_250_000, 1)]))
    assert placed.order.pricing.total == 5_250_000

    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id, amount_minor=5_300_000)
    with pytest.raises(AmountMismatchError) as e:
        services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)
    assert (e.value.expected, e.value.received) == (5_250_000, 5_300_000)

    order = services.state_machine.get(placed.order.number)
    assert order.status == OrderStatus.PENDING
    assert not order.gateway_payment_id
    attempt = PaymentModel.objects.get(gateway_payment_id=payment_id)
    assert attempt.signature_verified is False
    assert attempt.error_code == "AMOUNT_MISMATCH"


def test_replayed_callback_is_a_no_op(services, gateway, notifier, placed):
    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id)
    first = services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)
    second = services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)

    assert second.replayed is True
    assert second.order.status == OrderStatus.PAID
    assert second.order.version == first.order.version
    assert PaymentModel.objects.count() == 1
    assert [e for e in notifier.sent if e[1] == "payment_confirmed"] == [(placed.order.number, "payment_confirmed")]


def test_status_endpoint_outage_does_not_block_settlement(services, gateway, placed):
    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id)
    gateway.status_available = False

    result = services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)

    assert result.order.status == OrderStatus.PAID
    assert result.payment.amount_minor == placed.order.pricing.total


def test_payment_not_captured(services, gateway, placed):
    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id, status="failed")

    with pytest.raises(PaymentNotCapturedError):
        services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)

    assert services.state_machine.get(placed.order.number).status == OrderStatus.PENDING
    assert PaymentModel.objects.get(gateway_payment_id=payment_id).error_code == "NOT_CAPTURED"


def test_authorized_payment_settles_as_authorized(services, gateway, placed):
    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id, status="authorized")
    result = services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)
    assert result.order.status == OrderStatus.PAID
    assert result.order.payment_status == PaymentStatus.AUTHORIZED


def test_second_payment_for_paid_order_is_rejected(services, gateway, placed):
    gw_id = placed.intent.gateway_order_id
    first_id, first_sig = gateway.simulate_payment(gw_id)
    services.payments.verify(gw_id, first_id, first_sig)

    second_id, second_sig = gateway.simulate_payment(gw_id)
    with pytest.raises(InvalidTransitionError):
        services.payments.verify(gw_id, second_id, second_sig)

    order = services.state_machine.get(placed.order.number)
    assert order.gateway_payment_id == first_id
    assert PaymentModel.objects.filter(signature_verified=True).count() == 1
    # the second capture is handed back
    assert list(gateway.refunds) == [f"{second_id}:refund"]
    assert PaymentModel.objects.get(gateway_payment_id=second_id).error_code == "ORDER_NOT_PAYABLE"


def test_unknown_gateway_order(services, gateway):
    from apps.orders.signatures import callback_signature

    sig = callback_signature(gateway.key_secret, "order_missing", "pay_1")
    with pytest.raises(OrderNotFoundError):
        services.payments.verify("order_missing", "pay_1", sig)


def test_create_intent_returns_existing_intent(services, placed):
    again = services.payments.create_intent(placed.order.number)
    assert again.gateway_order_id == placed.intent.gateway_order_id
    assert again.amount_minor == placed.order.pricing.total


def test_create_intent_for_paid_order_returns_stored_intent(services, gateway, placed):
    payment_id, signature = gateway.simulate_payment(placed.intent.gateway_order_id)
    services.payments.verify(placed.intent.gateway_order_id, payment_id, signature)
    assert services.payments.create_intent(placed.order.number).gateway_order_id == placed.intent.gateway_order_id


def test_create_intent_for_cancelled_order_without_intent(services, gateway, stock, make_draft):
    stock({"SKU-1": 1})
    gateway.available = False
    placed = services.checkout.place_order(make_draft())
    assert placed.intent is None
    services.cancellation.cancel(placed.order.number, "changed mind")

    gateway.available = True
    with pytest.raises(InvalidTransitionError):
        services.payments.create_intent(placed.order.number)


def test_callback_after_cancellation_refunds_the_payment(services, gateway, caplog, placed):
    gw_id = placed.intent.gateway_order_id
    payment_id, signature = gateway.simulate_payment(gw_id)
    services.cancellation.cancel(placed.order.number, "changed mind")

    with caplog.at_level(logging.WARNING, logger="apps.orders.payments"):
        with pytest.raises(InvalidTransitionError):
            services.payments.verify(gw_id, payment_id, signature)

    order = services.state_machine.get(placed.order.number)
    assert order.status == OrderStatus.CANCELLED
    assert not order.gateway_payment_id
    row = PaymentModel.objects.get(gateway_payment_id=payment_id)
    assert (row.signature_verified, row.error_code, row.gateway_status) == (False, "ORDER_NOT_PAYABLE", "refund_initiated")
    assert gateway.refunds[f"{payment_id}:refund"].amount_minor == placed.order.pricing.total
    logged = [r for r in caplog.records if getattr(r, "gateway_payment_id", None) == payment_id]
    assert logged and logged[0].gateway_order_id == gw_id
    assert logged[0].order_number == placed.order.number

    # a replayed callback does not refund twice
    with pytest.raises(InvalidTransitionError):
        services.payments.verify(gw_id, payment_id, signature)
    assert len(gateway.refunds) == 1
