"""Order lifecycle transitions and their compare-and-swap guarantees."""
import re

import pytest

from apps.orders.domain import OrderStatus, PaymentStatus, Pricing
from apps.orders.errors import AmountMismatchError, InvalidTransitionError, OrderNotFoundError, ValidationError
from apps.orders.models import OrderEventModel, OrderModel
from apps.orders.repository import OrderRepository

pytestmark = pytest.mark.django_db


@pytest.fixture
def sm(services):
    return services.state_machine


def test_create_order_is_pending_with_server_pricing(sm, make_draft):
    order = sm.create_order(make_draft([("SKU-1", 100_000, 2)]))
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.pricing == Pricing(subtotal=200_000, discount=0, shipping=150_000, tax=36_000, total=386_000)
    assert order.billing_address == order.shipping_address
    assert re.match(r"^ORD-\d{14}-[A-Z2-9]{4}$", order.number)
    assert order.version == 0


def test_order_number_prefix_from_settings(sm, make_draft, settings):
    settings.ORDER_NUMBER_PREFIX = "SHOP"
    assert sm.create_order(make_draft()).number.startswith("SHOP-")


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"items": []}, "EMPTY_ORDER"),
        ({"shipping_address": None}, "MISSING_ADDRESS"),
        ({"customer": None}, "MISSING_EMAIL"),
    ],
)
def test_create_order_validation(sm, make_draft, overrides, code):
    with pytest.raises(ValidationError) as e:
        sm.create_order(make_draft(**overrides))
    assert e.value.code == code
    assert OrderModel.objects.count() == 0


def test_declared_pricing_must_match(sm, make_draft):
    wrong = Pricing(subtotal=100_000, discount=0, shipping=0, tax=0, total=100_000)
    with pytest.raises(ValidationError) as e:
        sm.create_order(make_draft(declared_pricing=wrong))
    assert e.value.code == "PRICING_MISMATCH"

    right = Pricing(subtotal=100_000, discount=0, shipping=150_000, tax=18_000, total=268_000)
    assert sm.create_order(make_draft(declared_pricing=right)).pricing == right


def test_mark_paid_is_idempotent_for_same_payment(sm, make_draft):
    order = sm.create_order(make_draft())
    first = sm.mark_paid(order.number, "pay_1", order.pricing.total)
    second = sm.mark_paid(order.number, "pay_1", order.pricing.total)
    assert first.status == OrderStatus.PAID
    assert first.payment_status == PaymentStatus.CAPTURED
    assert (second.status, second.version, second.paid_at) == (first.status, first.version, first.paid_at)


def test_mark_paid_with_other_payment_is_rejected(sm, make_draft):
    order = sm.create_order(make_draft())
    sm.mark_paid(order.number, "pay_1", order.pricing.total)
    with pytest.raises(InvalidTransitionError):
        sm.mark_paid(order.number, "pay_2", order.pricing.total)


def test_amount_mismatch_keeps_order_pending(sm, make_draft):
    order = sm.create_order(make_draft())
    with pytest.raises(AmountMismatchError) as e:
        sm.mark_paid(order.number, "pay_1", order.pricing.total + 1)
    assert e.value.expected == order.pricing.total
    reloaded = sm.get(order.number)
    assert reloaded.status == OrderStatus.PENDING
    assert reloaded.version == order.version


def test_cancel_on_shipped_fails_and_leaves_order_unchanged(sm, make_draft):
    order = sm.create_order(make_draft())
    sm.mark_paid(order.number, "pay_1", order.pricing.total)
    shipped = sm.mark_shipped(order.number)
    with pytest.raises(InvalidTransitionError) as e:
        sm.cancel(order.number, "changed my mind")
    assert e.value.current == OrderStatus.SHIPPED
    after = sm.get(order.number)
    assert after.status == OrderStatus.SHIPPED
    assert after.version == shipped.version


def test_full_lifecycle_records_history(sm, make_draft):
    order = sm.create_order(make_draft())
    sm.mark_paid(order.number, "pay_1", order.pricing.total, method="upi")
    sm.mark_shipped(order.number)
    delivered = sm.mark_delivered(order.number)
    assert delivered.is_return_eligible
    history = sm.get(order.number, with_history=True).history
    assert [h.status for h in history] == [
        OrderStatus.PENDING,
        OrderStatus.PAID,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
    ]
    assert history[1].message == "Payment received via upi"


def test_cancelled_is_terminal(sm, make_draft):
    order = sm.create_order(make_draft())
    sm.cancel(order.number, "customer request")
    for op in (lambda: sm.cancel(order.number), lambda: sm.mark_paid(order.number, "pay_1", order.pricing.total)):
        with pytest.raises(InvalidTransitionError):
            op()


def test_stale_version_loses_compare_and_set(sm, make_draft):
    repo = OrderRepository()
    order = sm.create_order(make_draft())
    stale = repo.get(order.number)
    assert repo.compare_and_set(order, status=OrderStatus.CANCELLED, event="Order cancelled")
    assert repo.compare_and_set(stale, status=OrderStatus.PAID) is False
    assert repo.get(order.number).status == OrderStatus.CANCELLED
    assert OrderEventModel.objects.filter(order_id=order.id).count() == 2


def test_transition_reloads_after_concurrent_update(sm, make_draft, monkeypatch):
    order = sm.create_order(make_draft())
    real_cas = sm.orders.compare_and_set
    calls = {"n": 0}

    def racing_cas(o, **kw):
        calls["n"] += 1
        if calls["n"] == 1:
            # another worker attaches a gateway order first
            real_cas(o, gateway_order_id="order_x")
        return real_cas(o, **kw)

    monkeypatch.setattr(sm.orders, "compare_and_set", racing_cas)
    paid = sm.mark_paid(order.number, "pay_1", order.pricing.total)
    assert paid.status == OrderStatus.PAID
    assert paid.gateway_order_id == "order_x"
    assert calls["n"] == 2


def test_record_payment_failure_keeps_pending(sm, make_draft):
    order = sm.create_order(make_draft())
    failed = sm.record_payment_failure(order.number, "pay_1", "card declined")
    assert failed.status == OrderStatus.PENDING
    assert failed.payment_status == PaymentStatus.FAILED
    # a later successful payment still settles the order
    assert sm.mark_paid(order.number, "pay_2", order.pricing.total).status == OrderStatus.PAID


def test_attach_remote_order_keeps_first(sm, make_draft):
    order = sm.create_order(make_draft())
    assert sm.attach_remote_order(order.number, "order_a").gateway_order_id == "order_a"
    assert sm.attach_remote_order(order.number, "order_b").gateway_order_id == "order_a"


def test_apply_discount_rules(sm, make_draft):
    order = sm.create_order(make_draft())
    discounted = sm.apply_discount(order.number, "SAVE10", 10_000)
    assert discounted.pricing.total == order.pricing.total - 10_000
    assert discounted.coupon_code == "SAVE10"
    with pytest.raises(ValidationError) as e:
        sm.apply_discount(order.number, "OTHER", 1)
    assert e.value.code == "COUPON_ALREADY_APPLIED"

    other = sm.create_order(make_draft())
    sm.attach_remote_order(other.number, "order_1")
    with pytest.raises(ValidationError) as e:
        sm.apply_discount(other.number, "SAVE10", 1)
    assert e.value.code == "PAYMENT_INITIATED"


def test_unknown_order(sm):
    with pytest.raises(OrderNotFoundError):
        sm.get("ORD-NOPE")
