from datetime import timedelta

import pytest
from django.utils import timezone

from apps.orders.domain import DiscountType, OrderStatus
from apps.orders.errors import (
    CouponExistsError,
    CouponExpiredError,
    CouponInactiveError,
    CouponNotFoundError,
    InvalidTransitionError,
    MinimumNotMetError,
    UsageLimitError,
    ValidationError,
)
from apps.orders.models import CouponModel

pytestmark = pytest.mark.django_db


@pytest.fixture
def ledger(services):
    return services.coupons


@pytest.fixture
def pending(services, stock, make_draft, gateway):
    """Pending order without a gateway intent (subtotal 200000)."""

    def _make():
        stock({"SKU-1": 10})
        gateway.available = False
        try:
            return services.checkout.place_order(make_draft([("SKU-1", 100_000, 2)])).order
        finally:
            gateway.available = True

    return _make


def test_create_normalizes_code(ledger):
    coupon = ledger.create_coupon(" save10 ", DiscountType.PERCENTAGE, 10)
    assert coupon.code == "SAVE10"
    assert coupon.current_uses == 0
    assert ledger.validate("save10", 100_000).code == "SAVE10"


def test_duplicate_code(ledger):
    ledger.create_coupon("SAVE10", DiscountType.PERCENTAGE, 10)
    with pytest.raises(CouponExistsError):
        ledger.create_coupon("save10", DiscountType.FIXED, 500)


@pytest.mark.parametrize(
    "discount_type,value,max_uses",
    [
        (DiscountType.PERCENTAGE, 0, None),
        (DiscountType.PERCENTAGE, 101, None),
        (DiscountType.FIXED, 0, None),
        (DiscountType.FIXED, 100, 0),
    ],
)
def test_create_rejects_bad_values(ledger, discount_type, value, max_uses):
    with pytest.raises(ValidationError):
        ledger.create_coupon("BAD", discount_type, value, max_uses=max_uses)
    assert not CouponModel.objects.exists()


def test_validate_quotes_discount(ledger):
    ledger.create_coupon("PCT", DiscountType.PERCENTAGE, 15)
    ledger.create_coupon("FLAT", DiscountType.FIXED, 50_000)
    assert ledger.validate("PCT", 333_333).discount_minor == 49_999
    assert ledger.validate("FLAT", 20_000).discount_minor == 20_000


def test_validation_order(ledger):
    now = timezone.now()
    with pytest.raises(CouponNotFoundError):
        ledger.validate("NOPE", 100_000)

    # inactive wins over expired, expired over usage, usage over minimum
    ledger.create_coupon(
        "ALLBAD", DiscountType.FIXED, 100, min_order_minor=10**9, max_uses=1, expires_at=now - timedelta(days=1),
        is_active=False,
    )
    CouponModel.objects.filter(code="ALLBAD").update(current_uses=1)
    with pytest.raises(CouponInactiveError):
        ledger.validate("ALLBAD", 100)

    CouponModel.objects.filter(code="ALLBAD").update(is_active=True)
    with pytest.raises(CouponExpiredError):
        ledger.validate("ALLBAD", 100)

    CouponModel.objects.filter(code="ALLBAD").update(expires_at=now + timedelta(days=1))
    with pytest.raises(UsageLimitError):
        ledger.validate("ALLBAD", 100)

    CouponModel.objects.filter(code="ALLBAD").update(current_uses=0)
    with pytest.raises(MinimumNotMetError):
        ledger.validate("ALLBAD", 100)


def test_validate_does_not_consume(ledger):
    ledger.create_coupon("ONCE", DiscountType.FIXED, 100, max_uses=1)
    ledger.validate("ONCE", 1000)
    ledger.validate("ONCE", 1000)
    assert CouponModel.objects.get(code="ONCE").current_uses == 0


def test_apply_reprices_order(services, ledger, pending):
    ledger.create_coupon("SAVE10", DiscountType.PERCENTAGE, 10)
    order = pending()

    updated = ledger.apply_to_order("save10", order.number)

    assert updated.coupon_code == "SAVE10"
    assert updated.pricing.discount == 20_000
    # shipping and tax stay as computed at creation
    assert updated.pricing.shipping == order.pricing.shipping
    assert updated.pricing.tax == order.pricing.tax
    assert updated.pricing.total == order.pricing.total - 20_000
    assert updated.pricing.is_consistent()
    assert CouponModel.objects.get(code="SAVE10").current_uses == 1


def test_single_use_coupon_redeems_once(ledger, pending):
    ledger.create_coupon("ONCE", DiscountType.FIXED, 5_000, max_uses=1)
    first, second = pending(), pending()

    ledger.apply_to_order("ONCE", first.number)
    with pytest.raises(UsageLimitError):
        ledger.apply_to_order("ONCE", second.number)

    assert CouponModel.objects.get(code="ONCE").current_uses == 1


def test_racing_redemptions_for_last_use(ledger, pending, monkeypatch):
    ledger.create_coupon("LAST", DiscountType.FIXED, 5_000, max_uses=1)
    first, second = pending(), pending()
    # both redemptions read the coupon before either claims it
    stale = ledger.coupons.get("LAST")
    monkeypatch.setattr(ledger.coupons, "get", lambda code: stale)

    ledger.apply_to_order("LAST", first.number)
    with pytest.raises(UsageLimitError):
        ledger.apply_to_order("LAST", second.number)

    assert CouponModel.objects.get(code="LAST").current_uses == 1
    assert ledger.state_machine.get(second.number).coupon_code is None


def test_second_coupon_is_rejected_without_consuming(services, ledger, pending):
    ledger.create_coupon("A10", DiscountType.PERCENTAGE, 10)
    ledger.create_coupon("B5", DiscountType.FIXED, 5_000, max_uses=5)
    order = pending()
    ledger.apply_to_order("A10", order.number)

    with pytest.raises(ValidationError) as e:
        ledger.apply_to_order("B5", order.number)
    assert e.value.code == "COUPON_ALREADY_APPLIED"
    assert CouponModel.objects.get(code="B5").current_uses == 0
    assert services.state_machine.get(order.number).coupon_code == "A10"


def test_coupon_after_intent_is_rejected(services, ledger, stock, make_draft):
    ledger.create_coupon("LATE", DiscountType.FIXED, 5_000)
    stock({"SKU-1": 1})
    placed = services.checkout.place_order(make_draft())
    assert placed.order.gateway_order_id

    with pytest.raises(ValidationError) as e:
        ledger.apply_to_order("LATE", placed.order.number)
    assert e.value.code == "PAYMENT_INITIATED"
    assert CouponModel.objects.get(code="LATE").current_uses == 0


def test_coupon_on_cancelled_order(services, ledger, pending):
    ledger.create_coupon("SAVE10", DiscountType.PERCENTAGE, 10)
    order = pending()
    services.cancellation.cancel(order.number)

    with pytest.raises(InvalidTransitionError):
        ledger.apply_to_order("SAVE10", order.number)
    assert services.state_machine.get(order.number).status == OrderStatus.CANCELLED
    assert CouponModel.objects.get(code="SAVE10").current_uses == 0
