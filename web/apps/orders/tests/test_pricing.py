"""Unit tests for server-side pricing (minor units, INR defaults)."""
import pytest

from apps.orders.domain import LineItem, Pricing
from apps.orders.pricing import PricingPolicy, compute_pricing

POLICY = PricingPolicy(free_shipping_threshold_minor=2_500_000, shipping_flat_minor=150_000, tax_rate_bps=1800)


def _items(*lines):
    return [LineItem(product_id=f"P{i}", name="x", unit_price_minor=price, quantity=q) for i, (price, q) in enumerate(lines)]


def test_small_cart_pays_flat_shipping_and_tax():
    p = compute_pricing(_items((100_000, 1)), POLICY)
    assert p == Pricing(subtotal=100_000, discount=0, shipping=150_000, tax=18_000, total=268_000)


def test_free_shipping_at_threshold():
    p = compute_pricing(_items((1_250_000, 2)), POLICY)
    assert p.subtotal == 2_500_000
    assert p.shipping == 0
    assert p.tax == 450_000
    assert p.total == 2_950_000


@pytest.mark.parametrize("subtotal,tax", [(2, 0), (3, 1), (25, 5), (24, 4)])
def test_tax_rounds_half_up(subtotal, tax):
    assert POLICY.tax_for(subtotal) == tax


def test_discount_changes_only_discount_and_total():
    p = compute_pricing(_items((100_000, 1)), POLICY)
    d = p.with_discount(10_000)
    assert (d.subtotal, d.shipping, d.tax) == (p.subtotal, p.shipping, p.tax)
    assert d.discount == 10_000
    assert d.total == p.total - 10_000
    assert d.is_consistent()


def test_discount_capped_at_subtotal():
    p = compute_pricing(_items((100_000, 1)), POLICY, discount=500_000)
    assert p.discount == 100_000
    assert p.total == 150_000 + 18_000


def test_policy_reads_settings(settings):
    settings.TAX_RATE_BPS = 0
    settings.SHIPPING_FLAT_MINOR = 1
    p = compute_pricing(_items((10, 1)))
    assert (p.tax, p.shipping, p.total) == (0, 1, 11)
