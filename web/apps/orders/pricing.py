"""Server-side pricing of a cart.

Amounts are integer minor units (paise for INR). Shipping is flat below
a free-shipping threshold and tax is a basis-point rate over the
subtotal, rounded half-up to a whole minor unit.
"""

from dataclasses import dataclass
from typing import Iterable

from django.conf import settings

from .domain import LineItem, Pricing


@dataclass(frozen=True)
class PricingPolicy:
    free_shipping_threshold_minor: int = 2_500_000
    shipping_flat_minor: int = 150_000
    tax_rate_bps: int = 1800

    @classmethod
    def from_settings(cls) -> "PricingPolicy":
        return cls(
            free_shipping_threshold_minor=getattr(settings, "FREE_SHIPPING_THRESHOLD_MINOR", 2_500_000),
            shipping_flat_minor=getattr(settings, "SHIPPING_FLAT_MINOR", 150_000),
            tax_rate_bps=getattr(settings, "TAX_RATE_BPS", 1800),
        )

    def shipping_for(self, subtotal: int) -> int:
        if subtotal >= self.free_shipping_threshold_minor:
            return 0
        return self.shipping_flat_minor

    def tax_for(self, subtotal: int) -> int:
        return (subtotal * self.tax_rate_bps + 5_000) // 10_000


def subtotal_of(items: Iterable[LineItem]) -> int:
    return sum(it.line_total_minor for it in items)


def compute_pricing(items: Iterable[LineItem], policy: PricingPolicy | None = None, discount: int = 0) -> Pricing:
    """Compute the full breakdown for ``items``.

    Args:
        items: Line items with unit price snapshots.
        policy: Shipping/tax policy; read from settings when omitted.
        discount: Discount to apply, capped at the subtotal.

    Returns:
        Pricing: Breakdown whose total satisfies
        ``subtotal - discount + shipping + tax``.
    """
    policy = policy or PricingPolicy.from_settings()
    subtotal = subtotal_of(items)
    return Pricing.build(
        subtotal=subtotal,
        shipping=policy.shipping_for(subtotal),
        tax=policy.tax_for(subtotal),
        discount=discount,
    )
