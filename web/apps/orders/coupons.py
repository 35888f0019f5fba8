"""Coupon validation and redemption."""

import logging
from datetime import datetime

from django.db import transaction
from django.utils import timezone

from .domain import Coupon, CouponQuote, DiscountType, Order
from .errors import (
    CouponExpiredError,
    CouponInactiveError,
    MinimumNotMetError,
    UsageLimitError,
    ValidationError,
)
from .repository import CouponRepository
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


class CouponLedger:
    def __init__(self, state_machine: OrderStateMachine, coupons: CouponRepository | None = None):
        self.state_machine = state_machine
        self.coupons = coupons or CouponRepository()

    def _check(self, coupon: Coupon, cart_value_minor: int, now: datetime) -> None:
        if not coupon.is_active:
            raise CouponInactiveError(coupon.code)
        if coupon.expires_at is not None and coupon.expires_at <= now:
            raise CouponExpiredError(coupon.code)
        if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
            raise UsageLimitError(coupon.code)
        if cart_value_minor < coupon.min_order_minor:
            raise MinimumNotMetError(coupon.code, coupon.min_order_minor)

    def validate(self, code: str, cart_value_minor: int) -> CouponQuote:
        """Read-only check of a coupon against a cart value.

        Args:
            code: Coupon code, any case.
            cart_value_minor: Cart subtotal in minor units.

        Returns:
            CouponQuote: Normalized code and the discount it would give.

        Raises:
            CouponNotFoundError, CouponInactiveError, CouponExpiredError,
            UsageLimitError, MinimumNotMetError: checked in that order.
        """
        coupon = self.coupons.get(code)
        self._check(coupon, cart_value_minor, timezone.now())
        return CouponQuote(code=coupon.code, discount_minor=coupon.discount_for(cart_value_minor))

    def apply_to_order(self, code: str, order_number: str) -> Order:
        """Redeem a coupon against a pending order.

        The use counter increment and the order repricing commit together:
        if the order cannot take the coupon the use is not consumed, and two
        redemptions racing for the last use cannot both win.
        """
        order = self.state_machine.get(order_number)
        coupon = self.coupons.get(code)
        now = timezone.now()
        self._check(coupon, order.pricing.subtotal, now)
        discount = coupon.discount_for(order.pricing.subtotal)

        with transaction.atomic():
            if not self.coupons.claim_use(coupon.code, now):
                # lost the race for the last use, or the coupon changed since it was read
                refreshed = self.coupons.get(coupon.code)
                self._check(refreshed, order.pricing.subtotal, now)
                raise UsageLimitError(coupon.code)
            updated = self.state_machine.apply_discount(order_number, coupon.code, discount)

        logger.info(
            "coupon applied",
            extra={"order_number": order_number, "coupon_code": coupon.code, "discount_minor": discount},
        )
        return updated

    def create_coupon(
        self,
        code: str,
        discount_type: DiscountType,
        discount_value: int,
        min_order_minor: int = 0,
        max_uses: int | None = None,
        expires_at: datetime | None = None,
        is_active: bool = True,
        description: str = "",
    ) -> Coupon:
        code = Coupon.normalize(code)
        if not code:
            raise ValidationError("Coupon code is required")
        if discount_type == DiscountType.PERCENTAGE and not 1 <= discount_value <= 100:
            raise ValidationError("Percentage discount must be between 1 and 100")
        if discount_type == DiscountType.FIXED and discount_value <= 0:
            raise ValidationError("Fixed discount must be positive")
        if max_uses is not None and max_uses < 1:
            raise ValidationError("max_uses must be at least 1")
        return self.coupons.create(
            Coupon(
                code=code,
                discount_type=discount_type,
                discount_value=discount_value,
                min_order_minor=min_order_minor,
                max_uses=max_uses,
                expires_at=expires_at,
                is_active=is_active,
                description=description,
            )
        )
