"""Order lifecycle transitions.

``OrderStateMachine`` owns every change to an order's status. Each
transition reads the order, checks the transition table, and writes with a
compare-and-swap on ``(status, version)``. When the swap loses a race the
order is reloaded: if the winner already produced the state we wanted the
call returns it, if the transition is still legal it is retried, otherwise
``InvalidTransitionError`` is raised.
"""

import logging
import uuid
from typing import Callable, Optional

from django.db.models import Q
from django.utils import timezone

from .domain import (
    Order,
    OrderDraft,
    OrderStatus,
    PaymentStatus,
    Pricing,
    RefundStatus,
)
from .errors import AmountMismatchError, InvalidTransitionError, ValidationError
from .pricing import PricingPolicy, compute_pricing
from .repository import OrderRepository

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


class OrderStateMachine:
    """Creates orders and moves them through their lifecycle."""

    MAX_ATTEMPTS = 5

    def __init__(self, orders: OrderRepository | None = None, policy: PricingPolicy | None = None):
        self.orders = orders or OrderRepository()
        self.policy = policy

    # ---------------- Creation ---------------- #

    def validate_draft(self, draft: OrderDraft) -> Pricing:
        """Check a draft and return its server-side pricing.

        Args:
            draft: Checkout draft.

        Returns:
            Pricing: Breakdown computed from the draft's items.

        Raises:
            ValidationError: Empty or malformed items, missing shipping
                address or customer email, or a declared pricing that differs
                from the computed one (code ``PRICING_MISMATCH``). A declared
                discount is only accepted with a coupon code; checkout checks
                its amount against the coupon.
        """
        if not draft.items:
            raise ValidationError("Order must contain at least one item", code="EMPTY_ORDER")
        for it in draft.items:
            if it.quantity <= 0:
                raise ValidationError(f"Invalid quantity for product {it.product_id}", code="INVALID_QUANTITY")
            if it.unit_price_minor < 0:
                raise ValidationError(f"Invalid price for product {it.product_id}", code="INVALID_PRICE")
        if draft.shipping_address is None:
            raise ValidationError("Shipping address is required", code="MISSING_ADDRESS")
        if draft.customer is None or not draft.customer.email:
            raise ValidationError("Customer email is required", code="MISSING_EMAIL")

        pricing = compute_pricing(draft.items, self.policy)
        declared = draft.declared_pricing
        if declared is not None:
            parts = (declared.subtotal, declared.shipping, declared.tax, declared.total + declared.discount)
            if (
                not declared.is_consistent()
                or parts != (pricing.subtotal, pricing.shipping, pricing.tax, pricing.total)
                or (declared.discount and not draft.coupon_code)
            ):
                logger.info(
                    "declared pricing rejected",
                    extra={"declared_total": declared.total, "computed_total": pricing.total},
                )
                raise ValidationError("Order pricing does not match server-side pricing", code="PRICING_MISMATCH")
        return pricing

    def create_order(self, draft: OrderDraft, reservation_id: uuid.UUID | None = None) -> Order:
        pricing = self.validate_draft(draft)
        order = Order(
            id=uuid.uuid4(),
            number="",
            items=list(draft.items),
            pricing=pricing,
            shipping_address=draft.shipping_address,
            billing_address=draft.billing_address or draft.shipping_address,
            customer=draft.customer,
            payment_method=draft.payment_method,
        )
        created = self.orders.create(order, reservation_id=reservation_id)
        logger.info(
            "order created",
            extra={"order_number": created.number, "total_minor": created.pricing.total},
        )
        return created

    def get(self, order_number: str, with_history: bool = False) -> Order:
        return self.orders.get(order_number, with_history=with_history)

    # ---------------- Transitions ---------------- #

    def _transition(
        self,
        order_number: str,
        target: OrderStatus,
        event: str,
        done: Callable[[Order], bool] | None = None,
        check: Callable[[Order], None] | None = None,
        **fields,
    ) -> Order:
        order = None
        for _ in range(self.MAX_ATTEMPTS):
            order = self.orders.get(order_number)
            if done is not None and done(order):
                return order
            if not can_transition(order.status, target):
                raise InvalidTransitionError(order.status, target)
            if check is not None:
                check(order)
            if self.orders.compare_and_set(order, event=event, status=target, **fields):
                logger.info(
                    "order transition",
                    extra={"order_number": order_number, "from": order.status.value, "to": target.value},
                )
                return self.orders.get(order_number)
            logger.info("order changed concurrently, reloading", extra={"order_number": order_number})
        raise InvalidTransitionError(order.status, target, "Order was modified concurrently, please retry")

    def mark_paid(
        self,
        order_number: str,
        payment_id: str,
        verified_amount: int,
        payment_status: PaymentStatus = PaymentStatus.CAPTURED,
        method: Optional[str] = None,
    ) -> Order:
        """Move a pending order to ``paid``.

        Calling it again with the same payment id is a no-op that returns the
        paid order; a different payment id on a paid order is rejected.

        Raises:
            AmountMismatchError: ``verified_amount`` differs from the order
                total. The order stays ``pending``.
            InvalidTransitionError: The order is not ``pending``.
        """

        def already_paid(o: Order) -> bool:
            return o.status == OrderStatus.PAID and o.gateway_payment_id == payment_id

        def amount_matches(o: Order) -> None:
            if verified_amount != o.pricing.total:
                raise AmountMismatchError(expected=o.pricing.total, received=verified_amount)

        event = f"Payment received via {method}" if method else "Payment received"
        return self._transition(
            order_number,
            OrderStatus.PAID,
            event,
            done=already_paid,
            check=amount_matches,
            payment_status=payment_status,
            gateway_payment_id=payment_id,
            paid_at=timezone.now(),
        )

    def cancel(self, order_number: str, reason: str = "") -> Order:
        return self._transition(
            order_number,
            OrderStatus.CANCELLED,
            f"Order cancelled: {reason}" if reason else "Order cancelled",
            cancelled_at=timezone.now(),
            cancellation_reason=reason[:255],
        )

    def mark_shipped(self, order_number: str) -> Order:
        return self._transition(
            order_number,
            OrderStatus.SHIPPED,
            "Order has been shipped",
            done=lambda o: o.status == OrderStatus.SHIPPED,
            shipped_at=timezone.now(),
        )

    def mark_delivered(self, order_number: str) -> Order:
        return self._transition(
            order_number,
            OrderStatus.DELIVERED,
            "Order has been delivered",
            done=lambda o: o.status == OrderStatus.DELIVERED,
            delivered_at=timezone.now(),
        )

    # ---------------- Non-status updates ---------------- #

    def _update(
        self,
        order_number: str,
        apply: Callable[[Order], Optional[dict]],
        event: str | None = None,
        require: Q | None = None,
    ) -> Order:
        """CAS loop for updates that keep the status.

        ``apply`` inspects the freshly loaded order and returns the fields
        to write, or None when nothing needs writing.
        """
        for _ in range(self.MAX_ATTEMPTS):
            order = self.orders.get(order_number)
            fields = apply(order)
            if fields is None:
                return order
            if self.orders.compare_and_set(order, require=require, event=event, **fields):
                return self.orders.get(order_number)
        raise InvalidTransitionError(order.status, order.status, "Order was modified concurrently, please retry")

    def record_payment_failure(self, order_number: str, payment_id: str, reason: str = "") -> Order:
        """Mark the payment axis ``failed``; the order stays ``pending``."""

        def apply(o: Order):
            if o.status != OrderStatus.PENDING or o.payment_status == PaymentStatus.FAILED:
                return None
            return {"payment_status": PaymentStatus.FAILED}

        logger.warning(
            "payment attempt failed",
            extra={"order_number": order_number, "gateway_payment_id": payment_id, "reason": reason},
        )
        return self._update(order_number, apply, event="Payment attempt failed")

    def attach_remote_order(self, order_number: str, gateway_order_id: str) -> Order:
        """Store the gateway order id on a pending order.

        An order keeps the first gateway order attached to it; later calls
        return the order unchanged.
        """

        def apply(o: Order):
            if o.gateway_order_id:
                return None
            if o.status != OrderStatus.PENDING:
                raise InvalidTransitionError(o.status, OrderStatus.PENDING, "Only pending orders can be paid")
            return {"gateway_order_id": gateway_order_id}

        return self._update(order_number, apply, require=Q(gateway_order_id__isnull=True))

    def apply_discount(self, order_number: str, coupon_code: str, discount_minor: int) -> Order:
        """Set the coupon discount on a pending order without a gateway intent.

        Shipping and tax are kept as computed at creation; only ``discount``
        and ``total`` change.

        Raises:
            InvalidTransitionError: The order is no longer pending.
            ValidationError: A coupon is already applied (``COUPON_ALREADY_APPLIED``)
                or payment has been initiated (``PAYMENT_INITIATED``).
        """

        def apply(o: Order):
            if o.status != OrderStatus.PENDING:
                raise InvalidTransitionError(o.status, o.status, "Coupons can only be applied to pending orders")
            if o.coupon_code:
                raise ValidationError("A coupon is already applied to this order", code="COUPON_ALREADY_APPLIED")
            if o.gateway_order_id:
                raise ValidationError("Payment has already been initiated", code="PAYMENT_INITIATED")
            pricing = o.pricing.with_discount(discount_minor)
            return {
                "coupon_code": coupon_code,
                "discount_minor": pricing.discount,
                "total_minor": pricing.total,
            }

        return self._update(
            order_number,
            apply,
            event=f"Coupon {coupon_code} applied",
            require=Q(coupon_code__isnull=True, gateway_order_id__isnull=True),
        )

    def record_refund(
        self,
        order_number: str,
        refund_status: RefundStatus,
        refund_id: str | None = None,
        refund_error: str = "",
        payment_status: PaymentStatus | None = None,
    ) -> Order:
        def apply(o: Order):
            fields = {"refund_status": refund_status, "refund_error": refund_error}
            if refund_id:
                fields["refund_id"] = refund_id
            if payment_status is not None:
                fields["payment_status"] = payment_status
            return fields

        return self._update(order_number, apply)
