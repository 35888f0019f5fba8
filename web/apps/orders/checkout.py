"""Checkout: turn a cart into a pending order with a payment intent."""

import logging
from dataclasses import dataclass
from typing import Optional

from .cancellation import CancellationOrchestrator
from .coupons import CouponLedger
from .domain import NotifierPort, Order, OrderDraft, RemoteOrderRef
from .errors import GatewayUnavailableError, ValidationError
from .payments import PaymentService, notify_quietly
from .pricing import subtotal_of
from .reservations import ReservationManager
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    """Outcome of ``place_order``.

    ``intent`` is None when the gateway was unreachable; the order is still
    pending and the client can ask for a new intent later.
    """

    order: Order
    intent: Optional[RemoteOrderRef]
    intent_error: Optional[str] = None


class CheckoutService:
    def __init__(
        self,
        state_machine: OrderStateMachine,
        reservations: ReservationManager,
        coupons: CouponLedger,
        payments: PaymentService,
        cancellation: CancellationOrchestrator,
        notifier: NotifierPort,
    ):
        self.state_machine = state_machine
        self.reservations = reservations
        self.coupons = coupons
        self.payments = payments
        self.cancellation = cancellation
        self.notifier = notifier

    def place_order(self, draft: OrderDraft) -> CheckoutResult:
        """Reserve stock, create the order and open a payment intent.

        Each step undoes the previous ones on failure: a failed order
        insert gives the stock back, and a coupon that cannot be redeemed
        cancels the order (which restores its stock) before the error is
        re-raised.

        Args:
            draft: Validated checkout input.

        Returns:
            CheckoutResult: The pending order and its gateway intent.

        Raises:
            ValidationError: Invalid draft.
            CouponError: The coupon cannot be used.
            InsufficientStockError: A product is out of stock.
            InventoryUnavailableError: The stock counter is unreachable.
        """
        self.state_machine.validate_draft(draft)
        if draft.coupon_code:
            quote = self.coupons.validate(draft.coupon_code, subtotal_of(draft.items))
            declared = draft.declared_pricing
            if declared is not None and declared.discount != quote.discount_minor:
                raise ValidationError("Order pricing does not match server-side pricing", code="PRICING_MISMATCH")

        reservation = self.reservations.reserve(draft.items)
        try:
            order = self.state_machine.create_order(draft, reservation_id=reservation.id)
        except Exception:
            logger.exception("order creation failed, restoring stock", extra={"reservation_id": str(reservation.id)})
            self.reservations.restore(reservation.id)
            raise

        if draft.coupon_code:
            try:
                order = self.coupons.apply_to_order(draft.coupon_code, order.number)
            except Exception:
                try:
                    self.cancellation.cancel(order.number, reason="coupon could not be applied")
                except Exception:
                    logger.exception(
                        "could not cancel order after coupon failure", extra={"order_number": order.number}
                    )
                raise

        intent = None
        intent_error = None
        try:
            intent = self.payments.create_intent(order.number)
            order = self.state_machine.get(order.number)
        except GatewayUnavailableError as e:
            logger.warning("payment intent deferred", extra={"order_number": order.number, "error": e.code})
            intent_error = e.code

        notify_quietly(self.notifier, order.number, "order_placed")
        return CheckoutResult(order=order, intent=intent, intent_error=intent_error)
