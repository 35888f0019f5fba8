"""Cancellation with compensating refund and stock restoration.

Cancelling is three steps. The status change is the gate: once an order
is ``cancelled`` the refund and the stock restoration each run on their
own, and a failure in one neither undoes the cancellation nor prevents
the other. The outcome of every step is reported in the result; failed
steps are picked up again by ``reconcile`` (or by cancelling again).
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List

from django.utils import timezone

from .domain import (
    NotifierPort,
    Order,
    OrderStatus,
    PaymentGatewayPort,
    PaymentStatus,
    RefundStatus,
    ReservationStatus,
)
from .errors import InvalidTransitionError
from .payments import PaymentService, notify_quietly
from .reservations import ReservationManager
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    step: str
    status: StepStatus
    detail: str = ""


@dataclass(frozen=True)
class CancellationResult:
    """Final order plus what happened to each compensating step."""

    order: Order
    already_cancelled: bool
    side_effects: List[StepOutcome] = field(default_factory=list)

    def outcome(self, step: str) -> StepOutcome | None:
        return next((s for s in self.side_effects if s.step == step), None)

    @property
    def ok(self) -> bool:
        return all(s.status != StepStatus.FAILED for s in self.side_effects)

    @property
    def summary(self) -> str:
        refund = self.outcome("refund")
        if refund is not None and refund.status == StepStatus.FAILED:
            return "cancelled; refund failed"
        if self.order.refund_status in (RefundStatus.INITIATED, RefundStatus.PENDING):
            return "cancelled; refund processing"
        return "cancelled"


@dataclass(frozen=True)
class ReconcileReport:
    orders: List[CancellationResult]
    orphans_released: int
    payments_refunded: int = 0


class CancellationOrchestrator:
    REFUND_STEP = "refund"
    RESTORE_STEP = "restore_stock"

    def __init__(
        self,
        state_machine: OrderStateMachine,
        reservations: ReservationManager,
        gateway: PaymentGatewayPort,
        notifier: NotifierPort,
        payments: PaymentService | None = None,
    ):
        self.state_machine = state_machine
        self.reservations = reservations
        self.gateway = gateway
        self.notifier = notifier
        self.payments = payments

    def cancel(self, order_number: str, reason: str = "") -> CancellationResult:
        """Cancel an order and run its compensating steps.

        Cancelling an order that is already cancelled does not fail: it
        retries whichever compensating step has not completed yet.

        Raises:
            OrderNotFoundError: Unknown order number.
            InvalidTransitionError: The order is shipped or delivered.
        """
        order = self.state_machine.get(order_number)
        already_cancelled = order.status == OrderStatus.CANCELLED
        if not already_cancelled:
            try:
                order = self.state_machine.cancel(order_number, reason)
            except InvalidTransitionError:
                order = self.state_machine.get(order_number)
                if order.status != OrderStatus.CANCELLED:
                    raise
                # another request cancelled it first
                already_cancelled = True

        side_effects = [self._refund(order), self._restore(order)]
        result = CancellationResult(
            order=self.state_machine.get(order_number),
            already_cancelled=already_cancelled,
            side_effects=side_effects,
        )
        if not already_cancelled:
            notify_quietly(self.notifier, order_number, "order_cancelled")
        logger.info(
            "order cancellation processed",
            extra={
                "order_number": order_number,
                "summary": result.summary,
                "steps": {s.step: s.status.value for s in side_effects},
            },
        )
        return result

    def _refund(self, order: Order) -> StepOutcome:
        if order.payment_status != PaymentStatus.CAPTURED or not order.gateway_payment_id:
            return StepOutcome(self.REFUND_STEP, StepStatus.SKIPPED, "no captured payment")
        if order.refund_status in (RefundStatus.INITIATED, RefundStatus.PROCESSED):
            return StepOutcome(self.REFUND_STEP, StepStatus.SKIPPED, f"refund already {order.refund_status.value}")
        try:
            ref = self.gateway.issue_refund(
                order.gateway_payment_id, order.pricing.total, idempotency_key=f"{order.number}:refund"
            )
            self.state_machine.record_refund(order.number, RefundStatus.INITIATED, refund_id=ref.refund_id)
        except Exception as e:
            logger.exception("refund failed", extra={"order_number": order.number})
            try:
                self.state_machine.record_refund(order.number, RefundStatus.PENDING, refund_error=str(e)[:2000])
            except Exception:
                logger.exception("could not record refund failure", extra={"order_number": order.number})
            return StepOutcome(self.REFUND_STEP, StepStatus.FAILED, str(e))
        return StepOutcome(self.REFUND_STEP, StepStatus.DONE, ref.refund_id)

    def _restore(self, order: Order) -> StepOutcome:
        if order.reservation_id is None:
            return StepOutcome(self.RESTORE_STEP, StepStatus.SKIPPED, "no reservation")
        try:
            reservation = self.reservations.reservations.get(order.reservation_id)
            if reservation.status == ReservationStatus.RESTORED:
                return StepOutcome(self.RESTORE_STEP, StepStatus.SKIPPED, "already restored")
            self.reservations.restore(order.reservation_id)
        except Exception as e:
            logger.exception(
                "stock restoration failed",
                extra={"order_number": order.number, "reservation_id": str(order.reservation_id)},
            )
            return StepOutcome(self.RESTORE_STEP, StepStatus.FAILED, str(e))
        return StepOutcome(self.RESTORE_STEP, StepStatus.DONE, str(order.reservation_id))

    def reconcile(self, limit: int = 100, orphan_age: timedelta = timedelta(minutes=30)) -> ReconcileReport:
        """Retry unfinished compensation and release orphaned reservations.

        Captured payments that arrived after their order was cancelled (or
        already paid) and could not be refunded at the time are refunded too.
        """
        results = []
        for order in self.state_machine.orders.cancelled_needing_reconciliation(limit=limit):
            results.append(self.cancel(order.number))
        released = self.reservations.release_orphans(timezone.now() - orphan_age, limit=limit)
        refunded = self.payments.retry_unpayable_refunds(limit=limit) if self.payments is not None else 0
        return ReconcileReport(orders=results, orphans_released=len(released), payments_refunded=refunded)
