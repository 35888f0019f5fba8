"""Payment intent creation, callback verification and webhook handling.

The HMAC signature on the checkout callback (or webhook) is the source of
truth that a payment happened. The gateway's payment status endpoint is
consulted for enrichment (captured amount, method) but an outage there
never blocks settlement.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from .domain import (
    NotifierPort,
    Order,
    OrderStatus,
    Payment,
    PaymentGatewayPort,
    PaymentStatus,
    RefundStatus,
    RemoteOrderRef,
    RemotePaymentStatus,
)
from .errors import (
    AmountMismatchError,
    GatewayError,
    InvalidTransitionError,
    InventoryUnavailableError,
    OrderError,
    PaymentNotCapturedError,
    PaymentVerificationError,
    SignatureVerificationError,
    ValidationError,
)
from .repository import PaymentRepository, WebhookRepository
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)

SETTLED_REMOTE_STATUSES = {"captured": PaymentStatus.CAPTURED, "authorized": PaymentStatus.AUTHORIZED}

# payments that arrived for an order that could no longer take them
ORDER_NOT_PAYABLE = "ORDER_NOT_PAYABLE"
REFUND_INITIATED = "refund_initiated"


@dataclass(frozen=True)
class VerificationResult:
    order: Order
    payment: Payment
    replayed: bool = False


def notify_quietly(notifier: NotifierPort, order_number: str, event: str) -> None:
    """Notifications are fire-and-forget; a failing notifier is only logged."""
    try:
        notifier.notify(order_number, event)
    except Exception:
        logger.exception("notifier failed", extra={"order_number": order_number, "event": event})


class PaymentService:
    def __init__(
        self,
        gateway: PaymentGatewayPort,
        state_machine: OrderStateMachine,
        notifier: NotifierPort,
        payments: PaymentRepository | None = None,
        webhooks: WebhookRepository | None = None,
    ):
        self.gateway = gateway
        self.state_machine = state_machine
        self.notifier = notifier
        self.payments = payments or PaymentRepository()
        self.webhooks = webhooks or WebhookRepository()

    # ---------------- Intent ---------------- #

    def create_intent(self, order_number: str) -> RemoteOrderRef:
        """Create (or return the existing) gateway order for ``order_number``.

        Raises:
            InvalidTransitionError: The order is not pending.
            GatewayUnavailableError: The gateway could not be reached; the
                order stays pending and the call can be retried.
            GatewayRejectedError: The gateway refused the request.
        """
        order = self.state_machine.get(order_number)
        if order.gateway_order_id:
            return self._stored_intent(order)
        if order.status != OrderStatus.PENDING:
            raise InvalidTransitionError(order.status, OrderStatus.PAID, "Only pending orders can be paid")

        ref = self.gateway.create_remote_intent(order.number, order.pricing.total, order.currency, order.customer)
        order = self.state_machine.attach_remote_order(order.number, ref.gateway_order_id)
        if order.gateway_order_id != ref.gateway_order_id:
            return self._stored_intent(order)
        logger.info(
            "payment intent created",
            extra={"order_number": order.number, "gateway_order_id": ref.gateway_order_id},
        )
        return ref

    @staticmethod
    def _stored_intent(order: Order) -> RemoteOrderRef:
        return RemoteOrderRef(
            gateway_order_id=order.gateway_order_id,
            amount_minor=order.pricing.total,
            currency=order.currency,
            receipt=order.number,
        )

    # ---------------- Verification ---------------- #

    def verify(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> VerificationResult:
        """Verify a checkout callback and settle the order.

        Args:
            gateway_order_id: Gateway order id from the callback.
            gateway_payment_id: Gateway payment id from the callback.
            signature: Callback signature.

        Returns:
            VerificationResult: The paid order and its verified payment.
            ``replayed`` is True when the payment had been verified before.

        Raises:
            SignatureVerificationError: The signature does not match.
            OrderNotFoundError: No order carries ``gateway_order_id``.
            PaymentNotCapturedError: The gateway reports the payment as not
                captured or authorized.
            AmountMismatchError: The paid amount differs from the order total.
            InvalidTransitionError: The order can no longer be paid.
        """
        if not self.gateway.verify_callback(gateway_order_id, gateway_payment_id, signature):
            raise SignatureVerificationError(f"Signature mismatch for payment {gateway_payment_id}")

        order = self.state_machine.orders.get_by_gateway_order_id(gateway_order_id)
        existing = self.payments.get(gateway_payment_id)
        if existing is not None and existing.signature_verified and existing.order_id == order.id:
            logger.info(
                "payment already verified",
                extra={"order_number": order.number, "gateway_payment_id": gateway_payment_id},
            )
            return VerificationResult(order=self.state_machine.get(order.number), payment=existing, replayed=True)

        return self._settle(order, gateway_payment_id, self._remote_status(gateway_payment_id))

    def _remote_status(self, gateway_payment_id: str) -> Optional[RemotePaymentStatus]:
        try:
            return self.gateway.fetch_remote_status(gateway_payment_id)
        except GatewayError as e:
            logger.warning(
                "remote payment status unavailable, relying on signature",
                extra={"gateway_payment_id": gateway_payment_id, "error": e.code},
            )
            return None

    def _settle(self, order: Order, gateway_payment_id: str, remote: Optional[RemotePaymentStatus]) -> VerificationResult:
        amount = order.pricing.total
        payment_status = PaymentStatus.CAPTURED
        method = ""
        if remote is not None:
            if remote.gateway_order_id and remote.gateway_order_id != order.gateway_order_id:
                raise PaymentVerificationError(
                    f"Payment {gateway_payment_id} belongs to gateway order {remote.gateway_order_id}"
                )
            if remote.status not in SETTLED_REMOTE_STATUSES:
                self._record_attempt(order, gateway_payment_id, remote.amount_minor, remote.status, "NOT_CAPTURED")
                raise PaymentNotCapturedError(f"Payment {gateway_payment_id} is {remote.status}")
            amount = remote.amount_minor
            payment_status = SETTLED_REMOTE_STATUSES[remote.status]
            method = remote.method

        try:
            with transaction.atomic():
                paid = self.state_machine.mark_paid(
                    order.number, gateway_payment_id, amount, payment_status=payment_status, method=method or None
                )
                payment = self.payments.save(
                    Payment(
                        gateway_payment_id=gateway_payment_id,
                        order_id=order.id,
                        amount_minor=amount,
                        currency=order.currency,
                        gateway_status=payment_status.value,
                        method=method,
                        signature_verified=True,
                        verified_at=timezone.now(),
                    )
                )
        except AmountMismatchError as e:
            logger.warning(
                "payment amount mismatch",
                extra={
                    "order_number": order.number,
                    "gateway_payment_id": gateway_payment_id,
                    "expected": e.expected,
                    "received": e.received,
                },
            )
            self._record_attempt(order, gateway_payment_id, amount, "amount_mismatch", e.code)
            raise
        except InvalidTransitionError:
            self._reject_unpayable(order, gateway_payment_id, amount, payment_status, method)
            raise

        notify_quietly(self.notifier, paid.number, "payment_confirmed")
        return VerificationResult(order=paid, payment=payment)

    def _reject_unpayable(
        self, order: Order, gateway_payment_id: str, amount: int, payment_status: PaymentStatus, method: str
    ) -> None:
        """Record (and refund when captured) a payment its order cannot take.

        This is the callback losing the race against a cancellation, or a
        second payment against an order that is already paid.
        """
        current = self.state_machine.get(order.number)
        if current.status == OrderStatus.PENDING:
            # lost every CAS attempt; the caller can retry
            return
        logger.warning(
            "payment received for an order that cannot be paid",
            extra={
                "order_number": order.number,
                "order_status": current.status.value,
                "gateway_order_id": order.gateway_order_id,
                "gateway_payment_id": gateway_payment_id,
                "amount_minor": amount,
            },
        )
        existing = self.payments.get(gateway_payment_id)
        if existing is not None and (
            existing.signature_verified or existing.gateway_status in (REFUND_INITIATED, PaymentStatus.REFUNDED.value)
        ):
            return
        payment = self._record_attempt(
            order,
            gateway_payment_id,
            amount,
            payment_status.value,
            ORDER_NOT_PAYABLE,
            f"order is {current.status.value}",
            method=method,
        )
        if payment_status == PaymentStatus.CAPTURED:
            self.refund_unpayable(payment)

    def refund_unpayable(self, payment: Payment) -> bool:
        """Refund a captured payment recorded as ``ORDER_NOT_PAYABLE``.

        Returns:
            bool: True once the refund is initiated. Gateway failures are
            logged and left for ``retry_unpayable_refunds``.
        """
        try:
            ref = self.gateway.issue_refund(
                payment.gateway_payment_id, payment.amount_minor, idempotency_key=f"{payment.gateway_payment_id}:refund"
            )
        except GatewayError as e:
            logger.warning(
                "refund of unpayable payment failed",
                extra={"gateway_payment_id": payment.gateway_payment_id, "error": e.code},
            )
            return False
        self.payments.set_unverified_status(payment.gateway_payment_id, REFUND_INITIATED, f"refund {ref.refund_id}")
        logger.info(
            "unpayable payment refunded",
            extra={"gateway_payment_id": payment.gateway_payment_id, "refund_id": ref.refund_id},
        )
        return True

    def retry_unpayable_refunds(self, limit: int = 100) -> int:
        """Refund captured payments whose order could not take them. Returns how many were refunded."""
        return sum(
            1 for p in self.payments.captured_unverified(ORDER_NOT_PAYABLE, limit=limit) if self.refund_unpayable(p)
        )

    def _record_attempt(
        self,
        order: Order,
        gateway_payment_id: str,
        amount: int,
        gateway_status: str,
        error_code: str,
        description: str = "",
        method: str = "",
    ) -> Payment:
        return self.payments.save(
            Payment(
                gateway_payment_id=gateway_payment_id,
                order_id=order.id,
                amount_minor=amount,
                currency=order.currency,
                gateway_status=gateway_status,
                method=method,
                signature_verified=False,
                error_code=error_code or "",
                error_description=(description or "")[:255],
            )
        )

    # ---------------- Webhooks ---------------- #

    def handle_webhook(self, body: bytes, signature: str, event_id: str | None = None) -> str:
        """Process a gateway webhook delivery.

        Deliveries are at-least-once, so events are deduplicated by id.
        Business failures are recorded on the event and acknowledged;
        transient failures are re-raised so the gateway redelivers.

        Returns:
            str: ``processed``, ``duplicate``, ``ignored`` or ``failed``.
        """
        if not self.gateway.verify_webhook(body, signature):
            raise SignatureVerificationError("Webhook signature mismatch")
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Malformed webhook body")
        if not isinstance(payload, dict):
            raise ValidationError("Malformed webhook body")

        event = payload.get("event", "")
        event_id = event_id or payload.get("id") or hashlib.sha256(body).hexdigest()
        if not self.webhooks.record(event_id, event, payload):
            return "duplicate"

        try:
            outcome = self._dispatch(event, payload.get("payload") or {})
        except (GatewayError, InventoryUnavailableError) as e:
            self.webhooks.mark_failed(event_id, e.message)
            raise
        except OrderError as e:
            logger.warning("webhook not applied", extra={"event_id": event_id, "event": event, "error": e.code})
            self.webhooks.mark_failed(event_id, f"{e.code}: {e.message}")
            return "failed"
        except (KeyError, TypeError, ValueError) as e:
            self.webhooks.mark_failed(event_id, f"malformed payload: {e!r}")
            raise ValidationError("Malformed webhook payload") from e
        self.webhooks.mark_processed(event_id)
        return outcome

    def _dispatch(self, event: str, payload: dict) -> str:
        if event == "payment.captured":
            return self._settle_from_webhook(payload["payment"]["entity"])

        if event == "order.paid":
            remote_order = payload["order"]["entity"]
            entity = dict(payload["payment"]["entity"])
            entity.setdefault("order_id", remote_order["id"])
            return self._settle_from_webhook(entity)

        if event == "payment.authorized":
            entity = payload["payment"]["entity"]
            order = self.state_machine.orders.get_by_gateway_order_id(entity["order_id"])
            if self.payments.get(entity["id"]) is not None:
                return "duplicate"
            # the order is settled by the capture (or the callback), not by the authorization
            self._record_attempt(
                order,
                entity["id"],
                int(entity["amount"]),
                PaymentStatus.AUTHORIZED.value,
                "",
                method=entity.get("method") or "",
            )
            return "processed"

        if event == "payment.failed":
            entity = payload["payment"]["entity"]
            order = self.state_machine.orders.get_by_gateway_order_id(entity["order_id"])
            self._record_attempt(
                order,
                entity["id"],
                int(entity.get("amount", 0)),
                "failed",
                entity.get("error_code") or "PAYMENT_FAILED",
                entity.get("error_description") or "",
            )
            self.state_machine.record_payment_failure(order.number, entity["id"], entity.get("error_description") or "")
            return "processed"

        if event in ("refund.created", "refund.processed"):
            return self._apply_refund(event, payload["refund"]["entity"])

        return "ignored"

    def _settle_from_webhook(self, entity: dict) -> str:
        order = self.state_machine.orders.get_by_gateway_order_id(entity["order_id"])
        existing = self.payments.get(entity["id"])
        if existing is not None and existing.signature_verified:
            return "duplicate"
        remote = RemotePaymentStatus(
            gateway_payment_id=entity["id"],
            gateway_order_id=entity["order_id"],
            status=entity.get("status", "captured"),
            amount_minor=int(entity["amount"]),
            currency=entity.get("currency", order.currency),
            method=entity.get("method") or "",
        )
        self._settle(order, entity["id"], remote)
        return "processed"

    def _apply_refund(self, event: str, entity: dict) -> str:
        payment = self.payments.get(entity["payment_id"])
        if payment is None:
            logger.warning("refund for unknown payment", extra={"gateway_payment_id": entity["payment_id"]})
            return "ignored"
        processed = event == "refund.processed"

        if not payment.signature_verified:
            # refund of a payment its order never took
            status = PaymentStatus.REFUNDED.value if processed else REFUND_INITIATED
            if payment.gateway_status != PaymentStatus.REFUNDED.value:
                self.payments.set_unverified_status(payment.gateway_payment_id, status, f"refund {entity['id']}")
            return "processed"

        order = self.state_machine.orders.get_by_id(payment.order_id)
        if processed:
            self.state_machine.record_refund(
                order.number,
                RefundStatus.PROCESSED,
                refund_id=entity["id"],
                payment_status=PaymentStatus.REFUNDED,
            )
            notify_quietly(self.notifier, order.number, "refund_processed")
        elif order.refund_status != RefundStatus.PROCESSED:
            self.state_machine.record_refund(order.number, RefundStatus.INITIATED, refund_id=entity["id"])
        return "processed"
