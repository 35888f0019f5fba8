"""In-process adapters for the orders domain ports.

These implement ``InventoryPort``, ``PaymentGatewayPort`` and
``NotifierPort`` without any network calls. They are used for unit tests
and local development where deterministic behavior is useful and external
services are not required.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Dict, List, Optional, Tuple

from .domain import (
    Customer,
    InventoryPort,
    NotifierPort,
    PaymentGatewayPort,
    RefundRef,
    RemoteOrderRef,
    RemotePaymentStatus,
)
from .errors import GatewayRejectedError, GatewayUnavailableError, InventoryUnavailableError
from .signatures import callback_signature, signatures_match, webhook_signature

logger = logging.getLogger(__name__)


class InMemoryInventory(InventoryPort):
    """Dictionary-backed stock counter.

    Args:
        levels: Initial available quantity per product id.
        fail_on: Product ids whose decrement raises
            ``InventoryUnavailableError`` (simulates an outage mid-reserve).
    """

    def __init__(self, levels: Optional[Dict[str, int]] = None, fail_on: Optional[set] = None):
        self.levels: Dict[str, int] = dict(levels or {})
        self.fail_on = set(fail_on or ())
        self.applied_keys: set = set()
        self.calls: List[Tuple[str, str, int, Optional[str]]] = []
        self._lock = threading.Lock()

    def available(self, product_id: str) -> int:
        return self.levels.get(product_id, 0)

    def decrement(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> bool:
        self.calls.append(("decrement", product_id, quantity, idempotency_key))
        if product_id in self.fail_on:
            raise InventoryUnavailableError(f"inventory unavailable for {product_id}")
        with self._lock:
            if idempotency_key and idempotency_key in self.applied_keys:
                return True
            if self.levels.get(product_id, 0) < quantity:
                return False
            self.levels[product_id] = self.levels.get(product_id, 0) - quantity
            if idempotency_key:
                self.applied_keys.add(idempotency_key)
            return True

    def increment(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> int:
        self.calls.append(("increment", product_id, quantity, idempotency_key))
        with self._lock:
            if not (idempotency_key and idempotency_key in self.applied_keys):
                self.levels[product_id] = self.levels.get(product_id, 0) + quantity
                if idempotency_key:
                    self.applied_keys.add(idempotency_key)
            return self.levels[product_id]


class FakeGateway(PaymentGatewayPort):
    """Deterministic stand-in for the payment gateway.

    Signatures are real HMACs with the configured secrets, so the
    verification path is exercised end to end. ``simulate_payment`` plays
    the part of the customer paying on the gateway's checkout page.

    Attributes:
        available: When False every remote call raises
            ``GatewayUnavailableError``.
        refund_error: Exception raised by ``issue_refund`` when set.
    """

    def __init__(self, key_secret: str = "test_key_secret", webhook_secret: str = "test_webhook_secret"):
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.available = True
        self.status_available = True
        self.refund_error: Optional[Exception] = None
        self.orders: Dict[str, RemoteOrderRef] = {}
        self.payments: Dict[str, RemotePaymentStatus] = {}
        self.refunds: Dict[str, RefundRef] = {}
        self._receipts: Dict[str, str] = {}

    def _check_available(self):
        if not self.available:
            raise GatewayUnavailableError("fake gateway unavailable")

    def create_remote_intent(
        self, order_number: str, amount_minor: int, currency: str, customer: Customer
    ) -> RemoteOrderRef:
        self._check_available()
        if amount_minor <= 0:
            raise GatewayRejectedError("amount must be positive")
        # receipt doubles as the idempotency key
        if order_number in self._receipts:
            return self.orders[self._receipts[order_number]]
        ref = RemoteOrderRef(
            gateway_order_id=f"order_{uuid.uuid4().hex[:14]}",
            amount_minor=amount_minor,
            currency=currency,
            receipt=order_number,
        )
        self.orders[ref.gateway_order_id] = ref
        self._receipts[order_number] = ref.gateway_order_id
        return ref

    def simulate_payment(
        self, gateway_order_id: str, amount_minor: int | None = None, status: str = "captured", method: str = "card"
    ) -> Tuple[str, str]:
        """Record a payment against a remote order.

        Returns:
            tuple[str, str]: ``(gateway_payment_id, signature)`` as the
            checkout callback would deliver them.
        """
        ref = self.orders[gateway_order_id]
        payment_id = f"pay_{uuid.uuid4().hex[:14]}"
        self.payments[payment_id] = RemotePaymentStatus(
            gateway_payment_id=payment_id,
            gateway_order_id=gateway_order_id,
            status=status,
            amount_minor=ref.amount_minor if amount_minor is None else amount_minor,
            currency=ref.currency,
            method=method,
        )
        return payment_id, callback_signature(self.key_secret, gateway_order_id, payment_id)

    def sign_webhook(self, body: bytes) -> str:
        return webhook_signature(self.webhook_secret, body)

    def verify_callback(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        expected = callback_signature(self.key_secret, gateway_order_id, gateway_payment_id)
        return signatures_match(expected, signature)

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        return signatures_match(webhook_signature(self.webhook_secret, body), signature)

    def fetch_remote_status(self, gateway_payment_id: str) -> RemotePaymentStatus:
        self._check_available()
        if not self.status_available:
            raise GatewayUnavailableError("status endpoint unavailable")
        try:
            return self.payments[gateway_payment_id]
        except KeyError:
            raise GatewayRejectedError(f"unknown payment {gateway_payment_id}")

    def issue_refund(self, gateway_payment_id: str, amount_minor: int, idempotency_key: str) -> RefundRef:
        self._check_available()
        if self.refund_error is not None:
            raise self.refund_error
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]
        ref = RefundRef(refund_id=f"rfnd_{uuid.uuid4().hex[:14]}", status="pending", amount_minor=amount_minor)
        self.refunds[idempotency_key] = ref
        return ref


class LoggingNotifier(NotifierPort):
    """Writes notifications to the log and keeps them for inspection."""

    def __init__(self):
        self.sent: deque = deque(maxlen=200)

    def notify(self, order_number: str, event: str) -> None:
        self.sent.append((order_number, event))
        logger.info("notification", extra={"order_number": order_number, "event": event})
