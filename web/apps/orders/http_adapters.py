"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements the network-facing ports using ``httpx``:

- ``HttpInventoryClient`` talks to the inventory counter service.
- ``RazorpayGateway`` talks to the payment gateway's REST API.
- ``HttpNotifier`` posts order events to the notification dispatcher.

All of them go through ``ResilientHttpClient``, which adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the gateway middleware.
- A circuit breaker per downstream service, injected at construction, to
    avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
    timeout.
- A retry policy with exponential backoff for transport errors and 5xx.
"""

import logging
import threading
import time
from typing import Callable, Optional, Type

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    Customer,
    InventoryPort,
    NotifierPort,
    PaymentGatewayPort,
    RefundRef,
    RemoteOrderRef,
    RemotePaymentStatus,
)
from .errors import GatewayRejectedError, GatewayUnavailableError, InventoryUnavailableError, OrderError
from .signatures import callback_signature, signatures_match, webhook_signature

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitOpenError(RuntimeError):
    """Raised by ``CircuitBreaker.before_call`` when calls are not allowed."""


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the circuit again.

    Thread-safe via an internal lock. ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        name: str,
        fail_threshold: int,
        reset_timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._probe_in_flight = False

    @classmethod
    def from_settings(cls, name: str) -> "CircuitBreaker":
        return cls(
            name,
            getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
            getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
        )

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (self._clock() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Admit or refuse a call.

        Returns:
            str: The state the call is admitted in.

        Raises:
            CircuitOpenError: The circuit is OPEN, or a HALF_OPEN probe is
                already running.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"{self.name}: CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise CircuitOpenError(f"{self.name}: CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = self._clock()
                self._probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers: ``X-Request-ID`` from the request context plus ``extra``."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_attempts, backoff_base_seconds, max_sleep)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


class ResilientHttpClient:
    """``httpx`` wrapper applying the breaker and the retry policy.

    Any response below 500 is handed back to the caller (and counts as a
    success for the breaker: a 4xx is a business answer, not an outage).
    Transport errors, exhausted 5xx retries and an open circuit raise
    ``unavailable_error``.
    """

    def __init__(
        self,
        base_url: str,
        breaker: CircuitBreaker,
        unavailable_error: Type[OrderError],
        timeout: float | None = None,
        auth: tuple[str, str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.unavailable_error = unavailable_error
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 3.0)
        self.auth = auth
        self._sleep = sleep

    def request(self, method: str, path: str, *, json=None, headers: Optional[dict] = None) -> httpx.Response:
        try:
            state = self.breaker.before_call()
        except CircuitOpenError as e:
            raise self.unavailable_error(f"{self.breaker.name} unavailable (circuit open)") from e

        max_attempts, backoff, cap = _retry_policy()
        hdrs = _request_headers({**(headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})
        url = f"{self.base_url}{path}"
        tries = 0
        try:
            with httpx.Client(timeout=self.timeout, auth=self.auth) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.request(method, url, json=json, headers=hdrs)
                        if not _should_retry(resp, None):
                            self.breaker.on_success()
                            return resp
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    hdrs["X-Retry-Count"] = str(tries)
                    if tries >= max_attempts:
                        self.breaker.on_failure()
                        logger.warning(
                            "upstream call failed",
                            extra={
                                "upstream": self.breaker.name,
                                "path": path,
                                "attempts": tries,
                                "status": resp.status_code if resp is not None else None,
                            },
                        )
                        raise self.unavailable_error(f"{self.breaker.name} unavailable") from exc

                    self._sleep(min(backoff * (2 ** (tries - 1)), cap))
        finally:
            self.breaker.on_finish()


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return err.get("description") or err.get("code") or ""
        return str(body.get("detail", ""))
    return ""


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(InventoryPort):
    """Client for the inventory counter service.

    The service answers 409 ``INSUFFICIENT_STOCK`` when a decrement would go
    below zero; that is a business outcome, reported as ``False``.
    """

    def __init__(self, breaker: CircuitBreaker, base_url: str | None = None, timeout: float | None = None):
        self.http = ResilientHttpClient(
            base_url or settings.INVENTORY_BASE_URL,
            breaker,
            InventoryUnavailableError,
            timeout=timeout,
        )

    def available(self, product_id: str) -> int:
        resp = self.http.request("GET", f"/stock/{product_id}")
        if resp.status_code == 404:
            return 0
        if resp.status_code != 200:
            raise InventoryUnavailableError(f"Unexpected inventory response {resp.status_code}")
        return int(resp.json()["quantity"])

    def _mutate(self, action: str, product_id: str, quantity: int, idempotency_key: str | None) -> httpx.Response:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return self.http.request(
            "POST", f"/stock/{product_id}/{action}", json={"quantity": quantity}, headers=headers
        )

    def decrement(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> bool:
        resp = self._mutate("decrement", product_id, quantity, idempotency_key)
        if resp.status_code == 200:
            return True
        if resp.status_code == 409 and _error_detail(resp) == "INSUFFICIENT_STOCK":
            return False
        raise InventoryUnavailableError(
            f"Inventory refused decrement of {product_id}: {resp.status_code} {_error_detail(resp)}"
        )

    def increment(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> int:
        resp = self._mutate("increment", product_id, quantity, idempotency_key)
        if resp.status_code != 200:
            raise InventoryUnavailableError(
                f"Inventory refused increment of {product_id}: {resp.status_code} {_error_detail(resp)}"
            )
        return int(resp.json()["quantity"])


# ---------------- Payment Gateway Adapter ---------------- #

class RazorpayGateway(PaymentGatewayPort):
    """Razorpay REST client.

    Requests are authenticated with HTTP basic auth (key id / key secret).
    Order creation and refunds carry an ``Idempotency-Key`` so that retries
    after a timeout never create a second remote order or refund.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        key_id: str | None = None,
        key_secret: str | None = None,
        webhook_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.key_id = key_id or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or settings.RAZORPAY_KEY_SECRET
        self.webhook_secret = webhook_secret or settings.RAZORPAY_WEBHOOK_SECRET
        self.http = ResilientHttpClient(
            base_url or settings.PAYMENTS_BASE_URL,
            breaker,
            GatewayUnavailableError,
            timeout=timeout,
            auth=(self.key_id, self.key_secret),
        )

    def _ok(self, resp: httpx.Response) -> dict:
        if 200 <= resp.status_code < 300:
            return resp.json()
        raise GatewayRejectedError(f"Gateway rejected request ({resp.status_code}): {_error_detail(resp)}")

    def create_remote_intent(
        self, order_number: str, amount_minor: int, currency: str, customer: Customer
    ) -> RemoteOrderRef:
        data = self._ok(
            self.http.request(
                "POST",
                "/orders",
                json={
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": order_number,
                    "notes": {"order_number": order_number, "customer_email": customer.email},
                },
                headers={"Idempotency-Key": order_number},
            )
        )
        return RemoteOrderRef(
            gateway_order_id=data["id"],
            amount_minor=int(data["amount"]),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", order_number),
        )

    def verify_callback(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        expected = callback_signature(self.key_secret, gateway_order_id, gateway_payment_id)
        ok = signatures_match(expected, signature)
        if not ok:
            logger.warning(
                "payment signature mismatch",
                extra={"gateway_order_id": gateway_order_id, "gateway_payment_id": gateway_payment_id},
            )
        return ok

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        return signatures_match(webhook_signature(self.webhook_secret, body), signature)

    def fetch_remote_status(self, gateway_payment_id: str) -> RemotePaymentStatus:
        data = self._ok(self.http.request("GET", f"/payments/{gateway_payment_id}"))
        return RemotePaymentStatus(
            gateway_payment_id=data["id"],
            gateway_order_id=data.get("order_id"),
            status=data["status"],
            amount_minor=int(data["amount"]),
            currency=data.get("currency", "INR"),
            method=data.get("method") or "",
        )

    def issue_refund(self, gateway_payment_id: str, amount_minor: int, idempotency_key: str) -> RefundRef:
        data = self._ok(
            self.http.request(
                "POST",
                f"/payments/{gateway_payment_id}/refund",
                json={"amount": amount_minor},
                headers={"Idempotency-Key": idempotency_key},
            )
        )
        return RefundRef(refund_id=data["id"], status=data.get("status", "pending"), amount_minor=int(data["amount"]))


# ---------------- Notifications ---------------- #

class HttpNotifier(NotifierPort):
    """Posts ``{"order_number", "event"}`` to the notification dispatcher.

    Delivery is best effort: failures are logged and never reach the caller.
    """

    def __init__(self, breaker: CircuitBreaker, url: str | None = None, timeout: float | None = None):
        self.http = ResilientHttpClient(
            url or settings.NOTIFICATIONS_URL, breaker, GatewayUnavailableError, timeout=timeout
        )

    def notify(self, order_number: str, event: str) -> None:
        try:
            resp = self.http.request("POST", "", json={"order_number": order_number, "event": event})
            if resp.status_code >= 400:
                logger.warning(
                    "notification rejected",
                    extra={"order_number": order_number, "event": event, "status": resp.status_code},
                )
        except Exception:
            logger.exception("notification failed", extra={"order_number": order_number, "event": event})
