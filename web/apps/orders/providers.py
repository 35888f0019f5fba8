"""Service wiring for the orders app.

``build_services`` assembles every core service around one set of ports.
By default it uses the HTTP adapters (inventory service, Razorpay,
notification dispatcher) when ``settings.USE_HTTP_ADAPTERS`` is truthy,
and the in-process ``LocalInventoryCounter`` / ``FakeGateway`` /
``LoggingNotifier`` otherwise. Circuit breakers are created here, once per
``build_services`` call, so each process shares one breaker per
downstream through the cached ``get_services()``.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional

from django.conf import settings

from .adapters import FakeGateway, LoggingNotifier
from .cancellation import CancellationOrchestrator
from .checkout import CheckoutService
from .coupons import CouponLedger
from .domain import InventoryPort, NotifierPort, PaymentGatewayPort
from .http_adapters import CircuitBreaker, HttpInventoryClient, HttpNotifier, RazorpayGateway
from .inventory import LocalInventoryCounter
from .payments import PaymentService
from .reservations import ReservationManager
from .state_machine import OrderStateMachine


@dataclass
class Services:
    inventory: InventoryPort
    gateway: PaymentGatewayPort
    notifier: NotifierPort
    state_machine: OrderStateMachine
    reservations: ReservationManager
    payments: PaymentService
    cancellation: CancellationOrchestrator
    coupons: CouponLedger
    checkout: CheckoutService
    breakers: Dict[str, CircuitBreaker] = field(default_factory=dict)


def build_services(
    inventory: Optional[InventoryPort] = None,
    gateway: Optional[PaymentGatewayPort] = None,
    notifier: Optional[NotifierPort] = None,
) -> Services:
    """Assemble the core services.

    Args:
        inventory: Stock counter port; chosen from settings when omitted.
        gateway: Payment gateway port; chosen from settings when omitted.
        notifier: Notification port; chosen from settings when omitted.

    Returns:
        Services: Fully wired services sharing the given ports.
    """
    breakers: Dict[str, CircuitBreaker] = {}
    use_http = getattr(settings, "USE_HTTP_ADAPTERS", True)

    if inventory is None:
        if use_http:
            breakers["inventory"] = CircuitBreaker.from_settings("inventory")
            inventory = HttpInventoryClient(breakers["inventory"])
        else:
            inventory = LocalInventoryCounter()
    if gateway is None:
        if use_http:
            breakers["payments"] = CircuitBreaker.from_settings("payments")
            gateway = RazorpayGateway(breakers["payments"])
        else:
            gateway = FakeGateway(settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_WEBHOOK_SECRET)
    if notifier is None:
        if use_http and getattr(settings, "NOTIFICATIONS_URL", ""):
            breakers["notifications"] = CircuitBreaker.from_settings("notifications")
            notifier = HttpNotifier(breakers["notifications"])
        else:
            notifier = LoggingNotifier()

    state_machine = OrderStateMachine()
    reservations = ReservationManager(inventory)
    payments = PaymentService(gateway, state_machine, notifier)
    cancellation = CancellationOrchestrator(state_machine, reservations, gateway, notifier, payments=payments)
    coupons = CouponLedger(state_machine)
    checkout = CheckoutService(state_machine, reservations, coupons, payments, cancellation, notifier)
    return Services(
        inventory=inventory,
        gateway=gateway,
        notifier=notifier,
        state_machine=state_machine,
        reservations=reservations,
        payments=payments,
        cancellation=cancellation,
        coupons=coupons,
        checkout=checkout,
        breakers=breakers,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Process-wide services; ``get_services.cache_clear()`` rebuilds them."""
    return build_services()
