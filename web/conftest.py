# Shared fixtures: services wired to the local stock counter and the fake gateway
import pytest

from apps.orders.adapters import FakeGateway, LoggingNotifier
from apps.orders.domain import Address, Customer, LineItem, OrderDraft


@pytest.fixture(autouse=True)
def use_local_adapters(settings):
    from apps.orders import providers

    settings.USE_HTTP_ADAPTERS = False
    # `services` monkeypatches providers.get_services; keep the cached one
    get_services = providers.get_services
    get_services.cache_clear()
    yield
    get_services.cache_clear()


@pytest.fixture
def gateway(settings):
    return FakeGateway(settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_WEBHOOK_SECRET)


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def counter():
    from apps.orders.inventory import LocalInventoryCounter

    return LocalInventoryCounter()


@pytest.fixture
def services(db, monkeypatch, counter, gateway, notifier):
    """Fully wired services; views see the same instance through ``get_services``."""
    from apps.orders import providers

    svc = providers.build_services(inventory=counter, gateway=gateway, notifier=notifier)
    monkeypatch.setattr(providers, "get_services", lambda: svc)
    return svc


@pytest.fixture
def stock(counter):
    """``stock({"SKU-1": qty, ...})`` sets available quantities."""

    def _set(levels):
        for product_id, qty in levels.items():
            counter.set_level(product_id, qty)

    return _set


SHIPPING = Address(
    full_name="Asha Rao",
    phone="9876543210",
    line1="12 MG Road",
    city="Bengaluru",
    state="KA",
    postal_code="560001",
)
CUSTOMER = Customer(name="Asha Rao", email="asha@example.com", phone="9876543210")


@pytest.fixture
def make_draft():
    """Build an ``OrderDraft``; ``items`` is a list of ``(product_id, unit_price_minor, qty)``."""

    def _make(items=(("SKU-1", 100_000, 1),), **overrides):
        fields = dict(
            items=[LineItem(product_id=p, name=f"Product {p}", unit_price_minor=price, quantity=q) for p, price, q in items],
            shipping_address=SHIPPING,
            customer=CUSTOMER,
        )
        fields.update(overrides)
        return OrderDraft(**fields)

    return _make


@pytest.fixture
def order_payload():
    """JSON body for ``POST /api/orders/``."""

    def _make(items=(("SKU-1", 100_000, 1),), **extra):
        body = {
            "items": [
                {"product_id": p, "name": f"Product {p}", "unit_price_minor": price, "quantity": q}
                for p, price, q in items
            ],
            "shipping_address": {
                "full_name": SHIPPING.full_name,
                "phone": SHIPPING.phone,
                "line1": SHIPPING.line1,
                "city": SHIPPING.city,
                "state": SHIPPING.state,
                "postal_code": SHIPPING.postal_code,
            },
            "customer": {"name": CUSTOMER.name, "email": CUSTOMER.email, "phone": CUSTOMER.phone},
        }
        body.update(extra)
        return body

    return _make
