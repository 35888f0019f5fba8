"""Domain models and ports for the order lifecycle.

This module contains the dataclasses the core services pass around
(orders, reservations, payments, coupons), the enums describing their
lifecycles, and protocol definitions (ports) for the external
collaborators: the inventory counter, the payment gateway and the
notification dispatcher. Nothing here touches the database or the
network; repositories and adapters map to and from these types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol
import uuid


# ---- Enums ----
class OrderStatus(str, Enum):
    """Order lifecycle.

    ``pending -> paid -> shipped -> delivered`` with ``cancelled`` reachable
    from ``pending`` and ``paid`` only.
    """

    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment axis of an order, independent from ``OrderStatus``."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    NONE = "none"
    # refund failed and must be retried
    PENDING = "pending"
    INITIATED = "initiated"
    PROCESSED = "processed"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    RESTORED = "restored"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# ---- Value objects ----
@dataclass(frozen=True)
class LineItem:
    """A single line of an order.

    Attributes:
        product_id: Catalog identifier of the product.
        name: Product name captured at checkout time.
        unit_price_minor: Unit price snapshot in minor currency units.
        quantity: Number of units ordered.
    """

    product_id: str
    name: str
    unit_price_minor: int
    quantity: int

    @property
    def line_total_minor(self) -> int:
        return self.unit_price_minor * self.quantity


@dataclass(frozen=True)
class Address:
    full_name: str
    phone: str
    line1: str
    city: str
    state: str
    postal_code: str
    country: str = "IN"
    line2: str = ""


@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: str = ""


@dataclass(frozen=True)
class Pricing:
    """Pricing breakdown, all amounts in integer minor units.

    ``total`` always equals ``subtotal - discount + shipping + tax``; build
    instances through ``Pricing.build`` so the identity holds by construction.
    """

    subtotal: int
    discount: int
    shipping: int
    tax: int
    total: int

    @classmethod
    def build(cls, subtotal: int, shipping: int, tax: int, discount: int = 0) -> "Pricing":
        discount = max(0, min(discount, subtotal))
        return cls(
            subtotal=subtotal,
            discount=discount,
            shipping=shipping,
            tax=tax,
            total=subtotal - discount + shipping + tax,
        )

    def with_discount(self, discount: int) -> "Pricing":
        """Return the same breakdown with a new discount (tax and shipping stay)."""
        return Pricing.build(self.subtotal, self.shipping, self.tax, discount)

    def is_consistent(self) -> bool:
        return self.total == self.subtotal - self.discount + self.shipping + self.tax


@dataclass(frozen=True)
class OrderDraft:
    """Everything checkout knows before an order exists.

    ``declared_pricing`` is what the client believes the breakdown is; when
    present it must match the server-side computation.
    """

    items: List[LineItem]
    shipping_address: Optional[Address]
    customer: Optional[Customer]
    payment_method: str = "razorpay"
    billing_address: Optional[Address] = None
    coupon_code: Optional[str] = None
    declared_pricing: Optional[Pricing] = None


# ---- Entities ----
@dataclass
class Order:
    """Order aggregate as seen by the core services.

    ``version`` is the optimistic-concurrency counter; every persisted
    transition bumps it.
    """

    id: uuid.UUID
    number: str
    items: List[LineItem]
    pricing: Pricing
    shipping_address: Address
    billing_address: Address
    customer: Customer
    payment_method: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    version: int = 0
    currency: str = "INR"
    coupon_code: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    reservation_id: Optional[uuid.UUID] = None
    refund_status: RefundStatus = RefundStatus.NONE
    refund_id: Optional[str] = None
    refund_error: str = ""
    cancellation_reason: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    history: List["OrderEvent"] = field(default_factory=list)

    @property
    def is_return_eligible(self) -> bool:
        return self.status == OrderStatus.DELIVERED


@dataclass(frozen=True)
class OrderEvent:
    status: OrderStatus
    message: str
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReservationLine:
    product_id: str
    quantity: int
    restored: bool = False


@dataclass
class StockReservation:
    id: uuid.UUID
    lines: List[ReservationLine]
    status: ReservationStatus = ReservationStatus.ACTIVE
    order_id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    restored_at: Optional[datetime] = None


@dataclass
class Payment:
    gateway_payment_id: str
    order_id: uuid.UUID
    amount_minor: int
    currency: str
    gateway_status: str
    method: str = ""
    signature_verified: bool = False
    verified_at: Optional[datetime] = None
    error_code: str = ""
    error_description: str = ""


@dataclass
class Coupon:
    """Discount coupon keyed by its upper-cased code.

    ``discount_value`` is an integer percent for ``PERCENTAGE`` coupons and an
    amount in minor units for ``FIXED`` ones.
    """

    code: str
    discount_type: DiscountType
    discount_value: int
    min_order_minor: int = 0
    max_uses: Optional[int] = None
    current_uses: int = 0
    expires_at: Optional[datetime] = None
    is_active: bool = True
    description: str = ""

    @staticmethod
    def normalize(code: str) -> str:
        return (code or "").strip().upper()

    def discount_for(self, amount_minor: int) -> int:
        if self.discount_type == DiscountType.PERCENTAGE:
            discount = amount_minor * self.discount_value // 100
        else:
            discount = self.discount_value
        return max(0, min(discount, amount_minor))


@dataclass(frozen=True)
class CouponQuote:
    code: str
    discount_minor: int


# ---- Gateway value objects ----
@dataclass(frozen=True)
class RemoteOrderRef:
    gateway_order_id: str
    amount_minor: int
    currency: str
    receipt: str = ""


@dataclass(frozen=True)
class RemotePaymentStatus:
    gateway_payment_id: str
    gateway_order_id: Optional[str]
    status: str
    amount_minor: int
    currency: str = "INR"
    method: str = ""


@dataclass(frozen=True)
class RefundRef:
    refund_id: str
    status: str
    amount_minor: int


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Per-product available-quantity counter.

    Decrements never take a counter below zero. Both mutations accept an
    idempotency key; applying the same key twice has the effect of once.
    """

    def available(self, product_id: str) -> int:
        raise NotImplementedError()

    def decrement(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> bool:
        """Take ``quantity`` units. Returns False when not enough stock is left."""
        raise NotImplementedError()

    def increment(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> int:
        """Give back ``quantity`` units. Returns the new available quantity."""
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing the third-party payment processor."""

    def create_remote_intent(
        self, order_number: str, amount_minor: int, currency: str, customer: Customer
    ) -> RemoteOrderRef:
        raise NotImplementedError()

    def verify_callback(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        raise NotImplementedError()

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        raise NotImplementedError()

    def fetch_remote_status(self, gateway_payment_id: str) -> RemotePaymentStatus:
        raise NotImplementedError()

    def issue_refund(self, gateway_payment_id: str, amount_minor: int, idempotency_key: str) -> RefundRef:
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Fire-and-forget notifications (email/SMS) about order events."""

    def notify(self, order_number: str, event: str) -> None:
        raise NotImplementedError()
