"""Pydantic schemas for the orders API.

Request DTOs validate and normalize incoming JSON and convert it to the
domain types; read DTOs shape domain objects into responses.
"""

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import (
    Address,
    Customer,
    DiscountType,
    LineItem,
    Order,
    OrderDraft,
    Pricing,
)

PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class LineItemIn(BaseModel):
    """Input schema for a single order line.

    Attributes:
        product_id: Catalog id (letters, digits, ``_`` and ``-``).
        name: Product name snapshot.
        unit_price_minor: Unit price snapshot in minor units.
        quantity: Positive number of units.
    """

    product_id: str
    name: str = Field(min_length=1, max_length=255)
    unit_price_minor: int = Field(ge=0)
    quantity: int = Field(gt=0, le=1000)

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        if not PRODUCT_ID_RE.match(v):
            raise ValueError("Invalid product id")
        return v

    def to_domain(self) -> LineItem:
        return LineItem(
            product_id=self.product_id,
            name=self.name,
            unit_price_minor=self.unit_price_minor,
            quantity=self.quantity,
        )


class AddressIn(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=5, max_length=20)
    line1: str = Field(min_length=1, max_length=255)
    line2: str = Field(default="", max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=3, max_length=12)
    country: str = Field(default="IN", min_length=2, max_length=2)

    def to_domain(self) -> Address:
        return Address(**self.model_dump())


class CustomerIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str
    phone: str = Field(default="", max_length=20)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v2 = v.strip().lower()
        if not EMAIL_RE.match(v2):
            raise ValueError("Invalid email address")
        return v2

    def to_domain(self) -> Customer:
        return Customer(**self.model_dump())


class PricingIn(BaseModel):
    subtotal: int = Field(ge=0)
    discount: int = Field(default=0, ge=0)
    shipping: int = Field(ge=0)
    tax: int = Field(ge=0)
    total: int = Field(ge=0)


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    ``pricing`` is optional; when sent it must match what the server
    computes for ``items``.
    """

    items: List[LineItemIn] = Field(min_length=1)
    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None
    customer: CustomerIn
    payment_method: str = Field(default="razorpay", max_length=32)
    coupon_code: Optional[str] = Field(default=None, max_length=64)
    pricing: Optional[PricingIn] = None

    def to_draft(self) -> OrderDraft:
        return OrderDraft(
            items=[it.to_domain() for it in self.items],
            shipping_address=self.shipping_address.to_domain(),
            billing_address=self.billing_address.to_domain() if self.billing_address else None,
            customer=self.customer.to_domain(),
            payment_method=self.payment_method,
            coupon_code=self.coupon_code or None,
            declared_pricing=Pricing(**self.pricing.model_dump()) if self.pricing else None,
        )


class CancelOrderDTO(BaseModel):
    order_number: str = Field(min_length=1, max_length=40)
    reason: str = Field(default="", max_length=255)


class CreateIntentDTO(BaseModel):
    order_number: str = Field(min_length=1, max_length=40)


class VerifyPaymentDTO(BaseModel):
    """Checkout callback, accepting the gateway's field names."""

    model_config = ConfigDict(populate_by_name=True)

    gateway_order_id: str = Field(alias="razorpay_order_id", min_length=1, max_length=64)
    gateway_payment_id: str = Field(alias="razorpay_payment_id", min_length=1, max_length=64)
    signature: str = Field(alias="razorpay_signature", min_length=1, max_length=256)


class ApplyCouponDTO(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    order_number: str = Field(min_length=1, max_length=40)


class CreateCouponDTO(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    discount_type: DiscountType
    discount_value: int = Field(gt=0)
    min_order_minor: int = Field(default=0, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    description: str = Field(default="", max_length=255)


# ---------------- Read models ---------------- #

class PricingOut(BaseModel):
    subtotal: int
    discount: int
    shipping: int
    tax: int
    total: int


class LineItemOut(BaseModel):
    product_id: str
    name: str
    unit_price_minor: int
    quantity: int
    line_total_minor: int


class OrderEventOut(BaseModel):
    status: str
    message: str
    created_at: Optional[datetime] = None


class OrderReadDTO(BaseModel):
    number: str
    status: str
    payment_status: str
    currency: str
    items: List[LineItemOut]
    pricing: PricingOut
    coupon_code: Optional[str] = None
    gateway_order_id: Optional[str] = None
    refund_status: str
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    history: Optional[List[OrderEventOut]] = None

    @classmethod
    def from_domain(cls, order: Order, with_history: bool = False) -> "OrderReadDTO":
        return cls(
            number=order.number,
            status=order.status.value,
            payment_status=order.payment_status.value,
            currency=order.currency,
            items=[
                LineItemOut(
                    product_id=it.product_id,
                    name=it.name,
                    unit_price_minor=it.unit_price_minor,
                    quantity=it.quantity,
                    line_total_minor=it.line_total_minor,
                )
                for it in order.items
            ],
            pricing=PricingOut(
                subtotal=order.pricing.subtotal,
                discount=order.pricing.discount,
                shipping=order.pricing.shipping,
                tax=order.pricing.tax,
                total=order.pricing.total,
            ),
            coupon_code=order.coupon_code,
            gateway_order_id=order.gateway_order_id,
            refund_status=order.refund_status.value,
            cancellation_reason=order.cancellation_reason or None,
            created_at=order.created_at,
            paid_at=order.paid_at,
            cancelled_at=order.cancelled_at,
            history=(
                [OrderEventOut(status=e.status.value, message=e.message, created_at=e.created_at) for e in order.history]
                if with_history
                else None
            ),
        )


class IntentOut(BaseModel):
    gateway_order_id: str
    amount_minor: int
    currency: str
    key_id: str
