import uuid
from django.db import models
from django.db.models import F, Q

from .domain import (
    DiscountType,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
    ReservationStatus,
)


def _choices(enum_cls):
    return [(m.value, m.name.replace("_", " ").title()) for m in enum_cls]


class OrderModel(models.Model):
    # UUID PK stays internal; customers see `number`
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    number = models.CharField(max_length=40, unique=True)

    status = models.CharField(max_length=16, choices=_choices(OrderStatus), default=OrderStatus.PENDING.value)
    payment_status = models.CharField(
        max_length=16, choices=_choices(PaymentStatus), default=PaymentStatus.PENDING.value
    )
    # optimistic concurrency counter, bumped on every transition
    version = models.PositiveIntegerField(default=0)

    currency = models.CharField(max_length=3, default="INR")
    subtotal_minor = models.PositiveBigIntegerField(default=0)
    discount_minor = models.PositiveBigIntegerField(default=0)
    shipping_minor = models.PositiveBigIntegerField(default=0)
    tax_minor = models.PositiveBigIntegerField(default=0)
    total_minor = models.PositiveBigIntegerField(default=0)

    customer = models.JSONField(default=dict)
    shipping_address = models.JSONField(default=dict)
    billing_address = models.JSONField(default=dict)
    payment_method = models.CharField(max_length=32, blank=True, default="")
    coupon_code = models.CharField(max_length=64, null=True, blank=True)

    gateway_order_id = models.CharField(max_length=64, null=True, blank=True, unique=True)
    gateway_payment_id = models.CharField(max_length=64, null=True, blank=True)

    refund_status = models.CharField(max_length=16, choices=_choices(RefundStatus), default=RefundStatus.NONE.value)
    refund_id = models.CharField(max_length=64, null=True, blank=True)
    refund_error = models.TextField(blank=True, default="")
    cancellation_reason = models.CharField(max_length=255, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    # queryset.update() bypasses auto_now, so repositories set it explicitly
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "refund_status"], name="orders_status_refund_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(total_minor=F("subtotal_minor") - F("discount_minor") + F("shipping_minor") + F("tax_minor")),
                name="orders_total_identity",
            ),
        ]


class OrderLineModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="lines")
    position = models.PositiveIntegerField()
    product_id = models.CharField(max_length=64)
    name = models.CharField(max_length=255)
    unit_price_minor = models.PositiveBigIntegerField()
    quantity = models.PositiveIntegerField()

    class Meta:
        db_table = "order_lines"
        ordering = ["position"]


class OrderEventModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="events")
    status = models.CharField(max_length=16, choices=_choices(OrderStatus))
    message = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_events"
        ordering = ["created_at", "id"]


class StockReservationModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # null until the order row exists; an active reservation without order is an orphan
    order = models.OneToOneField(
        OrderModel, on_delete=models.PROTECT, related_name="reservation", null=True, blank=True
    )
    status = models.CharField(
        max_length=16, choices=_choices(ReservationStatus), default=ReservationStatus.ACTIVE.value
    )
    created_at = models.DateTimeField(auto_now_add=True)
    restored_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "stock_reservations"


class ReservationLineModel(models.Model):
    reservation = models.ForeignKey(StockReservationModel, on_delete=models.CASCADE, related_name="lines")
    product_id = models.CharField(max_length=64)
    quantity = models.PositiveIntegerField()
    restored = models.BooleanField(default=False)

    class Meta:
        db_table = "stock_reservation_lines"
        ordering = ["id"]
        constraints = [
            models.UniqueConstraint(fields=["reservation", "product_id"], name="ux_reservation_product"),
        ]


class PaymentModel(models.Model):
    gateway_payment_id = models.CharField(max_length=64, primary_key=True)
    order = models.ForeignKey(OrderModel, on_delete=models.PROTECT, related_name="payments")
    amount_minor = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3, default="INR")
    gateway_status = models.CharField(max_length=32)
    method = models.CharField(max_length=32, blank=True, default="")
    signature_verified = models.BooleanField(default=False)
    verified_at = models.DateTimeField(null=True, blank=True)
    error_code = models.CharField(max_length=64, blank=True, default="")
    error_description = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payments"
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(signature_verified=True),
                name="ux_one_verified_payment_per_order",
            ),
        ]


class CouponModel(models.Model):
    code = models.CharField(max_length=64, primary_key=True)
    discount_type = models.CharField(max_length=16, choices=_choices(DiscountType))
    discount_value = models.PositiveBigIntegerField()
    min_order_minor = models.PositiveBigIntegerField(default=0)
    max_uses = models.PositiveIntegerField(null=True, blank=True)
    current_uses = models.PositiveIntegerField(default=0)
    expires_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    description = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "coupons"
        constraints = [
            models.CheckConstraint(
                condition=Q(max_uses__isnull=True) | Q(current_uses__lte=F("max_uses")),
                name="coupons_uses_within_limit",
            ),
        ]


class StockLevelModel(models.Model):
    product_id = models.CharField(max_length=64, primary_key=True)
    quantity = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "stock_levels"


class StockMovementModel(models.Model):
    # unique key makes each counter mutation apply at most once
    key = models.CharField(max_length=200, unique=True)
    product_id = models.CharField(max_length=64)
    delta = models.IntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "stock_movements"
        ordering = ["id"]


class WebhookEventModel(models.Model):
    event_id = models.CharField(max_length=100, primary_key=True)
    event = models.CharField(max_length=64)
    payload = models.JSONField(default=dict)
    processed = models.BooleanField(default=False)
    processed_at = models.DateTimeField(null=True, blank=True)
    error = models.TextField(blank=True, default="")
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "webhook_events"


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_number = models.CharField(max_length=40, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
