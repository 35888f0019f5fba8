"""Ledger store: repositories over the Django ORM.

The repositories are the only code that touches ``models``. They map rows
to the dataclasses in ``domain`` so services stay decoupled from ORM
types, and they expose the two primitives the core relies on:

- compare-and-swap updates on ``(status, version)`` for orders and on
  ``status`` / ``restored`` flags for reservations, implemented as a
  filtered ``UPDATE`` whose affected-row count says who won;
- single-statement conditional counters (coupon uses) built with ``F()``
  expressions, so concurrent writers from independent processes are
  linearized by the database.
"""

import secrets
import uuid
from dataclasses import asdict
from datetime import datetime
from typing import Iterable, List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .domain import (
    Address,
    Coupon,
    Customer,
    DiscountType,
    LineItem,
    Order,
    OrderEvent,
    OrderStatus,
    Payment,
    PaymentStatus,
    Pricing,
    RefundStatus,
    ReservationLine,
    ReservationStatus,
    StockReservation,
)
from .errors import CouponExistsError, CouponNotFoundError, OrderNotFoundError
from .models import (
    CouponModel,
    OrderEventModel,
    OrderLineModel,
    OrderModel,
    PaymentModel,
    ReservationLineModel,
    StockReservationModel,
    WebhookEventModel,
)

_BASE32 = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_order_number(now: datetime | None = None) -> str:
    """Human-readable, time-derived order number, e.g. ``ORD-20240501123000-K7QX``."""
    now = now or timezone.now()
    prefix = getattr(settings, "ORDER_NUMBER_PREFIX", "ORD")
    suffix = "".join(secrets.choice(_BASE32) for _ in range(4))
    return f"{prefix}-{now:%Y%m%d%H%M%S}-{suffix}"


# ---------------- Mapping helpers ---------------- #

def _address(data: dict) -> Address:
    return Address(**data)


def _order_from_row(row: OrderModel, with_history: bool = False) -> Order:
    items = [
        LineItem(
            product_id=ln.product_id,
            name=ln.name,
            unit_price_minor=ln.unit_price_minor,
            quantity=ln.quantity,
        )
        for ln in row.lines.all()
    ]
    reservation_id = (
        StockReservationModel.objects.filter(order_id=row.id).values_list("id", flat=True).first()
    )
    history = []
    if with_history:
        history = [
            OrderEvent(status=OrderStatus(ev.status), message=ev.message, created_at=ev.created_at)
            for ev in row.events.all()
        ]
    return Order(
        id=row.id,
        number=row.number,
        items=items,
        pricing=Pricing(
            subtotal=row.subtotal_minor,
            discount=row.discount_minor,
            shipping=row.shipping_minor,
            tax=row.tax_minor,
            total=row.total_minor,
        ),
        shipping_address=_address(row.shipping_address),
        billing_address=_address(row.billing_address),
        customer=Customer(**row.customer),
        payment_method=row.payment_method,
        status=OrderStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        version=row.version,
        currency=row.currency,
        coupon_code=row.coupon_code,
        gateway_order_id=row.gateway_order_id,
        gateway_payment_id=row.gateway_payment_id,
        reservation_id=reservation_id,
        refund_status=RefundStatus(row.refund_status),
        refund_id=row.refund_id,
        refund_error=row.refund_error,
        cancellation_reason=row.cancellation_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
        paid_at=row.paid_at,
        shipped_at=row.shipped_at,
        delivered_at=row.delivered_at,
        cancelled_at=row.cancelled_at,
        history=history,
    )


def _db_value(value):
    return value.value if hasattr(value, "value") else value


class OrderRepository:
    """Persists orders, their lines and their status history."""

    NUMBER_ATTEMPTS = 5
    MAX_PAGE_SIZE = 100

    def create(self, order: Order, reservation_id: uuid.UUID | None = None) -> Order:
        """Insert a new order and link its reservation in one transaction.

        The order number is regenerated on the (unlikely) unique collision.

        Args:
            order: Order to insert. ``number`` may be empty.
            reservation_id: Reservation to link 1:1 with the new order.

        Returns:
            Order: The persisted order, reloaded.
        """
        for attempt in range(self.NUMBER_ATTEMPTS):
            number = order.number if (order.number and attempt == 0) else generate_order_number()
            try:
                with transaction.atomic():
                    row = OrderModel.objects.create(
                        id=order.id,
                        number=number,
                        status=order.status.value,
                        payment_status=order.payment_status.value,
                        currency=order.currency,
                        subtotal_minor=order.pricing.subtotal,
                        discount_minor=order.pricing.discount,
                        shipping_minor=order.pricing.shipping,
                        tax_minor=order.pricing.tax,
                        total_minor=order.pricing.total,
                        customer=asdict(order.customer),
                        shipping_address=asdict(order.shipping_address),
                        billing_address=asdict(order.billing_address),
                        payment_method=order.payment_method,
                        coupon_code=order.coupon_code,
                    )
                    OrderLineModel.objects.bulk_create(
                        [
                            OrderLineModel(
                                order=row,
                                position=pos,
                                product_id=it.product_id,
                                name=it.name,
                                unit_price_minor=it.unit_price_minor,
                                quantity=it.quantity,
                            )
                            for pos, it in enumerate(order.items)
                        ]
                    )
                    if reservation_id is not None:
                        linked = StockReservationModel.objects.filter(
                            id=reservation_id, order__isnull=True
                        ).update(order=row)
                        if linked != 1:
                            raise IntegrityError(f"reservation {reservation_id} missing or already linked")
                    OrderEventModel.objects.create(
                        order=row, status=row.status, message="Order has been placed"
                    )
            except IntegrityError:
                if OrderModel.objects.filter(number=number).exists() and attempt + 1 < self.NUMBER_ATTEMPTS:
                    continue
                raise
            return self.get(number)
        raise IntegrityError("could not allocate a unique order number")

    def get(self, number: str, with_history: bool = False) -> Order:
        try:
            row = OrderModel.objects.prefetch_related("lines").get(number=number)
        except OrderModel.DoesNotExist:
            raise OrderNotFoundError(f"Order {number} not found")
        return _order_from_row(row, with_history=with_history)

    def get_by_id(self, order_id: uuid.UUID) -> Order:
        try:
            row = OrderModel.objects.prefetch_related("lines").get(id=order_id)
        except OrderModel.DoesNotExist:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return _order_from_row(row)

    def get_by_gateway_order_id(self, gateway_order_id: str) -> Order:
        try:
            row = OrderModel.objects.prefetch_related("lines").get(gateway_order_id=gateway_order_id)
        except OrderModel.DoesNotExist:
            raise OrderNotFoundError(f"No order for gateway order {gateway_order_id}")
        return _order_from_row(row)

    def compare_and_set(
        self,
        order: Order,
        *,
        expected_status: Iterable[OrderStatus] | None = None,
        require: Q | None = None,
        event: str | None = None,
        **fields,
    ) -> bool:
        """Apply ``fields`` only if the row still has the version we loaded.

        Args:
            order: Order as loaded by the caller; its ``version`` is the guard.
            expected_status: Statuses the row must be in (defaults to the
                loaded status).
            require: Extra row predicate that must hold for the write.
            event: Status-history message recorded when the write wins.
            **fields: Column values to set (enums are stored by value).

        Returns:
            bool: True when this call won the race and the row was updated.
        """
        statuses = [s.value for s in (expected_status or [order.status])]
        values = {k: _db_value(v) for k, v in fields.items()}
        values["version"] = F("version") + 1
        values["updated_at"] = timezone.now()
        qs = OrderModel.objects.filter(id=order.id, version=order.version, status__in=statuses)
        if require is not None:
            qs = qs.filter(require)
        with transaction.atomic():
            won = qs.update(**values) == 1
            if won and event:
                OrderEventModel.objects.create(
                    order_id=order.id, status=values.get("status", order.status.value), message=event
                )
        return won

    def list(self, page: int = 1, page_size: int = 20) -> tuple[int, List[Order]]:
        page = max(1, page)
        page_size = max(1, min(page_size, self.MAX_PAGE_SIZE))
        qs = OrderModel.objects.prefetch_related("lines").order_by("-created_at")
        start = (page - 1) * page_size
        return qs.count(), [_order_from_row(r) for r in qs[start:start + page_size]]

    def cancelled_needing_reconciliation(self, limit: int = 100) -> List[Order]:
        """Cancelled orders with an active reservation or a refund still to retry."""
        qs = (
            OrderModel.objects.prefetch_related("lines")
            .filter(status=OrderStatus.CANCELLED.value)
            .filter(
                Q(reservation__status=ReservationStatus.ACTIVE.value)
                | Q(refund_status=RefundStatus.PENDING.value)
            )
            .order_by("cancelled_at")
            .distinct()[:limit]
        )
        return [_order_from_row(r) for r in qs]


def _reservation_from_row(row: StockReservationModel) -> StockReservation:
    return StockReservation(
        id=row.id,
        lines=[
            ReservationLine(product_id=ln.product_id, quantity=ln.quantity, restored=ln.restored)
            for ln in row.lines.all()
        ],
        status=ReservationStatus(row.status),
        order_id=row.order_id,
        created_at=row.created_at,
        restored_at=row.restored_at,
    )


class ReservationRepository:
    """Stock reservations, 1:1 with orders once linked."""

    def create(self, reservation_id: uuid.UUID, lines: Iterable[ReservationLine]) -> StockReservation:
        with transaction.atomic():
            row = StockReservationModel.objects.create(id=reservation_id)
            ReservationLineModel.objects.bulk_create(
                [
                    ReservationLineModel(reservation=row, product_id=ln.product_id, quantity=ln.quantity)
                    for ln in lines
                ]
            )
        return self.get(reservation_id)

    def get(self, reservation_id: uuid.UUID) -> StockReservation:
        row = StockReservationModel.objects.prefetch_related("lines").get(id=reservation_id)
        return _reservation_from_row(row)

    def get_for_order(self, order_id: uuid.UUID) -> Optional[StockReservation]:
        row = StockReservationModel.objects.prefetch_related("lines").filter(order_id=order_id).first()
        return _reservation_from_row(row) if row else None

    def mark_line_restored(self, reservation_id: uuid.UUID, product_id: str) -> bool:
        return (
            ReservationLineModel.objects.filter(
                reservation_id=reservation_id, product_id=product_id, restored=False
            ).update(restored=True)
            == 1
        )

    def mark_restored(self, reservation_id: uuid.UUID) -> bool:
        return (
            StockReservationModel.objects.filter(
                id=reservation_id, status=ReservationStatus.ACTIVE.value
            ).update(status=ReservationStatus.RESTORED.value, restored_at=timezone.now())
            == 1
        )

    def orphans(self, created_before: datetime, limit: int = 100) -> List[StockReservation]:
        qs = StockReservationModel.objects.prefetch_related("lines").filter(
            order__isnull=True,
            status=ReservationStatus.ACTIVE.value,
            created_at__lt=created_before,
        )[:limit]
        return [_reservation_from_row(r) for r in qs]


def _payment_from_row(row: PaymentModel) -> Payment:
    return Payment(
        gateway_payment_id=row.gateway_payment_id,
        order_id=row.order_id,
        amount_minor=row.amount_minor,
        currency=row.currency,
        gateway_status=row.gateway_status,
        method=row.method,
        signature_verified=row.signature_verified,
        verified_at=row.verified_at,
        error_code=row.error_code,
        error_description=row.error_description,
    )


class PaymentRepository:
    """Payment records keyed by gateway payment id."""

    def get(self, gateway_payment_id: str) -> Optional[Payment]:
        row = PaymentModel.objects.filter(gateway_payment_id=gateway_payment_id).first()
        return _payment_from_row(row) if row else None

    def verified_for_order(self, order_id: uuid.UUID) -> Optional[Payment]:
        row = PaymentModel.objects.filter(order_id=order_id, signature_verified=True).first()
        return _payment_from_row(row) if row else None

    def save(self, payment: Payment) -> Payment:
        """Insert or update a payment record.

        A verified record is never downgraded to unverified; the partial
        unique constraint rejects a second verified payment for an order.
        """
        defaults = {
            "order_id": payment.order_id,
            "amount_minor": payment.amount_minor,
            "currency": payment.currency,
            "gateway_status": payment.gateway_status,
            "method": payment.method,
            "error_code": payment.error_code,
            "error_description": payment.error_description,
        }
        if payment.signature_verified:
            defaults["signature_verified"] = True
            defaults["verified_at"] = payment.verified_at or timezone.now()
        with transaction.atomic():
            existing = PaymentModel.objects.select_for_update().filter(
                gateway_payment_id=payment.gateway_payment_id
            ).first()
            if existing is not None and existing.signature_verified:
                return _payment_from_row(existing)
            row, _ = PaymentModel.objects.update_or_create(
                gateway_payment_id=payment.gateway_payment_id, defaults=defaults
            )
        return _payment_from_row(row)

    def set_unverified_status(self, gateway_payment_id: str, gateway_status: str, description: str = "") -> bool:
        """Update the gateway status of a payment that did not settle an order."""
        return (
            PaymentModel.objects.filter(gateway_payment_id=gateway_payment_id, signature_verified=False).update(
                gateway_status=gateway_status, error_description=description[:255], updated_at=timezone.now()
            )
            == 1
        )

    def captured_unverified(self, error_code: str, limit: int = 100) -> List[Payment]:
        """Captured payments recorded with ``error_code`` against orders that are no longer pending."""
        qs = (
            PaymentModel.objects.filter(
                signature_verified=False,
                error_code=error_code,
                gateway_status=PaymentStatus.CAPTURED.value,
            )
            .exclude(order__status=OrderStatus.PENDING.value)
            .order_by("created_at")[:limit]
        )
        return [_payment_from_row(r) for r in qs]


def _coupon_from_row(row: CouponModel) -> Coupon:
    return Coupon(
        code=row.code,
        discount_type=DiscountType(row.discount_type),
        discount_value=row.discount_value,
        min_order_minor=row.min_order_minor,
        max_uses=row.max_uses,
        current_uses=row.current_uses,
        expires_at=row.expires_at,
        is_active=row.is_active,
        description=row.description,
    )


class CouponRepository:
    """Coupons keyed by upper-cased code."""

    def get(self, code: str) -> Coupon:
        code = Coupon.normalize(code)
        try:
            return _coupon_from_row(CouponModel.objects.get(code=code))
        except CouponModel.DoesNotExist:
            raise CouponNotFoundError(code)

    def create(self, coupon: Coupon) -> Coupon:
        try:
            with transaction.atomic():
                row = CouponModel.objects.create(
                    code=Coupon.normalize(coupon.code),
                    discount_type=coupon.discount_type.value,
                    discount_value=coupon.discount_value,
                    min_order_minor=coupon.min_order_minor,
                    max_uses=coupon.max_uses,
                    current_uses=0,
                    expires_at=coupon.expires_at,
                    is_active=coupon.is_active,
                    description=coupon.description,
                )
        except IntegrityError:
            raise CouponExistsError(Coupon.normalize(coupon.code))
        return _coupon_from_row(row)

    def claim_use(self, code: str, now: datetime) -> bool:
        """Atomically take one use of ``code`` if it is still redeemable.

        The limit, activity and expiry checks live in the ``UPDATE``'s
        ``WHERE`` clause, so two redemptions racing for the last slot cannot
        both succeed.
        """
        return (
            CouponModel.objects.filter(code=Coupon.normalize(code), is_active=True)
            .filter(Q(max_uses__isnull=True) | Q(current_uses__lt=F("max_uses")))
            .filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))
            .update(current_uses=F("current_uses") + 1, updated_at=now)
            == 1
        )


class WebhookRepository:
    """Received gateway webhook events, deduplicated by event id."""

    def record(self, event_id: str, event: str, payload: dict) -> bool:
        """Store a new event. Returns False when it was already processed."""
        row, created = WebhookEventModel.objects.get_or_create(
            event_id=event_id, defaults={"event": event, "payload": payload}
        )
        return created or not row.processed

    def mark_processed(self, event_id: str) -> None:
        WebhookEventModel.objects.filter(event_id=event_id).update(
            processed=True, processed_at=timezone.now(), error=""
        )

    def mark_failed(self, event_id: str, error: str) -> None:
        WebhookEventModel.objects.filter(event_id=event_id).update(processed=False, error=error[:2000])
