"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to domain inputs, delegate to the services returned by
``providers.get_services()``, and translate results and ``OrderError``s
into responses of the form ``{"detail": CODE, "message": ...}``.

Idempotency: ``POST /api/orders/`` honours an ``Idempotency-Key`` header.
The first request runs checkout and stores the response; retries with the
same payload replay it (with ``Idempotent-Replay: true``); reusing the key
with a different payload returns 409.
"""

import logging

from django.conf import settings
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .errors import (
    CouponError,
    CouponExistsError,
    CouponNotFoundError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InsufficientStockError,
    InvalidTransitionError,
    InventoryUnavailableError,
    OrderError,
    OrderNotFoundError,
    PaymentVerificationError,
    ValidationError,
)
from .idempotency import IDEMPOTENCY_CONFLICT, IN_PROGRESS, finalize, get_or_create_idempotent
from .repository import OrderRepository
from .schemas import (
    ApplyCouponDTO,
    CancelOrderDTO,
    CreateCouponDTO,
    CreateIntentDTO,
    CreateOrderDTO,
    IntentOut,
    OrderReadDTO,
    VerifyPaymentDTO,
)

logger = logging.getLogger(__name__)

# first match wins, so subclasses come before their bases
ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (OrderNotFoundError, status.HTTP_404_NOT_FOUND),
    (CouponNotFoundError, status.HTTP_404_NOT_FOUND),
    (CouponExistsError, status.HTTP_409_CONFLICT),
    (CouponError, status.HTTP_400_BAD_REQUEST),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (InsufficientStockError, 422),
    (PaymentVerificationError, status.HTTP_400_BAD_REQUEST),
    (GatewayUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayRejectedError, status.HTTP_502_BAD_GATEWAY),
    (InventoryUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def error_body(exc: OrderError) -> tuple[int, dict]:
    """Map a domain error to ``(http_status, body)``.

    Payment verification failures all look the same from the outside; the
    specific reason is only logged.
    """
    code = next((st for cls, st in ERROR_STATUS if isinstance(exc, cls)), status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, PaymentVerificationError):
        logger.warning("payment verification failed", extra={"reason": exc.code})
        return code, {"detail": PaymentVerificationError.code, "message": PaymentVerificationError.PUBLIC_MESSAGE}
    body = {"detail": exc.code, "message": exc.message}
    if isinstance(exc, InsufficientStockError):
        body["product_id"] = exc.product_id
    return code, body


def error_response(exc: OrderError) -> Response:
    code, body = error_body(exc)
    return Response(body, status=code)


def invalid_payload(exc: PydanticValidationError) -> Response:
    return Response({"detail": "VALIDATION_ERROR", "message": str(exc)}, status=status.HTTP_400_BAD_REQUEST)


class ScopedAPIView(APIView):
    throttle_classes = [ScopedRateThrottle]


class OrdersCollectionView(ScopedAPIView):
    """List orders and place new ones."""

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return super().get_throttles()

    def get(self, request):
        try:
            page = int(request.GET.get("page", 1))
            page_size = int(request.GET.get("page_size", 20))
        except ValueError:
            return Response({"detail": "VALIDATION_ERROR", "message": "page and page_size must be integers"}, status=400)
        page = max(1, page)
        page_size = max(1, min(page_size, OrderRepository.MAX_PAGE_SIZE))

        count, orders = providers.get_services().state_machine.orders.list(page=page, page_size=page_size)
        return Response(
            {
                "count": count,
                "page": page,
                "page_size": page_size,
                "results": [OrderReadDTO.from_domain(o).model_dump(mode="json", exclude_none=True) for o in orders],
            },
            status=200,
        )

    def post(self, request):
        """Place an order.

        Returns:
            Response: One of the following responses.
            - 201 with ``{"order", "payment"}``; ``payment`` is null (and
              ``payment_error`` set) when the gateway was unreachable.
            - The stored status and body (plus ``Idempotent-Replay: true``)
              for a retried ``Idempotency-Key``.
            - 409 ``IDEMPOTENCY_CONFLICT`` when a key is reused with another
              payload, ``IDEMPOTENCY_IN_PROGRESS`` while the first request
              is still running.
            - 400 for validation and coupon errors, 422
              ``INSUFFICIENT_STOCK``, 503 when inventory is unavailable.
        """
        idem_key = request.headers.get("Idempotency-Key")

        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return invalid_payload(e)

        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except ValueError:
                return Response({"detail": IDEMPOTENCY_CONFLICT}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": IN_PROGRESS}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            result = providers.get_services().checkout.place_order(dto.to_draft())
        except OrderError as e:
            code, body = error_body(e)
            if rec:
                finalize(rec, code, body)
            return Response(body, status=code)
        except Exception:
            if rec:
                finalize(rec, 500, {})
            raise

        body = {
            "order": OrderReadDTO.from_domain(result.order).model_dump(mode="json", exclude_none=True),
            "payment": (
                IntentOut(
                    gateway_order_id=result.intent.gateway_order_id,
                    amount_minor=result.intent.amount_minor,
                    currency=result.intent.currency,
                    key_id=settings.RAZORPAY_KEY_ID,
                ).model_dump()
                if result.intent
                else None
            ),
        }
        if result.intent_error:
            body["payment_error"] = result.intent_error
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_number=result.order.number)
        return Response(body, status=status.HTTP_201_CREATED)


class OrderDetailView(ScopedAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, number: str):
        try:
            order = providers.get_services().state_machine.get(number, with_history=True)
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_domain(order, with_history=True).model_dump(mode="json", exclude_none=True))


class CancelOrderView(ScopedAPIView):
    throttle_scope = "orders_cancel"

    def post(self, request):
        try:
            dto = CancelOrderDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return invalid_payload(e)
        try:
            result = providers.get_services().cancellation.cancel(dto.order_number, dto.reason)
        except OrderError as e:
            return error_response(e)
        return Response(
            {
                "order": OrderReadDTO.from_domain(result.order).model_dump(mode="json", exclude_none=True),
                "already_cancelled": result.already_cancelled,
                "summary": result.summary,
                "side_effects": [
                    {"step": s.step, "status": s.status.value, "detail": s.detail} for s in result.side_effects
                ],
            }
        )


class CreateIntentView(ScopedAPIView):
    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = CreateIntentDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return invalid_payload(e)
        try:
            ref = providers.get_services().payments.create_intent(dto.order_number)
        except OrderError as e:
            return error_response(e)
        return Response(
            IntentOut(
                gateway_order_id=ref.gateway_order_id,
                amount_minor=ref.amount_minor,
                currency=ref.currency,
                key_id=settings.RAZORPAY_KEY_ID,
            ).model_dump()
        )


class VerifyPaymentView(ScopedAPIView):
    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = VerifyPaymentDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return invalid_payload(e)
        try:
            result = providers.get_services().payments.verify(dto.gateway_order_id, dto.gateway_payment_id, dto.signature)
        except OrderError as e:
            return error_response(e)
        return Response(
            {
                "verified": True,
                "replayed": result.replayed,
                "order": OrderReadDTO.from_domain(result.order).model_dump(mode="json", exclude_none=True),
            }
        )


class PaymentWebhookView(ScopedAPIView):
    """Gateway webhook receiver. Authenticated by the body signature only."""

    throttle_scope = "webhooks"

    def post(self, request):
        signature = request.headers.get("X-Razorpay-Signature", "")
        event_id = request.headers.get("X-Razorpay-Event-Id")
        try:
            outcome = providers.get_services().payments.handle_webhook(request.body, signature, event_id=event_id)
        except OrderError as e:
            return error_response(e)
        return Response({"status": outcome})


class CouponCollectionView(ScopedAPIView):
    throttle_scope = "coupons"

    def post(self, request):
        try:
            dto = CreateCouponDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return invalid_payload(e)
        try:
            coupon = providers.get_services().coupons.create_coupon(**dto.model_dump())
        except OrderError as e:
            return error_response(e)
        return Response(
            {
                "code": coupon.code,
                "discount_type": coupon.discount_type.value,
                "discount_value": coupon.discount_value,
                "min_order_minor": coupon.min_order_minor,
                "max_uses": coupon.max_uses,
                "current_uses": coupon.current_uses,
                "expires_at": coupon.expires_at.isoformat() if coupon.expires_at else None,
                "is_active": coupon.is_active,
                "description": coupon.description,
            },
            status=status.HTTP_201_CREATED,
        )


class CouponDetailView(ScopedAPIView):
    throttle_scope = "coupons"

    def get(self, request, code: str):
        try:
            cart_value = int(request.GET.get("cart_value", ""))
        except ValueError:
            return Response({"detail": "VALIDATION_ERROR", "message": "cart_value must be an integer"}, status=400)
        try:
            quote = providers.get_services().coupons.validate(code, cart_value)
        except OrderError as e:
            return error_response(e)
        return Response({"valid": True, "code": quote.code, "discount_minor": quote.discount_minor})


class ApplyCouponView(ScopedAPIView):
    throttle_scope = "coupons"

    def post(self, request):
        try:
            dto = ApplyCouponDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return invalid_payload(e)
        try:
            order = providers.get_services().coupons.apply_to_order(dto.code, dto.order_number)
        except OrderError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_domain(order).model_dump(mode="json", exclude_none=True))
