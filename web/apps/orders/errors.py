"""Error taxonomy for the order, payment and inventory core.

Every error carries a short machine-readable ``code`` (the same style of
code strings the HTTP layer has always returned in ``{"detail": ...}``)
and a human-readable message. Views translate these into HTTP responses;
domain services raise them and never deal with status codes.
"""


class OrderError(Exception):
    """Base class for business errors raised by the orders core."""

    code = "ORDER_ERROR"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)


class ValidationError(OrderError):
    """Malformed input. Never retried automatically."""

    code = "VALIDATION_ERROR"


class OrderNotFoundError(OrderError):
    code = "ORDER_NOT_FOUND"


class InvalidTransitionError(OrderError):
    """The order is not in a state that allows the requested transition.

    Attributes:
        current: Status the order was found in.
        target: Status the caller tried to reach.
    """

    code = "INVALID_TRANSITION"

    def __init__(self, current, target, message: str | None = None):
        self.current = current
        self.target = target
        current_v = getattr(current, "value", current)
        target_v = getattr(target, "value", target)
        super().__init__(message or f"Cannot move order from {current_v} to {target_v}")


class InsufficientStockError(OrderError):
    """A line item cannot be reserved. No partial reservation is left behind."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int):
        self.product_id = product_id
        self.requested = requested
        super().__init__(f"Insufficient stock for product {product_id} (requested {requested})")


class PaymentVerificationError(OrderError):
    """Base for payment verification failures.

    The message is internal; users only ever see ``PUBLIC_MESSAGE``.
    """

    code = "VERIFICATION_FAILED"
    PUBLIC_MESSAGE = "Payment verification failed"


class SignatureVerificationError(PaymentVerificationError):
    code = "INVALID_SIGNATURE"


class AmountMismatchError(PaymentVerificationError):
    code = "AMOUNT_MISMATCH"

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(f"Payment amount {received} does not match order total {expected}")


class PaymentNotCapturedError(PaymentVerificationError):
    code = "PAYMENT_NOT_CAPTURED"


class GatewayError(OrderError):
    code = "GATEWAY_ERROR"


class GatewayUnavailableError(GatewayError):
    """Transient: retry with the same idempotency key."""

    code = "GATEWAY_UNAVAILABLE"


class GatewayRejectedError(GatewayError):
    """The gateway answered and refused the request (4xx)."""

    code = "GATEWAY_REJECTED"


class InventoryUnavailableError(OrderError):
    code = "INVENTORY_UNAVAILABLE"


class CouponError(OrderError):
    """Coupon errors are surfaced verbatim to the user."""

    code = "COUPON_ERROR"


class CouponNotFoundError(CouponError):
    code = "COUPON_NOT_FOUND"

    def __init__(self, coupon_code: str):
        super().__init__(f"Coupon code {coupon_code} not found")


class CouponInactiveError(CouponError):
    code = "COUPON_INACTIVE"

    def __init__(self, coupon_code: str):
        super().__init__(f"Coupon code {coupon_code} is not active")


class CouponExpiredError(CouponError):
    code = "COUPON_EXPIRED"

    def __init__(self, coupon_code: str):
        super().__init__(f"Coupon code {coupon_code} has expired")


class UsageLimitError(CouponError):
    code = "COUPON_USAGE_LIMIT"

    def __init__(self, coupon_code: str):
        super().__init__(f"Coupon code {coupon_code} usage limit reached")


class MinimumNotMetError(CouponError):
    code = "COUPON_MINIMUM_NOT_MET"

    def __init__(self, coupon_code: str, minimum_minor: int):
        self.minimum_minor = minimum_minor
        super().__init__(f"Minimum order value of {minimum_minor} required for coupon {coupon_code}")


class CouponExistsError(CouponError):
    code = "COUPON_EXISTS"

    def __init__(self, coupon_code: str):
        super().__init__(f"Coupon code {coupon_code} already exists")
