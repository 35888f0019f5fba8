"""HMAC-SHA256 signatures used by the payment gateway.

Callbacks are signed over ``"<gateway_order_id>|<gateway_payment_id>"``
with the API key secret; webhooks are signed over the raw request body
with the webhook secret. Comparisons are constant time.
"""

import hashlib
import hmac


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def callback_signature(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    """Signature the gateway attaches to a checkout callback."""
    return _hmac_hex(secret, f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8"))


def webhook_signature(secret: str, body: bytes) -> str:
    return _hmac_hex(secret, body)


def signatures_match(expected: str, provided: str | None) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))
