"""Idempotency records for the order creation endpoint.

A client retrying ``POST /api/orders/`` with the same ``Idempotency-Key``
must not reserve stock or create an order twice. The first request claims
the key, runs checkout, and stores the response; replays with the same
payload get the stored response back. A key reused with a different
payload is a conflict. Responses for transient failures (5xx) are not
stored so the client can retry them.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey

IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
IN_PROGRESS = "IDEMPOTENCY_IN_PROGRESS"


def _hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Claim ``key`` for ``payload`` or return the record that already holds it.

    The create runs in a nested savepoint so an ``IntegrityError`` only
    rolls back that block; the existing-record path locks the row
    (``SELECT ... FOR UPDATE``) before comparing hashes.

    Args:
        key: Client-provided idempotency key.
        payload: Request payload used to compute the request hash.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is
        False when this call created the record.

    Raises:
        ValueError: ``IDEMPOTENCY_CONFLICT`` when the key was used with a
            different payload.
    """
    h = _hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError(IDEMPOTENCY_CONFLICT)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_number: str | None = None):
    """Store the response for ``rec``; 5xx responses release the key instead."""
    if status_code >= 500:
        discard(rec)
        return
    rec.response_status = status_code
    rec.response_body = body
    if order_number is not None:
        rec.order_number = order_number
    rec.save(update_fields=["response_status", "response_body", "order_number"])


def discard(rec: IdempotencyKey):
    IdempotencyKey.objects.filter(key=rec.key).delete()
