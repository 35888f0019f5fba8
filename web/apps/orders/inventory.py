"""Per-product stock counter backed by the ledger database.

Decrements are a single conditional ``UPDATE ... WHERE quantity >= q`` so
the counter can never go negative no matter how many workers race on the
same product. Every mutation carrying an idempotency key is recorded in
``StockMovementModel``; a key that is already recorded short-circuits the
mutation, which makes retries (and crash re-runs) safe.
"""

import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .domain import InventoryPort
from .errors import ValidationError
from .models import StockLevelModel, StockMovementModel

logger = logging.getLogger(__name__)


class LocalInventoryCounter(InventoryPort):
    """``InventoryPort`` implementation over the ``stock_levels`` table."""

    def available(self, product_id: str) -> int:
        return (
            StockLevelModel.objects.filter(product_id=product_id).values_list("quantity", flat=True).first()
            or 0
        )

    def set_level(self, product_id: str, quantity: int) -> int:
        """Administrative absolute write of the available quantity."""
        if quantity < 0:
            raise ValidationError("Stock level cannot be negative")
        StockLevelModel.objects.update_or_create(product_id=product_id, defaults={"quantity": quantity})
        return quantity

    def _record_movement(self, key: str | None, product_id: str, delta: int) -> bool:
        """Insert the movement row. Returns False when ``key`` was seen before."""
        if not key:
            return True
        try:
            with transaction.atomic():
                StockMovementModel.objects.create(key=key, product_id=product_id, delta=delta)
        except IntegrityError:
            logger.info(
                "stock movement already applied",
                extra={"idempotency_key": key, "product_id": product_id},
            )
            return False
        return True

    @transaction.atomic
    def decrement(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> bool:
        """Take ``quantity`` units of ``product_id``.

        Args:
            product_id: Product whose counter is decremented.
            quantity: Positive number of units.
            idempotency_key: Optional key; a replay returns True without a
                second decrement.

        Returns:
            bool: True when the units were taken, False on shortfall.
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if not self._record_movement(idempotency_key, product_id, -quantity):
            return True
        taken = StockLevelModel.objects.filter(product_id=product_id, quantity__gte=quantity).update(
            quantity=F("quantity") - quantity, updated_at=timezone.now()
        )
        if taken != 1:
            # roll back the movement row so a later retry with the same key can succeed
            transaction.set_rollback(True)
            return False
        return True

    @transaction.atomic
    def increment(self, product_id: str, quantity: int, idempotency_key: str | None = None) -> int:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if self._record_movement(idempotency_key, product_id, quantity):
            updated = StockLevelModel.objects.filter(product_id=product_id).update(
                quantity=F("quantity") + quantity, updated_at=timezone.now()
            )
            if not updated:
                StockLevelModel.objects.create(product_id=product_id, quantity=quantity)
        return self.available(product_id)
