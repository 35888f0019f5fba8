"""All-or-nothing stock reservation with idempotent restoration."""

import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Iterable, List

from .domain import InventoryPort, LineItem, ReservationLine, ReservationStatus, StockReservation
from .errors import InsufficientStockError, ValidationError
from .repository import ReservationRepository

logger = logging.getLogger(__name__)


def aggregate(items: Iterable[LineItem]) -> List[ReservationLine]:
    """Sum quantities per product, keeping first-seen order."""
    totals: "OrderedDict[str, int]" = OrderedDict()
    for it in items:
        totals[it.product_id] = totals.get(it.product_id, 0) + it.quantity
    return [ReservationLine(product_id=pid, quantity=qty) for pid, qty in totals.items()]


class ReservationManager:
    """Reserves stock against the inventory counter.

    Every counter mutation is keyed ``<reservation>:<product>:<action>`` so
    that a retried or re-run step never applies twice.
    """

    def __init__(self, inventory: InventoryPort, reservations: ReservationRepository | None = None):
        self.inventory = inventory
        self.reservations = reservations or ReservationRepository()

    @staticmethod
    def _key(reservation_id: uuid.UUID, product_id: str, action: str) -> str:
        return f"{reservation_id}:{product_id}:{action}"

    def reserve(self, items: Iterable[LineItem]) -> StockReservation:
        """Decrement stock for every line or for none of them.

        Args:
            items: Order lines; quantities of repeated products are summed.

        Returns:
            StockReservation: The persisted ``active`` reservation.

        Raises:
            ValidationError: No items or a non-positive quantity.
            InsufficientStockError: A product cannot cover its quantity.
                Everything already taken has been given back.
            InventoryUnavailableError: The counter could not be reached.
        """
        lines = aggregate(items)
        if not lines:
            raise ValidationError("Nothing to reserve", code="EMPTY_ORDER")
        if any(ln.quantity <= 0 for ln in lines):
            raise ValidationError("Quantities must be positive", code="INVALID_QUANTITY")

        reservation_id = uuid.uuid4()
        taken: List[ReservationLine] = []
        try:
            for ln in lines:
                ok = self.inventory.decrement(
                    ln.product_id, ln.quantity, idempotency_key=self._key(reservation_id, ln.product_id, "reserve")
                )
                if not ok:
                    raise InsufficientStockError(ln.product_id, ln.quantity)
                taken.append(ln)
        except Exception:
            self._rollback(reservation_id, taken)
            raise

        try:
            reservation = self.reservations.create(reservation_id, lines)
        except Exception:
            self._rollback(reservation_id, taken)
            raise
        logger.info(
            "stock reserved",
            extra={"reservation_id": str(reservation_id), "products": [ln.product_id for ln in lines]},
        )
        return reservation

    def _rollback(self, reservation_id: uuid.UUID, taken: List[ReservationLine]) -> None:
        for ln in taken:
            try:
                self.inventory.increment(
                    ln.product_id, ln.quantity, idempotency_key=self._key(reservation_id, ln.product_id, "rollback")
                )
            except Exception:
                # the counter is now short by this line until an operator fixes it
                logger.exception(
                    "reservation rollback failed",
                    extra={"reservation_id": str(reservation_id), "product_id": ln.product_id},
                )

    def restore(self, reservation_id: uuid.UUID) -> StockReservation:
        """Give every unrestored line back to the counter. Safe to repeat."""
        reservation = self.reservations.get(reservation_id)
        if reservation.status == ReservationStatus.RESTORED:
            return reservation
        for ln in reservation.lines:
            if ln.restored:
                continue
            self.inventory.increment(
                ln.product_id, ln.quantity, idempotency_key=self._key(reservation_id, ln.product_id, "restore")
            )
            self.reservations.mark_line_restored(reservation_id, ln.product_id)
        if self.reservations.mark_restored(reservation_id):
            logger.info("stock restored", extra={"reservation_id": str(reservation_id)})
        return self.reservations.get(reservation_id)

    def release_orphans(self, older_than: datetime, limit: int = 100) -> List[StockReservation]:
        """Restore active reservations that never got an order attached."""
        released = []
        for reservation in self.reservations.orphans(older_than, limit=limit):
            try:
                released.append(self.restore(reservation.id))
            except Exception:
                logger.exception("orphan reservation release failed", extra={"reservation_id": str(reservation.id)})
        return released
