"""SQLAlchemy repository for the stock counter.

Two tables:

- ``stock``: available quantity per product id, never below zero.
- ``stock_movements``: append-only log of applied mutations. Its unique
  ``key`` column is the idempotency key of the request that caused the
  movement, so a retried request is recognised and not applied twice.

Decrements are a single conditional ``UPDATE ... WHERE quantity >= :q``;
the database serializes concurrent writers on the row, so the counter
can't oversell even with many service replicas.

Connection parameters come from ``DATABASE_URL`` or the ``DB_*`` env vars.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, create_engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL", f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)


def _make_engine(url: str):
    if url.startswith("sqlite"):
        # single shared connection so an in-memory database survives across sessions
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)


class Base(DeclarativeBase):
    pass


class Stock(Base):
    __tablename__ = "stock"
    product_id = mapped_column(String(64), primary_key=True)
    quantity = mapped_column(Integer, nullable=False, default=0)


class StockMovement(Base):
    __tablename__ = "stock_movements"
    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    key = mapped_column(String(200), unique=True, nullable=False)
    product_id = mapped_column(String(64), nullable=False)
    delta = mapped_column(Integer, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    with Session(engine) as s:
        yield s


class InsufficientStock(Exception):
    pass


class IdempotencyConflict(Exception):
    """The key was already used for a different product or quantity."""


class InventoryRepo:
    """Counter operations. Each public method is one transaction."""

    def get(self, product_id: str) -> int | None:
        with get_session() as s:
            obj = s.get(Stock, product_id)
            return obj.quantity if obj else None

    def set_level(self, product_id: str, quantity: int) -> int:
        """Absolute administrative write of the available quantity."""
        with get_session() as s:
            obj = s.get(Stock, product_id)
            if obj is None:
                s.add(Stock(product_id=product_id, quantity=quantity))
            else:
                obj.quantity = quantity
            s.commit()
        return quantity

    def _replayed(self, s: Session, key: str, product_id: str, delta: int) -> bool:
        prior = s.execute(select(StockMovement).where(StockMovement.key == key)).scalar_one_or_none()
        if prior is None:
            return False
        if prior.product_id != product_id or prior.delta != delta:
            raise IdempotencyConflict(key)
        return True

    def apply(self, product_id: str, delta: int, key: str | None = None) -> tuple[int, bool]:
        """Apply ``delta`` to the counter of ``product_id``.

        Args:
            product_id: Product whose counter changes.
            delta: Negative to take stock, positive to give it back.
            key: Optional idempotency key.

        Returns:
            tuple[int, bool]: ``(quantity_after, applied)``; ``applied`` is
            False when ``key`` had already been applied.

        Raises:
            InsufficientStock: A decrement would take the counter below zero.
            IdempotencyConflict: ``key`` was used for another mutation.
        """
        with get_session() as s:
            if key and self._replayed(s, key, product_id, delta):
                return self._quantity(s, product_id), False

            if delta < 0:
                res = s.execute(
                    update(Stock)
                    .where(Stock.product_id == product_id, Stock.quantity >= -delta)
                    .values(quantity=Stock.quantity + delta)
                )
                if res.rowcount != 1:
                    s.rollback()
                    raise InsufficientStock(product_id)
            else:
                res = s.execute(
                    update(Stock).where(Stock.product_id == product_id).values(quantity=Stock.quantity + delta)
                )
                if res.rowcount != 1:
                    s.add(Stock(product_id=product_id, quantity=delta))

            if key:
                s.add(StockMovement(key=key, product_id=product_id, delta=delta))
            try:
                s.commit()
            except IntegrityError:
                # a concurrent request with the same key won; ours is rolled back
                s.rollback()
                if key and self._replayed(s, key, product_id, delta):
                    return self._quantity(s, product_id), False
                raise
            return self._quantity(s, product_id), True

    @staticmethod
    def _quantity(s: Session, product_id: str) -> int:
        obj = s.get(Stock, product_id, populate_existing=True)
        return obj.quantity if obj else 0
