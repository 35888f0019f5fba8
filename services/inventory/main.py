"""Inventory counter service built with FastAPI.

Exposes the per-product available quantity and the two mutations the
storefront's reservation manager needs: decrement (reserve) and increment
(restore / rollback). Both mutations accept an ``Idempotency-Key`` header;
persistence and the atomic counter logic live in ``repo.InventoryRepo``.
"""

import logging
import time
import uuid
from typing import Annotated

from fastapi import FastAPI, Header, HTTPException, Path, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import IdempotencyConflict, InsufficientStock, InventoryRepo, engine, init_db

app = FastAPI(title="Inventory Service")

ProductId = Annotated[str, Path(pattern=r"^[A-Za-z0-9_-]{1,64}$")]

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class QuantityRequest(BaseModel):
    quantity: int = Field(gt=0, le=1_000_000)


class LevelRequest(BaseModel):
    quantity: int = Field(ge=0)


class StockResponse(BaseModel):
    """Counter state after a read or a mutation.

    Attributes:
        product_id: Product the counter belongs to.
        quantity: Available quantity.
        applied: False when the request replayed an idempotency key that had
            already been applied.
    """

    product_id: str
    quantity: int
    applied: bool = True


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/stock/{product_id}", response_model=StockResponse)
def get_stock(product_id: ProductId):
    qty = InventoryRepo().get(product_id)
    if qty is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return StockResponse(product_id=product_id, quantity=qty)


@app.put("/stock/{product_id}", response_model=StockResponse)
def set_stock(req: LevelRequest, product_id: ProductId):
    qty = InventoryRepo().set_level(product_id, req.quantity)
    logger.info("stock level set", extra={"product_id": product_id, "quantity": qty})
    return StockResponse(product_id=product_id, quantity=qty)


def _apply(product_id: str, delta: int, key: str | None) -> StockResponse:
    try:
        qty, applied = InventoryRepo().apply(product_id, delta, key)
    except InsufficientStock:
        raise HTTPException(status_code=409, detail="INSUFFICIENT_STOCK")
    except IdempotencyConflict:
        raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
    return StockResponse(product_id=product_id, quantity=qty, applied=applied)


@app.post("/stock/{product_id}/decrement", response_model=StockResponse)
def decrement(
    req: QuantityRequest,
    product_id: ProductId,
    idempotency_key: str | None = Header(default=None, max_length=200),
):
    """Take ``quantity`` units; 409 ``INSUFFICIENT_STOCK`` if not enough are left.

    Replaying the same ``Idempotency-Key`` returns the current quantity with
    ``applied=false`` and does not decrement again.
    """
    return _apply(product_id, -req.quantity, idempotency_key)


@app.post("/stock/{product_id}/increment", response_model=StockResponse)
def increment(
    req: QuantityRequest,
    product_id: ProductId,
    idempotency_key: str | None = Header(default=None, max_length=200),
):
    return _apply(product_id, req.quantity, idempotency_key)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    started = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        logger.info(
            "request handled",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
    response.headers["X-Request-ID"] = rid
    return response
