# Overview: Stock ledger engine; the only code allowed to change Product.current_stock.

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import (
    MOVEMENT_IN,
    MOVEMENT_OUT,
    REFERENCE_ADJUSTMENT,
    REFERENCE_OPENING,
)
from ..time_utils import utcnow
from .unit_of_work import lock_for_update, run_in_unit_of_work

logger = logging.getLogger(__name__)
"""
Stock Ledger Invariants (authoritative)

- Product.current_stock == SUM(StockMovement.quantity) for the product, at every commit.
- current_stock is never negative: a decrement that would go below zero fails
  with InsufficientStockError, it is never clamped.
- Every stock change writes exactly one StockMovement in the same unit of work.
- Movements are append-only. A reversal is a compensating movement.
- apply_stock_delta never commits; the caller owns the unit of work, so a
  multi-item operation is applied completely or not at all.
"""


class StockError(Exception):
    """Raised for stock ledger errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStockError(StockError):
    """A decrement would take a product below zero."""
    def __init__(self, *, product_id: int, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: available {available}, requested {requested}",
            details={"product_id": product_id, "available": available, "requested": requested},
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


def _movement_type_for(quantity_delta: int) -> str:
    return MOVEMENT_IN if quantity_delta > 0 else MOVEMENT_OUT


def apply_stock_delta(
    product_id: int,
    quantity_delta: int,
    movement_type: str,
    *,
    reference_type: str,
    reference_id: int | None = None,
    actor_id: int | None = None,
    note: str | None = None,
    occurred_at: datetime | None = None,
) -> StockMovement:
    """
    Change a product's stock and append the matching movement.

    Must run inside a UnitOfWork. The product row is locked for the
    read-modify-write; the version column turns a lost update into a
    StaleDataError that run_with_retry replays.

    Raises:
        StockError: unknown product, zero delta, or type/sign mismatch
        InsufficientStockError: delta would make current_stock negative
    """
    if not isinstance(quantity_delta, int) or isinstance(quantity_delta, bool):
        raise StockError("quantity_delta must be an integer")
    if quantity_delta == 0:
        raise StockError("quantity_delta must be non-zero")
    if movement_type not in (MOVEMENT_IN, MOVEMENT_OUT):
        raise StockError(f"Invalid movement type: {movement_type}")
    if movement_type != _movement_type_for(quantity_delta):
        raise StockError(f"Movement type '{movement_type}' does not match delta {quantity_delta}")

    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise StockError(f"Product {product_id} not found", details={"product_id": product_id})

    available = product.current_stock
    if available + quantity_delta < 0:
        raise InsufficientStockError(
            product_id=product.id,
            available=available,
            requested=-quantity_delta,
        )

    product.current_stock = available + quantity_delta

    movement = StockMovement(
        product_id=product.id,
        user_id=actor_id,
        quantity=quantity_delta,
        type=movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(movement)
    db.session.flush()

    logger.debug(
        "Stock movement %s: product=%s delta=%+d stock=%d ref=%s:%s",
        movement.id, product.id, quantity_delta, product.current_stock, reference_type, reference_id,
    )
    return movement


def record_opening_stock(product: Product, quantity: int, actor_id: int | None = None) -> StockMovement | None:
    """Book a new product's opening balance so stock and ledger agree from the start."""
    if not quantity:
        return None
    if quantity < 0:
        raise StockError("opening stock cannot be negative")
    return apply_stock_delta(
        product.id,
        quantity,
        MOVEMENT_IN,
        reference_type=REFERENCE_OPENING,
        actor_id=actor_id,
        note="Opening stock",
    )


def adjust_stock(
    *,
    product_id: int,
    quantity_delta: int,
    actor_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    """
    Manual stock in (positive delta) or out (negative delta).

    Commits on success; raises InsufficientStockError with nothing written when
    a removal exceeds what is on hand.
    """
    def _op():
        return apply_stock_delta(
            product_id,
            quantity_delta,
            _movement_type_for(quantity_delta),
            reference_type=REFERENCE_ADJUSTMENT,
            actor_id=actor_id,
            note=note,
        )

    return run_in_unit_of_work(_op)


def list_movements(product_id: int, limit: int = 200) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def ledger_quantity(product_id: int) -> int:
    """Stock level implied by the movement log alone."""
    total = (
        db.session.query(func.coalesce(func.sum(StockMovement.quantity), 0))
        .filter(StockMovement.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def verify_stock_consistency() -> list[dict]:
    """
    Compare every product's stored stock against its movement sum.

    Returns one entry per product that disagrees; an empty list means the
    ledger invariant holds.
    """
    sums = (
        db.session.query(
            StockMovement.product_id.label("product_id"),
            func.sum(StockMovement.quantity).label("total"),
        )
        .group_by(StockMovement.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, func.coalesce(sums.c.total, 0))
        .outerjoin(sums, sums.c.product_id == Product.id)
        .order_by(Product.id.asc())
        .all()
    )

    mismatches = []
    for product, total in rows:
        if int(total) != product.current_stock:
            mismatches.append({
                "product_id": product.id,
                "sku": product.sku,
                "current_stock": product.current_stock,
                "ledger_quantity": int(total),
            })
    return mismatches
