"""
Sales Service - sale lifecycle and its stock effects

Status machine:

    pending ──> completed ──> canceled
       │            │
       │            └──> pending
       └──> canceled

- Entering 'completed' books one 'out' movement per item; if any item lacks
  stock the whole operation is rolled back and the sale keeps its status.
- Leaving 'completed' books one compensating 'in' movement per item.
- 'canceled' never goes back to 'completed'.
- A completed sale cannot be edited; it has to be moved out of 'completed'
  first. Deleting a completed sale restocks its items before removing it.
- Pending and canceled sales have no stock effect and can be edited or deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Sale, SaleItem, Product, Customer, InvoiceSequence
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT, REFERENCE_SALE
from ..models.sales import SALE_PENDING, SALE_COMPLETED, SALE_CANCELED, SALE_STATUSES
from ..time_utils import utcnow, parse_iso_datetime
from .stock_service import apply_stock_delta
from .payment_service import record_payment, refresh_payment_status
from .unit_of_work import lock_for_update, run_in_unit_of_work

logger = logging.getLogger(__name__)


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SaleNotFoundError(SaleError):
    pass


class InvalidTransitionError(SaleError):
    """Raised for status changes the lifecycle forbids and edits of completed sales."""


ALLOWED_TRANSITIONS = {
    (SALE_PENDING, SALE_COMPLETED),
    (SALE_PENDING, SALE_CANCELED),
    (SALE_COMPLETED, SALE_PENDING),
    (SALE_COMPLETED, SALE_CANCELED),
}

HEADER_FIELDS = {"customer_id", "sale_date", "discount_cents", "tax_cents", "payment_method", "notes"}
UPDATABLE_FIELDS = HEADER_FIELDS | {"items", "status"}


# =============================================================================
# INVOICE NUMBERS
# =============================================================================

def next_invoice_number(prefix: str | None = None, pad: int = 6) -> str:
    """
    Atomically allocate the next invoice number for a prefix.

    Runs inside the caller's transaction; the counter row is bumped with a
    single UPDATE so concurrent allocations serialize on it.
    """
    prefix = prefix or current_app.config.get("INVOICE_PREFIX", "INV")

    stmt = (
        update(InvoiceSequence)
        .where(InvoiceSequence.prefix == prefix)
        .values(next_number=InvoiceSequence.next_number + 1)
    )

    def _read_allocated() -> int:
        current = db.session.query(InvoiceSequence.next_number).filter_by(prefix=prefix).scalar()
        return current - 1

    if db.session.execute(stmt).rowcount:
        number = _read_allocated()
    else:
        try:
            with db.session.begin_nested():
                db.session.add(InvoiceSequence(prefix=prefix, next_number=2))
            number = 1
        except IntegrityError:
            # Another transaction created the counter first
            db.session.execute(stmt)
            number = _read_allocated()

    return f"{prefix}-{number:0{pad}d}"


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _require_int(data: dict, key: str, *, default: int | None = None, minimum: int | None = None) -> int:
    value = data.get(key, default)
    if value is None or isinstance(value, bool) or not isinstance(value, int):
        raise SaleError(f"{key} must be an integer")
    if minimum is not None and value < minimum:
        raise SaleError(f"{key} must be >= {minimum}")
    return value


def _parse_sale_date(value) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return value
    try:
        parsed = parse_iso_datetime(value)
    except (TypeError, ValueError):
        raise SaleError("sale_date must be an ISO-8601 date or datetime")
    if parsed is None:
        raise SaleError("sale_date must be an ISO-8601 date or datetime")
    return parsed


def _ensure_customer(customer_id: int | None) -> None:
    if customer_id is None:
        return
    if not db.session.get(Customer, customer_id):
        raise SaleError(f"Customer {customer_id} not found")


def _build_items(raw_items) -> list[SaleItem]:
    if not isinstance(raw_items, list) or not raw_items:
        raise SaleError("A sale needs at least one item")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise SaleError(f"Item {index + 1} must be an object")

        product_id = _require_int(raw, "product_id")
        product = db.session.get(Product, product_id)
        if not product:
            raise SaleError(f"Product {product_id} not found", details={"item": index + 1})
        if not product.is_active:
            raise SaleError(f"Product {product.sku} is inactive", details={"item": index + 1})

        quantity = _require_int(raw, "quantity", minimum=1)
        price = _require_int(raw, "price_cents", default=product.price_cents, minimum=0)
        discount = _require_int(raw, "discount_cents", default=0, minimum=0)
        tax = _require_int(raw, "tax_cents", default=0, minimum=0)

        total = quantity * price - discount + tax
        if total < 0:
            raise SaleError("Item discount exceeds item value", details={"item": index + 1})

        items.append(SaleItem(
            product_id=product_id,
            quantity=quantity,
            price_cents=price,
            discount_cents=discount,
            tax_cents=tax,
            total_cents=total,
        ))
    return items


def _recalculate_totals(sale: Sale) -> None:
    items_total = sum(item.total_cents for item in sale.items)
    sale.total_amount_cents = max(items_total - (sale.discount_cents or 0) + (sale.tax_cents or 0), 0)
    refresh_payment_status(sale)


def _check_transition(current: str, target: str) -> None:
    if target not in SALE_STATUSES:
        raise SaleError(f"Invalid status: {target}. Must be one of {list(SALE_STATUSES)}")
    if current == target:
        return
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"Cannot change sale status from {current} to {target}")


def _complete(sale: Sale, actor_id: int | None) -> None:
    for item in sale.items:
        apply_stock_delta(
            item.product_id,
            -item.quantity,
            MOVEMENT_OUT,
            reference_type=REFERENCE_SALE,
            reference_id=sale.id,
            actor_id=actor_id,
            note=f"Sale #{sale.invoice_number}",
        )
    sale.status = SALE_COMPLETED
    sale.completed_at = utcnow()


def _restock(sale: Sale, actor_id: int | None, label: str) -> None:
    for item in sale.items:
        apply_stock_delta(
            item.product_id,
            item.quantity,
            MOVEMENT_IN,
            reference_type=REFERENCE_SALE,
            reference_id=sale.id,
            actor_id=actor_id,
            note=f"{label} Sale #{sale.invoice_number}",
        )


def _transition(sale: Sale, target: str, actor_id: int | None) -> None:
    current = sale.status
    _check_transition(current, target)
    if current == target:
        return

    if target == SALE_COMPLETED:
        _complete(sale, actor_id)
    else:
        if current == SALE_COMPLETED:
            _restock(sale, actor_id, "Canceled" if target == SALE_CANCELED else "Reopened")
            sale.completed_at = None
        sale.status = target

    logger.info("Sale %s moved from %s to %s", sale.invoice_number, current, target)


def _load_locked(sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if not sale:
        raise SaleNotFoundError(f"Sale {sale_id} not found")
    return sale


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def create_sale(
    *,
    items: list[dict],
    actor_id: int | None = None,
    customer_id: int | None = None,
    status: str = SALE_PENDING,
    sale_date=None,
    discount_cents: int = 0,
    tax_cents: int = 0,
    paid_amount_cents: int = 0,
    payment_method: str | None = None,
    notes: str | None = None,
    invoice_number: str | None = None,
) -> Sale:
    """
    Create a sale with its items, optionally completed and partially paid.

    Everything (sale row, items, stock movements, initial payment) commits
    together. Raises SaleError / InsufficientStockError / PaymentError with
    nothing written.
    """
    if status not in SALE_STATUSES:
        raise SaleError(f"Invalid status: {status}. Must be one of {list(SALE_STATUSES)}")
    header = {"discount_cents": discount_cents, "tax_cents": tax_cents, "paid_amount_cents": paid_amount_cents}
    for key in header:
        _require_int(header, key, minimum=0)
    if paid_amount_cents > 0 and not payment_method:
        raise SaleError("payment_method is required when paid_amount_cents > 0")

    def _op():
        _ensure_customer(customer_id)

        number = invoice_number
        if number:
            if db.session.query(Sale.id).filter_by(invoice_number=number).first():
                raise SaleError(f"Invoice number {number} already exists")
        else:
            number = next_invoice_number()

        sale = Sale(
            invoice_number=number,
            customer_id=customer_id,
            user_id=actor_id,
            sale_date=_parse_sale_date(sale_date),
            status=SALE_PENDING,
            discount_cents=discount_cents,
            tax_cents=tax_cents,
            payment_method=payment_method,
            notes=notes,
        )
        sale.items = _build_items(items)
        db.session.add(sale)
        _recalculate_totals(sale)
        db.session.flush()

        _transition(sale, status, actor_id)

        if paid_amount_cents > 0:
            record_payment(
                sale,
                amount_cents=paid_amount_cents,
                method=payment_method,
                actor_id=actor_id,
                notes=f"Initial payment for sale #{sale.invoice_number}",
            )
        return sale

    sale = run_in_unit_of_work(_op)
    logger.info("Sale %s created with status %s", sale.invoice_number, sale.status)
    return sale


def update_sale(sale_id: int, patch: dict, actor_id: int | None = None) -> Sale:
    """
    Edit a sale and/or move it through its lifecycle.

    patch keys: customer_id, sale_date, discount_cents, tax_cents,
    payment_method, notes, items (full replacement), status.
    """
    if not isinstance(patch, dict):
        raise SaleError("Invalid payload")
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise SaleError(f"Field not allowed: {', '.join(sorted(unknown))}")

    def _op():
        sale = _load_locked(sale_id)
        target = patch.get("status", sale.status)
        edits = {k: patch[k] for k in HEADER_FIELDS if k in patch}
        new_items = patch.get("items")

        if sale.status == SALE_COMPLETED and (edits or new_items is not None):
            raise InvalidTransitionError(
                "Completed sales cannot be edited; move the sale out of completed first"
            )
        _check_transition(sale.status, target)

        if "customer_id" in edits:
            _ensure_customer(edits["customer_id"])
            sale.customer_id = edits["customer_id"]
        if "sale_date" in edits:
            sale.sale_date = _parse_sale_date(edits["sale_date"])
        for key in ("discount_cents", "tax_cents"):
            if key in edits:
                setattr(sale, key, _require_int(edits, key, minimum=0))
        for key in ("payment_method", "notes"):
            if key in edits:
                setattr(sale, key, edits[key])

        if new_items is not None:
            sale.items = _build_items(new_items)
            db.session.flush()

        _recalculate_totals(sale)
        _transition(sale, target, actor_id)
        return sale

    return run_in_unit_of_work(_op)


def change_status(sale_id: int, status: str, actor_id: int | None = None) -> Sale:
    return update_sale(sale_id, {"status": status}, actor_id=actor_id)


def delete_sale(sale_id: int, actor_id: int | None = None) -> None:
    """
    Delete a sale with its items and payments.

    A completed sale is restocked first (compensating movements); the stock
    history of the sale is kept.
    """
    def _op():
        sale = _load_locked(sale_id)
        if sale.status == SALE_COMPLETED:
            _restock(sale, actor_id, "Deleted")
        invoice = sale.invoice_number
        db.session.delete(sale)
        return invoice

    invoice = run_in_unit_of_work(_op)
    logger.info("Sale %s deleted", invoice)


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise SaleNotFoundError(f"Sale {sale_id} not found")
    return sale


def list_sales(
    *,
    status: str | None = None,
    payment_status: str | None = None,
    customer_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Filtered sale listing, newest first, with optional pagination."""
    query = db.session.query(Sale)
    if status:
        query = query.filter(Sale.status == status)
    if payment_status:
        query = query.filter(Sale.payment_status == payment_status)
    if customer_id:
        query = query.filter(Sale.customer_id == customer_id)
    if date_from:
        query = query.filter(Sale.sale_date >= date_from)
    if date_to:
        query = query.filter(Sale.sale_date <= date_to)
    query = query.order_by(Sale.sale_date.desc(), Sale.id.desc())

    if page is None:
        sales = query.all()
        return {"items": [s.to_dict() for s in sales], "count": len(sales)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    sales = query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [s.to_dict() for s in sales],
        "count": len(sales),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
