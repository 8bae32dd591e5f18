# backend/stockroom/services/products_service.py
"""
Products Service

STOCK FIELDS ARE NOT WRITABLE HERE:
current_stock only moves through stock_service. A new product may carry an
opening quantity, which is booked as an 'opening' movement so the ledger and
the stored level agree from the first commit.
"""
from __future__ import annotations

from sqlalchemy import or_

from ..extensions import db
from ..models import Product, Category, Supplier
from ..validation import ConflictError, ValidationError
from .stock_service import record_opening_stock
from .unit_of_work import run_in_unit_of_work

PRODUCT_MUTABLE_FIELDS = {
    "sku", "name", "description", "category_id", "supplier_id",
    "price_cents", "cost_cents", "min_stock", "is_active",
}


class ProductNotFoundError(LookupError):
    pass


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _check_references(patch: dict) -> None:
    if patch.get("category_id") is not None and not db.session.get(Category, patch["category_id"]):
        raise ValidationError(f"Category {patch['category_id']} not found")
    if patch.get("supplier_id") is not None and not db.session.get(Supplier, patch["supplier_id"]):
        raise ValidationError(f"Supplier {patch['supplier_id']} not found")


def _check_sku_free(sku: str, exclude_id: int | None = None) -> None:
    query = db.session.query(Product.id).filter(Product.sku == sku)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    if query.first():
        raise ConflictError("SKU already exists.")


def get_product(product_id: int) -> Product:
    p = db.session.get(Product, product_id)
    if not p:
        raise ProductNotFoundError(f"Product {product_id} not found")
    return p


def list_products(
    *,
    category_id: int | None = None,
    low_stock: bool = False,
    active: bool | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Product listing with optional filters and pagination.

    Args:
        category_id: only products of this category
        low_stock: only products at or below min_stock (or out of stock)
        active: filter on is_active when not None
        page: Page number (1-indexed). If None, returns all items.
        per_page: Items per page (default 20, max 100)
    """
    base_query = db.session.query(Product)
    if category_id is not None:
        base_query = base_query.filter(Product.category_id == category_id)
    if active is not None:
        base_query = base_query.filter(Product.is_active.is_(active))
    if low_stock:
        base_query = base_query.filter(
            or_(Product.current_stock <= Product.min_stock, Product.current_stock <= 0)
        )
    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def create_product(*, patch: dict, opening_stock: int = 0, actor_id: int | None = None) -> Product:
    """
    Create a product from a validated patch, booking its opening stock.

    Raises:
        ConflictError: SKU already exists
        ValidationError: unknown category/supplier or negative opening stock
    """
    if isinstance(opening_stock, bool) or not isinstance(opening_stock, int) or opening_stock < 0:
        raise ValidationError("opening_stock must be a non-negative integer")

    def _op():
        _check_sku_free(patch["sku"])
        _check_references(patch)

        p = Product(current_stock=0)
        apply_product_patch(p, patch)
        db.session.add(p)
        db.session.flush()  # p.id is needed by the opening movement

        record_opening_stock(p, opening_stock, actor_id=actor_id)
        return p

    return run_in_unit_of_work(_op)


def update_product(*, product_id: int, patch: dict) -> Product:
    def _op():
        p = get_product(product_id)
        if "sku" in patch and patch["sku"] != p.sku:
            _check_sku_free(patch["sku"], exclude_id=p.id)
        _check_references(patch)
        apply_product_patch(p, patch)
        return p

    return run_in_unit_of_work(_op)


def deactivate_product(*, product_id: int) -> Product:
    """Soft-delete only: sale items and stock movements keep pointing at the row."""
    def _op():
        p = get_product(product_id)
        p.is_active = False
        return p

    return run_in_unit_of_work(_op)
