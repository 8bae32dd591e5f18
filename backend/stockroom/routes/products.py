# Overview: Flask API routes for products and their stock ledger; parses input and returns JSON responses.

# backend/stockroom/routes/products.py
"""
Product and stock routes.

STOCK: current_stock is read-only here. Opening stock is accepted on create,
later changes go through POST /<id>/stock, which books an adjustment movement.
"""
from flask import Blueprint, request, g, current_app

from ..models import Product
from ..services import products_service, stock_service
from ..services.products_service import ProductNotFoundError
from ..services.stock_service import StockError, InsufficientStockError
from ..services.unit_of_work import PersistenceError
from ..validation import (
    PRODUCT_POLICY,
    validate_payload,
    enforce_rules_product,
    ValidationError,
    ConflictError,
)
from ..decorators import require_actor

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _bool_arg(name: str):
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes"}


@products_bp.get("")
@require_actor
def list_products():
    """
    List products.

    Query params:
    - category_id: int (optional)
    - low_stock: bool (optional) - only products at or below min_stock
    - active: bool (optional)
    - page / per_page: pagination (per_page default 20, max 100)
    """
    return products_service.list_products(
        category_id=request.args.get("category_id", type=int),
        low_stock=bool(_bool_arg("low_stock")),
        active=_bool_arg("active"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@products_bp.post("")
@require_actor
def create_product_route():
    """Create a product; optional opening_stock is booked as an opening movement."""
    payload = dict(request.get_json(silent=True) or {})
    opening_stock = payload.pop("opening_stock", 0)

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)
        product = products_service.create_product(
            patch=patch,
            opening_stock=opening_stock,
            actor_id=g.current_user.id,
        )
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return {"error": str(e)}, 409
    except PersistenceError:
        current_app.logger.exception("Failed to create product")
        return {"error": "Internal server error"}, 500

    return product.to_dict(), 201


@products_bp.get("/<int:product_id>")
@require_actor
def get_product_route(product_id: int):
    try:
        product = products_service.get_product(product_id)
    except ProductNotFoundError:
        return {"error": "Product not found"}, 404
    return product.to_dict(), 200


@products_bp.patch("/<int:product_id>")
@require_actor
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_product(patch)
        product = products_service.update_product(product_id=product_id, patch=patch)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ProductNotFoundError:
        return {"error": "Product not found"}, 404

    return product.to_dict(), 200


@products_bp.delete("/<int:product_id>")
@require_actor
def deactivate_product_route(product_id: int):
    """Soft delete (is_active=false); history stays intact."""
    try:
        product = products_service.deactivate_product(product_id=product_id)
    except ProductNotFoundError:
        return {"error": "Product not found"}, 404
    return product.to_dict(), 200


@products_bp.post("/<int:product_id>/stock")
@require_actor
def adjust_stock_route(product_id: int):
    """
    Manual stock adjustment.

    Body: {"quantity_delta": int (non-zero, negative removes stock), "note": str}
    """
    data = request.get_json(silent=True) or {}
    delta = data.get("quantity_delta")
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        return {"error": "quantity_delta must be a non-zero integer"}, 400

    try:
        products_service.get_product(product_id)
    except ProductNotFoundError:
        return {"error": "Product not found"}, 404

    try:
        movement = stock_service.adjust_stock(
            product_id=product_id,
            quantity_delta=delta,
            actor_id=g.current_user.id,
            note=data.get("note"),
        )
    except InsufficientStockError as e:
        return {"error": str(e), "details": e.details}, 409
    except StockError as e:
        return {"error": str(e), "details": e.details}, 400

    product = products_service.get_product(product_id)
    return {"movement": movement.to_dict(), "product": product.to_dict()}, 201


@products_bp.get("/<int:product_id>/movements")
@require_actor
def list_movements_route(product_id: int):
    try:
        product = products_service.get_product(product_id)
    except ProductNotFoundError:
        return {"error": "Product not found"}, 404

    limit = min(request.args.get("limit", default=200, type=int) or 200, 1000)
    movements = stock_service.list_movements(product_id, limit=limit)
    return {
        "product_id": product.id,
        "current_stock": product.current_stock,
        "ledger_quantity": stock_service.ledger_quantity(product.id),
        "items": [m.to_dict() for m in movements],
        "count": len(movements),
    }, 200
