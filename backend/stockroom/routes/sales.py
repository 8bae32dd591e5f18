# Overview: Flask API routes for sales and payments; parses input and returns JSON responses.

# backend/stockroom/routes/sales.py
"""
Sales API routes.

Status changes go through PATCH /api/sales/<id> with {"status": ...}; the
service applies or reverses the stock movements. Errors map to:
- 400 invalid input / business rule
- 404 unknown sale or payment
- 409 insufficient stock or forbidden status change
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import sales_service, payment_service
from ..services.sales_service import SaleError, SaleNotFoundError, InvalidTransitionError
from ..services.payment_service import PaymentError, PaymentNotFoundError
from ..services.stock_service import StockError, InsufficientStockError
from ..services.unit_of_work import PersistenceError
from ..time_utils import parse_iso_datetime
from ..decorators import require_actor

sales_bp = Blueprint("sales", __name__, url_prefix="/api")

CREATE_FIELDS = {
    "items", "customer_id", "status", "sale_date", "discount_cents", "tax_cents",
    "paid_amount_cents", "payment_method", "notes", "invoice_number",
}


def _error_response(e: Exception):
    """Translate service exceptions into JSON responses."""
    if isinstance(e, (SaleNotFoundError, PaymentNotFoundError)):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, (InsufficientStockError, InvalidTransitionError)):
        return jsonify({"error": str(e), "details": e.details}), 409
    if isinstance(e, (SaleError, PaymentError, StockError)):
        return jsonify({"error": str(e), "details": e.details}), 400
    current_app.logger.exception("Sale operation failed")
    return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/sales")
@require_actor
def list_sales_route():
    """
    List sales, newest first.

    Query params: status, payment_status, customer_id, date_from, date_to
    (ISO-8601), page, per_page.
    """
    try:
        date_from = parse_iso_datetime(request.args.get("date_from"))
        date_to = parse_iso_datetime(request.args.get("date_to"))
    except ValueError:
        return jsonify({"error": "date_from/date_to must be ISO-8601"}), 400

    return sales_service.list_sales(
        status=request.args.get("status"),
        payment_status=request.args.get("payment_status"),
        customer_id=request.args.get("customer_id", type=int),
        date_from=date_from,
        date_to=date_to,
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@sales_bp.post("/sales")
@require_actor
def create_sale_route():
    """
    Create a sale.

    Body: items [{product_id, quantity, price_cents?, discount_cents?, tax_cents?}],
    optional customer_id, status (default pending), sale_date, discount_cents,
    tax_cents, paid_amount_cents + payment_method, notes, invoice_number.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid JSON payload"}), 400

    unknown = sorted(set(data) - CREATE_FIELDS)
    if unknown:
        return jsonify({"error": f"Field not allowed: {', '.join(unknown)}"}), 400

    kwargs = {k: v for k, v in data.items() if v is not None}
    kwargs.setdefault("items", None)

    try:
        sale = sales_service.create_sale(actor_id=g.current_user.id, **kwargs)
    except (SaleError, PaymentError, StockError, PersistenceError) as e:
        return _error_response(e)

    return jsonify({"sale": sale.to_dict(include_items=True)}), 201


@sales_bp.get("/sales/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
    except SaleNotFoundError as e:
        return _error_response(e)
    return jsonify({"sale": sale.to_dict(include_items=True)}), 200


@sales_bp.patch("/sales/<int:sale_id>")
@require_actor
def update_sale_route(sale_id: int):
    """
    Edit a sale or change its status.

    A completed sale only accepts {"status": "pending" | "canceled"}.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({"error": "Invalid JSON payload"}), 400

    try:
        sale = sales_service.update_sale(sale_id, data, actor_id=g.current_user.id)
    except (SaleError, PaymentError, StockError, PersistenceError) as e:
        return _error_response(e)

    return jsonify({"sale": sale.to_dict(include_items=True)}), 200


@sales_bp.delete("/sales/<int:sale_id>")
@require_actor
def delete_sale_route(sale_id: int):
    """Delete a sale; a completed sale is restocked first."""
    try:
        sales_service.delete_sale(sale_id, actor_id=g.current_user.id)
    except (SaleError, StockError, PersistenceError) as e:
        return _error_response(e)
    return jsonify({"ok": True}), 200


# =============================================================================
# PAYMENTS
# =============================================================================

@sales_bp.get("/sales/<int:sale_id>/payments")
@require_actor
def list_payments_route(sale_id: int):
    try:
        payments = payment_service.list_payments(sale_id)
    except PaymentNotFoundError as e:
        return _error_response(e)
    return jsonify({"items": [p.to_dict() for p in payments], "count": len(payments)}), 200


@sales_bp.post("/sales/<int:sale_id>/payments")
@require_actor
def add_payment_route(sale_id: int):
    """Body: {"amount_cents": int > 0, "method": str, "notes": str?}"""
    data = request.get_json(silent=True) or {}

    try:
        payment = payment_service.add_payment(
            sale_id,
            amount_cents=data.get("amount_cents"),
            method=data.get("method"),
            actor_id=g.current_user.id,
            notes=data.get("notes"),
        )
        sale = sales_service.get_sale(sale_id)
    except (PaymentError, SaleError, PersistenceError) as e:
        return _error_response(e)

    return jsonify({"payment": payment.to_dict(), "sale": sale.to_dict()}), 201


@sales_bp.delete("/payments/<int:payment_id>")
@require_actor
def delete_payment_route(payment_id: int):
    try:
        sale = payment_service.delete_payment(payment_id)
    except (PaymentError, PersistenceError) as e:
        return _error_response(e)
    return jsonify({"ok": True, "sale": sale.to_dict()}), 200
