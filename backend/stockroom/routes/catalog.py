# Overview: Flask API routes for categories, suppliers and customers.

from flask import Blueprint, request

from ..models import Category, Supplier, Customer
from ..services import catalog_service
from ..services.catalog_service import NotFoundError
from ..validation import (
    CATEGORY_POLICY,
    SUPPLIER_POLICY,
    CUSTOMER_POLICY,
    validate_payload,
    enforce_rules_contact,
    ValidationError,
    ConflictError,
)
from ..decorators import require_actor

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api")


def _active_arg():
    raw = request.args.get("active")
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes"}


# =============================================================================
# CATEGORIES
# =============================================================================

@catalog_bp.get("/categories")
@require_actor
def list_categories_route():
    categories = catalog_service.list_categories()
    return {"items": [c.to_dict() for c in categories], "count": len(categories)}


@catalog_bp.post("/categories")
@require_actor
def create_category_route():
    try:
        patch = validate_payload(
            model=Category, payload=request.get_json(silent=True), policy=CATEGORY_POLICY, partial=False
        )
        category = catalog_service.create_category(patch)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return {"error": str(e)}, 409
    return category.to_dict(), 201


@catalog_bp.patch("/categories/<int:category_id>")
@require_actor
def update_category_route(category_id: int):
    try:
        patch = validate_payload(
            model=Category, payload=request.get_json(silent=True), policy=CATEGORY_POLICY, partial=True
        )
        category = catalog_service.update_category(category_id, patch)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ConflictError as e:
        return {"error": str(e)}, 409
    except NotFoundError as e:
        return {"error": str(e)}, 404
    return category.to_dict(), 200


# =============================================================================
# SUPPLIERS / CUSTOMERS
# =============================================================================

def _register_contact_routes(path: str, model, policy):
    """List / create / get / update routes for a contact-shaped model."""
    endpoint = path.rstrip("s")

    @require_actor
    def list_route():
        items = catalog_service.list_contacts(model, active=_active_arg())
        return {"items": [i.to_dict() for i in items], "count": len(items)}

    @require_actor
    def create_route():
        try:
            patch = validate_payload(model=model, payload=request.get_json(silent=True), policy=policy, partial=False)
            enforce_rules_contact(patch)
            obj = catalog_service.create_contact(model, patch)
        except ValidationError as e:
            return {"error": str(e)}, 400
        return obj.to_dict(), 201

    @require_actor
    def get_route(obj_id: int):
        try:
            obj = catalog_service.get_contact(model, obj_id)
        except NotFoundError as e:
            return {"error": str(e)}, 404
        return obj.to_dict(), 200

    @require_actor
    def update_route(obj_id: int):
        try:
            patch = validate_payload(model=model, payload=request.get_json(silent=True), policy=policy, partial=True)
            enforce_rules_contact(patch)
            obj = catalog_service.update_contact(model, obj_id, patch)
        except ValidationError as e:
            return {"error": str(e)}, 400
        except NotFoundError as e:
            return {"error": str(e)}, 404
        return obj.to_dict(), 200

    catalog_bp.add_url_rule(f"/{path}", f"list_{path}", list_route, methods=["GET"])
    catalog_bp.add_url_rule(f"/{path}", f"create_{endpoint}", create_route, methods=["POST"])
    catalog_bp.add_url_rule(f"/{path}/<int:obj_id>", f"get_{endpoint}", get_route, methods=["GET"])
    catalog_bp.add_url_rule(f"/{path}/<int:obj_id>", f"update_{endpoint}", update_route, methods=["PATCH"])


_register_contact_routes("suppliers", Supplier, SUPPLIER_POLICY)
_register_contact_routes("customers", Customer, CUSTOMER_POLICY)
