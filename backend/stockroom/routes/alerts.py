# Overview: Flask API routes for low-stock alert rules, notification settings and manual checks.

from flask import Blueprint, request, jsonify, g, current_app

from ..models import SensibleCategory
from ..services import catalog_service, settings_service
from ..services.catalog_service import NotFoundError
from ..services.notification_service import run_notification_cycle, CycleAlreadyRunningError
from ..services.settings_service import SettingsValidationError
from ..validation import (
    SENSIBLE_CATEGORY_POLICY,
    validate_payload,
    enforce_rules_sensible_category,
    ValidationError,
    ConflictError,
)
from ..decorators import require_actor

alerts_bp = Blueprint("alerts", __name__, url_prefix="/api")


# =============================================================================
# SENSIBLE CATEGORY RULES
# =============================================================================

@alerts_bp.get("/sensible-categories")
@require_actor
def list_rules_route():
    raw = request.args.get("active")
    active = None if raw is None else raw.strip().lower() in {"1", "true", "yes"}
    rules = catalog_service.list_rules(active=active)
    return jsonify({"items": [r.to_dict() for r in rules], "count": len(rules)}), 200


@alerts_bp.post("/sensible-categories")
@require_actor
def create_rule_route():
    try:
        patch = validate_payload(
            model=SensibleCategory,
            payload=request.get_json(silent=True),
            policy=SENSIBLE_CATEGORY_POLICY,
            partial=False,
        )
        enforce_rules_sensible_category(patch)
        rule = catalog_service.create_rule(patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify(rule.to_dict()), 201


@alerts_bp.get("/sensible-categories/<int:rule_id>")
@require_actor
def get_rule_route(rule_id: int):
    try:
        rule = catalog_service.get_rule(rule_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(rule.to_dict()), 200


@alerts_bp.patch("/sensible-categories/<int:rule_id>")
@require_actor
def update_rule_route(rule_id: int):
    try:
        patch = validate_payload(
            model=SensibleCategory,
            payload=request.get_json(silent=True),
            policy=SENSIBLE_CATEGORY_POLICY,
            partial=True,
        )
        enforce_rules_sensible_category(patch)
        rule = catalog_service.update_rule(rule_id, patch)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify(rule.to_dict()), 200


@alerts_bp.delete("/sensible-categories/<int:rule_id>")
@require_actor
def delete_rule_route(rule_id: int):
    try:
        catalog_service.delete_rule(rule_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"ok": True}), 200


# =============================================================================
# NOTIFICATION SETTINGS
# =============================================================================

@alerts_bp.get("/settings/notifications")
@require_actor
def get_notification_settings_route():
    return jsonify(settings_service.get_notification_settings()), 200


@alerts_bp.route("/settings/notifications", methods=["PUT", "PATCH"])
@require_actor
def update_notification_settings_route():
    """Partial update; unknown keys and malformed addresses are rejected."""
    try:
        settings = settings_service.update_notification_settings(
            request.get_json(silent=True),
            actor_id=g.current_user.id,
        )
    except SettingsValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    return jsonify(settings), 200


# =============================================================================
# MANUAL CHECK
# =============================================================================

@alerts_bp.post("/notifications/check")
@require_actor
def run_check_route():
    """
    Run one notification cycle now.

    Body (optional): {"force": bool, "hourly": bool}. force bypasses rule
    cooldowns; hourly selects the one-hour floor instead of the rule frequency.
    """
    data = request.get_json(silent=True) or {}
    force = data.get("force", False)
    hourly = data.get("hourly")
    if not isinstance(force, bool) or (hourly is not None and not isinstance(hourly, bool)):
        return jsonify({"error": "force and hourly must be booleans"}), 400

    try:
        report = run_notification_cycle(force=force, hourly=hourly)
    except CycleAlreadyRunningError as e:
        return jsonify({"error": str(e)}), 409

    current_app.logger.info(
        "Manual notification check by user %s: %d sent, %d failed",
        g.current_user.id, report.sent_count, report.failed_count,
    )
    return jsonify(report.to_dict()), 200
