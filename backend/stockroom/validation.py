from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, String, Text

from .models.notifications import VALID_FREQUENCIES
from .models.users import VALID_ROLES
from .time_utils import parse_iso_datetime

# $9,999,999.99
MAX_PRICE_CENTS = 999_999_999

EMAIL_RE = re.compile(r"^[^@\s,;]+@[^@\s,;]+\.[^@\s,;]+$")

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (duplicate SKU, duplicate category name)."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Per-model write policy:
    - writable_fields: what clients may set; anything else is rejected
    - required_on_create: fields a POST must carry
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = field(default_factory=frozenset)


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "sku", "name", "description", "category_id", "supplier_id",
        "price_cents", "cost_cents", "min_stock", "is_active",
    }),
    required_on_create=frozenset({"sku", "name", "price_cents"}),
)

CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "description"}),
    required_on_create=frozenset({"name"}),
)

SUPPLIER_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "email", "phone", "address", "is_active"}),
    required_on_create=frozenset({"name"}),
)

# Customers and suppliers share the same contact shape
CUSTOMER_POLICY = SUPPLIER_POLICY

SENSIBLE_CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "category_id", "min_quantity", "notification_email", "notification_frequency", "is_active",
    }),
    required_on_create=frozenset({"category_id", "min_quantity", "notification_email"}),
)

USER_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({"name", "email", "phone", "role", "is_active"}),
    required_on_create=frozenset({"name", "role"}),
)


def _columns_by_key(model) -> dict[str, Any]:
    return {c.key: c for c in model.__mapper__.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers: reject floats, bools and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.lstrip("-").isdigit():
                return int(stripped)
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        raise ValidationError(f"{col.key} must be an integer")

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise ValidationError(f"{col.key} must be a boolean")

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against the model's column metadata
    (nullable, type, String length) and the policy.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)

    Returns a cleaned dict holding only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload:
        if k not in policy.writable_fields or k not in cols:
            raise ValidationError(f"Field not allowed: {k}")

    patch: dict = {}
    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable and val == "":
            raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _non_negative(patch: dict, key: str, maximum: int | None = None) -> None:
    value = patch.get(key)
    if value is None:
        return
    if value < 0:
        raise ValidationError(f"{key} must be >= 0")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{key} cannot exceed {maximum} (${maximum / 100:,.2f})")


def _email(patch: dict, key: str) -> None:
    value = patch.get(key)
    if value and not EMAIL_RE.match(value):
        raise ValidationError(f"{key} must be a valid email address")


def enforce_rules_product(patch: dict) -> None:
    _non_negative(patch, "price_cents", MAX_PRICE_CENTS)
    _non_negative(patch, "cost_cents", MAX_PRICE_CENTS)
    _non_negative(patch, "min_stock")


def enforce_rules_contact(patch: dict) -> None:
    _email(patch, "email")


def enforce_rules_sensible_category(patch: dict) -> None:
    _non_negative(patch, "min_quantity")
    _email(patch, "notification_email")
    frequency = patch.get("notification_frequency")
    if frequency is not None and frequency not in VALID_FREQUENCIES:
        raise ValidationError(f"notification_frequency must be one of {list(VALID_FREQUENCIES)}")


def enforce_rules_user(patch: dict) -> None:
    _email(patch, "email")
    role = patch.get("role")
    if role is not None and role not in VALID_ROLES:
        raise ValidationError(f"role must be one of {list(VALID_ROLES)}")
