"""
Master data: categories, suppliers, customers, alert rules and staff users.

Callers pass patches already cleaned by validation.validate_payload; this
module adds the cross-row rules (uniqueness, references) and commits.
"""
from __future__ import annotations

from ..extensions import db
from ..models import Category, Supplier, Customer, SensibleCategory, User
from ..models.notifications import FREQUENCY_DAILY
from ..validation import ConflictError, ValidationError
from .unit_of_work import run_in_unit_of_work


class NotFoundError(LookupError):
    pass


def _get_or_404(model, obj_id: int, label: str):
    obj = db.session.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{label} {obj_id} not found")
    return obj


def _apply(obj, patch: dict) -> None:
    for k, v in patch.items():
        setattr(obj, k, v)


# =============================================================================
# CATEGORIES
# =============================================================================

def _check_category_name_free(name: str, exclude_id: int | None = None) -> None:
    query = db.session.query(Category.id).filter(db.func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise ConflictError("Category name already exists.")


def list_categories() -> list[Category]:
    return db.session.query(Category).order_by(Category.name.asc()).all()


def create_category(patch: dict) -> Category:
    def _op():
        _check_category_name_free(patch["name"])
        category = Category(**patch)
        db.session.add(category)
        return category

    return run_in_unit_of_work(_op)


def update_category(category_id: int, patch: dict) -> Category:
    def _op():
        category = _get_or_404(Category, category_id, "Category")
        if "name" in patch:
            _check_category_name_free(patch["name"], exclude_id=category.id)
        _apply(category, patch)
        return category

    return run_in_unit_of_work(_op)


# =============================================================================
# SUPPLIERS / CUSTOMERS (same contact shape)
# =============================================================================

def list_contacts(model, *, active: bool | None = None) -> list:
    query = db.session.query(model)
    if active is not None:
        query = query.filter(model.is_active.is_(active))
    return query.order_by(model.name.asc(), model.id.asc()).all()


def create_contact(model, patch: dict):
    def _op():
        obj = model(**patch)
        db.session.add(obj)
        return obj

    return run_in_unit_of_work(_op)


def update_contact(model, obj_id: int, patch: dict):
    label = "Supplier" if model is Supplier else "Customer"

    def _op():
        obj = _get_or_404(model, obj_id, label)
        _apply(obj, patch)
        return obj

    return run_in_unit_of_work(_op)


def get_contact(model, obj_id: int):
    return _get_or_404(model, obj_id, "Supplier" if model is Supplier else "Customer")


# =============================================================================
# SENSIBLE CATEGORY RULES
# =============================================================================

def list_rules(*, active: bool | None = None) -> list[SensibleCategory]:
    query = db.session.query(SensibleCategory)
    if active is not None:
        query = query.filter(SensibleCategory.is_active.is_(active))
    return query.order_by(SensibleCategory.id.asc()).all()


def get_rule(rule_id: int) -> SensibleCategory:
    return _get_or_404(SensibleCategory, rule_id, "Alert rule")


def create_rule(patch: dict) -> SensibleCategory:
    """One rule per category; a second rule for the same category is a conflict."""
    def _op():
        _get_or_404(Category, patch["category_id"], "Category")
        if db.session.query(SensibleCategory.id).filter_by(category_id=patch["category_id"]).first():
            raise ConflictError("An alert rule already exists for this category.")
        rule = SensibleCategory(notification_frequency=FREQUENCY_DAILY, is_active=True)
        _apply(rule, patch)
        db.session.add(rule)
        return rule

    return run_in_unit_of_work(_op)


def update_rule(rule_id: int, patch: dict) -> SensibleCategory:
    def _op():
        rule = get_rule(rule_id)
        new_category = patch.get("category_id")
        if new_category is not None and new_category != rule.category_id:
            _get_or_404(Category, new_category, "Category")
            taken = (
                db.session.query(SensibleCategory.id)
                .filter(SensibleCategory.category_id == new_category, SensibleCategory.id != rule.id)
                .first()
            )
            if taken:
                raise ConflictError("An alert rule already exists for this category.")
        _apply(rule, patch)
        return rule

    return run_in_unit_of_work(_op)


def delete_rule(rule_id: int) -> None:
    def _op():
        db.session.delete(get_rule(rule_id))

    run_in_unit_of_work(_op)


# =============================================================================
# USERS
# =============================================================================

def list_users() -> list[User]:
    return db.session.query(User).order_by(User.id.asc()).all()


def create_user(patch: dict) -> User:
    def _op():
        email = patch.get("email")
        if email and db.session.query(User.id).filter(db.func.lower(User.email) == email.lower()).first():
            raise ConflictError("A user with this email already exists.")
        if not patch.get("name"):
            raise ValidationError("name is required")
        user = User(**patch)
        db.session.add(user)
        return user

    return run_in_unit_of_work(_op)
