from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"

REFERENCE_OPENING = "opening"
REFERENCE_ADJUSTMENT = "adjustment"
REFERENCE_SALE = "sale"


class Product(db.Model):
    """
    Product master data with its current stock level.

    STOCK OWNERSHIP:
    current_stock is a derived value kept equal to the sum of the product's
    StockMovement deltas. Only stock_service.apply_stock_delta writes it, always
    under a row lock and inside a unit of work. The CHECK constraint is the last
    line of defence against negative stock.

    version_id enables optimistic locking so that concurrent completions of
    sales against the same product cannot lose updates on databases that ignore
    SELECT ... FOR UPDATE (SQLite).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("current_stock >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_category_active", "category_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=True, index=True)

    price_cents = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=True)

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    supplier = db.relationship("Supplier", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock <= self.min_stock or self.current_stock <= 0

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category_id": self.category_id,
            "supplier_id": self.supplier_id,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "current_stock": self.current_stock,
            "min_stock": self.min_stock,
            "is_low_stock": self.is_low_stock,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock ledger entry.

    quantity is signed (+in / -out). reference_type/reference_id point at the
    cause (a sale id, a manual adjustment, the opening balance). There is no
    foreign key to sales: deleting a sale keeps its history, and the reversal is
    a compensating entry rather than an edit.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(8), nullable=False)

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.Integer, nullable=True)

    note = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "user_id": self.user_id,
            "quantity": self.quantity,
            "type": self.type,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class ImmutableMovementError(RuntimeError):
    """Raised when code tries to rewrite stock history."""


@event.listens_for(StockMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ImmutableMovementError(f"stock movement {target.id} is append-only")


@event.listens_for(StockMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableMovementError(f"stock movement {target.id} is append-only")
