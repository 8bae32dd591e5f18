from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow

SALE_PENDING = "pending"
SALE_COMPLETED = "completed"
SALE_CANCELED = "canceled"
SALE_STATUSES = (SALE_PENDING, SALE_COMPLETED, SALE_CANCELED)

PAYMENT_UNPAID = "unpaid"
PAYMENT_PARTIAL = "partial"
PAYMENT_PAID = "paid"


class Sale(db.Model):
    """
    Sale aggregate: header, ordered items and payments.

    Stock is only affected while status is 'completed'. payment_status is
    derived from paid_amount_cents vs total_amount_cents and recomputed by
    payment_service whenever paid_amount_cents changes.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_status_date", "status", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    sale_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    status = db.Column(db.String(16), nullable=False, default=SALE_PENDING, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_UNPAID, index=True)

    # Sale-level adjustments applied on top of the item totals
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)

    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "Payment",
        back_populates="sale",
        order_by="Payment.id",
        cascade="all, delete-orphan",
    )

    @property
    def balance_due_cents(self) -> int:
        return max(self.total_amount_cents - self.paid_amount_cents, 0)

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "customer_id": self.customer_id,
            "user_id": self.user_id,
            "sale_date": to_utc_z(self.sale_date),
            "status": self.status,
            "payment_status": self.payment_status,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_amount_cents": self.total_amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "balance_due_cents": self.balance_due_cents,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "completed_at": to_utc_z(self.completed_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["payments"] = [payment.to_dict() for payment in self.payments]
        return data


class SaleItem(db.Model):
    """Line item on a sale. total_cents = quantity * price - discount + tax."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
        }


class Payment(db.Model):
    """Money received against a sale. Payments never touch stock."""
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    notes = db.Column(db.String(255), nullable=True)

    sale = db.relationship("Sale", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "paid_at": to_utc_z(self.paid_at),
            "notes": self.notes,
        }


class InvoiceSequence(db.Model):
    """
    Atomic invoice number counter per prefix.

    WHY: Two concurrent sale creations must never be handed the same invoice number.
    """
    __tablename__ = "invoice_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
