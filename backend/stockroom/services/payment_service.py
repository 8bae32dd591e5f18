# Overview: Service-layer operations for payments; keeps sale payment rollups consistent.

"""
Payment Recording Service

DESIGN PRINCIPLES:
- Payments never touch stock.
- A sale may carry several payments (split / partial payments).
- paid_amount_cents is the sum of the sale's payments and payment_status is
  derived from it; both are recomputed every time a payment or the sale total
  changes.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Sale, Payment
from ..models.sales import (
    SALE_CANCELED,
    PAYMENT_PAID,
    PAYMENT_PARTIAL,
    PAYMENT_UNPAID,
)
from ..time_utils import utcnow
from .unit_of_work import lock_for_update, run_in_unit_of_work

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Raised for payment operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class PaymentNotFoundError(PaymentError):
    pass


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_BANK_TRANSFER = "bank_transfer"
METHOD_CHECK = "check"
METHOD_OTHER = "other"

VALID_PAYMENT_METHODS = (
    METHOD_CASH,
    METHOD_CARD,
    METHOD_BANK_TRANSFER,
    METHOD_CHECK,
    METHOD_OTHER,
)


# =============================================================================
# STATUS DERIVATION
# =============================================================================

def compute_payment_status(paid_amount_cents: int, total_amount_cents: int) -> str:
    """
    PAYMENT STATUS:
    - unpaid: nothing paid
    - partial: 0 < paid < total
    - paid: paid >= total (and something was paid)
    """
    if paid_amount_cents <= 0:
        return PAYMENT_UNPAID
    if paid_amount_cents >= total_amount_cents:
        return PAYMENT_PAID
    return PAYMENT_PARTIAL


def refresh_payment_status(sale: Sale) -> None:
    """Recompute paid_amount_cents and payment_status from the sale's payments."""
    sale.paid_amount_cents = sum(p.amount_cents for p in sale.payments)
    sale.payment_status = compute_payment_status(sale.paid_amount_cents, sale.total_amount_cents)


def record_payment(
    sale: Sale,
    *,
    amount_cents: int,
    method: str,
    actor_id: int | None = None,
    notes: str | None = None,
) -> Payment:
    """
    Attach a payment to a sale already loaded in the current unit of work.

    Does not commit. Raises PaymentError for invalid amounts or methods,
    canceled sales, and payments beyond the remaining balance.
    """
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise PaymentError("Payment amount must be a positive integer (cents)")

    if method not in VALID_PAYMENT_METHODS:
        raise PaymentError(
            f"Invalid payment method: {method}. Must be one of {list(VALID_PAYMENT_METHODS)}"
        )

    if sale.status == SALE_CANCELED:
        raise PaymentError("Cannot add payment to a canceled sale")

    # Overpayment is refused: paid_amount_cents never exceeds the sale total,
    # so change is handed back at the till, not stored as a payment.
    balance = sale.total_amount_cents - sum(p.amount_cents for p in sale.payments)
    if balance <= 0:
        raise PaymentError("Sale has no remaining balance due")
    if amount_cents > balance:
        raise PaymentError(
            "Payment exceeds remaining balance",
            details={"balance_due_cents": balance, "amount_cents": amount_cents},
        )

    payment = Payment(
        amount_cents=amount_cents,
        method=method,
        user_id=actor_id,
        notes=notes,
        paid_at=utcnow(),
    )
    sale.payments.append(payment)
    db.session.flush()

    refresh_payment_status(sale)
    return payment


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def add_payment(
    sale_id: int,
    *,
    amount_cents: int,
    method: str,
    actor_id: int | None = None,
    notes: str | None = None,
) -> Payment:
    """Record a payment against a sale and commit."""
    def _op():
        sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
        if not sale:
            raise PaymentNotFoundError(f"Sale {sale_id} not found")
        return record_payment(sale, amount_cents=amount_cents, method=method, actor_id=actor_id, notes=notes)

    payment = run_in_unit_of_work(_op)
    logger.info("Payment %s of %d cents recorded on sale %s", payment.id, payment.amount_cents, sale_id)
    return payment


def delete_payment(payment_id: int) -> Sale:
    """Remove a payment (data-entry correction) and recompute the sale rollup."""
    def _op():
        payment = db.session.query(Payment).filter_by(id=payment_id).first()
        if not payment:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")

        sale = lock_for_update(db.session.query(Sale).filter_by(id=payment.sale_id)).first()
        sale.payments.remove(payment)
        db.session.flush()
        refresh_payment_status(sale)
        return sale

    return run_in_unit_of_work(_op)


def list_payments(sale_id: int) -> list[Payment]:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise PaymentNotFoundError(f"Sale {sale_id} not found")
    return list(sale.payments)
