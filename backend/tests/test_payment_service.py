import pytest

from stockroom.extensions import db
from stockroom.models import Product, StockMovement
from stockroom.models.sales import SALE_COMPLETED, SALE_CANCELED, PAYMENT_UNPAID, PAYMENT_PARTIAL, PAYMENT_PAID
from stockroom.services import payment_service, sales_service
from stockroom.services.payment_service import PaymentError, PaymentNotFoundError, compute_payment_status


@pytest.mark.parametrize(
    "paid,total,expected",
    [
        (0, 1000, PAYMENT_UNPAID),
        (1, 1000, PAYMENT_PARTIAL),
        (999, 1000, PAYMENT_PARTIAL),
        (1000, 1000, PAYMENT_PAID),
        (1200, 1000, PAYMENT_PAID),
        (0, 0, PAYMENT_UNPAID),
    ],
)
def test_compute_payment_status(paid, total, expected):
    assert compute_payment_status(paid, total) == expected


@pytest.fixture
def completed_sale(product):
    # 2 x 1000 cents
    return sales_service.create_sale(items=[{"product_id": product.id, "quantity": 2}], status=SALE_COMPLETED)


class TestAddPayment:
    def test_partial_then_paid(self, completed_sale, admin_user):
        payment_service.add_payment(completed_sale.id, amount_cents=500, method="cash", actor_id=admin_user.id)
        sale = sales_service.get_sale(completed_sale.id)
        assert sale.paid_amount_cents == 500
        assert sale.payment_status == PAYMENT_PARTIAL

        payment_service.add_payment(completed_sale.id, amount_cents=1500, method="card")
        sale = sales_service.get_sale(completed_sale.id)
        assert sale.paid_amount_cents == 2000
        assert sale.payment_status == PAYMENT_PAID
        assert sale.balance_due_cents == 0

    def test_payments_never_touch_stock(self, completed_sale, product):
        before = db.session.query(StockMovement).count()
        payment_service.add_payment(completed_sale.id, amount_cents=2000, method="cash")
        assert db.session.query(StockMovement).count() == before
        assert db.session.get(Product, product.id).current_stock == 8

    @pytest.mark.parametrize("amount", [0, -5, 10.5, True])
    def test_amount_must_be_positive_integer(self, completed_sale, amount):
        with pytest.raises(PaymentError):
            payment_service.add_payment(completed_sale.id, amount_cents=amount, method="cash")

    def test_unknown_method(self, completed_sale):
        with pytest.raises(PaymentError):
            payment_service.add_payment(completed_sale.id, amount_cents=100, method="bitcoin")

    def test_overpayment_rejected(self, completed_sale):
        with pytest.raises(PaymentError) as exc:
            payment_service.add_payment(completed_sale.id, amount_cents=2001, method="cash")
        assert exc.value.details["balance_due_cents"] == 2000

    def test_canceled_sale_rejects_payments(self, completed_sale):
        sales_service.change_status(completed_sale.id, SALE_CANCELED)
        with pytest.raises(PaymentError):
            payment_service.add_payment(completed_sale.id, amount_cents=100, method="cash")

    def test_missing_sale(self, db_session):
        with pytest.raises(PaymentNotFoundError):
            payment_service.add_payment(999, amount_cents=100, method="cash")


class TestDeletePayment:
    def test_delete_recomputes_status(self, completed_sale):
        payment = payment_service.add_payment(completed_sale.id, amount_cents=2000, method="cash")
        sale = payment_service.delete_payment(payment.id)
        assert sale.paid_amount_cents == 0
        assert sale.payment_status == PAYMENT_UNPAID
        assert payment_service.list_payments(completed_sale.id) == []

    def test_missing_payment(self, db_session):
        with pytest.raises(PaymentNotFoundError):
            payment_service.delete_payment(999)


def test_total_change_recomputes_status(product):
    sale = sales_service.create_sale(
        items=[{"product_id": product.id, "quantity": 2}],
        paid_amount_cents=1000,
        payment_method="cash",
    )
    assert sale.payment_status == PAYMENT_PARTIAL

    sale = sales_service.update_sale(sale.id, {"items": [{"product_id": product.id, "quantity": 1}]})
    assert sale.total_amount_cents == 1000
    assert sale.payment_status == PAYMENT_PAID
