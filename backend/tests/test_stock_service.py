"""
Stock ledger tests: stored stock always equals the movement sum, never goes
negative, and movements cannot be rewritten.
"""

import pytest

from stockroom.extensions import db
from stockroom.models import Product, StockMovement, ImmutableMovementError
from stockroom.models.inventory import MOVEMENT_IN, MOVEMENT_OUT, REFERENCE_ADJUSTMENT, REFERENCE_OPENING
from stockroom.services import stock_service
from stockroom.services.stock_service import StockError, InsufficientStockError
from stockroom.services.unit_of_work import UnitOfWork, PersistenceError, run_with_retry


def _movements(product_id):
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.asc())
        .all()
    )


class TestOpeningStock:
    """Opening stock is booked on the ledger at creation."""

    def test_opening_movement_recorded(self, product):
        movements = _movements(product.id)
        assert len(movements) == 1
        assert movements[0].quantity == 10
        assert movements[0].type == MOVEMENT_IN
        assert movements[0].reference_type == REFERENCE_OPENING
        assert product.current_stock == 10

    def test_zero_opening_stock_writes_nothing(self, make_product):
        p = make_product(stock=0)
        assert _movements(p.id) == []
        assert p.current_stock == 0


class TestAdjustStock:
    def test_adjust_in_and_out(self, product, admin_user):
        stock_service.adjust_stock(product_id=product.id, quantity_delta=5, actor_id=admin_user.id, note="delivery")
        stock_service.adjust_stock(product_id=product.id, quantity_delta=-3, actor_id=admin_user.id)

        db.session.refresh(product)
        assert product.current_stock == 12

        movements = _movements(product.id)
        assert [m.quantity for m in movements] == [10, 5, -3]
        assert [m.type for m in movements] == [MOVEMENT_IN, MOVEMENT_IN, MOVEMENT_OUT]
        assert movements[1].reference_type == REFERENCE_ADJUSTMENT
        assert movements[1].user_id == admin_user.id
        assert movements[1].note == "delivery"

    def test_insufficient_stock_leaves_everything_unchanged(self, product):
        with pytest.raises(InsufficientStockError) as exc:
            stock_service.adjust_stock(product_id=product.id, quantity_delta=-11)

        assert exc.value.available == 10
        assert exc.value.requested == 11
        db.session.refresh(product)
        assert product.current_stock == 10
        assert len(_movements(product.id)) == 1

    def test_can_take_stock_to_exactly_zero(self, product):
        stock_service.adjust_stock(product_id=product.id, quantity_delta=-10)
        db.session.refresh(product)
        assert product.current_stock == 0

    def test_zero_delta_rejected(self, product):
        with pytest.raises(StockError):
            stock_service.adjust_stock(product_id=product.id, quantity_delta=0)

    def test_unknown_product(self, db_session):
        with pytest.raises(StockError):
            stock_service.adjust_stock(product_id=9999, quantity_delta=1)


class TestApplyStockDelta:
    def test_type_must_match_sign(self, product):
        with UnitOfWork():
            with pytest.raises(StockError):
                stock_service.apply_stock_delta(
                    product.id, -1, MOVEMENT_IN, reference_type=REFERENCE_ADJUSTMENT
                )

    def test_does_not_commit_on_its_own(self, product):
        uow = UnitOfWork().begin()
        stock_service.apply_stock_delta(product.id, -4, MOVEMENT_OUT, reference_type=REFERENCE_ADJUSTMENT)
        uow.rollback()

        db.session.refresh(product)
        assert product.current_stock == 10
        assert len(_movements(product.id)) == 1

    def test_multi_item_operation_is_all_or_nothing(self, make_product):
        a = make_product(stock=5)
        b = make_product(stock=1)

        with pytest.raises(InsufficientStockError):
            with UnitOfWork():
                stock_service.apply_stock_delta(a.id, -5, MOVEMENT_OUT, reference_type=REFERENCE_ADJUSTMENT)
                stock_service.apply_stock_delta(b.id, -2, MOVEMENT_OUT, reference_type=REFERENCE_ADJUSTMENT)

        assert db.session.get(Product, a.id).current_stock == 5
        assert db.session.get(Product, b.id).current_stock == 1
        assert len(_movements(a.id)) == 1


class TestLedgerConsistency:
    def test_stock_equals_movement_sum_after_any_sequence(self, product):
        for delta in (4, -7, 2, -9, 15, -1):
            stock_service.adjust_stock(product_id=product.id, quantity_delta=delta)

        db.session.refresh(product)
        assert product.current_stock == 14
        assert stock_service.ledger_quantity(product.id) == product.current_stock
        assert stock_service.verify_stock_consistency() == []

    def test_verify_reports_drift(self, product):
        # Simulate an out-of-band write bypassing the ledger
        db.session.execute(
            Product.__table__.update().where(Product.id == product.id).values(current_stock=3)
        )
        db.session.commit()

        mismatches = stock_service.verify_stock_consistency()
        assert mismatches == [{
            "product_id": product.id,
            "sku": product.sku,
            "current_stock": 3,
            "ledger_quantity": 10,
        }]


class TestAppendOnly:
    def test_movement_update_rejected(self, product):
        movement = _movements(product.id)[0]
        movement.quantity = 99
        with pytest.raises(ImmutableMovementError):
            db.session.flush()
        db.session.rollback()

    def test_movement_delete_rejected(self, product):
        movement = _movements(product.id)[0]
        db.session.delete(movement)
        with pytest.raises(ImmutableMovementError):
            db.session.flush()
        db.session.rollback()


class TestUnitOfWork:
    def test_rolls_back_on_exception(self, db_session):
        from stockroom.models import Category

        with pytest.raises(RuntimeError):
            with UnitOfWork():
                db.session.add(Category(name="Temp"))
                db.session.flush()
                raise RuntimeError("boom")

        assert db.session.query(Category).count() == 0

    def test_commit_failure_becomes_persistence_error(self, make_category):
        from stockroom.models import Category

        make_category("Dup")
        with pytest.raises(PersistenceError):
            with UnitOfWork():
                db.session.add(Category(name="Dup"))

    def test_retry_replays_retryable_failures(self, db_session):
        from sqlalchemy.orm.exc import StaleDataError

        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise StaleDataError("conflict")
            return "ok"

        assert run_with_retry(flaky, backoff_base=0) == "ok"
        assert calls["n"] == 3
