"""
Pytest fixtures for stockroom backend tests.

Provides the app on an in-memory database, a per-test clean schema, factory
fixtures for users/categories/products and fake alert senders.
"""

from datetime import datetime

import pytest

from stockroom import create_app
from stockroom.extensions import db
from stockroom.models import User, Category
from stockroom.models.users import ROLE_ADMIN, ROLE_MANAGER, ROLE_EMPLOYEE
from stockroom.services import products_service
from stockroom.services.delivery import DeliveryError, CHANNEL_EMAIL, CHANNEL_SMS


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'MAIL_SUPPRESS_SEND': True,
        'MAIL_DEFAULT_SENDER': 'alerts@test.local',
        'NOTIFICATION_SEND_PAUSE_SECONDS': 0,
        'NOTIFICATION_HOURLY_FLOOR': False,
        'TWILIO_ACCOUNT_SID': None,
        'TWILIO_AUTH_TOKEN': None,
        'TWILIO_FROM_NUMBER': None,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Empty every table before each test (core deletes bypass the movement guards)."""
    with app.app_context():
        db.session.rollback()
        db.session.expunge_all()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


def _make_user(session, name, email, role, **extra):
    user = User(name=name, email=email, role=role, is_active=True, **extra)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def admin_user(db_session):
    return _make_user(db_session, "Admin", "admin@test.local", ROLE_ADMIN)


@pytest.fixture
def manager_user(db_session):
    return _make_user(db_session, "Manager", "manager@test.local", ROLE_MANAGER)


@pytest.fixture
def employee_user(db_session):
    return _make_user(db_session, "Employee", "employee@test.local", ROLE_EMPLOYEE)


@pytest.fixture
def actor_headers(admin_user):
    return {"X-User-Id": str(admin_user.id)}


@pytest.fixture
def make_category(db_session):
    def _make(name="Cleaning"):
        category = Category(name=name)
        db_session.add(category)
        db_session.commit()
        return category
    return _make


@pytest.fixture
def category(make_category):
    return make_category("Cleaning")


@pytest.fixture
def make_product(db_session):
    """Products are created through the service so opening stock is on the ledger."""
    counter = {"n": 0}

    def _make(*, stock=10, min_stock=5, price_cents=1000, category=None, is_active=True, sku=None, name=None):
        counter["n"] += 1
        n = counter["n"]
        product = products_service.create_product(
            patch={
                "sku": sku or f"SKU-{n:03d}",
                "name": name or f"Product {n}",
                "price_cents": price_cents,
                "min_stock": min_stock,
                "category_id": category.id if category else None,
                "is_active": is_active,
            },
            opening_stock=stock,
        )
        return product
    return _make


@pytest.fixture
def product(make_product):
    return make_product(stock=10, min_stock=5)


class FakeAlertSender:
    """Records every alert; addresses in fail_for raise DeliveryError."""

    def __init__(self, fail_for=()):
        self.fail_for = {a.lower() for a in fail_for}
        self.category_alerts = []
        self.low_stock_alerts = []

    def send_category_alert(self, email, products, category):
        if email.lower() in self.fail_for:
            raise DeliveryError("smtp down", recipient=email, channel=CHANNEL_EMAIL)
        self.category_alerts.append((email, [p.id for p in products], category.id))

    def send_low_stock_alert(self, email, products):
        if email.lower() in self.fail_for:
            raise DeliveryError("smtp down", recipient=email, channel=CHANNEL_EMAIL)
        self.low_stock_alerts.append((email, [p.id for p in products]))


class FakeSmsSender:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def send_low_stock_alert(self, phone, products):
        if phone in self.fail_for:
            raise DeliveryError("twilio down", recipient=phone, channel=CHANNEL_SMS)
        self.sent.append((phone, [p.id for p in products]))


@pytest.fixture
def fake_sender():
    return FakeAlertSender()


@pytest.fixture
def fixed_now():
    return datetime(2024, 3, 15, 10, 0, 0)


@pytest.fixture
def sender_factory():
    return FakeAlertSender


@pytest.fixture
def sms_factory():
    return FakeSmsSender
