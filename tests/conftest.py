"""Pytest fixtures for storefront tests."""

import secrets

import mongomock
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

import events
from database import ensure_indexes, now_utc
from errors import ExternalServiceError
from mailer import Mailer
from orders import OrderService
from payments import PaymentSimulator
from repositories import CouponRepository, ProductRepository
from schemas import Coupon, Product, User


class RecordingMailer(Mailer):
    """Mailer that keeps sent emails in memory, or fails every send."""

    def __init__(self, fail: bool = False):
        super().__init__(host=None)
        self.fail = fail
        self.sent = []

    def send(self, to, subject, body):
        if self.fail:
            raise ExternalServiceError("SMTP", "connection refused")
        self.sent.append((to, subject, body))
        return True


class ManualScheduler:
    """Collects scheduled callbacks so tests decide when the gateway answers."""

    def __init__(self):
        self.pending = []

    def __call__(self, delay, callback):
        self.pending.append((delay, callback))

    def run_all(self):
        pending, self.pending = self.pending, []
        for _, callback in pending:
            callback()


@pytest.fixture
def db():
    """Fresh in-memory database with production indexes."""
    client = mongomock.MongoClient()
    database = client["storefront_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def bus():
    return events.EventBus()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def order_service(db, mailer, bus):
    return OrderService(db, mailer=mailer, bus=bus)


@pytest.fixture
def simulator(order_service, scheduler):
    return PaymentSimulator(order_service, delay=0, outcome="success", schedule=scheduler)


@pytest.fixture
def make_user(db):
    def _make(name="Alice", email=None, role="customer"):
        doc = {
            "name": name,
            "email": email or f"{name.lower()}@example.com",
            "password_hash": None,
            "role": role,
            "token": secrets.token_hex(8),
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
        res = db["user"].insert_one(doc)
        return User.model_validate({**doc, "_id": str(res.inserted_id)})

    return _make


@pytest.fixture
def customer(make_user):
    return make_user("Alice")


@pytest.fixture
def admin(make_user):
    return make_user("Root", role="admin")


@pytest.fixture
def make_product(db):
    def _make(name="Widget", price=10.0, stock=5, category="general"):
        return ProductRepository(db).create(Product(name=name, price=price, stock=stock, category=category))

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE20", **fields):
        fields.setdefault("discount_type", "percentage")
        fields.setdefault("discount_value", 20)
        return CouponRepository(db).create(Coupon(code=code, **fields))

    return _make


def auth(user):
    return {"Authorization": f"Bearer {user.token}"}


@pytest.fixture
def api_client(db, mailer, bus, scheduler):
    """Test client wired to the in-memory database and fakes."""
    from main import app, get_db, get_event_bus, get_mailer, get_order_service, get_payment_simulator

    def simulator_override(orders: OrderService = Depends(get_order_service)):
        return PaymentSimulator(orders, delay=0, outcome="success", schedule=scheduler)

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[get_payment_simulator] = simulator_override
    yield TestClient(app)
    app.dependency_overrides.clear()
