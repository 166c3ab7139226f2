import hashlib
import hmac
import os
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import ai_helpers
import payments
from database import Base, get_db
from main import app
from models import Order, OrderItem, OrderStatus, PaymentStatus, PaymentTransaction, Product, ProductUnit, Role, User
from security import create_access_token, get_password_hash
from settings import Settings, get_settings

TEST_SETTINGS = Settings(
    DATABASE_URL="sqlite://",
    SECRET_KEY="test-secret-key",
    RAZORPAY_KEY_ID="rzp_test_key",
    RAZORPAY_KEY_SECRET="rzp_test_secret",
    RAZORPAY_WEBHOOK_SECRET="whsec_test",
    OPENAI_API_KEY="",
    UNSPLASH_ACCESS_KEY="",
)


def sign(order_id, payment_id, secret=TEST_SETTINGS.RAZORPAY_KEY_SECRET):
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class FakeGateway:
    """Records what would have been sent to Razorpay."""

    def __init__(self):
        self.orders = []
        self.refunds = []
        self.fail_create = False
        self.fail_refund = False

    def create_order(self, amount_minor, currency, receipt):
        if self.fail_create:
            raise payments.PaymentError("Payment gateway request failed")
        order = {"id": f"order_test_{len(self.orders) + 1}", "amount": amount_minor, "currency": currency}
        self.orders.append({**order, "receipt": receipt})
        return order

    def refund(self, payment_id, amount_minor, notes):
        if self.fail_refund:
            raise payments.PaymentError("Payment gateway request failed")
        refund = {"id": f"rfnd_test_{len(self.refunds) + 1}", "amount": amount_minor, "payment_id": payment_id}
        self.refunds.append({**refund, "notes": notes})
        return refund


class FakeChatModel:
    def __init__(self, reply=""):
        self.reply = reply
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        return SimpleNamespace(content=self.reply)


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def chat_model():
    return FakeChatModel()


@pytest.fixture
def client(db, gateway, chat_model):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: TEST_SETTINGS
    app.dependency_overrides[payments.get_gateway] = lambda: gateway
    app.dependency_overrides[ai_helpers.get_chat_model] = lambda: chat_model
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _make_user(db, name, email, role=Role.CUSTOMER):
    user = User(name=name, email=email, password_hash=get_password_hash("secret123"), role=role.value)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "Ravi Kumar", "ravi@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "Meena", "meena@example.com")


@pytest.fixture
def admin(db):
    return _make_user(db, "Admin", "admin@example.com", Role.ADMIN)


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user, TEST_SETTINGS)}"}


@pytest.fixture
def user_headers(user):
    return auth_headers(user)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def product(db):
    """Wheat seeds in 5 kg (2400 -> 2000, unlimited) and 10 kg (4500 -> 3800, 3 in stock)."""
    product = Product(
        name="Wheat Seeds",
        url_slug="wheat-seeds",
        category="Seeds",
        subcategory="Wheat",
        description="High yield wheat seeds",
        images=["https://images.example.com/wheat.jpg"],
        units=[
            ProductUnit(number=5, type="kg", actual_price=2400, discounted_price=2000, stock=None),
            ProductUnit(number=10, type="kg", actual_price=4500, discounted_price=3800, stock=3),
        ],
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def unit_5kg(product):
    return product.units[0]


@pytest.fixture
def unit_10kg(product):
    return product.units[1]


@pytest.fixture
def make_order(db):
    """Insert a paid order directly, bypassing checkout."""

    def factory(user, unit, quantity=1, status=OrderStatus.PENDING, payment_id=None):
        payment_id = payment_id or f"pay_seed_{user.id}_{unit.id}_{db.query(Order).count() + 1}"
        total = unit.discounted_price * quantity
        order = Order(
            user_id=user.id,
            status=status.value,
            total_amount=total,
            phone_number="9876543210",
            shipping_address={"name": user.name, "city": "Pune"},
            payment_id=payment_id,
            payment_status=PaymentStatus.CAPTURED.value,
            items=[
                OrderItem(
                    product_id=unit.product_id,
                    unit_id=unit.id,
                    product_name="Wheat Seeds",
                    selected_unit=unit.label,
                    quantity=quantity,
                    unit_price=unit.discounted_price,
                    total_price=total,
                )
            ],
            payment_transaction=PaymentTransaction(
                gateway_order_id=f"order_seed_{payment_id}",
                gateway_payment_id=payment_id,
                gateway_signature="seeded",
                amount=total,
            ),
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return factory
