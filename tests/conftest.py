from datetime import datetime, timedelta
from decimal import Decimal
from typing import List

import pytest
from fastapi.testclient import TestClient

from main import app
from core import config as core_config
from core.clock import utcnow
from core.db import Base, build_engine, build_sessionmaker, get_db
from models.address import Address
from models.product import Product, ProductVariation
from models.promo_code import PromoCode
from models.user import User
from schemas.order import OrderCreate
from security import jwt as jwt_utils
from services import cart as cart_service
from services.card_gateway import CardGatewayClient
from services.config_provider import StaticConfigProvider
from services.events import DomainEvent
from services.notifications import NotificationDispatcher
from services.payments import build_registry

@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.TESTING = True
    core_config.settings.TAX_RATE = Decimal("0.14")
    core_config.settings.PRICE_TOLERANCE = Decimal("0.01")
    core_config.settings.DEFAULT_CURRENCY = "EGP"
    yield


@pytest.fixture()
def db():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    TestingSessionLocal = build_sessionmaker(engine)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()

    def _get_db():
        yield session

    app.dependency_overrides[get_db] = _get_db
    try:
        yield session
    finally:
        session.close()
        app.dependency_overrides.clear()
        engine.dispose()


class RecordingDispatcher(NotificationDispatcher):
    """Keeps dispatched events and rendered messages in memory."""

    def __init__(self):
        super().__init__(send=self._record)
        self.events: List[DomainEvent] = []
        self.messages: List[dict] = []

    def _record(self, to_email: str, subject: str, body: str, event_name: str) -> None:
        self.messages.append({"to": to_email, "subject": subject, "body": body, "event": event_name})

    def dispatch(self, events, order) -> int:
        self.events.extend(events)
        return super().dispatch(events, order)

    def names(self) -> List[str]:
        return [event.name for event in self.events]


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def config_provider():
    return StaticConfigProvider({
        "payment.cash_on_delivery": {"enabled": True},
        "payment.credit_card": {"enabled": True},
    })


@pytest.fixture()
def gateway_client():
    return CardGatewayClient(
        base_url="https://gateway.test",
        merchant_public_key="pk_test",
        api_password="api-secret",
        timeout=5,
        clock=lambda: datetime(2024, 1, 2, 3, 4, 5),
    )


@pytest.fixture()
def registry(config_provider, gateway_client):
    return build_registry(config_provider, card_client=gateway_client)


@pytest.fixture()
def client(db, registry, dispatcher):
    previous = (app.state.payment_registry, app.state.notification_dispatcher)
    app.state.payment_registry = registry
    app.state.notification_dispatcher = dispatcher
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.state.payment_registry, app.state.notification_dispatcher = previous


def _make_user(db, email: str, is_admin: bool = False) -> User:
    user = User(first_name="Test", last_name="User", email=email, is_active=True, is_admin=is_admin)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "test@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "other@example.com")


@pytest.fixture
def admin_user(db):
    return _make_user(db, "admin@example.com", is_admin=True)


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(user.id))}"}


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(admin_user.id))}"}


@pytest.fixture
def address(db, user):
    address = Address(
        user_id=user.id,
        first_name="Test",
        last_name="User",
        email="test@example.com",
        phone="+201000000000",
        line1="12 Nile Street",
        city="Cairo",
        area="Zamalek",
        country="EG",
    )
    db.add(address)
    db.commit()
    db.refresh(address)
    return address


@pytest.fixture
def product(db):
    product = Product(name="Cotton Shirt", slug="cotton-shirt", sku="SHIRT-1", regular_price=Decimal("100.00"), stock=10)
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def sale_product(db):
    now = utcnow()
    product = Product(
        name="Linen Trousers",
        slug="linen-trousers",
        sku="TROUSERS-1",
        regular_price=Decimal("100.00"),
        sale_price=Decimal("80.00"),
        sale_start=now - timedelta(days=1),
        sale_end=now + timedelta(days=1),
        stock=10,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def variable_product(db):
    product = Product(
        name="Sneakers",
        slug="sneakers",
        product_type="variable",
        regular_price=Decimal("0.00"),
        stock=0,
    )
    product.variations.append(
        ProductVariation(name="Sneakers / 42", sku="SNEAKERS-42", regular_price=Decimal("50.00"), stock=3)
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@pytest.fixture
def make_promo(db):
    def _make(code: str = "SAVE10", **overrides) -> PromoCode:
        values = {"type": "percent", "amount": Decimal("10"), "is_active": True, "used": 0}
        values.update(overrides)
        promo = PromoCode(code=code, **values)
        db.add(promo)
        db.commit()
        db.refresh(promo)
        return promo
    return _make


@pytest.fixture
def user_cart(db, user, product):
    cart = cart_service.get_or_create_cart(db, user_id=user.id)
    cart_service.add_item(db, cart, product.id, 2)
    return cart


def _order_payload(cart, address, subtotal, tax, total, **overrides) -> dict:
    payload = {
        "payment_method": "cash_on_delivery",
        "shipping_method": "standard",
        "shipping_cost": "0.00",
        "subtotal": str(subtotal),
        "tax": str(tax),
        "total": str(total),
        "billing_address_id": address.id,
        "shipping_address_id": address.id,
        "meta_data": {
            "cart_items": [
                {"product_id": item.product_id, "variation_id": item.variation_id, "quantity": item.quantity}
                for item in cart.items
            ]
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_order_request():
    def _make(cart, address, subtotal, tax, total, **overrides) -> OrderCreate:
        return OrderCreate(**_order_payload(cart, address, subtotal, tax, total, **overrides))
    return _make


@pytest.fixture
def order_json():
    return _order_payload
