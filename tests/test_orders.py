import copy
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
import requests

from core.db import build_sessionmaker
from core.errors import BusinessRuleViolation, GatewayUnavailable, NotFound, TotalsMismatch, ValidationFailed
from models.address import Address
from models.cart import CartItem
from models.order import Order
from models.order_item import OrderItem
from models.promo_code import PromoCodeUsage
from models.user import User
from schemas.order import OrderCreate
from services import cart as cart_service
from services import orders as order_service
from services import promo as promo_service
from services.events import ORDER_CREATED, ORDER_STATUS_CHANGED, PAYMENT_STATUS_CHANGED
from services.payments import CallbackOutcome

# Two shirts at 100.00 with 14% tax
SUBTOTAL = Decimal("200.00")
TAX = Decimal("28.00")
TOTAL = Decimal("228.00")


def _gateway_ok(session_id="sess-1"):
    response = Mock()
    response.ok = True
    response.status_code = 200
    response.json.return_value = {"responseCode": "000", "session": {"id": session_id}}
    return response


def _shopper(db, email, product, quantity=1):
    user = User(first_name="Shop", last_name="Per", email=email)
    db.add(user)
    db.commit()
    address = Address(user_id=user.id, first_name="Shop", last_name="Per", line1="1 Tahrir Sq", city="Cairo", country="EG")
    db.add(address)
    db.commit()
    cart = cart_service.get_or_create_cart(db, user_id=user.id)
    cart_service.add_item(db, cart, product.id, quantity)
    return user, address, cart


@pytest.fixture
def checkout(db, user, user_cart, address, registry, make_order_request):
    def _checkout(subtotal=SUBTOTAL, tax=TAX, total=TOTAL, **overrides):
        payload = make_order_request(user_cart, address, subtotal, tax, total, **overrides)
        return order_service.create_order(db, user, payload, user_cart, registry)
    return _checkout


@pytest.fixture
def card_order(checkout):
    with patch("services.card_gateway.requests.post", return_value=_gateway_ok()):
        return checkout(payment_method="credit_card").order


class TestCreateOrder:
    def test_cash_on_delivery_order(self, db, checkout, user_cart):
        result = checkout()
        order = result.order

        assert order.order_number.startswith("ORD")
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.subtotal == SUBTOTAL
        assert order.tax == TAX
        assert order.total == TOTAL
        assert order.currency == "EGP"
        assert [e.name for e in result.events] == [ORDER_CREATED]
        assert result.payment.status == "pending"
        assert result.payment.session_id is None

        item = order.items[0]
        assert (item.name, item.sku, item.quantity) == ("Cotton Shirt", "SHIRT-1", 2)
        assert item.price == Decimal("100.00")
        assert item.total == Decimal("228.00")

        assert order.shipping_address.city == "Cairo"
        assert order.meta_data["pricing"]["totals"]["total"] == "228.00"
        assert order.meta_data["cart_items"][0]["quantity"] == 2

        db.refresh(user_cart)
        assert user_cart.items == []

    def test_order_items_balance_with_shipping(self, checkout):
        order = checkout(shipping_cost="15.00", total=Decimal("243.00")).order
        items_total = sum(item.total for item in order.items)
        assert items_total + order.shipping_cost - order.discount == order.total

    def test_mismatch_is_atomic(self, db, checkout, make_promo, user_cart):
        promo = make_promo("SAVE10", type="percent", amount=Decimal("10"))

        with pytest.raises(TotalsMismatch) as exc:
            checkout(promo_code="SAVE10")

        assert exc.value.discrepancies["total"] == {"server": "205.20", "provided": "228.00"}
        assert exc.value.to_dict()["refresh_required"] is True
        assert db.query(Order).count() == 0
        assert db.query(OrderItem).count() == 0
        assert db.query(PromoCodeUsage).count() == 0
        assert db.query(CartItem).filter(CartItem.cart_id == user_cart.id).count() == 1
        db.refresh(promo)
        assert promo.used == 0

    def test_line_price_discrepancies_reported(self, user_cart, address, db, user, registry, order_json):
        body = order_json(user_cart, address, Decimal("180.00"), Decimal("25.20"), Decimal("205.20"))
        body["meta_data"]["cart_items"][0]["price"] = "90.00"

        with pytest.raises(TotalsMismatch) as exc:
            order_service.create_order(db, user, OrderCreate(**body), user_cart, registry)

        items = exc.value.discrepancies["items"]
        assert items[0]["server_price"] == "100.00"
        assert items[0]["provided_price"] == "90.00"

    def test_stale_cart_items_rejected(self, db, user_cart, address, user, registry, order_json):
        body = order_json(user_cart, address, SUBTOTAL, TAX, TOTAL)
        body["meta_data"]["cart_items"][0]["quantity"] = 1

        with pytest.raises(TotalsMismatch) as exc:
            order_service.create_order(db, user, OrderCreate(**body), user_cart, registry)
        assert exc.value.code == "cart_changed"
        assert db.query(Order).count() == 0

    def test_empty_cart(self, db, user, address, registry, make_order_request):
        cart = cart_service.get_or_create_cart(db, user_id=user.id)
        payload = make_order_request(cart, address, "0", "0", "0")
        with pytest.raises(ValidationFailed):
            order_service.create_order(db, user, payload, cart, registry)

    def test_unknown_payment_method(self, checkout):
        with pytest.raises(ValidationFailed) as exc:
            checkout(payment_method="bitcoin")
        assert exc.value.code == "unknown_payment_method"

    def test_disabled_payment_method(self, checkout, config_provider, db):
        config_provider.update_group("payment.cash_on_delivery", {"enabled": False})
        with pytest.raises(BusinessRuleViolation) as exc:
            checkout()
        assert exc.value.code == "payment_method_disabled"
        assert db.query(Order).count() == 0

    def test_cod_maximum_amount(self, checkout, config_provider, db):
        config_provider.update_group("payment.cash_on_delivery", {"maximum_order_amount": 100})
        with pytest.raises(BusinessRuleViolation) as exc:
            checkout()
        assert exc.value.code == "cod_above_maximum"
        assert db.query(Order).count() == 0

    def test_address_must_belong_to_user(self, db, checkout, other_user):
        foreign = Address(user_id=other_user.id, first_name="O", last_name="U", line1="x", city="Giza", country="EG")
        db.add(foreign)
        db.commit()
        with pytest.raises(ValidationFailed) as exc:
            checkout(shipping_address_id=foreign.id)
        assert "shipping_address_id" in exc.value.errors

    def test_gateway_failure_creates_no_order(self, db, checkout, user_cart):
        with patch("services.card_gateway.requests.post", side_effect=requests.Timeout("timed out")) as post:
            with pytest.raises(GatewayUnavailable) as exc:
                checkout(payment_method="credit_card")

        assert post.call_count == 12
        assert exc.value.retryable is True
        assert db.query(Order).count() == 0
        assert db.query(CartItem).filter(CartItem.cart_id == user_cart.id).count() == 1

    def test_card_order_keeps_session_id(self, card_order):
        assert card_order.payment_method == "credit_card"
        assert card_order.payment_status == "pending"
        assert card_order.meta_data["payment_session_id"] == "sess-1"


class TestPromoAtCheckout:
    def test_promo_applied_and_consumed(self, db, checkout, make_promo, user):
        promo = make_promo("SAVE10", type="percent", amount=Decimal("10"))

        order = checkout(promo_code="SAVE10", total=Decimal("205.20"), discount=Decimal("22.80")).order

        assert order.discount == Decimal("22.80")
        assert order.promo_code_id == promo.id
        db.refresh(promo)
        assert promo.used == 1
        usage = db.query(PromoCodeUsage).one()
        assert (usage.user_id, usage.order_id) == (user.id, order.id)

    def test_ineligible_promo_rejected(self, checkout, make_promo):
        make_promo("OFF", is_active=False)
        with pytest.raises(BusinessRuleViolation) as exc:
            checkout(promo_code="OFF")
        assert exc.value.details["reasons"] == [promo_service.INACTIVE]

    def test_usage_limit_holds_when_eligibility_was_read_stale(self, db, product, make_promo, registry, make_order_request, monkeypatch):
        promo = make_promo("LIMITED", type="percent", amount=Decimal("10"), usage_limit=2)
        # Every checkout sees the promo as it was before any of them claimed it
        stale = promo_service.PromoCheck(code="LIMITED", valid=True, discount=Decimal("11.40"), promo=promo)
        monkeypatch.setattr(promo_service, "validate", lambda *args, **kwargs: stale)

        outcomes = []
        for n in range(3):
            user, address, cart = _shopper(db, f"shopper{n}@example.com", product)
            payload = make_order_request(
                cart, address, Decimal("100.00"), Decimal("14.00"), Decimal("102.60"), promo_code="LIMITED"
            )
            try:
                order_service.create_order(db, user, payload, cart, registry)
                outcomes.append("ok")
            except BusinessRuleViolation:
                outcomes.append("rejected")
                db.refresh(cart)
                assert len(cart.items) == 1

        assert outcomes == ["ok", "ok", "rejected"]
        db.refresh(promo)
        assert promo.used == 2
        assert db.query(PromoCodeUsage).count() == 2
        assert db.query(Order).count() == 2

    def test_per_user_limit(self, db, product, make_promo, registry, make_order_request):
        make_promo("ONCE", type="fixed", amount=Decimal("10"), usage_limit_per_user=1)
        user, address, cart = _shopper(db, "once@example.com", product)

        payload = make_order_request(cart, address, "100.00", "14.00", "104.00", promo_code="ONCE")
        order_service.create_order(db, user, payload, cart, registry)

        cart_service.add_item(db, cart, product.id, 1)
        with pytest.raises(BusinessRuleViolation) as exc:
            order_service.create_order(db, user, payload, cart, registry)
        assert promo_service.USER_LIMIT_REACHED in exc.value.details["reasons"]


class TestStatusMachine:
    def test_cod_completion_marks_paid_once(self, db, checkout):
        order = checkout().order

        order_service.update_status(db, order, "processing")
        events = order_service.update_status(db, order, "completed")

        assert [e.name for e in events] == [ORDER_STATUS_CHANGED, PAYMENT_STATUS_CHANGED]
        assert order.status == "completed"
        assert order.payment_status == "paid"
        assert order.completed_at is not None
        assert order.paid_at is not None

        assert order_service.update_status(db, order, "completed") == []

    def test_card_completion_does_not_mark_paid(self, db, card_order):
        order_service.update_status(db, card_order, "processing")
        events = order_service.update_status(db, card_order, "completed")
        assert [e.name for e in events] == [ORDER_STATUS_CHANGED]
        assert card_order.payment_status == "pending"

    def test_cannot_skip_or_reverse(self, db, checkout):
        order = checkout().order
        with pytest.raises(BusinessRuleViolation):
            order_service.update_status(db, order, "completed")
        order_service.update_status(db, order, "cancelled")
        assert order.cancelled_at is not None
        with pytest.raises(BusinessRuleViolation):
            order_service.update_status(db, order, "processing")

    def test_refunded_only_via_wallet(self, db, checkout):
        order = checkout().order
        with pytest.raises(BusinessRuleViolation) as exc:
            order_service.update_status(db, order, "refunded")
        assert exc.value.code == "refund_required"

    def test_unknown_status(self, db, checkout):
        with pytest.raises(ValidationFailed):
            order_service.update_status(db, checkout().order, "shipped")

    def test_payment_status_machine(self, db, checkout):
        order = checkout().order
        events = order_service.update_payment_status(db, order, "failed")
        assert [e.name for e in events] == [PAYMENT_STATUS_CHANGED]
        with pytest.raises(BusinessRuleViolation):
            order_service.update_payment_status(db, order, "paid")
        assert order_service.update_payment_status(db, order, "failed") == []

    def test_stale_status_change_rejected(self, db, checkout):
        order = checkout().order
        sessions = build_sessionmaker(db.get_bind())
        first, second = sessions(), sessions()
        try:
            order_a = first.get(Order, order.id)
            order_b = second.get(Order, order.id)

            order_service.update_status(first, order_a, "processing")
            with pytest.raises(BusinessRuleViolation) as exc:
                order_service.update_status(second, order_b, "cancelled")
        finally:
            first.close()
            second.close()

        assert exc.value.code == "stale_status"
        db.refresh(order)
        assert order.status == "processing"
        assert order.cancelled_at is None

    def test_stale_change_to_the_same_status_is_a_no_op(self, db, checkout):
        order = checkout().order
        sessions = build_sessionmaker(db.get_bind())
        first, second = sessions(), sessions()
        try:
            order_a = first.get(Order, order.id)
            order_b = second.get(Order, order.id)

            events_a = order_service.update_status(first, order_a, "processing")
            events_b = order_service.update_status(second, order_b, "processing")
        finally:
            first.close()
            second.close()

        assert [e.name for e in events_a] == [ORDER_STATUS_CHANGED]
        assert events_b == []
        assert order_b.status == "processing"


class TestPaymentCallbacks:
    def test_same_paid_callback_applies_once(self, db, card_order):
        outcome = CallbackOutcome(status="paid", merchant_reference=card_order.order_number, session_id="sess-1", transaction_id="txn-1")

        order, first = order_service.apply_payment_callback(db, outcome, now=datetime(2024, 1, 2, 10, 0))
        recorded = copy.deepcopy(order.meta_data)
        _, second = order_service.apply_payment_callback(db, outcome, now=datetime(2024, 1, 2, 11, 0))

        assert [e.name for e in first] == [PAYMENT_STATUS_CHANGED]
        assert second == []
        assert order.payment_status == "paid"
        assert order.payment_id == "txn-1"
        assert order.paid_at == datetime(2024, 1, 2, 10, 0)
        assert order.meta_data["gateway"]["transaction_id"] == "txn-1"
        assert order.meta_data["payment_session_id"] == "sess-1"
        db.refresh(order)
        assert order.meta_data == recorded
        assert order.meta_data["gateway"]["last_callback_at"] == "2024-01-02T10:00:00"

    def test_lookup_falls_back_to_session_id(self, db, card_order):
        outcome = CallbackOutcome(status="failed", merchant_reference=None, session_id="sess-1", transaction_id=None)
        order, events = order_service.apply_payment_callback(db, outcome)
        assert order.id == card_order.id
        assert order.payment_status == "failed"
        assert len(events) == 1

    def test_failed_after_paid_is_ignored(self, db, card_order):
        paid = CallbackOutcome(status="paid", merchant_reference=card_order.order_number, session_id=None, transaction_id="txn-1")
        failed = CallbackOutcome(status="failed", merchant_reference=card_order.order_number, session_id=None, transaction_id=None)
        order_service.apply_payment_callback(db, paid)
        order, events = order_service.apply_payment_callback(db, failed)
        assert events == []
        assert order.payment_status == "paid"
        assert order.meta_data["gateway"]["last_status"] == "paid"

    def test_concurrent_paid_deliveries_apply_once(self, db, card_order):
        sessions = build_sessionmaker(db.get_bind())
        first, second = sessions(), sessions()
        try:
            # both requests read the order before either writes
            order_a = first.get(Order, card_order.id)
            order_b = second.get(Order, card_order.id)
            assert order_a.payment_status == order_b.payment_status == "pending"

            events_a = order_service.update_payment_status(first, order_a, "paid", payment_id="txn-a", now=datetime(2024, 1, 2, 10, 0))
            events_b = order_service.update_payment_status(second, order_b, "paid", payment_id="txn-b", now=datetime(2024, 1, 2, 10, 1))
        finally:
            first.close()
            second.close()

        assert [e.name for e in events_a + events_b] == [PAYMENT_STATUS_CHANGED]
        db.refresh(card_order)
        assert card_order.payment_status == "paid"
        assert card_order.payment_id == "txn-a"
        assert card_order.paid_at == datetime(2024, 1, 2, 10, 0)

    def test_callbacks_through_separate_sessions_apply_once(self, db, card_order):
        sessions = build_sessionmaker(db.get_bind())
        outcome = CallbackOutcome(status="paid", merchant_reference=card_order.order_number, session_id="sess-1", transaction_id="txn-1")
        first, second = sessions(), sessions()
        try:
            _, events_a = order_service.apply_payment_callback(first, outcome)
            _, events_b = order_service.apply_payment_callback(second, outcome)
        finally:
            first.close()
            second.close()

        assert [e.name for e in events_a + events_b] == [PAYMENT_STATUS_CHANGED]
        db.refresh(card_order)
        assert card_order.payment_status == "paid"

    def test_unknown_order(self, db):
        outcome = CallbackOutcome(status="paid", merchant_reference="ORD-missing", session_id="nope", transaction_id=None)
        with pytest.raises(NotFound):
            order_service.apply_payment_callback(db, outcome)


class TestReads:
    def test_user_sees_only_own_orders(self, db, checkout, user, other_user):
        order = checkout().order
        assert [o.id for o in order_service.list_user_orders(db, user.id)] == [order.id]
        assert order_service.list_user_orders(db, other_user.id) == []
        assert order_service.get_user_order(db, user.id, order.order_number).id == order.id
        with pytest.raises(NotFound):
            order_service.get_user_order(db, other_user.id, order.order_number)

    def test_filter_by_status(self, db, checkout, user):
        order = checkout().order
        order_service.update_status(db, order, "cancelled")
        assert order_service.list_user_orders(db, user.id, status="pending") == []
        assert len(order_service.list_user_orders(db, user.id, status="cancelled")) == 1
