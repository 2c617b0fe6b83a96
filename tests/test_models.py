import re
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from models.address import OrderAddress
from models.cart import Cart, CartItem
from models.order import generate_order_number
from models.wallet import Wallet, WalletTransaction


class TestOrderNumber:
    def test_format(self):
        number = generate_order_number(datetime(2024, 5, 1, 9, 8, 7))
        assert re.fullmatch(r"ORD20240501090807\d{4}", number)


class TestOrderAddress:
    def test_snapshot_copies_fields(self, address):
        snapshot = OrderAddress.snapshot(address, "shipping")
        assert snapshot.kind == "shipping"
        assert snapshot.source_address_id == address.id
        assert snapshot.city == "Cairo"
        assert snapshot.area == "Zamalek"

    def test_snapshot_is_independent_of_later_edits(self, db, address):
        snapshot = OrderAddress.snapshot(address, "billing")
        db.add(snapshot)
        db.commit()
        address.city = "Giza"
        db.commit()
        db.refresh(snapshot)
        assert snapshot.city == "Cairo"


class TestCartConstraints:
    def test_duplicate_line_rejected(self, db, user, variable_product):
        variation = variable_product.variations[0]
        cart = Cart(user_id=user.id)
        db.add(cart)
        db.commit()
        db.add_all([
            CartItem(cart_id=cart.id, product_id=variable_product.id, variation_id=variation.id, quantity=1),
            CartItem(cart_id=cart.id, product_id=variable_product.id, variation_id=variation.id, quantity=2),
        ])
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()


class TestWalletModel:
    def test_signed_amount(self):
        assert WalletTransaction(amount=Decimal("5.00"), type="deposit").signed_amount == Decimal("5.00")
        assert WalletTransaction(amount=Decimal("5.00"), type="refund").signed_amount == Decimal("5.00")
        assert WalletTransaction(amount=Decimal("5.00"), type="withdrawal").signed_amount == Decimal("-5.00")

    def test_balance_cannot_go_negative(self, db, user):
        db.add(Wallet(user_id=user.id, currency="EGP", balance=Decimal("-1.00")))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
