from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from core.clock import utcnow
from core.config import settings
from core.errors import NotFound, ValidationFailed
from core.logging import get_logger
from models.cart import Cart, CartItem
from models.product import Product, ProductVariation
from services import pricing

logger = get_logger(__name__)


def get_cart(db: Session, user_id: Optional[int] = None, guest_token: Optional[str] = None) -> Optional[Cart]:
    stmt = select(Cart).options(
        selectinload(Cart.items).selectinload(CartItem.product),
        selectinload(Cart.items).selectinload(CartItem.variation),
    )
    if user_id is not None:
        stmt = stmt.where(Cart.user_id == user_id)
    elif guest_token:
        stmt = stmt.where(Cart.guest_token == guest_token)
    else:
        return None
    return db.execute(stmt).scalar_one_or_none()


def get_or_create_cart(db: Session, user_id: Optional[int] = None, guest_token: Optional[str] = None) -> Cart:
    if user_id is None and not guest_token:
        raise ValidationFailed("A cart needs a user or a guest token", {"guest_token": "required for anonymous carts"})
    cart = get_cart(db, user_id, guest_token)
    if cart is None:
        cart = Cart(user_id=user_id, guest_token=None if user_id is not None else guest_token)
        db.add(cart)
        db.commit()
        db.refresh(cart)
    return cart


def _load_sellable(db: Session, product_id: int, quantity: int, variation_id: Optional[int]) -> Tuple[Product, Optional[ProductVariation]]:
    product = db.get(Product, product_id)
    if product is None or not product.is_active:
        raise ValidationFailed("Product not found or inactive.", {"product_id": "Product not found or inactive."})
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1.", {"quantity": "Quantity must be at least 1."})

    variation = None
    if variation_id is not None:
        variation = db.get(ProductVariation, variation_id)
        if variation is None or not variation.is_active or variation.product_id != product.id:
            raise ValidationFailed(
                "Product variation not found or inactive.",
                {"variation_id": "Product variation not found or inactive."},
            )
        if variation.stock < quantity:
            logger.info(
                "Not enough stock for product variation",
                extra={"variation_id": variation_id, "requested_quantity": quantity, "available_stock": variation.stock},
            )
            raise ValidationFailed("Not enough stock.", {"quantity": "Not enough stock."})
    elif product.product_type == "variable":
        raise ValidationFailed("A variation must be chosen for this product.", {"variation_id": "required"})
    elif product.stock < quantity:
        raise ValidationFailed("Not enough stock.", {"quantity": "Not enough stock."})
    return product, variation


def _find_line(cart: Cart, product_id: int, variation_id: Optional[int]) -> Optional[CartItem]:
    for item in cart.items:
        if item.key == (product_id, variation_id):
            return item
    return None


def _get_line(cart: Cart, item_id: int) -> CartItem:
    for item in cart.items:
        if item.id == item_id:
            return item
    raise NotFound("Cart item not found")


def add_item(db: Session, cart: Cart, product_id: int, quantity: int = 1, variation_id: Optional[int] = None) -> CartItem:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1.", {"quantity": "Quantity must be at least 1."})
    existing = _find_line(cart, product_id, variation_id)
    wanted = quantity + (existing.quantity if existing else 0)
    _load_sellable(db, product_id, wanted, variation_id)

    if existing:
        existing.quantity = wanted
        item = existing
    else:
        item = CartItem(cart_id=cart.id, product_id=product_id, variation_id=variation_id, quantity=quantity)
        cart.items.append(item)
    db.commit()
    db.refresh(item)
    return item


def update_item(db: Session, cart: Cart, item_id: int, quantity: int) -> CartItem:
    item = _get_line(cart, item_id)
    _load_sellable(db, item.product_id, quantity, item.variation_id)
    item.quantity = quantity
    db.commit()
    db.refresh(item)
    return item


def remove_item(db: Session, cart: Cart, item_id: int) -> None:
    item = _get_line(cart, item_id)
    cart.items.remove(item)
    db.delete(item)
    db.commit()


def clear_items(db: Session, cart: Cart) -> None:
    """Delete the lines of a cart without committing; the cart row itself stays."""
    for item in list(cart.items):
        db.delete(item)
    cart.items.clear()


def clear(db: Session, cart: Cart) -> None:
    clear_items(db, cart)
    db.commit()


def merge(db: Session, user_cart: Cart, guest_cart: Cart) -> Cart:
    """Fold a guest cart into the user's cart on login, summing quantities per line."""
    if guest_cart.id == user_cart.id:
        return user_cart
    try:
        for guest_item in list(guest_cart.items):
            user_item = _find_line(user_cart, guest_item.product_id, guest_item.variation_id)
            if user_item:
                user_item.quantity += guest_item.quantity
            else:
                user_cart.items.append(
                    CartItem(
                        product_id=guest_item.product_id,
                        variation_id=guest_item.variation_id,
                        quantity=guest_item.quantity,
                    )
                )
        db.delete(guest_cart)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Guest cart merged", extra={"cart_id": user_cart.id, "user_id": user_cart.user_id})
    db.refresh(user_cart)
    return user_cart


def price_items(items: List[CartItem], now: Optional[datetime] = None) -> List[pricing.PricedLine]:
    now = now or utcnow()
    return [pricing.price_catalog_line(item.product, item.variation, item.quantity, now) for item in items]


def snapshot(cart: Cart, now: Optional[datetime] = None, tax_rate: Optional[Decimal] = None) -> Dict:
    """Priced view of the cart, computed with the same rules as settlement."""
    tax_rate = settings.TAX_RATE if tax_rate is None else tax_rate
    lines = price_items(cart.items, now)
    totals = pricing.quote(lines, tax_rate)
    pricing.allocate_tax(lines, totals.tax, tax_rate)
    return {
        "cart_id": cart.id,
        "items": [
            {"id": item.id, **line.trace(), "name": line.name, "sku": line.sku}
            for item, line in zip(cart.items, lines)
        ],
        "totals": totals.as_dict(),
    }


def empty_snapshot(tax_rate: Optional[Decimal] = None) -> Dict:
    tax_rate = settings.TAX_RATE if tax_rate is None else tax_rate
    return {"cart_id": None, "items": [], "totals": pricing.quote([], tax_rate).as_dict()}
