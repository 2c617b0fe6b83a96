from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from core.db import get_db
from models.user import User
from schemas.cart import CartItemAdd, CartItemUpdate, CartMergeRequest, CartOut
from security.dependencies import get_current_user, get_optional_user
from services import cart as cart_service

router = APIRouter(prefix="/cart", tags=["cart"])


def _owner(user: Optional[User], guest_token: Optional[str]) -> dict:
    if user is not None:
        return {"user_id": user.id}
    if guest_token:
        return {"guest_token": guest_token}
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Sign in or send an X-Guest-Token header")


def _view(cart) -> dict:
    if cart is None:
        return cart_service.empty_snapshot()
    return cart_service.snapshot(cart)


@router.get("", response_model=CartOut)
def get_cart(
    user: Optional[User] = Depends(get_optional_user),
    guest_token: Optional[str] = Header(default=None, alias="X-Guest-Token"),
    db: Session = Depends(get_db),
):
    return _view(cart_service.get_cart(db, **_owner(user, guest_token)))


@router.post("/items", response_model=CartOut, status_code=201)
def add_item(
    data: CartItemAdd,
    user: Optional[User] = Depends(get_optional_user),
    guest_token: Optional[str] = Header(default=None, alias="X-Guest-Token"),
    db: Session = Depends(get_db),
):
    cart = cart_service.get_or_create_cart(db, **_owner(user, guest_token))
    cart_service.add_item(db, cart, data.product_id, data.quantity, data.variation_id)
    return _view(cart)


@router.patch("/items/{item_id}", response_model=CartOut)
def update_item(
    item_id: int,
    data: CartItemUpdate,
    user: Optional[User] = Depends(get_optional_user),
    guest_token: Optional[str] = Header(default=None, alias="X-Guest-Token"),
    db: Session = Depends(get_db),
):
    cart = cart_service.get_or_create_cart(db, **_owner(user, guest_token))
    cart_service.update_item(db, cart, item_id, data.quantity)
    return _view(cart)


@router.delete("/items/{item_id}", response_model=CartOut)
def remove_item(
    item_id: int,
    user: Optional[User] = Depends(get_optional_user),
    guest_token: Optional[str] = Header(default=None, alias="X-Guest-Token"),
    db: Session = Depends(get_db),
):
    cart = cart_service.get_or_create_cart(db, **_owner(user, guest_token))
    cart_service.remove_item(db, cart, item_id)
    return _view(cart)


@router.delete("", response_model=CartOut)
def clear_cart(
    user: Optional[User] = Depends(get_optional_user),
    guest_token: Optional[str] = Header(default=None, alias="X-Guest-Token"),
    db: Session = Depends(get_db),
):
    cart = cart_service.get_cart(db, **_owner(user, guest_token))
    if cart is not None:
        cart_service.clear(db, cart)
    return _view(cart)


@router.post("/merge", response_model=CartOut)
def merge_cart(data: CartMergeRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Fold the guest cart identified by ``guest_token`` into the signed-in user's cart."""
    user_cart = cart_service.get_or_create_cart(db, user_id=user.id)
    guest_cart = cart_service.get_cart(db, guest_token=data.guest_token)
    if guest_cart is None:
        return _view(user_cart)
    return _view(cart_service.merge(db, user_cart, guest_cart))
