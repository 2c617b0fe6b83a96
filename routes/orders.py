from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from core.dependencies import get_dispatcher, get_payment_registry
from models.user import User
from schemas.order import OrderCreate, OrderCreated, OrderOut, OrderStatusUpdate, PaymentStatusUpdate
from security.dependencies import get_current_user, require_admin
from services import cart as cart_service
from services import orders as order_service
from services.notifications import NotificationDispatcher
from services.payments import PaymentMethodRegistry

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderCreated, status_code=201)
def create_order(
    data: OrderCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    registry: PaymentMethodRegistry = Depends(get_payment_registry),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    cart = cart_service.get_cart(db, user_id=user.id)
    result = order_service.create_order(db, user, data, cart, registry)
    dispatcher.dispatch(result.events, result.order)
    return {"order": result.order, "payment": result.payment.as_dict()}


@router.get("", response_model=List[OrderOut])
def list_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return order_service.list_user_orders(db, user.id, status, payment_status, limit, offset)


@router.get("/{order_number}", response_model=OrderOut)
def get_order(order_number: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if user.is_admin:
        return order_service.get_order_by_number(db, order_number)
    return order_service.get_user_order(db, user.id, order_number)


@router.patch("/{order_number}/status", response_model=OrderOut)
def update_order_status(
    order_number: str,
    data: OrderStatusUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    order = order_service.get_order_by_number(db, order_number)
    events = order_service.update_status(db, order, data.status)
    dispatcher.dispatch(events, order)
    return order


@router.patch("/{order_number}/payment-status", response_model=OrderOut)
def update_payment_status(
    order_number: str,
    data: PaymentStatusUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    order = order_service.get_order_by_number(db, order_number)
    events = order_service.update_payment_status(db, order, data.payment_status, data.payment_id)
    dispatcher.dispatch(events, order)
    return order
