from typing import Any, Dict, List

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from core.dependencies import get_dispatcher, get_payment_registry
from models.user import User
from schemas.payment import CallbackResponse, PaymentMethodConfigOut, PaymentMethodConfigUpdate, PaymentMethodOut
from security.dependencies import require_admin
from services import orders as order_service
from services.notifications import NotificationDispatcher
from services.payments import PaymentMethod, PaymentMethodRegistry

router = APIRouter(prefix="/payments", tags=["payments"])


def _config_view(method: PaymentMethod) -> Dict[str, Any]:
    return {
        "identifier": method.identifier,
        "name": method.name,
        "enabled": method.is_enabled(),
        "fields": method.configuration_fields(),
        "values": method.config(),
    }


@router.get("/methods", response_model=List[PaymentMethodOut])
def available_methods(registry: PaymentMethodRegistry = Depends(get_payment_registry)):
    return [method.describe() for method in registry.available()]


@router.get("/methods/{identifier}/config", response_model=PaymentMethodConfigOut)
def method_config(
    identifier: str,
    admin: User = Depends(require_admin),
    registry: PaymentMethodRegistry = Depends(get_payment_registry),
):
    return _config_view(registry.require(identifier))


@router.put("/methods/{identifier}/config", response_model=PaymentMethodConfigOut)
def update_method_config(
    identifier: str,
    data: PaymentMethodConfigUpdate,
    admin: User = Depends(require_admin),
    registry: PaymentMethodRegistry = Depends(get_payment_registry),
):
    registry.update_config(identifier, data.values)
    return _config_view(registry.require(identifier))


@router.post("/{identifier}/callback", response_model=CallbackResponse)
def payment_callback(
    identifier: str,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    registry: PaymentMethodRegistry = Depends(get_payment_registry),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Gateway webhook. Deliveries are at-least-once, so replays are answered with success."""
    method = registry.require(identifier)
    outcome = method.handle_callback(payload)
    order, events = order_service.apply_payment_callback(db, outcome)
    dispatcher.dispatch(events, order)
    return {
        "status": "success",
        "message": "Payment status updated" if events else "Callback already processed",
        "order_number": order.order_number,
        "payment_status": order.payment_status,
    }
