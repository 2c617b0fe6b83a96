from fastapi import Request

from services.notifications import NotificationDispatcher
from services.payments import PaymentMethodRegistry


def get_payment_registry(request: Request) -> PaymentMethodRegistry:
    return request.app.state.payment_registry


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.notification_dispatcher
