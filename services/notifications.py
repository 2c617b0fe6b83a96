import os
from typing import Any, Callable, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.logging import get_logger
from services.events import (
    ORDER_CREATED,
    ORDER_REFUNDED,
    ORDER_STATUS_CHANGED,
    PAYMENT_STATUS_CHANGED,
    DomainEvent,
)
from tasks.notification_tasks import send_notification_task

logger = get_logger(__name__)

# Jinja2 environment for notification templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
)

EVENT_TEMPLATES = {
    ORDER_CREATED: ("Order {order_number} received", "notifications/order_created.txt"),
    ORDER_STATUS_CHANGED: ("Order {order_number} is now {status}", "notifications/order_status_changed.txt"),
    PAYMENT_STATUS_CHANGED: ("Payment update for order {order_number}", "notifications/payment_status_changed.txt"),
    ORDER_REFUNDED: ("Refund issued for order {order_number}", "notifications/order_refunded.txt"),
}


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def _queue_with_celery(to_email: str, subject: str, body: str, event_name: str) -> None:
    send_notification_task.delay(to_email, subject, body, event_name)


class NotificationDispatcher:
    """Turns domain events into queued notification emails.

    Queueing is fire-and-forget: a broker failure is logged and never reaches
    the request that produced the events.
    """

    def __init__(self, send: Optional[Callable[[str, str, str, str], None]] = None):
        self._send = send or _queue_with_celery

    def render(self, event: DomainEvent, order) -> Optional[Dict[str, str]]:
        template = EVENT_TEMPLATES.get(event.name)
        if template is None:
            return None
        subject_format, template_path = template
        context = {
            "order_number": event.order_number,
            "currency": order.currency,
            "customer_name": order.user.full_name if order.user else "",
            "payload": event.payload,
        }
        return {
            "subject": subject_format.format(**{**event.payload, "order_number": event.order_number}),
            "body": render_template(template_path, context),
        }

    def dispatch(self, events: List[DomainEvent], order) -> int:
        if not events:
            return 0
        recipient = order.user.email if order.user else None
        if not recipient:
            logger.warning("No recipient for order notifications", extra={"order_number": order.order_number})
            return 0

        queued = 0
        for event in events:
            message = self.render(event, order)
            if message is None:
                logger.debug("No notification template for event", extra={"event": event.name})
                continue
            try:
                self._send(recipient, message["subject"], message["body"], event.name)
                queued += 1
            except Exception:
                logger.exception(
                    "Failed to queue notification",
                    extra={"event": event.name, "order_number": event.order_number},
                )
        return queued

