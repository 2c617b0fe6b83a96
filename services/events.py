from dataclasses import dataclass, field
from typing import Any, Dict, List

from core.clock import utcnow

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
PAYMENT_STATUS_CHANGED = "order.payment_status_changed"
ORDER_REFUNDED = "order.refunded"


@dataclass
class DomainEvent:
    name: str
    order_id: int
    order_number: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=lambda: utcnow().isoformat())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "payload": self.payload,
            "occurred_at": self.occurred_at,
        }


EventList = List[DomainEvent]


def order_event(name: str, order, **payload) -> DomainEvent:
    return DomainEvent(name=name, order_id=order.id, order_number=order.order_number, payload=payload)
