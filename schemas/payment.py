from typing import Any, Dict, Optional

from pydantic import BaseModel


class PaymentMethodOut(BaseModel):
    identifier: str
    name: str
    description: str


class PaymentMethodConfigOut(BaseModel):
    identifier: str
    name: str
    enabled: bool
    fields: Dict[str, Dict[str, Any]]
    values: Dict[str, Any]


class PaymentMethodConfigUpdate(BaseModel):
    values: Dict[str, Any]


class CallbackResponse(BaseModel):
    status: str
    message: str
    order_number: Optional[str] = None
    payment_status: Optional[str] = None
