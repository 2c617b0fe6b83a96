from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OrderCartItemIn(BaseModel):
    product_id: int
    variation_id: Optional[int] = None
    quantity: int = Field(ge=1)
    price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    sale_start: Optional[datetime] = None
    sale_end: Optional[datetime] = None
    attributes: Optional[Dict[str, Any]] = None


class OrderMetaIn(BaseModel):
    cart_items: List[OrderCartItemIn]

    class Config:
        extra = "allow"


class OrderCreate(BaseModel):
    payment_method: str
    shipping_method: str
    shipping_cost: Decimal = Field(default=Decimal("0"), ge=0)
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    discount: Optional[Decimal] = None
    promo_code: Optional[str] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    billing_address_id: int
    shipping_address_id: int
    notes: Optional[str] = None
    meta_data: OrderMetaIn
    payment_data: Optional[Dict[str, Any]] = None


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    variation_id: Optional[int] = None
    name: str
    sku: Optional[str] = None
    quantity: int
    price: Decimal
    subtotal: Decimal
    tax: Decimal
    total: Decimal

    class Config:
        from_attributes = True


class OrderAddressOut(BaseModel):
    kind: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    line1: str
    city: str
    area: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: str

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    status: str
    payment_status: str
    payment_method: str
    payment_id: Optional[str] = None
    shipping_method: Optional[str] = None
    currency: str
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    notes: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemOut]
    billing_address: Optional[OrderAddressOut] = None
    shipping_address: Optional[OrderAddressOut] = None

    class Config:
        from_attributes = True


class PaymentResultOut(BaseModel):
    status: str
    method: str
    message: str = ""
    session_id: Optional[str] = None
    transaction_ref: Optional[str] = None


class OrderCreated(BaseModel):
    order: OrderOut
    payment: PaymentResultOut


class OrderStatusUpdate(BaseModel):
    status: str


class PaymentStatusUpdate(BaseModel):
    payment_status: str
    payment_id: Optional[str] = None
