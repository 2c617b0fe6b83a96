from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CartItemAdd(BaseModel):
    product_id: int
    variation_id: Optional[int] = None
    quantity: int = Field(default=1, ge=1)


class CartItemUpdate(BaseModel):
    quantity: int = Field(ge=1)


class CartMergeRequest(BaseModel):
    guest_token: str


class CartLineOut(BaseModel):
    id: int
    product_id: int
    variation_id: Optional[int] = None
    name: str
    sku: Optional[str] = None
    quantity: int
    regular_price: Decimal
    unit_price: Decimal
    on_sale: bool
    subtotal: Decimal
    tax: Decimal
    sale_window: Dict[str, Any] = {}


class CartTotals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    tax_rate: Decimal


class CartOut(BaseModel):
    cart_id: Optional[int] = None
    items: List[CartLineOut]
    totals: CartTotals
