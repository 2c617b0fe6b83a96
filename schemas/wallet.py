from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from schemas.order import OrderOut


class WalletTransactionOut(BaseModel):
    id: int
    amount: Decimal
    type: str
    status: str
    description: Optional[str] = None
    reference: str
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_")
    created_at: datetime

    class Config:
        from_attributes = True


class WalletTotals(BaseModel):
    credits: Decimal
    debits: Decimal
    by_type: Dict[str, Decimal]


class WalletOut(BaseModel):
    wallet_id: int
    balance: Decimal
    currency: str
    status: str
    totals: WalletTotals
    transaction_count: int
    last_transaction: Optional[WalletTransactionOut] = None


class WalletTransactionList(BaseModel):
    items: List[WalletTransactionOut]


class RefundRequest(BaseModel):
    order_id: int
    refund_amount: Optional[Decimal] = None
    reason: Optional[str] = None


class RefundOut(BaseModel):
    transaction: WalletTransactionOut
    order: OrderOut
