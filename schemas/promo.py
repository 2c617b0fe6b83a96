from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class PromoValidationOut(BaseModel):
    code: str
    valid: bool
    discount: Decimal
    order_total: Decimal
    total_after_discount: Decimal
    reasons: List[str] = []
    type: Optional[str] = None
    amount: Optional[Decimal] = None
