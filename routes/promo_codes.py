from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from schemas.promo import PromoValidationOut
from services import promo as promo_service
from services.pricing import ZERO, round_money

router = APIRouter(prefix="/promo-codes", tags=["promo-codes"])


@router.get("/validate", response_model=PromoValidationOut)
def validate_promo_code(
    code: str = Query(..., min_length=1),
    total: Decimal = Query(..., ge=0),
    user_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    check = promo_service.validate(db, code, total, user_id)
    discount = check.discount if check.valid else ZERO
    return {
        "code": check.code,
        "valid": check.valid,
        "discount": discount,
        "order_total": round_money(total),
        "total_after_discount": round_money(total - discount),
        "reasons": check.reasons,
        "type": check.promo.type if check.promo else None,
        "amount": check.promo.amount if check.promo else None,
    }
