from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from core.clock import utcnow
from core.logging import get_logger
from models.promo_code import PromoCode, PromoCodeUsage
from services.pricing import ZERO, round_money, to_decimal

logger = get_logger(__name__)

NOT_FOUND = "not_found"
INACTIVE = "inactive"
NOT_STARTED = "not_started"
EXPIRED = "expired"
USAGE_LIMIT_REACHED = "usage_limit_reached"
USER_LIMIT_REACHED = "user_limit_reached"
BELOW_MINIMUM = "below_minimum"


@dataclass
class PromoCheck:
    code: str
    valid: bool
    discount: Decimal = ZERO
    reasons: List[str] = field(default_factory=list)
    promo: Optional[PromoCode] = None


def inactive_reasons(promo: PromoCode, now: Optional[datetime] = None) -> List[str]:
    now = now or utcnow()
    reasons = []
    if not promo.is_active:
        reasons.append(INACTIVE)
    if promo.starts_at is not None and now < promo.starts_at:
        reasons.append(NOT_STARTED)
    if promo.expires_at is not None and now > promo.expires_at:
        reasons.append(EXPIRED)
    if promo.usage_limit is not None and promo.used >= promo.usage_limit:
        reasons.append(USAGE_LIMIT_REACHED)
    return reasons


def is_active(promo: PromoCode, now: Optional[datetime] = None) -> bool:
    return not inactive_reasons(promo, now)


def user_usage_count(db: Session, promo: PromoCode, user_id: int) -> int:
    stmt = select(func.count(PromoCodeUsage.id)).where(
        PromoCodeUsage.user_id == user_id,
        PromoCodeUsage.promo_code_id == promo.id,
    )
    return db.execute(stmt).scalar_one()


def can_be_used_by(db: Session, promo: PromoCode, user_id: int, now: Optional[datetime] = None) -> bool:
    if not is_active(promo, now):
        return False
    if promo.usage_limit_per_user is not None:
        return user_usage_count(db, promo, user_id) < promo.usage_limit_per_user
    return True


def calculate_discount(promo: PromoCode, order_total: Decimal) -> Decimal:
    order_total = to_decimal(order_total)
    amount = to_decimal(promo.amount)
    if promo.type == "fixed":
        discount = min(amount, order_total)
    else:
        discount = order_total * amount / Decimal(100)
    if promo.max_discount is not None:
        discount = min(discount, to_decimal(promo.max_discount))
    return max(round_money(discount), ZERO)


def find_by_code(db: Session, code: str) -> Optional[PromoCode]:
    return db.execute(select(PromoCode).where(PromoCode.code == code.strip())).scalar_one_or_none()


def validate(db: Session, code: str, order_total: Decimal, user_id: Optional[int] = None, now: Optional[datetime] = None) -> PromoCheck:
    """Check a code against an order total and report every reason it cannot be used."""
    promo = find_by_code(db, code)
    if promo is None:
        return PromoCheck(code=code, valid=False, reasons=[NOT_FOUND])

    reasons = inactive_reasons(promo, now)
    if user_id is not None and promo.usage_limit_per_user is not None:
        if user_usage_count(db, promo, user_id) >= promo.usage_limit_per_user:
            reasons.append(USER_LIMIT_REACHED)
    if promo.min_order_total is not None and to_decimal(order_total) < to_decimal(promo.min_order_total):
        reasons.append(BELOW_MINIMUM)

    if reasons:
        return PromoCheck(code=promo.code, valid=False, reasons=reasons, promo=promo)
    return PromoCheck(code=promo.code, valid=True, discount=calculate_discount(promo, order_total), promo=promo)


def claim_usage(db: Session, promo: PromoCode, user_id: int, order_id: int) -> bool:
    """Consume one use of ``promo`` for ``order_id`` inside the caller's transaction.

    The counter only moves when it is still under the global limit at write
    time, so two checkouts that both read ``used < usage_limit`` cannot both
    succeed on the last slot. Returns False when the claim lost that race or
    the per-user cap is already reached; the caller must roll back.
    """
    result = db.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo.id,
            PromoCode.is_active.is_(True),
            or_(PromoCode.usage_limit.is_(None), PromoCode.used < PromoCode.usage_limit),
        )
        .values(used=PromoCode.used + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Promo code usage limit reached at claim time", extra={"promo_code": promo.code, "user_id": user_id})
        return False

    if promo.usage_limit_per_user is not None and user_usage_count(db, promo, user_id) >= promo.usage_limit_per_user:
        logger.warning("Promo code per-user limit reached at claim time", extra={"promo_code": promo.code, "user_id": user_id})
        return False

    db.add(PromoCodeUsage(user_id=user_id, promo_code_id=promo.id, order_id=order_id, used_at=utcnow()))
    db.flush()
    db.refresh(promo)
    return True
