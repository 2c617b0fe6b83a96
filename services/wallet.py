"""Wallet ledger.

A wallet's ``balance`` is a running total of its completed transactions. It
is only ever changed in the same commit that inserts a ledger row or moves
one into or out of ``completed``, and debits are conditional on the balance
covering them, so the stored balance and a replay of the ledger never diverge.
"""
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.clock import utcnow
from core.config import settings
from core.errors import BusinessRuleViolation, NotFound, ValidationFailed
from core.logging import get_logger
from models.order import Order
from models.wallet import CREDIT_TYPES, TRANSACTION_STATUSES, Wallet, WalletTransaction
from services import orders as order_service
from services.events import EventList
from services.pricing import ZERO, round_money

logger = get_logger(__name__)

PRIMARY = "primary"


@dataclass
class RefundResult:
    transaction: WalletTransaction
    order: Order
    events: EventList = field(default_factory=list)


def generate_reference(prefix: str = "WAL") -> str:
    return f"{prefix}_{int(time.time())}_{secrets.token_hex(6)}"


def get_wallet(db: Session, user_id: int, currency: Optional[str] = None) -> Optional[Wallet]:
    currency = (currency or settings.DEFAULT_CURRENCY).upper()
    stmt = select(Wallet).where(Wallet.user_id == user_id, Wallet.currency == currency, Wallet.type == PRIMARY)
    return db.execute(stmt).scalar_one_or_none()


def get_or_create(db: Session, user_id: int, currency: Optional[str] = None) -> Wallet:
    currency = (currency or settings.DEFAULT_CURRENCY).upper()
    wallet = get_wallet(db, user_id, currency)
    if wallet is not None:
        return wallet

    wallet = Wallet(user_id=user_id, currency=currency, type=PRIMARY, balance=ZERO, status="active", description="Primary wallet")
    db.add(wallet)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently by another request
        db.rollback()
        wallet = get_wallet(db, user_id, currency)
        if wallet is None:
            raise
        return wallet
    db.refresh(wallet)
    logger.info("Wallet created", extra={"wallet_id": wallet.id, "user_id": user_id, "currency": currency})
    return wallet


def find_by_reference(db: Session, reference: str) -> Optional[WalletTransaction]:
    return db.execute(select(WalletTransaction).where(WalletTransaction.reference == reference)).scalar_one_or_none()


def _positive_amount(amount) -> Decimal:
    value = round_money(amount)
    if value <= ZERO:
        raise ValidationFailed("Amount must be greater than zero.", {"amount": "Amount must be greater than zero."})
    return value


def _existing_for(db: Session, wallet: Wallet, reference: Optional[str]) -> Optional[WalletTransaction]:
    if not reference:
        return None
    existing = find_by_reference(db, reference)
    if existing is not None and existing.wallet_id != wallet.id:
        raise BusinessRuleViolation("Reference already used by another wallet.", code="reference_conflict")
    return existing


def _credit(db: Session, wallet: Wallet, amount: Decimal, txn_type: str, description, metadata, reference: str) -> WalletTransaction:
    db.execute(
        update(Wallet)
        .where(Wallet.id == wallet.id)
        .values(balance=Wallet.balance + amount)
        .execution_options(synchronize_session=False)
    )
    txn = WalletTransaction(
        wallet_id=wallet.id,
        amount=amount,
        type=txn_type,
        status="completed",
        description=description,
        reference=reference,
        metadata_=metadata,
    )
    db.add(txn)
    db.flush()
    return txn


def add_funds(
    db: Session,
    wallet: Wallet,
    amount,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reference: Optional[str] = None,
) -> WalletTransaction:
    amount = _positive_amount(amount)
    existing = _existing_for(db, wallet, reference)
    if existing is not None:
        logger.info("Duplicate wallet deposit ignored", extra={"wallet_id": wallet.id, "reference": reference})
        return existing

    reference = reference or generate_reference()
    try:
        txn = _credit(db, wallet, amount, "deposit", description, metadata, reference)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_by_reference(db, reference)
        if existing is None:
            raise
        return existing
    except Exception:
        db.rollback()
        raise

    db.refresh(wallet)
    logger.info(
        "Wallet funds added",
        extra={"wallet_id": wallet.id, "amount": str(amount), "balance": str(wallet.balance), "reference": reference},
    )
    return txn


def deduct_funds(
    db: Session,
    wallet: Wallet,
    amount,
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reference: Optional[str] = None,
) -> Optional[WalletTransaction]:
    """Withdraw ``amount`` if the balance covers it.

    Insufficient funds is an ordinary outcome: ``None`` is returned and
    neither the balance nor the ledger changes.
    """
    amount = _positive_amount(amount)
    existing = _existing_for(db, wallet, reference)
    if existing is not None:
        logger.info("Duplicate wallet withdrawal ignored", extra={"wallet_id": wallet.id, "reference": reference})
        return existing

    reference = reference or generate_reference()
    try:
        result = db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id, Wallet.balance >= amount)
            .values(balance=Wallet.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(wallet)
            logger.info(
                "Insufficient wallet funds",
                extra={"wallet_id": wallet.id, "amount": str(amount), "balance": str(wallet.balance)},
            )
            return None

        txn = WalletTransaction(
            wallet_id=wallet.id,
            amount=amount,
            type="withdrawal",
            status="completed",
            description=description,
            reference=reference,
            metadata_=metadata,
        )
        db.add(txn)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_by_reference(db, reference)
        if existing is None:
            raise
        return existing
    except Exception:
        db.rollback()
        raise

    db.refresh(wallet)
    logger.info(
        "Wallet funds deducted",
        extra={"wallet_id": wallet.id, "amount": str(amount), "balance": str(wallet.balance), "reference": reference},
    )
    return txn


def refund_reference(order: Order) -> str:
    return f"REFUND_{order.order_number}"


def process_refund(
    db: Session,
    order: Order,
    amount=None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RefundResult:
    """Refund a completed order into its owner's wallet.

    The wallet credit, the ledger row and the order's move to ``refunded`` are
    committed together. Status listeners never trigger refunds, so this is the
    only way an order reaches ``refunded``.
    """
    now = now or utcnow()
    if order.is_refunded() or order.refunded_at is not None:
        raise BusinessRuleViolation("Order has already been refunded.", code="already_refunded")
    if order.status != "completed":
        raise BusinessRuleViolation("Only completed orders can be refunded.", code="refund_not_allowed")

    refund_amount = round_money(order.total if amount is None else amount)
    if refund_amount <= ZERO:
        raise ValidationFailed("Refund amount must be greater than zero.", {"refund_amount": "Must be greater than zero."})
    if refund_amount > round_money(order.total):
        raise BusinessRuleViolation("Refund amount cannot exceed order total.", code="refund_exceeds_total")

    wallet = get_or_create(db, order.user_id, order.currency)
    reference = refund_reference(order)
    if find_by_reference(db, reference) is not None:
        raise BusinessRuleViolation("Order has already been refunded.", code="already_refunded")

    metadata = {"order_id": order.id, "order_number": order.order_number, "reason": reason}
    try:
        txn = _credit(db, wallet, refund_amount, "refund", f"Refund for order #{order.order_number}", metadata, reference)
        events = order_service.mark_refunded(db, order, refund_amount, reason, reference, now)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise BusinessRuleViolation("Order has already been refunded.", code="already_refunded")
    except Exception:
        db.rollback()
        raise

    db.refresh(wallet)
    db.refresh(order)
    logger.info(
        "Order refunded to wallet",
        extra={
            "order_number": order.order_number,
            "wallet_id": wallet.id,
            "amount": str(refund_amount),
            "reference": reference,
        },
    )
    return RefundResult(transaction=txn, order=order, events=events)


def replay_balance(db: Session, wallet: Wallet) -> Decimal:
    """Balance derived from the ledger alone."""
    stmt = select(WalletTransaction).where(
        WalletTransaction.wallet_id == wallet.id,
        WalletTransaction.status == "completed",
    )
    return round_money(sum((txn.signed_amount for txn in db.execute(stmt).scalars()), ZERO))


def transactions(db: Session, wallet: Wallet, limit: int = 20, offset: int = 0, txn_type: Optional[str] = None) -> List[WalletTransaction]:
    stmt = select(WalletTransaction).where(WalletTransaction.wallet_id == wallet.id)
    if txn_type:
        stmt = stmt.where(WalletTransaction.type == txn_type)
    stmt = stmt.order_by(WalletTransaction.id.desc()).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def summary(db: Session, user_id: int, currency: Optional[str] = None) -> Dict[str, Any]:
    wallet = get_or_create(db, user_id, currency)
    rows = db.execute(
        select(WalletTransaction.type, func.count(WalletTransaction.id), func.sum(WalletTransaction.amount))
        .where(WalletTransaction.wallet_id == wallet.id, WalletTransaction.status == "completed")
        .group_by(WalletTransaction.type)
    ).all()
    totals = {txn_type: str(round_money(total or 0)) for txn_type, _, total in rows}
    latest = transactions(db, wallet, limit=1)
    return {
        "wallet_id": wallet.id,
        "balance": str(round_money(wallet.balance)),
        "currency": wallet.currency,
        "status": wallet.status,
        "totals": {
            "credits": str(round_money(sum((Decimal(totals.get(t, "0")) for t in CREDIT_TYPES), ZERO))),
            "debits": totals.get("withdrawal", str(ZERO)),
            "by_type": totals,
        },
        "transaction_count": sum(count for _, count, _ in rows),
        "last_transaction": latest[0] if latest else None,
    }


def set_transaction_status(
    db: Session,
    transaction_id: int,
    status: str,
    reason: Optional[str] = None,
) -> WalletTransaction:
    """Administrative override of a ledger entry's status.

    Amounts are never changed. Moving an entry into or out of ``completed``
    applies or reverses its signed amount on the wallet balance in the same
    commit; a reversal the balance cannot cover is refused.
    """
    if status not in TRANSACTION_STATUSES:
        raise ValidationFailed("Invalid transaction status.", {"status": "Invalid transaction status."})
    txn = db.get(WalletTransaction, transaction_id)
    if txn is None:
        raise NotFound("Transaction not found", code="transaction_not_found")
    previous = txn.status
    if previous == status:
        return txn

    delta = ZERO
    if previous == "completed":
        delta = -txn.signed_amount
    elif status == "completed":
        delta = txn.signed_amount

    try:
        if delta < ZERO:
            result = db.execute(
                update(Wallet)
                .where(Wallet.id == txn.wallet_id, Wallet.balance >= -delta)
                .values(balance=Wallet.balance + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise BusinessRuleViolation(
                    "Wallet balance cannot cover this status change.", code="insufficient_funds"
                )
        elif delta > ZERO:
            db.execute(
                update(Wallet)
                .where(Wallet.id == txn.wallet_id)
                .values(balance=Wallet.balance + delta)
                .execution_options(synchronize_session=False)
            )
        txn.status = status
        txn.metadata_ = {**(txn.metadata_ or {}), "status_update_reason": reason, "previous_status": previous}
        db.commit()
    except Exception:
        db.rollback()
        db.refresh(txn)
        raise

    db.refresh(txn)
    db.refresh(txn.wallet)
    logger.info(
        "Wallet transaction status overridden",
        extra={
            "transaction_id": txn.id,
            "from_status": previous,
            "to_status": status,
            "balance_delta": str(delta),
            "reason": reason,
        },
    )
    return txn
