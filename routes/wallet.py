from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from core.dependencies import get_dispatcher
from core.errors import NotFound
from models.order import Order
from models.user import User
from schemas.wallet import RefundOut, RefundRequest, WalletOut, WalletTransactionOut
from security.dependencies import get_current_user, require_admin
from services import wallet as wallet_service
from services.notifications import NotificationDispatcher

router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("", response_model=WalletOut)
def wallet_summary(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return wallet_service.summary(db, user.id)


@router.get("/transactions", response_model=List[WalletTransactionOut])
def wallet_transactions(
    type: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    wallet = wallet_service.get_or_create(db, user.id)
    return wallet_service.transactions(db, wallet, limit=limit, offset=offset, txn_type=type)


@router.post("/refunds", response_model=RefundOut, status_code=201)
def refund_order(
    data: RefundRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    order = db.get(Order, data.order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    result = wallet_service.process_refund(db, order, data.refund_amount, data.reason)
    dispatcher.dispatch(result.events, result.order)
    return {"transaction": result.transaction, "order": result.order}


@router.patch("/transactions/{transaction_id}/status", response_model=WalletTransactionOut)
def override_transaction_status(
    transaction_id: int,
    status: str = Query(...),
    reason: Optional[str] = Query(default=None),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return wallet_service.set_transaction_status(db, transaction_id, status, reason=reason)
