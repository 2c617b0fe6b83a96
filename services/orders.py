"""Order settlement: turning a cart into an order and moving orders through their states.

Every state-changing operation returns the list of domain events it produced
and owns its transaction; callers hand the events to a dispatcher afterwards.
``mark_refunded`` is the exception and runs inside the wallet refund's
transaction.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from core.clock import utcnow
from core.config import settings
from core.errors import BusinessRuleViolation, NotFound, TotalsMismatch, ValidationFailed
from core.logging import get_logger
from models.address import Address, OrderAddress
from models.cart import Cart
from models.order import ORDER_STATUSES, PAYMENT_STATUSES, Order, generate_order_number
from models.order_item import OrderItem
from models.user import User
from services import cart as cart_service
from services import pricing
from services import promo as promo_service
from services.events import (
    ORDER_CREATED,
    ORDER_REFUNDED,
    ORDER_STATUS_CHANGED,
    PAYMENT_STATUS_CHANGED,
    EventList,
    order_event,
)
from services.payments import CallbackOutcome, PaymentDraft, PaymentMethodRegistry, PaymentResult

logger = get_logger(__name__)

CASH_ON_DELIVERY = "cash_on_delivery"

STATUS_TRANSITIONS = {
    "pending": ("processing", "cancelled"),
    "processing": ("completed", "cancelled"),
    "completed": ("refunded",),
    "cancelled": (),
    "refunded": (),
}

PAYMENT_TRANSITIONS = {
    "pending": ("paid", "failed"),
    "paid": ("refunded",),
    "failed": (),
    "refunded": (),
}

STATUS_TIMESTAMPS = {
    "completed": "completed_at",
    "cancelled": "cancelled_at",
    "refunded": "refunded_at",
}


@dataclass
class CheckoutResult:
    order: Order
    payment: PaymentResult
    events: EventList = field(default_factory=list)


def _money(value) -> str:
    return str(pricing.round_money(value))


def _line_key(product_id: int, variation_id: Optional[int], quantity: int) -> Tuple[int, int, int]:
    return product_id, variation_id or 0, quantity


def _check_cart_mirror(cart: Cart, client_items) -> None:
    server = sorted(_line_key(item.product_id, item.variation_id, item.quantity) for item in cart.items)
    provided = sorted(_line_key(item.product_id, item.variation_id, item.quantity) for item in client_items)
    if server != provided:
        logger.warning("Submitted cart items do not match the stored cart", extra={"cart_id": cart.id})
        raise TotalsMismatch(
            "Cart has changed since it was priced. Refresh the cart and try again.",
            {
                "cart_items": {
                    "server": [{"product_id": p, "variation_id": v or None, "quantity": q} for p, v, q in server],
                    "provided": [{"product_id": p, "variation_id": v or None, "quantity": q} for p, v, q in provided],
                }
            },
            code="cart_changed",
        )


def _line_discrepancies(lines: List[pricing.PricedLine], client_items) -> List[Dict[str, Any]]:
    provided = {(item.product_id, item.variation_id): item for item in client_items}
    found = []
    for line in lines:
        item = provided.get((line.product_id, line.variation_id))
        if item is None or item.price is None:
            continue
        if not pricing.within_tolerance(line.unit_price, item.price, settings.PRICE_TOLERANCE):
            found.append({
                "product_id": line.product_id,
                "variation_id": line.variation_id,
                "server_price": str(line.unit_price),
                "provided_price": _money(item.price),
                "on_sale": line.on_sale,
            })
    return found


def _check_totals(totals: pricing.Quote, payload, lines: List[pricing.PricedLine]) -> None:
    provided = {"subtotal": payload.subtotal, "tax": payload.tax, "total": payload.total}
    if payload.discount is not None:
        provided["discount"] = payload.discount

    discrepancies: Dict[str, Any] = {}
    for name, value in provided.items():
        server_value = getattr(totals, name)
        if not pricing.within_tolerance(server_value, value, settings.PRICE_TOLERANCE):
            discrepancies[name] = {"server": str(server_value), "provided": _money(value)}

    if discrepancies:
        items = _line_discrepancies(lines, payload.meta_data.cart_items)
        if items:
            discrepancies["items"] = items
        logger.warning("Order totals mismatch", extra={"discrepancies": discrepancies})
        raise TotalsMismatch("Order totals do not match the current prices.", discrepancies)


def _load_addresses(db: Session, user: User, payload) -> Tuple[Address, Address]:
    errors = {}
    found = {}
    for field_name in ("billing_address_id", "shipping_address_id"):
        address_id = getattr(payload, field_name)
        address = db.get(Address, address_id)
        if address is None or address.user_id != user.id:
            errors[field_name] = "Address not found."
        else:
            found[field_name] = address
    if errors:
        raise ValidationFailed("Invalid address.", errors, code="invalid_address")
    return found["billing_address_id"], found["shipping_address_id"]


def _allocate_order_number(db: Session, now: datetime) -> str:
    for _ in range(settings.ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number(now)
        taken = db.execute(select(Order.id).where(Order.order_number == candidate)).first()
        if taken is None:
            return candidate
    raise RuntimeError("Could not allocate a unique order number")


def _assert_balanced(order: Order, items: List[OrderItem]) -> None:
    items_total = sum((item.total for item in items), pricing.ZERO)
    expected = pricing.round_money(items_total + order.shipping_cost - order.discount)
    if not pricing.within_tolerance(expected, order.total, settings.PRICE_TOLERANCE):
        raise TotalsMismatch(
            "Order items do not add up to the order total.",
            {"total": {"server": str(order.total), "items": str(expected)}},
            code="order_unbalanced",
        )


def create_order(
    db: Session,
    user: User,
    payload,
    cart: Optional[Cart],
    registry: PaymentMethodRegistry,
    now: Optional[datetime] = None,
    tax_rate: Optional[Decimal] = None,
) -> CheckoutResult:
    """Settle ``cart`` into an order for ``user``.

    The cart is repriced from stored catalog data and the result is compared
    with what the client submitted. The payment method runs before anything is
    written, so a gateway failure leaves no order behind. The order, its items,
    the promo usage and the cart clearing are committed together or not at all.
    """
    now = now or utcnow()
    tax_rate = settings.TAX_RATE if tax_rate is None else tax_rate

    if cart is None or not cart.items:
        raise ValidationFailed("Cart is empty.", {"cart": "Cart is empty."}, code="empty_cart")

    _check_cart_mirror(cart, payload.meta_data.cart_items)

    lines = cart_service.price_items(cart.items, now)
    totals = pricing.quote(lines, tax_rate, payload.shipping_cost)

    promo_check = None
    if payload.promo_code:
        promo_check = promo_service.validate(db, payload.promo_code, totals.subtotal + totals.tax, user.id, now)
        if not promo_check.valid:
            raise BusinessRuleViolation(
                "Promo code cannot be applied.",
                code="promo_ineligible",
                details={"reasons": promo_check.reasons},
            )
        totals = pricing.quote(lines, tax_rate, payload.shipping_cost, promo_check.discount)

    _check_totals(totals, payload, lines)
    pricing.allocate_tax(lines, totals.tax, tax_rate)

    method = registry.require_enabled(payload.payment_method)
    billing, shipping = _load_addresses(db, user, payload)
    currency = (payload.currency or settings.DEFAULT_CURRENCY).upper()
    order_number = _allocate_order_number(db, now)

    payment = method.process_payment(
        PaymentDraft(
            order_number=order_number,
            total=totals.total,
            currency=currency,
            user_id=user.id,
            shipping_area=shipping.area or shipping.city,
            customer_email=user.email,
        ),
        payload.payment_data,
    )

    try:
        order = Order(
            order_number=order_number,
            user_id=user.id,
            status="pending",
            payment_status="pending",
            payment_method=method.identifier,
            shipping_method=payload.shipping_method,
            currency=currency,
            subtotal=totals.subtotal,
            tax=totals.tax,
            shipping_cost=totals.shipping_cost,
            discount=totals.discount,
            total=totals.total,
            promo_code_id=promo_check.promo.id if promo_check else None,
            notes=payload.notes,
            meta_data={
                "cart_items": [item.model_dump(mode="json") for item in payload.meta_data.cart_items],
                "pricing": {
                    "priced_at": now.isoformat(),
                    "lines": [line.trace() for line in lines],
                    "totals": totals.as_dict(),
                },
                "promo_code": promo_check.code if promo_check else None,
                "payment": payment.as_dict(),
                "payment_session_id": payment.session_id,
            },
            created_at=now,
        )
        order.billing_address = OrderAddress.snapshot(billing, "billing")
        order.shipping_address = OrderAddress.snapshot(shipping, "shipping")
        db.add(order)
        db.flush()

        if promo_check and not promo_service.claim_usage(db, promo_check.promo, user.id, order.id):
            raise BusinessRuleViolation(
                "Promo code usage limit reached.",
                code="promo_ineligible",
                details={"reasons": [promo_service.USAGE_LIMIT_REACHED]},
            )

        items = [
            OrderItem(
                product_id=line.product_id,
                variation_id=line.variation_id,
                name=line.name,
                sku=line.sku,
                quantity=line.quantity,
                price=line.unit_price,
                subtotal=line.subtotal,
                tax=line.tax,
                total=line.total,
                meta_data={"regular_price": str(line.regular_price), "on_sale": line.on_sale},
            )
            for line in lines
        ]
        order.items.extend(items)
        _assert_balanced(order, items)

        cart_service.clear_items(db, cart)
        db.commit()
    except Exception:
        db.rollback()
        if payment.session_id:
            logger.warning(
                "Order aborted after gateway session was created",
                extra={"order_number": order_number, "session_id": payment.session_id},
            )
        raise

    db.refresh(order)
    logger.info(
        "Order created",
        extra={
            "order_number": order.order_number,
            "user_id": user.id,
            "total": str(order.total),
            "payment_method": order.payment_method,
        },
    )
    events = [order_event(ORDER_CREATED, order, total=str(order.total), payment_method=order.payment_method)]
    return CheckoutResult(order=order, payment=payment, events=events)


def _transition_payment(
    db: Session,
    order: Order,
    target: str,
    now: datetime,
    payment_id: Optional[str] = None,
    strict: bool = True,
    extra_values: Optional[Dict[str, Any]] = None,
) -> EventList:
    """Move ``payment_status`` forward without committing.

    The UPDATE is keyed on the status read by the caller, so of two concurrent
    deliveries of the same transition only one changes a row. ``extra_values``
    are written by that same UPDATE and by nothing else.
    """
    if target not in PAYMENT_STATUSES:
        raise ValidationFailed("Invalid payment status.", {"payment_status": "Invalid payment status."})
    previous = order.payment_status
    if previous == target:
        return []
    if target not in PAYMENT_TRANSITIONS.get(previous, ()):
        if strict:
            raise BusinessRuleViolation(
                f"Cannot change payment status from {previous} to {target}.",
                code="illegal_transition",
            )
        logger.warning(
            "Ignoring payment status transition",
            extra={"order_number": order.order_number, "from_status": previous, "to_status": target},
        )
        return []

    values: Dict[str, Any] = {**(extra_values or {}), "payment_status": target}
    if target == "paid":
        values["paid_at"] = now
    if payment_id:
        values["payment_id"] = payment_id
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == previous)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(
            "Payment status already changed by another request",
            extra={"order_number": order.order_number, "to_status": target},
        )
        return []

    logger.info(
        "Payment status changed",
        extra={"order_number": order.order_number, "from_status": previous, "to_status": target},
    )
    return [order_event(PAYMENT_STATUS_CHANGED, order, previous=previous, payment_status=target)]


def update_status(db: Session, order: Order, status: str, now: Optional[datetime] = None) -> EventList:
    now = now or utcnow()
    if status not in ORDER_STATUSES:
        raise ValidationFailed("Invalid order status.", {"status": "Invalid order status."})
    previous = order.status
    if previous == status:
        return []
    if status == "refunded":
        raise BusinessRuleViolation("Orders are refunded through the wallet refund operation.", code="refund_required")
    if status not in STATUS_TRANSITIONS.get(previous, ()):
        raise BusinessRuleViolation(f"Cannot change order status from {previous} to {status}.", code="illegal_transition")

    values: Dict[str, Any] = {"status": status}
    stamp = STATUS_TIMESTAMPS.get(status)
    if stamp:
        values[stamp] = now

    try:
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            db.refresh(order)
            if order.status == status:
                return []
            raise BusinessRuleViolation("Order status was changed by another request.", code="stale_status")

        events = [order_event(ORDER_STATUS_CHANGED, order, previous=previous, status=status)]
        if status == "completed" and order.payment_method == CASH_ON_DELIVERY and order.payment_status != "paid":
            events.extend(_transition_payment(db, order, "paid", now, strict=False))
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Order status changed", extra={"order_number": order.order_number, "from_status": previous, "to_status": status})
    return events


def update_payment_status(
    db: Session,
    order: Order,
    payment_status: str,
    payment_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EventList:
    now = now or utcnow()
    try:
        events = _transition_payment(db, order, payment_status, now, payment_id=payment_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return events


def _find_callback_order(db: Session, outcome: CallbackOutcome) -> Optional[Order]:
    if outcome.merchant_reference:
        stmt = select(Order).where(Order.order_number == outcome.merchant_reference).execution_options(populate_existing=True)
        order = db.execute(stmt).scalar_one_or_none()
        if order is not None:
            return order
    if outcome.session_id:
        stmt = (
            select(Order)
            .where(Order.meta_data["payment_session_id"].as_string() == outcome.session_id)
            .execution_options(populate_existing=True)
        )
        return db.execute(stmt).scalars().first()
    return None


def apply_payment_callback(db: Session, outcome: CallbackOutcome, now: Optional[datetime] = None) -> Tuple[Order, EventList]:
    """Apply a gateway callback's payment outcome and record it on its order.

    The gateway details are stored only together with a payment transition,
    so replaying a callback that was already applied, or one that lost a race
    to a concurrent delivery, writes nothing and returns no events.
    """
    now = now or utcnow()
    order = _find_callback_order(db, outcome)
    if order is None:
        logger.error(
            "Gateway callback for unknown order",
            extra={"merchant_reference": outcome.merchant_reference, "session_id": outcome.session_id},
        )
        raise NotFound("Order not found", code="order_not_found")

    meta = dict(order.meta_data or {})
    gateway = dict(meta.get("gateway") or {})
    gateway.update({key: value for key, value in outcome.raw.items() if value is not None})
    if outcome.transaction_id:
        gateway["transaction_id"] = outcome.transaction_id
    if outcome.session_id:
        gateway["session_id"] = outcome.session_id
    gateway["last_status"] = outcome.status
    gateway["last_callback_at"] = now.isoformat()
    meta["gateway"] = gateway

    try:
        events = _transition_payment(
            db,
            order,
            outcome.status,
            now,
            payment_id=outcome.transaction_id,
            strict=False,
            extra_values={"meta_data": meta},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    if not events:
        logger.info("Payment callback caused no change", extra={"order_number": order.order_number, "payment_status": order.payment_status})
    return order, events


def mark_refunded(db: Session, order: Order, amount: Decimal, reason: Optional[str], reference: str, now: datetime) -> EventList:
    """Flag a completed order as refunded inside the caller's transaction."""
    meta = dict(order.meta_data or {})
    meta["refund"] = {
        "amount": str(amount),
        "reason": reason,
        "reference": reference,
        "refunded_at": now.isoformat(),
    }
    values: Dict[str, Any] = {"status": "refunded", "refunded_at": now, "meta_data": meta}
    was_paid = order.payment_status == "paid"
    if was_paid:
        values["payment_status"] = "refunded"

    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == "completed", Order.refunded_at.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BusinessRuleViolation("Order has already been refunded.", code="already_refunded")

    events = [order_event(ORDER_STATUS_CHANGED, order, previous="completed", status="refunded")]
    if was_paid:
        events.append(order_event(PAYMENT_STATUS_CHANGED, order, previous="paid", payment_status="refunded"))
    events.append(order_event(ORDER_REFUNDED, order, amount=str(amount), reason=reason, reference=reference))
    return events


def _with_items(stmt):
    return stmt.options(
        selectinload(Order.items),
        selectinload(Order.billing_address),
        selectinload(Order.shipping_address),
    )


def list_user_orders(
    db: Session,
    user_id: int,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Order]:
    stmt = _with_items(select(Order).where(Order.user_id == user_id))
    if status:
        stmt = stmt.where(Order.status == status)
    if payment_status:
        stmt = stmt.where(Order.payment_status == payment_status)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def get_user_order(db: Session, user_id: int, order_number: str) -> Order:
    stmt = _with_items(select(Order).where(Order.user_id == user_id, Order.order_number == order_number))
    order = db.execute(stmt).scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    return order


def get_order_by_number(db: Session, order_number: str) -> Order:
    order = db.execute(_with_items(select(Order).where(Order.order_number == order_number))).scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    return order
