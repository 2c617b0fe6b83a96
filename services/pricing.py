"""Money and pricing rules shared by cart display and order settlement.

Everything here is pure: callers pass the catalog values and the instant to
price at, and get ``Decimal`` amounts rounded half-up to cents back.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from core.clock import to_naive_utc

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: float | int | str | Decimal | None) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: float | int | str | Decimal) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sale_is_active(
    sale_price: Optional[Decimal],
    sale_start: Optional[datetime],
    sale_end: Optional[datetime],
    now: datetime,
) -> bool:
    """A sale applies when a sale price is set and ``sale_start <= now <= sale_end``.

    Either bound may be missing, in which case that side of the window is open.
    """
    if sale_price is None:
        return False
    now = to_naive_utc(now)
    start = to_naive_utc(sale_start)
    end = to_naive_utc(sale_end)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def effective_unit_price(
    regular_price: Decimal,
    sale_price: Optional[Decimal],
    sale_start: Optional[datetime],
    sale_end: Optional[datetime],
    now: datetime,
) -> Decimal:
    if sale_is_active(sale_price, sale_start, sale_end, now):
        return round_money(sale_price)
    return round_money(regular_price)


@dataclass
class PricedLine:
    product_id: int
    variation_id: Optional[int]
    name: str
    sku: Optional[str]
    quantity: int
    regular_price: Decimal
    unit_price: Decimal
    on_sale: bool
    subtotal: Decimal
    tax: Decimal = ZERO
    sale_window: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        return round_money(self.subtotal + self.tax)

    def trace(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "quantity": self.quantity,
            "regular_price": str(self.regular_price),
            "unit_price": str(self.unit_price),
            "on_sale": self.on_sale,
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "sale_window": self.sale_window,
        }


@dataclass
class Quote:
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    discount: Decimal
    total: Decimal
    tax_rate: Decimal

    def as_dict(self) -> Dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "shipping_cost": str(self.shipping_cost),
            "discount": str(self.discount),
            "total": str(self.total),
            "tax_rate": str(self.tax_rate),
        }


def price_line(
    *,
    product_id: int,
    variation_id: Optional[int],
    name: str,
    sku: Optional[str],
    quantity: int,
    regular_price: Decimal,
    sale_price: Optional[Decimal],
    sale_start: Optional[datetime],
    sale_end: Optional[datetime],
    now: datetime,
) -> PricedLine:
    on_sale = sale_is_active(sale_price, sale_start, sale_end, now)
    unit_price = round_money(sale_price) if on_sale else round_money(regular_price)
    return PricedLine(
        product_id=product_id,
        variation_id=variation_id,
        name=name,
        sku=sku,
        quantity=quantity,
        regular_price=round_money(regular_price),
        unit_price=unit_price,
        on_sale=on_sale,
        subtotal=round_money(unit_price * quantity),
        sale_window={
            "sale_price": str(round_money(sale_price)) if sale_price is not None else None,
            "sale_start": sale_start.isoformat() if sale_start else None,
            "sale_end": sale_end.isoformat() if sale_end else None,
        },
    )


def subtotal_of(lines: Iterable[PricedLine]) -> Decimal:
    return round_money(sum((line.subtotal for line in lines), ZERO))


def tax_for(subtotal: Decimal, tax_rate: Decimal) -> Decimal:
    return round_money(to_decimal(subtotal) * to_decimal(tax_rate))


def clamp_discount(discount: Decimal, ceiling: Decimal) -> Decimal:
    discount = round_money(discount)
    if discount < ZERO:
        return ZERO
    if discount > ceiling:
        return round_money(ceiling)
    return discount


def quote(
    lines: List[PricedLine],
    tax_rate: Decimal,
    shipping_cost: Decimal = ZERO,
    discount: Decimal = ZERO,
) -> Quote:
    subtotal = subtotal_of(lines)
    tax = tax_for(subtotal, tax_rate)
    shipping = round_money(shipping_cost)
    applied = clamp_discount(to_decimal(discount), subtotal + tax + shipping)
    return Quote(
        subtotal=subtotal,
        tax=tax,
        shipping_cost=shipping,
        discount=applied,
        total=round_money(subtotal + tax + shipping - applied),
        tax_rate=to_decimal(tax_rate),
    )


def allocate_tax(lines: List[PricedLine], order_tax: Decimal, tax_rate: Decimal) -> List[PricedLine]:
    """Spread the order tax over the lines so that item taxes sum to it exactly.

    Each line gets its own rounded tax; the rounding residue lands on the last line.
    """
    if not lines:
        return lines
    allocated = ZERO
    for line in lines:
        line.tax = tax_for(line.subtotal, tax_rate)
        allocated += line.tax
    residue = round_money(order_tax) - allocated
    if residue:
        lines[-1].tax = round_money(lines[-1].tax + residue)
    return lines


def within_tolerance(a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) <= to_decimal(tolerance)


def price_catalog_line(product, variation, quantity: int, now: datetime) -> PricedLine:
    """Price a product (or one of its variations) from its stored catalog values."""
    source = variation if variation is not None else product
    return price_line(
        product_id=product.id,
        variation_id=variation.id if variation is not None else None,
        name=variation.name if variation is not None else product.name,
        sku=source.sku,
        quantity=quantity,
        regular_price=to_decimal(source.regular_price),
        sale_price=to_decimal(source.sale_price) if source.sale_price is not None else None,
        sale_start=source.sale_start,
        sale_end=source.sale_end,
        now=now,
    )
