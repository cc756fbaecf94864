"""
Table bill arithmetic: merge the recurring orders of a table into grouped
lines, then apply discount, GST and service charge.

All amounts are `Decimal`. Outputs are kept to six decimal places so that the
live preview, the receipt printed at settlement and a later reprint all start
from the same stored figures; rounding to cents (half-up) happens only in
`money()` when a figure is displayed.
"""
from __future__ import annotations

import decimal
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import NoRecurringOrders, ValidationError

GST_INCLUSIVE = "inclusive"
GST_EXCLUSIVE = "exclusive"
GST_TYPES = (GST_INCLUSIVE, GST_EXCLUSIVE)

# Rates offered by the staff UI; the calculator accepts any non-negative rate.
STANDARD_GST_RATES = (0, 5, 12, 18)

PORTION_FULL = "full"
PORTION_HALF = "half"
PORTIONS = (PORTION_FULL, PORTION_HALF)

PRICE_EPSILON = Decimal("0.01")
GUARD = Decimal("0.000001")
CENT = Decimal("0.01")
HUNDRED = Decimal(100)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # str() keeps the shortest repr, so 0.1 stays 0.1 instead of its binary expansion
        return Decimal(str(value))
    return Decimal(value)


def guard(value: Decimal) -> Decimal:
    return value.quantize(GUARD, rounding=ROUND_HALF_UP)


def money(value: Any) -> Decimal:
    """Round to cents, half-up. The only rounding applied for presentation."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class OrderLine(BaseModel):
    """One (menu item, portion) selection, priced at the time of ordering."""

    model_config = ConfigDict(extra="ignore")

    menu_item_id: int
    name: str
    is_veg: bool = False
    price: float = Field(gt=0)
    quantity: int = Field(ge=1)
    portion: str = PORTION_FULL
    category: Optional[str] = None
    special_instructions: Optional[str] = None

    def merge_key(self) -> Tuple[str, Decimal, str]:
        return (self.name, to_decimal(self.price), self.portion)

    def extension(self) -> Decimal:
        return to_decimal(self.price) * self.quantity


class Consolidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    grouped_items: List[OrderLine]
    original_subtotal: Decimal
    order_ids: List[str]


def _lines_of(order) -> List[OrderLine]:
    raw = order.get("items") if isinstance(order, dict) else order.items
    return [ln if isinstance(ln, OrderLine) else OrderLine.model_validate(ln) for ln in (raw or [])]


def merge_lines(lines: Iterable[OrderLine]) -> List[OrderLine]:
    """
    Merge lines with identical (name, unit price, portion) by summing quantity.
    Output keeps first-occurrence order.
    """
    merged: Dict[Tuple[str, Decimal, str], OrderLine] = {}
    for ln in lines:
        key = ln.merge_key()
        cur = merged.get(key)
        if cur is None:
            merged[key] = ln.model_copy()
            continue
        notes = cur.special_instructions
        extra = (ln.special_instructions or "").strip()
        if extra and extra not in (notes or "").split("; "):
            notes = f"{notes}; {extra}" if notes else extra
        merged[key] = cur.model_copy(update={"quantity": cur.quantity + ln.quantity, "special_instructions": notes})
    return list(merged.values())


def subtotal(lines: Iterable[OrderLine]) -> Decimal:
    return sum((ln.extension() for ln in lines), Decimal(0))


def consolidate(orders) -> Consolidation:
    orders = list(orders)
    if not orders:
        raise NoRecurringOrders()
    flat: List[OrderLine] = []
    for o in orders:
        flat.extend(_lines_of(o))
    grouped = merge_lines(flat)
    return Consolidation(
        grouped_items=grouped,
        original_subtotal=subtotal(grouped),
        order_ids=[str(getattr(o, "id", "")) for o in orders],
    )


DISPLAY_FIELDS = (
    "original_subtotal",
    "discount_amount",
    "service_charge",
    "taxable_amount",
    "gst_amount",
    "total",
)


def presented(figures) -> Dict[str, str]:
    return {name: str(money(getattr(figures, name))) for name in DISPLAY_FIELDS}


class BillFigures(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_subtotal: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    service_charge: Decimal
    gst_rate: Decimal
    gst_type: str
    gst_amount: Decimal
    taxable_amount: Decimal
    total: Decimal

    def display(self) -> Dict[str, str]:
        return presented(self)


def _checked(name: str, value: Any, *, upper: Optional[Decimal] = None) -> Decimal:
    try:
        d = to_decimal(0 if value is None else value)
    except (decimal.InvalidOperation, TypeError, ValueError):
        raise ValidationError.field(name, "must be a number")
    if not d.is_finite():
        raise ValidationError.field(name, "must be finite")
    if d < 0:
        raise ValidationError.field(name, "must not be negative")
    if upper is not None and d > upper:
        raise ValidationError.field(name, f"must not exceed {upper}")
    return d


def calculate(
    original_subtotal: Any,
    discount_percent: Any = 0,
    gst_rate: Any = 0,
    gst_type: str = GST_EXCLUSIVE,
    service_charge: Any = 0,
) -> BillFigures:
    """
    exclusive: discount comes off the subtotal, GST is added on what remains.
    inclusive: the subtotal already carries GST; strip it first, discount the
    net base, then put GST back on the discounted base.
    Both: total = taxable + gst + service charge (a flat amount).
    """
    sub = _checked("original_subtotal", original_subtotal)
    disc = _checked("discount_percent", discount_percent, upper=HUNDRED)
    rate = _checked("gst_rate", gst_rate)
    charge = _checked("service_charge", service_charge)
    if gst_type not in GST_TYPES:
        raise ValidationError.field("gst_type", f"must be one of {', '.join(GST_TYPES)}")

    with decimal.localcontext() as ctx:
        ctx.prec = 28
        ctx.rounding = ROUND_HALF_UP
        if gst_type == GST_INCLUSIVE:
            # denominator >= 1 for every rate >= 0
            base = sub / (1 + rate / HUNDRED)
            discount_amount = base * disc / HUNDRED
            taxable = base - discount_amount
        else:
            discount_amount = sub * disc / HUNDRED
            taxable = sub - discount_amount
        gst_amount = taxable * rate / HUNDRED
        total = taxable + gst_amount + charge

    return BillFigures(
        original_subtotal=guard(sub),
        discount_percent=disc,
        discount_amount=guard(discount_amount),
        service_charge=guard(charge),
        gst_rate=rate,
        gst_type=gst_type,
        gst_amount=guard(gst_amount),
        taxable_amount=guard(taxable),
        total=guard(total),
    )
