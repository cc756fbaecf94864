from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

from .billing import OrderLine, calculate, money, presented


class ReceiptSnapshot(BaseModel):
    """
    Frozen result of one settlement. Stored on every order it covers and
    replayed as-is for reprint and export; never re-derived from the menu.
    """

    model_config = ConfigDict(frozen=True)

    settlement_id: str
    settled_at: datetime
    table_no: Optional[int] = None
    order_ids: List[str] = []
    grouped_items: List[OrderLine]
    original_subtotal: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    service_charge: Decimal
    gst_rate: Decimal
    gst_type: str
    gst_amount: Decimal
    taxable_amount: Decimal
    total: Decimal
    message: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe form written to the order row (decimals as strings)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ReceiptSnapshot":
        return cls.model_validate(record)

    def display(self) -> Dict[str, str]:
        return presented(self)


def build(
    grouped_items: List[OrderLine],
    original_subtotal,
    discount_percent,
    service_charge,
    gst_rate,
    gst_type: str,
    message: Optional[str],
    *,
    settlement_id: str,
    settled_at: datetime,
    table_no: Optional[int] = None,
    order_ids: Optional[List[str]] = None,
) -> ReceiptSnapshot:
    figures = calculate(
        original_subtotal,
        discount_percent=discount_percent,
        gst_rate=gst_rate,
        gst_type=gst_type,
        service_charge=service_charge,
    )
    return ReceiptSnapshot(
        settlement_id=settlement_id,
        settled_at=settled_at,
        table_no=table_no,
        order_ids=list(order_ids or []),
        grouped_items=list(grouped_items),
        original_subtotal=figures.original_subtotal,
        discount_percent=figures.discount_percent,
        discount_amount=figures.discount_amount,
        service_charge=figures.service_charge,
        gst_rate=figures.gst_rate,
        gst_type=figures.gst_type,
        gst_amount=figures.gst_amount,
        taxable_amount=figures.taxable_amount,
        total=figures.total,
        message=(message or None),
    )


RECEIPT_WIDTH = 40


def _row(left: str, right: str, width: int = RECEIPT_WIDTH) -> str:
    space = max(1, width - len(left) - len(right))
    return f"{left}{' ' * space}{right}"


def _pct(value: Decimal) -> str:
    # 5.000 -> "5", 12.5 -> "12.5"
    return format(value.normalize(), "f")


def render_text(snapshot: ReceiptSnapshot, restaurant_name: str = "", gst_number: Optional[str] = None) -> str:
    """Fixed-width receipt for thermal printers, built only from the snapshot."""
    rule = "-" * RECEIPT_WIDTH
    out: List[str] = []
    if restaurant_name:
        out.append(restaurant_name.center(RECEIPT_WIDTH).rstrip())
    if gst_number:
        out.append(f"GSTIN: {gst_number}".center(RECEIPT_WIDTH).rstrip())
    out.append(_row(f"Table {snapshot.table_no}" if snapshot.table_no else "Counter", snapshot.settled_at.strftime("%Y-%m-%d %H:%M")))
    out.append(rule)
    for ln in snapshot.grouped_items:
        name = ln.name if ln.portion == "full" else f"{ln.name} (half)"
        out.append(name[:RECEIPT_WIDTH])
        out.append(_row(f"  {ln.quantity} x {money(ln.price)}", str(money(ln.extension()))))
    out.append(rule)
    shown = snapshot.display()
    out.append(_row("Subtotal", shown["original_subtotal"]))
    if snapshot.discount_percent:
        out.append(_row(f"Discount ({_pct(snapshot.discount_percent)}%)", f"-{shown['discount_amount']}"))
    out.append(_row("Service Charge", shown["service_charge"]))
    out.append(_row("Taxable Amount", shown["taxable_amount"]))
    if snapshot.gst_rate:
        out.append(_row(f"GST ({_pct(snapshot.gst_rate)}% {snapshot.gst_type})", shown["gst_amount"]))
    out.append(rule)
    out.append(_row("Grand Total", shown["total"]))
    if snapshot.message:
        out.append("")
        out.append(snapshot.message.center(RECEIPT_WIDTH).rstrip())
    return "\n".join(out) + "\n"


def export_rows(orders: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    One row per grouped line per settlement. A settlement that covered several
    orders is exported once; orders without a stored receipt are skipped.
    """
    rows: List[Dict[str, Any]] = []
    seen: set = set()
    for o in orders:
        record = getattr(o, "receipt_details", None)
        if not record:
            continue
        snap = ReceiptSnapshot.from_record(record)
        if snap.settlement_id in seen:
            continue
        seen.add(snap.settlement_id)
        for ln in snap.grouped_items:
            rows.append(
                {
                    "settlement_id": snap.settlement_id,
                    "completed_at": snap.settled_at.isoformat(),
                    "table_no": snap.table_no if snap.table_no is not None else o.table_no,
                    "item": ln.name,
                    "portion": ln.portion,
                    "quantity": ln.quantity,
                    "price": str(money(ln.price)),
                    "amount": str(money(ln.extension())),
                    "subtotal": str(money(snap.original_subtotal)),
                    "discount_percent": _pct(snap.discount_percent),
                    "discount_amount": str(money(snap.discount_amount)),
                    "service_charge": str(money(snap.service_charge)),
                    "taxable_amount": str(money(snap.taxable_amount)),
                    "gst_rate": _pct(snap.gst_rate),
                    "gst_type": snap.gst_type,
                    "gst_amount": str(money(snap.gst_amount)),
                    "total": str(money(snap.total)),
                    "message": snap.message,
                }
            )
    return rows
