from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, not_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import receipts
from .billing import (
    GST_EXCLUSIVE,
    PORTION_HALF,
    PORTIONS,
    PRICE_EPSILON,
    BillFigures,
    OrderLine,
    calculate,
    consolidate,
    to_decimal,
)
from .errors import (
    NotFound,
    OrderError,
    PreconditionFailed,
    SubmitGateClosed,
    TransientStorageError,
    ValidationError,
)
from .events import (
    NEW_ORDER,
    ORDER_DELETED,
    ORDER_UPDATED,
    ORDERS_COMPLETED,
    SUBMIT_GATE_UPDATED,
    Notifier,
)
from .models import MenuItem, Order, Restaurant
from .order_state import (
    ACKNOWLEDGE,
    LIVE,
    PAST,
    RECURRING,
    REOPEN,
    SETTLE,
    STATUSES,
    advance,
    check_owner,
    utcnow,
)
from .receipts import ReceiptSnapshot

log = logging.getLogger("tableside.orders")


class OrderLineIn(BaseModel):
    """
    A cart line as submitted by the diner app. Checked against the menu; the
    stored name, veg flag and category always come from the menu row.
    """

    menu_item_id: int
    name: str = ""
    is_veg: Optional[bool] = None
    price: float = Field(gt=0, allow_inf_nan=False)
    quantity: int
    portion: str = "full"
    special_instructions: Optional[str] = None


class MenuItemIn(BaseModel):
    category: str
    name: str
    description: Optional[str] = None
    is_veg: bool
    price: float
    has_half: bool = False
    half_price: Optional[float] = None
    is_enabled: bool = True


class BillPreview(BaseModel):
    model_config = ConfigDict(frozen=True)

    table_no: int
    order_ids: List[str]
    grouped_items: List[OrderLine]
    figures: BillFigures


class Reprint(BaseModel):
    receipt: ReceiptSnapshot
    table_no: int
    completed_at: datetime


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def order_payload(o: Order) -> Dict[str, Any]:
    return {
        "id": o.id,
        "restaurant_id": o.restaurant_id,
        "table_no": o.table_no,
        "items": list(o.items or []),
        "total": o.total,
        "status": o.status,
        "settlement_id": o.settlement_id,
        "receipt": o.receipt_details,
        "created_at": _iso(o.created_at),
        "updated_at": _iso(o.updated_at),
    }


def _commit(s: Session, what: str) -> None:
    try:
        s.commit()
    except StaleDataError:
        s.rollback()
        log.warning("%s lost a concurrent update", what)
        raise PreconditionFailed("order changed concurrently; retry")
    except SQLAlchemyError as e:
        s.rollback()
        log.exception("%s failed", what)
        raise TransientStorageError() from e


def get_restaurant(s: Session, restaurant_id: int, *, lock: bool = False) -> Restaurant:
    stmt = select(Restaurant).where(Restaurant.id == restaurant_id)
    if lock:
        stmt = stmt.with_for_update()
    rest = s.execute(stmt).scalar_one_or_none()
    if rest is None:
        raise NotFound("restaurant not found")
    return rest


def _load_order(s: Session, order_id: str, restaurant_id: int) -> Order:
    o = s.get(Order, order_id)
    if o is None:
        raise NotFound("order not found")
    check_owner(o, restaurant_id)
    return o


def _check_table_no(table_no: Any) -> int:
    if isinstance(table_no, bool) or not isinstance(table_no, int) or table_no < 0:
        raise ValidationError.field("table_no", "must be a non-negative integer")
    return table_no


# ---------------------------------------------------------------------------
# Restaurants and menu
# ---------------------------------------------------------------------------


def create_restaurant(s: Session, name: str, gst_number: Optional[str] = None, phone: Optional[str] = None, address: Optional[str] = None) -> Restaurant:
    if not (name or "").strip():
        raise ValidationError.field("name", "is required")
    r = Restaurant(name=name.strip(), gst_number=gst_number or None, phone=phone or None, address=address or None)
    s.add(r)
    _commit(s, "create restaurant")
    s.refresh(r)
    return r


def _check_menu_item(req: MenuItemIn) -> None:
    errors = []
    if not req.category.strip():
        errors.append({"field": "category", "message": "is required"})
    if not req.name.strip():
        errors.append({"field": "name", "message": "is required"})
    if not req.price > 0:
        errors.append({"field": "price", "message": "must be greater than 0"})
    if req.has_half and (req.half_price is None or not req.half_price > 0):
        errors.append({"field": "half_price", "message": "must be greater than 0 when a half portion is offered"})
    if not req.has_half and req.half_price is not None:
        errors.append({"field": "half_price", "message": "must be empty when no half portion is offered"})
    if errors:
        raise ValidationError("validation failed", errors)


def create_menu_item(s: Session, restaurant_id: int, req: MenuItemIn) -> MenuItem:
    get_restaurant(s, restaurant_id)
    _check_menu_item(req)
    m = MenuItem(
        restaurant_id=restaurant_id,
        category=req.category.strip(),
        name=req.name.strip(),
        description=req.description,
        is_veg=req.is_veg,
        price=req.price,
        has_half=req.has_half,
        half_price=req.half_price,
        is_enabled=req.is_enabled,
    )
    s.add(m)
    _commit(s, "create menu item")
    s.refresh(m)
    return m


def list_menu(s: Session, restaurant_id: int, include_disabled: bool = False) -> List[MenuItem]:
    stmt = select(MenuItem).where(MenuItem.restaurant_id == restaurant_id)
    if not include_disabled:
        stmt = stmt.where(MenuItem.is_enabled.is_(True))
    return list(s.execute(stmt.order_by(MenuItem.category.asc(), MenuItem.id.asc())).scalars().all())


def _load_menu_item(s: Session, restaurant_id: int, item_id: int) -> MenuItem:
    m = s.get(MenuItem, item_id)
    if m is None:
        raise NotFound("menu item not found")
    check_owner(m, restaurant_id)
    return m


def set_menu_item_enabled(s: Session, restaurant_id: int, item_id: int, enabled: bool) -> MenuItem:
    m = _load_menu_item(s, restaurant_id, item_id)
    m.is_enabled = bool(enabled)
    _commit(s, "toggle menu item")
    s.refresh(m)
    return m


def update_menu_item(s: Session, restaurant_id: int, item_id: int, req: MenuItemIn) -> MenuItem:
    """
    Replace every editable field. Orders already placed keep the lines they
    stored, so a price change only affects new orders.
    """
    m = _load_menu_item(s, restaurant_id, item_id)
    _check_menu_item(req)
    m.category = req.category.strip()
    m.name = req.name.strip()
    m.description = req.description
    m.is_veg = req.is_veg
    m.price = req.price
    m.has_half = req.has_half
    m.half_price = req.half_price
    m.is_enabled = req.is_enabled
    _commit(s, "update menu item")
    s.refresh(m)
    log.info("menu item updated id=%s restaurant=%s", item_id, restaurant_id)
    return m


def delete_menu_item(s: Session, restaurant_id: int, item_id: int) -> Dict[str, Any]:
    m = _load_menu_item(s, restaurant_id, item_id)
    s.delete(m)
    _commit(s, "delete menu item")
    log.info("menu item deleted id=%s restaurant=%s", item_id, restaurant_id)
    return {"id": item_id, "deleted": True}


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def _priced_lines(s: Session, restaurant_id: int, lines: List[OrderLineIn]) -> List[OrderLine]:
    ids = {ln.menu_item_id for ln in lines}
    menu = {
        m.id: m
        for m in s.execute(
            select(MenuItem).where(MenuItem.id.in_(ids), MenuItem.restaurant_id == restaurant_id)
        ).scalars().all()
    }
    errors: List[Dict[str, str]] = []
    priced: List[OrderLine] = []
    for i, ln in enumerate(lines):
        prefix = f"items[{i}]"
        if ln.portion not in PORTIONS:
            errors.append({"field": f"{prefix}.portion", "message": "portion must be 'half' or 'full'"})
            continue
        if ln.quantity < 1:
            errors.append({"field": f"{prefix}.quantity", "message": "quantity must be at least 1"})
            continue
        m = menu.get(ln.menu_item_id)
        if m is None:
            errors.append({"field": f"{prefix}.menu_item_id", "message": f"menu item {ln.menu_item_id} not found"})
            continue
        if not m.is_enabled:
            errors.append({"field": f"{prefix}.menu_item_id", "message": f"{m.name} is not available"})
            continue
        if ln.portion == PORTION_HALF and not m.has_half:
            errors.append({"field": f"{prefix}.portion", "message": f"{m.name} has no half portion"})
            continue
        price = to_decimal(ln.price)
        if not price.is_finite() or price <= 0:
            errors.append({"field": f"{prefix}.price", "message": "price must be a positive number"})
            continue
        expected = m.half_price if ln.portion == PORTION_HALF else m.price
        if abs(price - to_decimal(expected)) > PRICE_EPSILON:
            errors.append(
                {
                    "field": f"{prefix}.price",
                    "message": f"price for {m.name} ({ln.portion}) does not match menu price (expected {expected:.2f})",
                }
            )
            continue
        priced.append(
            OrderLine(
                menu_item_id=m.id,
                name=m.name,
                is_veg=m.is_veg,
                price=ln.price,
                quantity=ln.quantity,
                portion=ln.portion,
                category=m.category,
                special_instructions=(ln.special_instructions or "").strip() or None,
            )
        )
    if errors:
        raise ValidationError("validation failed", errors)
    return priced


def create_order(
    s: Session,
    restaurant_id: int,
    table_no: int,
    lines: List[OrderLineIn],
    total: Any,
    notifier: Notifier,
    *,
    honor_gate: bool = True,
) -> Order:
    """
    Diner submission. The restaurant row is read with a lock so a concurrent
    gate toggle either lands before this check or after the insert commits.
    Staff orders pass `honor_gate=False`; they are validated the same way.
    """
    rest = get_restaurant(s, restaurant_id, lock=True)
    if honor_gate and rest.submit_disabled:
        raise SubmitGateClosed()
    table_no = _check_table_no(table_no)
    if not lines:
        raise ValidationError.field("items", "must be a non-empty list")
    priced = _priced_lines(s, restaurant_id, lines)

    try:
        declared = to_decimal(total) if total is not None else None
    except (ArithmeticError, TypeError, ValueError):
        declared = None
    if declared is None or not declared.is_finite() or declared <= 0:
        raise ValidationError.field("total", "must be a positive number")
    computed = sum((ln.extension() for ln in priced), Decimal(0))
    if abs(declared - computed) > PRICE_EPSILON:
        raise ValidationError.field("total", f"does not match item total (expected {computed:.2f})")

    now = utcnow()
    o = Order(
        id=str(uuid.uuid4()),
        restaurant_id=rest.id,
        table_no=table_no,
        items=[ln.model_dump() for ln in priced],
        total=float(declared),
        status=LIVE,
        created_at=now,
        updated_at=now,
    )
    s.add(o)
    _commit(s, "create order")
    log.info("order created id=%s restaurant=%s table=%s", o.id, restaurant_id, table_no)
    notifier.emit(NEW_ORDER, {"restaurant_id": restaurant_id, "order": order_payload(o)})
    return o


def list_orders(
    s: Session,
    restaurant_id: int,
    status: Optional[str] = None,
    table_no: Optional[int] = None,
    since: Optional[datetime] = None,
    limit: int = 200,
) -> List[Order]:
    if status is not None and status not in STATUSES:
        raise ValidationError.field("status", f"must be one of {', '.join(STATUSES)}")
    stmt = select(Order).where(Order.restaurant_id == restaurant_id)
    if status:
        stmt = stmt.where(Order.status == status)
    if table_no is not None:
        stmt = stmt.where(Order.table_no == table_no)
    if since is not None:
        stmt = stmt.where(Order.created_at >= since)
    stmt = stmt.order_by(Order.created_at.asc(), Order.id.asc()).limit(max(1, min(limit, 1000)))
    return list(s.execute(stmt).scalars().all())


def advance_to_recurring(s: Session, order_id: str, restaurant_id: int, notifier: Notifier) -> Order:
    o = _load_order(s, order_id, restaurant_id)
    advance(o, RECURRING, restaurant_id, action=ACKNOWLEDGE)
    _commit(s, "acknowledge order")
    log.info("order acknowledged id=%s table=%s", o.id, o.table_no)
    notifier.emit(ORDER_UPDATED, {"restaurant_id": restaurant_id, "order": order_payload(o)})
    return o


def _recurring_for_table(s: Session, restaurant_id: int, table_no: int) -> List[Order]:
    return list_orders(s, restaurant_id, status=RECURRING, table_no=table_no, limit=1000)


def preview_bill(
    s: Session,
    restaurant_id: int,
    table_no: int,
    discount_percent: Any = 0,
    service_charge: Any = 0,
    gst_rate: Any = 0,
    gst_type: str = GST_EXCLUSIVE,
) -> BillPreview:
    """Same figures settle_table will store, without writing anything."""
    table_no = _check_table_no(table_no)
    cons = consolidate(_recurring_for_table(s, restaurant_id, table_no))
    figures = calculate(
        cons.original_subtotal,
        discount_percent=discount_percent,
        gst_rate=gst_rate,
        gst_type=gst_type,
        service_charge=service_charge,
    )
    return BillPreview(table_no=table_no, order_ids=cons.order_ids, grouped_items=cons.grouped_items, figures=figures)


def settle_table(
    s: Session,
    restaurant_id: int,
    table_no: int,
    discount_percent: Any,
    service_charge: Any,
    gst_rate: Any,
    gst_type: str,
    message: Optional[str],
    notifier: Notifier,
) -> ReceiptSnapshot:
    """
    Close the table's tab: merge its recurring orders, compute the bill and
    flip every merged order to past with the same snapshot, in one commit.
    Orders carry a version column, so if any of them changed since they were
    read the whole commit is rejected and nothing is settled.
    """
    table_no = _check_table_no(table_no)
    orders = _recurring_for_table(s, restaurant_id, table_no)
    cons = consolidate(orders)
    now = utcnow()
    snapshot = receipts.build(
        cons.grouped_items,
        cons.original_subtotal,
        discount_percent,
        service_charge,
        gst_rate,
        gst_type,
        message,
        settlement_id=str(uuid.uuid4()),
        settled_at=now,
        table_no=table_no,
        order_ids=cons.order_ids,
    )
    record = snapshot.to_record()
    try:
        for o in orders:
            advance(o, PAST, restaurant_id, action=SETTLE, now=now)
            o.settlement_id = snapshot.settlement_id
            o.receipt_details = record
    except OrderError:
        s.rollback()
        raise
    _commit(s, "settle table")
    log.info(
        "table settled restaurant=%s table=%s orders=%d total=%s",
        restaurant_id, table_no, len(orders), snapshot.display()["total"],
    )
    notifier.emit(
        ORDERS_COMPLETED,
        {
            "restaurant_id": restaurant_id,
            "table_no": table_no,
            "settlement_id": snapshot.settlement_id,
            "orders": [order_payload(o) for o in orders],
        },
    )
    return snapshot


def reprint(s: Session, order_id: str, restaurant_id: int) -> Reprint:
    o = _load_order(s, order_id, restaurant_id)
    if o.status != PAST or not o.receipt_details:
        raise NotFound("no receipt found for this order")
    snap = ReceiptSnapshot.from_record(o.receipt_details)
    return Reprint(receipt=snap, table_no=o.table_no, completed_at=snap.settled_at)


def move_to_recurring(s: Session, order_id: str, restaurant_id: int, notifier: Notifier) -> Order:
    """
    Reopen a settled order. Its whole settlement group is reopened with it and
    every member loses the receipt, so no sibling keeps a bill that still
    counts the reopened order; the table is then settled again as one tab.
    """
    o = _load_order(s, order_id, restaurant_id)
    group = [o]
    if o.status == PAST and o.settlement_id:
        siblings = s.execute(
            select(Order).where(
                Order.restaurant_id == restaurant_id,
                Order.settlement_id == o.settlement_id,
                Order.status == PAST,
                Order.id != o.id,
            )
        ).scalars().all()
        group.extend(siblings)
    now = utcnow()
    try:
        for member in group:
            advance(member, RECURRING, restaurant_id, action=REOPEN, now=now)
            member.receipt_details = None
            member.settlement_id = None
    except OrderError:
        s.rollback()
        raise
    _commit(s, "reopen order")
    log.info("order reopened id=%s group=%d", o.id, len(group))
    for member in group:
        notifier.emit(ORDER_UPDATED, {"restaurant_id": restaurant_id, "order": order_payload(member)})
    return o


def delete_order(s: Session, order_id: str, restaurant_id: int, notifier: Notifier) -> Dict[str, Any]:
    o = _load_order(s, order_id, restaurant_id)
    table_no = o.table_no
    s.delete(o)
    _commit(s, "delete order")
    log.info("order deleted id=%s", order_id)
    notifier.emit(ORDER_DELETED, {"restaurant_id": restaurant_id, "id": order_id, "table_no": table_no})
    return {"id": order_id, "deleted": True}


def submit_gate_status(s: Session, restaurant_id: int) -> bool:
    return bool(get_restaurant(s, restaurant_id).submit_disabled)


def toggle_submit_gate(s: Session, restaurant_id: int, notifier: Notifier) -> bool:
    # NOT is evaluated by the database so concurrent toggles cannot both read the same value.
    try:
        res = s.execute(
            update(Restaurant)
            .where(Restaurant.id == restaurant_id)
            .values(submit_disabled=not_(Restaurant.submit_disabled))
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            s.rollback()
            raise NotFound("restaurant not found")
        value = bool(s.execute(select(Restaurant.submit_disabled).where(Restaurant.id == restaurant_id)).scalar_one())
    except SQLAlchemyError as e:
        s.rollback()
        log.exception("toggle submit gate failed")
        raise TransientStorageError() from e
    _commit(s, "toggle submit gate")
    s.expire_all()
    log.info("submit gate restaurant=%s disabled=%s", restaurant_id, value)
    notifier.emit(SUBMIT_GATE_UPDATED, {"restaurant_id": restaurant_id, "submit_disabled": value})
    return value


def _month_range(year: int, month: int):
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if month == 12 else datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def export_settlements(
    s: Session,
    restaurant_id: int,
    from_dt: Optional[datetime] = None,
    to_dt: Optional[datetime] = None,
    year: Optional[int] = None,
    months: Optional[List[int]] = None,
) -> List[Dict[str, Any]]:
    """
    Settled orders by the date they were placed. `year` alone covers the
    whole year, `year` with `months` covers just those months, and
    `from_dt`/`to_dt` bound a custom range. The filters combine.
    """
    stmt = select(Order).where(Order.restaurant_id == restaurant_id, Order.status == PAST)
    if months and year is None:
        raise ValidationError.field("year", "is required when months are given")
    if year is not None:
        if not 1 <= year <= 9999:
            raise ValidationError.field("year", "must be a calendar year")
        if months:
            bad = [m for m in months if not 1 <= m <= 12]
            if bad:
                raise ValidationError.field("months", f"invalid month(s): {', '.join(map(str, bad))}")
            ranges = [_month_range(year, m) for m in sorted(set(months))]
        else:
            ranges = [(datetime(year, 1, 1, tzinfo=timezone.utc), datetime(year + 1, 1, 1, tzinfo=timezone.utc))]
        stmt = stmt.where(or_(*[and_(Order.created_at >= a, Order.created_at < b) for a, b in ranges]))
    if from_dt is not None:
        stmt = stmt.where(Order.created_at >= from_dt)
    if to_dt is not None:
        stmt = stmt.where(Order.created_at <= to_dt)
    stmt = stmt.order_by(Order.updated_at.desc(), Order.id.asc())
    return receipts.export_rows(s.execute(stmt).scalars().all())
