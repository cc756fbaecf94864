from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Header, APIRouter, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Literal
from datetime import datetime
import os
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from tableside_shared import (
    RequestIDMiddleware,
    configure_cors,
    add_standard_health,
    setup_json_logging,
)

from . import service
from .billing import GST_EXCLUSIVE, OrderLine, BillFigures
from .errors import OrderError, ValidationError
from .events import EventPublisher, FanoutNotifier, Notifier, RestaurantHub
from .models import engine, get_session, init_db, seed_demo_restaurant
from .receipts import ReceiptSnapshot, render_text
from .service import MenuItemIn, OrderLineIn


log = logging.getLogger("tableside.api")

hub = RestaurantHub()
notifier = FanoutNotifier(hub, EventPublisher())


def _db_ok() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    seed_demo_restaurant()
    await hub.start()
    try:
        yield
    finally:
        await hub.stop()


app = FastAPI(title="Tableside Orders API", version="0.1.0", lifespan=lifespan)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", "*"))
add_standard_health(app, checks={"db": _db_ok})

router = APIRouter()


@app.exception_handler(OrderError)
async def _order_error(request: Request, exc: OrderError):
    if exc.status_code >= 500:
        log.error("request failed: %s", exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def _request_invalid(request: Request, exc: RequestValidationError):
    # Submitted values are not echoed back.
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": errors})


def get_notifier() -> Notifier:
    return notifier


def acting_restaurant(x_restaurant_id: Optional[int] = Header(default=None, alias="X-Restaurant-ID")) -> int:
    # Set by the upstream auth layer for staff sessions.
    if x_restaurant_id is None or x_restaurant_id <= 0:
        raise HTTPException(status_code=401, detail="restaurant session required")
    return int(x_restaurant_id)


# Schemas
class RestaurantCreate(BaseModel):
    name: str
    gst_number: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class RestaurantOut(BaseModel):
    id: int
    name: str
    gst_number: Optional[str]
    phone: Optional[str]
    address: Optional[str]
    submit_disabled: bool
    model_config = ConfigDict(from_attributes=True)


class MenuItemOut(BaseModel):
    id: int
    restaurant_id: int
    category: str
    name: str
    description: Optional[str]
    is_veg: bool
    price: float
    has_half: bool
    half_price: Optional[float]
    is_enabled: bool
    model_config = ConfigDict(from_attributes=True)


class EnabledReq(BaseModel):
    enabled: bool


class OrderCreate(BaseModel):
    restaurant_id: int
    table_no: int
    items: List[OrderLineIn]
    total: float


class StaffOrderCreate(BaseModel):
    table_no: int
    items: List[OrderLineIn]
    total: float


class OrderOut(BaseModel):
    id: str
    restaurant_id: int
    table_no: int
    items: List[OrderLine]
    total: float
    status: str
    settlement_id: Optional[str] = None
    receipt: Optional[ReceiptSnapshot] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _order_out(o) -> OrderOut:
    return OrderOut.model_validate(service.order_payload(o))


class BillReq(BaseModel):
    discount_percent: float = Field(default=0, ge=0, le=100)
    service_charge: float = Field(default=0, ge=0)
    gst_rate: float = Field(default=0, ge=0)
    gst_type: Literal["inclusive", "exclusive"] = GST_EXCLUSIVE
    message: Optional[str] = None


class PreviewOut(BaseModel):
    table_no: int
    order_ids: List[str]
    grouped_items: List[OrderLine]
    figures: BillFigures
    display: Dict[str, str]


class ReceiptOut(BaseModel):
    receipt: ReceiptSnapshot
    display: Dict[str, str]
    table_no: int
    completed_at: datetime


class GateOut(BaseModel):
    restaurant_id: int
    submit_disabled: bool


# Restaurants and menu
@router.post("/restaurants", response_model=RestaurantOut)
def create_restaurant(req: RestaurantCreate, s: Session = Depends(get_session)):
    return service.create_restaurant(s, req.name, req.gst_number, req.phone, req.address)


@router.post("/menu", response_model=MenuItemOut)
def create_menu_item(req: MenuItemIn, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session)):
    return service.create_menu_item(s, rid, req)


@router.get("/restaurants/{restaurant_id}/menu", response_model=List[MenuItemOut])
def get_menu(restaurant_id: int, include_disabled: bool = False, s: Session = Depends(get_session)):
    return service.list_menu(s, restaurant_id, include_disabled=include_disabled)


@router.post("/menu/{item_id}/enabled", response_model=MenuItemOut)
def set_menu_item_enabled(item_id: int, req: EnabledReq, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session)):
    return service.set_menu_item_enabled(s, rid, item_id, req.enabled)


@router.put("/menu/{item_id}", response_model=MenuItemOut)
def update_menu_item(item_id: int, req: MenuItemIn, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session)):
    return service.update_menu_item(s, rid, item_id, req)


@router.delete("/menu/{item_id}")
def delete_menu_item(item_id: int, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session)):
    return service.delete_menu_item(s, rid, item_id)


# Orders
@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order(req: OrderCreate, s: Session = Depends(get_session), n: Notifier = Depends(get_notifier)):
    o = service.create_order(s, req.restaurant_id, req.table_no, req.items, req.total, n)
    return _order_out(o)


@router.post("/staff/orders", response_model=OrderOut, status_code=201)
def create_staff_order(req: StaffOrderCreate, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session), n: Notifier = Depends(get_notifier)):
    # Staff can take orders while diner submission is paused.
    o = service.create_order(s, rid, req.table_no, req.items, req.total, n, honor_gate=False)
    return _order_out(o)


@router.get("/orders", response_model=List[OrderOut])
def list_orders(
    status: Optional[str] = None,
    table_no: Optional[int] = None,
    since: Optional[datetime] = None,
    limit: int = 200,
    rid: int = Depends(acting_restaurant),
    s: Session = Depends(get_session),
):
    return [_order_out(o) for o in service.list_orders(s, rid, status=status, table_no=table_no, since=since, limit=limit)]


def _month_list(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    try:
        return [int(p) for p in raw.split(",") if p.strip()]
    except ValueError:
        raise ValidationError.field("months", "must be a comma separated list of month numbers")


@router.get("/orders/export")
def export_orders(
    year: Optional[int] = None,
    months: Optional[str] = None,
    from_iso: Optional[datetime] = None,
    to_iso: Optional[datetime] = None,
    rid: int = Depends(acting_restaurant),
    s: Session = Depends(get_session),
):
    rows = service.export_settlements(s, rid, from_dt=from_iso, to_dt=to_iso, year=year, months=_month_list(months))
    return {"rows": rows}


@router.post("/orders/{order_id}/recurring", response_model=OrderOut)
def advance_to_recurring(order_id: str, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session), n: Notifier = Depends(get_notifier)):
    return _order_out(service.advance_to_recurring(s, order_id, rid, n))


@router.post("/orders/{order_id}/reopen", response_model=OrderOut)
def move_to_recurring(order_id: str, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session), n: Notifier = Depends(get_notifier)):
    return _order_out(service.move_to_recurring(s, order_id, rid, n))


@router.delete("/orders/{order_id}")
def delete_order(order_id: str, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session), n: Notifier = Depends(get_notifier)):
    return service.delete_order(s, order_id, rid, n)


@router.get("/orders/{order_id}/receipt", response_model=ReceiptOut)
def reprint(order_id: str, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session)):
    rp = service.reprint(s, order_id, rid)
    return ReceiptOut(receipt=rp.receipt, display=rp.receipt.display(), table_no=rp.table_no, completed_at=rp.completed_at)


@router.get("/orders/{order_id}/receipt.txt", response_class=PlainTextResponse)
def reprint_text(order_id: str, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session)):
    rp = service.reprint(s, order_id, rid)
    rest = service.get_restaurant(s, rid)
    return render_text(rp.receipt, restaurant_name=rest.name, gst_number=rest.gst_number)


# Tables
@router.post("/tables/{table_no}/preview", response_model=PreviewOut)
def preview_bill(table_no: int, req: BillReq, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session)):
    pv = service.preview_bill(s, rid, table_no, req.discount_percent, req.service_charge, req.gst_rate, req.gst_type)
    return PreviewOut(
        table_no=pv.table_no,
        order_ids=pv.order_ids,
        grouped_items=pv.grouped_items,
        figures=pv.figures,
        display=pv.figures.display(),
    )


@router.post("/tables/{table_no}/settle", response_model=ReceiptOut)
def settle_table(table_no: int, req: BillReq, rid: int = Depends(acting_restaurant), s: Session = Depends(get_session), n: Notifier = Depends(get_notifier)):
    snap = service.settle_table(
        s, rid, table_no, req.discount_percent, req.service_charge, req.gst_rate, req.gst_type, req.message, n,
    )
    return ReceiptOut(receipt=snap, display=snap.display(), table_no=table_no, completed_at=snap.settled_at)


# Submit gate
@router.post("/submit-gate/toggle", response_model=GateOut)
def toggle_submit_gate(rid: int = Depends(acting_restaurant), s: Session = Depends(get_session), n: Notifier = Depends(get_notifier)):
    return GateOut(restaurant_id=rid, submit_disabled=service.toggle_submit_gate(s, rid, n))


@router.get("/restaurants/{restaurant_id}/submit-gate", response_model=GateOut)
def submit_gate_status(restaurant_id: int, s: Session = Depends(get_session)):
    return GateOut(restaurant_id=restaurant_id, submit_disabled=service.submit_gate_status(s, restaurant_id))


@app.websocket("/ws")
async def staff_feed(ws: WebSocket, restaurant_id: int):
    await hub.connect(restaurant_id, ws)
    try:
        while True:
            # Clients only listen; anything they send is a keepalive.
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(restaurant_id, ws)


app.include_router(router)
