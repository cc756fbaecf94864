import os
from typing import Any, Dict, List, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("TABLEORDER_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("EVENTS_ENABLED", "false")

from apps.tableorder.app import service  # noqa: E402
from apps.tableorder.app.events import Notifier  # noqa: E402
from apps.tableorder.app.models import Base, MenuItem, Restaurant  # noqa: E402


class RecordingNotifier(Notifier):
    """Collects emitted events instead of delivering them."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [e for e, _ in self.events]


@pytest.fixture()
def engine():
    """
    Isolated in-memory SQLite engine; StaticPool keeps one connection so every
    session sees the same database.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def menu(session) -> Dict[str, Any]:
    """
    Restaurant with Tea, Samosa, a half-portion dish and a disabled item, plus
    a second restaurant for ownership checks.
    """
    r = Restaurant(name="Chai Point", gst_number="29ABCDE1234F1Z5")
    other = Restaurant(name="Elsewhere")
    session.add_all([r, other])
    session.flush()
    tea = MenuItem(restaurant_id=r.id, category="Beverages", name="Tea", is_veg=True, price=20.0)
    samosa = MenuItem(restaurant_id=r.id, category="Snacks", name="Samosa", is_veg=True, price=15.0)
    curry = MenuItem(
        restaurant_id=r.id, category="Mains", name="Butter Chicken", is_veg=False,
        price=320.0, has_half=True, half_price=180.0,
    )
    off = MenuItem(restaurant_id=r.id, category="Snacks", name="Pakora", is_veg=True, price=30.0, is_enabled=False)
    foreign = MenuItem(restaurant_id=other.id, category="Beverages", name="Coffee", is_veg=True, price=40.0)
    session.add_all([tea, samosa, curry, off, foreign])
    session.commit()
    return {
        "rid": r.id,
        "other_rid": other.id,
        "tea": tea,
        "samosa": samosa,
        "curry": curry,
        "off": off,
        "foreign": foreign,
    }


def line(item: MenuItem, qty: int = 1, portion: str = "full", price: float = None, **extra) -> service.OrderLineIn:
    if price is None:
        price = item.half_price if portion == "half" else item.price
    return service.OrderLineIn(
        menu_item_id=item.id, name=item.name, is_veg=item.is_veg,
        price=price, quantity=qty, portion=portion, **extra,
    )


def place(s: Session, rid: int, table_no: int, lines: List[service.OrderLineIn], notifier: Notifier):
    total = sum(ln.price * ln.quantity for ln in lines)
    return service.create_order(s, rid, table_no, lines, total, notifier)


@pytest.fixture()
def client(engine, notifier):
    """
    TestClient bound to the isolated engine and the recording notifier.
    """
    from apps.tableorder.app import main

    def _session():
        with Session(engine) as s:
            yield s

    main.app.dependency_overrides[main.get_session] = _session
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
