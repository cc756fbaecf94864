import os
import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import create_engine, String, Integer, Boolean, DateTime, Float, JSON, ForeignKey, Index, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, Session, relationship


log = logging.getLogger("tableside.storage")


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


DB_URL = _env_or("TABLEORDER_DB_URL", _env_or("DB_URL", "sqlite+pysqlite:////tmp/tableorder.db"))
DB_SCHEMA = os.getenv("DB_SCHEMA") if not DB_URL.startswith("sqlite") else None


def _fk(target: str) -> str:
    return f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target


class Base(DeclarativeBase):
    pass


class Restaurant(Base):
    __tablename__ = "restaurants"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    gst_number: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    address: Mapped[Optional[str]] = mapped_column(String(255), default=None)
    # Submit gate: when set, diners cannot place new orders.
    submit_disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    items: Mapped[List["MenuItem"]] = relationship(back_populates="restaurant")


class MenuItem(Base):
    __tablename__ = "menu_items"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    restaurant_id: Mapped[int] = mapped_column(Integer, ForeignKey(_fk("restaurants.id")))
    category: Mapped[str] = mapped_column(String(120))
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    is_veg: Mapped[bool] = mapped_column(Boolean, default=False)
    price: Mapped[float] = mapped_column(Float)
    has_half: Mapped[bool] = mapped_column(Boolean, default=False)
    half_price: Mapped[Optional[float]] = mapped_column(Float, default=None)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    restaurant: Mapped[Restaurant] = relationship(back_populates="items")


class Order(Base):
    """
    Lines and, once settled, the receipt are stored on the row itself so one
    read reproduces the historical bill without touching the current menu.
    """

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_restaurant_status_table", "restaurant_id", "status", "table_no"),
        *([{"schema": DB_SCHEMA}] if DB_SCHEMA else []),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(Integer)
    table_no: Mapped[int] = mapped_column(Integer)  # 0 = counter order
    items: Mapped[list] = mapped_column(JSON, default=list)
    total: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(16), default="live")  # live|recurring|past
    settlement_id: Mapped[Optional[str]] = mapped_column(String(36), default=None, index=True)
    receipt_details: Mapped[Optional[dict]] = mapped_column(JSON, default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    # Bumped on every ORM update; a stale write fails instead of overwriting.
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


def make_engine(url: str = DB_URL):
    if url.startswith("sqlite"):
        return create_engine(url, future=True, connect_args={"check_same_thread": False})
    return create_engine(url, future=True, pool_pre_ping=True)


engine = make_engine()


def get_session():
    with Session(engine) as s:
        yield s


def ensure_sqlite_migrations(eng) -> None:
    # Older SQLite files predate settlement grouping and row versions.
    if not str(eng.url).startswith("sqlite"):
        return
    with eng.begin() as conn:
        cols = [row[1] for row in conn.exec_driver_sql("PRAGMA table_info(orders)").fetchall()]
        if cols and "settlement_id" not in cols:
            conn.exec_driver_sql("ALTER TABLE orders ADD COLUMN settlement_id VARCHAR(36)")
        if cols and "version" not in cols:
            conn.exec_driver_sql("ALTER TABLE orders ADD COLUMN version INTEGER NOT NULL DEFAULT 1")
        rcols = [row[1] for row in conn.exec_driver_sql("PRAGMA table_info(restaurants)").fetchall()]
        if rcols and "submit_disabled" not in rcols:
            conn.exec_driver_sql("ALTER TABLE restaurants ADD COLUMN submit_disabled BOOLEAN DEFAULT 0")


def init_db(eng=None) -> None:
    eng = eng or engine
    Base.metadata.create_all(eng)
    ensure_sqlite_migrations(eng)


def seed_demo_restaurant(eng=None) -> None:
    """
    Seed one demo restaurant with a small menu in ENV=dev/test on SQLite, only
    when no restaurant exists yet.
    """
    eng = eng or engine
    env = os.getenv("ENV", "dev").lower()
    if env not in ("dev", "test") or not str(eng.url).startswith("sqlite"):
        return
    with Session(eng) as s:
        existing = s.scalar(select(func.count(Restaurant.id)))
        if existing and int(existing) > 0:
            return
        r = Restaurant(name="Chai Point Demo", gst_number="29ABCDE1234F1Z5")
        s.add(r)
        s.flush()
        s.add_all(
            [
                MenuItem(restaurant_id=r.id, category="Beverages", name="Tea", is_veg=True, price=20.0),
                MenuItem(restaurant_id=r.id, category="Snacks", name="Samosa", is_veg=True, price=15.0),
                MenuItem(
                    restaurant_id=r.id, category="Mains", name="Butter Chicken", is_veg=False,
                    price=320.0, has_half=True, half_price=180.0,
                ),
            ]
        )
        s.commit()
        log.info("seeded demo restaurant id=%s", r.id)
