"""
db.py — Persistence Layer (SQLAlchemy)

Tables:
    - products / product_specs: catalog and per-variant stock
    - cart_items: one row per (user, cart line)
    - orders / order_items: order header and immutable line snapshots
    - payments: processed payment confirmations, one per transaction id
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# --- Catalog ---

class ProductRow(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    original_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    images: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="published")
    sales_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    specs: Mapped[list["ProductSpecRow"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", order_by="ProductSpecRow.id"
    )

    @property
    def first_image(self) -> str:
        return self.images[0] if self.images else ""


class ProductSpecRow(Base):
    __tablename__ = "product_specs"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(String(100), nullable=False)
    price_adjustment: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product: Mapped[ProductRow] = relationship(back_populates="specs")


# --- Cart ---

class CartItemRow(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "line_id", name="uq_cart_user_line"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    line_id: Mapped[str] = mapped_column(String(32), nullable=False)
    line_key: Mapped[str] = mapped_column(String(512), nullable=False)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), nullable=False)
    spec_id: Mapped[Optional[str]] = mapped_column(ForeignKey("product_specs.id"), nullable=True)
    variant_selection: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    product: Mapped[ProductRow] = relationship()
    spec: Mapped[Optional[ProductSpecRow]] = relationship()


# --- Orders ---

class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    subtotal_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    shipping_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    shipping_address: Mapped[dict] = mapped_column(JSON, nullable=False)
    remark: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items: Mapped[list["OrderItemRow"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItemRow.id"
    )


class OrderItemRow(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    # Snapshot columns; no foreign key to products
    product_id: Mapped[str] = mapped_column(String(50), nullable=False)
    spec_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    image: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    variant_selection: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    order: Mapped[OrderRow] = relationship(back_populates="items")


class PaymentRow(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    trade_state: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


# --- Engine / sessions ---

def _use_immediate_transactions(engine):
    """Takes the SQLite write lock at BEGIN instead of at the first write."""

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        # pysqlite must not emit its own BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(url: str = DATABASE_URL) -> sessionmaker:
    """
    Creates the engine, ensures all tables exist and returns a session factory.

    In-memory SQLite databases share one connection (StaticPool) so that all
    sessions, including those opened by worker threads, see the same data.
    File-backed SQLite opens every transaction with BEGIN IMMEDIATE, since
    SQLite ignores SELECT ... FOR UPDATE and cart edits read before they write.
    """
    kwargs = {}
    in_memory = False
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        in_memory = ":memory:" in url or url in ("sqlite://", "sqlite:///")
        if in_memory:
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite") and not in_memory:
        _use_immediate_transactions(engine)
    Base.metadata.create_all(engine)
    log.info(f"Datenbank initialisiert: {engine.url.render_as_string(hide_password=True)}")
    return sessionmaker(engine, expire_on_commit=False)


DEMO_PRODUCTS = [
    {
        "id": "prod-headphones",
        "name": "High-Quality Wireless Headphones",
        "description": "Experience immersive sound with these noise-cancelling headphones.",
        "price": 15000,
        "original_price": 20000,
        "stock": 100,
        "images": ["/assets/images/products/product-1.png"],
        "category": "Electronics",
        "specs": [
            {"id": "spec-headphones-black", "name": "color", "value": "black",
             "price_adjustment": 0, "stock": 60},
            {"id": "spec-headphones-silver", "name": "color", "value": "silver",
             "price_adjustment": 1000, "stock": 40},
        ],
    },
    {
        "id": "prod-backpack",
        "name": "Stylish Leather Backpack",
        "description": "A durable and stylish backpack for daily use.",
        "price": 8000,
        "original_price": 10000,
        "stock": 50,
        "images": ["/assets/images/products/product-2.png"],
        "category": "Bags",
        "specs": [],
    },
]


def seed_catalog(session_factory: sessionmaker, products=DEMO_PRODUCTS) -> int:
    """Inserts the demo catalog if the products table is empty. Returns rows added."""
    with session_factory.begin() as session:
        if session.scalar(select(ProductRow.id).limit(1)) is not None:
            return 0
        for data in products:
            data = dict(data)
            specs = data.pop("specs", [])
            product = ProductRow(**data)
            product.specs = [ProductSpecRow(**spec) for spec in specs]
            session.add(product)
    log.info(f"Demo-Katalog angelegt ({len(products)} Produkte).")
    return len(products)
