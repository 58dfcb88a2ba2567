"""
SQLAlchemy ORM Models for Order Storage

Four tables hold one order:

    orders      one row per order            PK (order_uid)
    deliveries  one row per order            PK (order_uid) -> orders
    payments    one row per order            PK (order_uid) -> orders
    items       one row per line item        PK (order_uid, chrt_id) -> orders

All four are written in one transaction by OrderRepository.create(), so an
order is either fully present or absent.

Column types are kept portable (no PostgreSQL-only types) so the same models
run against PostgreSQL in production and in-memory SQLite in unit tests.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ==============================================================================
# DECLARATIVE BASE
# ==============================================================================


class Base(DeclarativeBase):
    """Base class for all order storage models."""

    pass


# ==============================================================================
# ORDERS
# ==============================================================================


class OrderRecord(Base):
    """Root order row. A second insert with the same order_uid is a duplicate."""

    __tablename__ = "orders"

    order_uid: Mapped[str] = mapped_column(
        String(64), primary_key=True, comment="Order identifier assigned by the producer"
    )
    track_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    entry: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    locale: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    internal_signature: Mapped[str] = mapped_column(Text, nullable=False, default="")
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    delivery_service: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    shardkey: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    sm_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Indexed: GetLatest orders by this column
    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="Order creation timestamp (UTC) from the Kafka message",
    )

    oof_shard: Mapped[str] = mapped_column(String(16), nullable=False, default="")

    __table_args__ = ({"comment": "Orders consumed from the orders topic"},)

    def __repr__(self) -> str:
        return f"<OrderRecord(order_uid={self.order_uid}, date_created={self.date_created})>"


# ==============================================================================
# DELIVERIES
# ==============================================================================


class DeliveryRecord(Base):
    """Delivery details, 1:1 with orders."""

    __tablename__ = "deliveries"

    order_uid: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.order_uid"), primary_key=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    zip: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    city: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    region: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")


# ==============================================================================
# PAYMENTS
# ==============================================================================


class PaymentRecord(Base):
    """Payment details, 1:1 with orders. Amounts are integer minor units."""

    __tablename__ = "payments"

    order_uid: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.order_uid"), primary_key=True
    )
    transaction: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    request_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="")
    provider: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payment_dt: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bank: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    delivery_cost: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    goods_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    custom_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


# ==============================================================================
# ITEMS
# ==============================================================================


class ItemRecord(Base):
    """Line items, many per order. Identity is (order_uid, chrt_id)."""

    __tablename__ = "items"

    order_uid: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.order_uid"), primary_key=True, index=True
    )
    chrt_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    track_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    rid: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    sale: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    size: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    total_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    nm_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    brand: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
