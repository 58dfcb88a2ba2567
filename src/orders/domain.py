"""
Order Domain Model

Pydantic models for the order aggregate exactly as it travels on the Kafka
topic and as it is served to readers: an Order owning one Delivery, one
Payment and zero or more Items.

The same objects are stored in the cache, so they are frozen: an order is
immutable once created and a cached value can be handed to any number of
concurrent readers.

MESSAGE FORMAT (one JSON document per Kafka message):
{
  "order_uid": "b563feb7b2b84b6test",
  "track_number": "WBILMTESTTRACK",
  "entry": "WBIL",
  "delivery": {"name": ..., "phone": ..., "zip": ..., "city": ...,
               "address": ..., "region": ..., "email": ...},
  "payment": {"transaction": ..., "request_id": ..., "currency": "USD",
              "provider": ..., "amount": 1817, "payment_dt": 1637907727,
              "bank": ..., "delivery_cost": 1500, "goods_total": 317,
              "custom_fee": 0},
  "items": [{"chrt_id": 9934930, "track_number": ..., "price": 453,
             "rid": ..., "name": ..., "sale": 30, "size": "0",
             "total_price": 317, "nm_id": 2389212, "brand": ...,
             "status": 202}],
  "locale": "en", "internal_signature": "", "customer_id": "test",
  "delivery_service": "meest", "shardkey": "9", "sm_id": 99,
  "date_created": "2021-11-26T06:22:19Z", "oof_shard": "1"
}
"""

from datetime import datetime, timezone
from typing import List, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.orders.errors import OrderDecodeError


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class Delivery(_Frozen):
    """Recipient details. One per order."""

    name: str = ""
    phone: str = ""
    zip: str = ""
    city: str = ""
    address: str = ""
    region: str = ""
    email: str = ""


class Payment(_Frozen):
    """
    Payment details. One per order.

    transaction is expected to equal the order_uid by convention; nothing
    enforces it.
    """

    transaction: str = ""
    request_id: str = ""
    currency: str = ""
    provider: str = ""
    amount: int = 0
    payment_dt: int = 0
    bank: str = ""
    delivery_cost: int = 0
    goods_total: int = 0
    custom_fee: int = 0


class Item(_Frozen):
    """One line item. Identity within an order is chrt_id."""

    chrt_id: int
    track_number: str = ""
    price: int = 0
    rid: str = ""
    name: str = ""
    sale: int = 0
    size: str = ""
    total_price: int = 0
    nm_id: int = 0
    brand: str = ""
    status: int = 0


class Order(_Frozen):
    """
    Root aggregate. order_uid is assigned by the producer and never changes.

    delivery and payment are required: a message without them is malformed.
    """

    order_uid: str = Field(min_length=1)
    track_number: str = ""
    entry: str = ""
    delivery: Delivery
    payment: Payment
    items: List[Item] = Field(default_factory=list)
    locale: str = ""
    internal_signature: str = ""
    customer_id: str = ""
    delivery_service: str = ""
    shardkey: str = ""
    sm_id: int = 0
    date_created: datetime
    oof_shard: str = ""

    @field_validator("date_created")
    @classmethod
    def _normalize_to_utc(cls, value: datetime) -> datetime:
        """Timestamps without an offset are taken as UTC; all are stored as UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_dict(self) -> dict:
        """JSON-compatible dictionary (date_created as RFC 3339)."""
        return self.model_dump(mode="json")

    def __str__(self) -> str:
        return f"Order {self.order_uid} - {self.customer_id} - {len(self.items)} items"


def decode_order(payload: Union[bytes, str]) -> Order:
    """
    Decode a Kafka message value into an Order.

    Args:
        payload: Raw message value (UTF-8 JSON)

    Returns:
        Validated Order

    Raises:
        OrderDecodeError: Payload is empty, not JSON, or not an order
    """
    if payload is None or len(payload) == 0:
        raise OrderDecodeError("empty message payload")

    try:
        return Order.model_validate_json(payload)
    except ValidationError as e:
        raise OrderDecodeError(f"invalid order payload: {e.error_count()} errors: {e}") from e
