"""
Order Storage and Serving Package

Everything between a decoded order event and a reader asking for an order:

┌───────────────┐     ┌──────────────┐     ┌──────────────────────────────┐
│ OrderConsumer │────▶│ OrderService │────▶│ OrderRepository (PostgreSQL) │
│ (src.consumer)│     │              │     │ orders/deliveries/payments/  │
└───────────────┘     │              │     │ items, one transaction       │
   readers ──────────▶│              │────▶│ OrderCache (LRU + TTL)       │
                      └──────────────┘     └──────────────────────────────┘

Package components:
- config.py: Configuration from environment variables
- domain.py: Order / Delivery / Payment / Item and payload decoding
- errors.py: Error taxonomy driving retry decisions
- tables.py: SQLAlchemy table models
- database.py: Engine, pooling and transactional sessions
- repository.py: Durable store adapter
- cache.py: In-memory order cache
- service.py: Order service (cache-aside reads, write-through writes)
"""

__version__ = "1.0.0"

from src.orders.cache import OrderCache
from src.orders.config import OrderServiceConfig, load_config
from src.orders.domain import Delivery, Item, Order, Payment, decode_order
from src.orders.repository import OrderRepository
from src.orders.service import OrderService

__all__ = [
    "Delivery",
    "Item",
    "Order",
    "OrderCache",
    "OrderRepository",
    "OrderService",
    "OrderServiceConfig",
    "Payment",
    "decode_order",
    "load_config",
]
