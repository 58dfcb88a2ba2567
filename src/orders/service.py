"""
Order Service

The single entry point other components use to persist or fetch orders.
Combines the durable repository with the in-memory cache.

    create(order)      repository.create -> cache.add           (write-through)
    get_by_uid(uid)    cache.get -> hit: return
                                  -> miss: repository.get_by_uid -> cache.add
    get_latest(limit)  repository.get_latest                      (cache bypassed)

The service never retries; retries live in the repository. The cache only
ever receives an order the repository has just committed or just returned.
"""

import logging
from typing import List, Optional, Protocol

from src.orders.cache import OrderCache
from src.orders.domain import Order
from src.orders.errors import OrderNotFoundError, OrderUnavailableError


class OrderStore(Protocol):
    """What the service needs from a durable store (OrderRepository in production)."""

    def create(self, order: Order) -> None: ...

    def get_by_uid(self, order_uid: str) -> Order: ...

    def get_latest(self, limit: int) -> List[Order]: ...


class OrderService:
    """Cache-aside reads and write-through writes over an OrderStore."""

    def __init__(
        self,
        store: OrderStore,
        cache: OrderCache,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)

    def create(self, order: Order) -> None:
        """
        Persist an order, then cache it.

        Store errors propagate unchanged (DuplicateOrderError included) and
        nothing is cached for a failed write.
        """
        self.store.create(order)
        self.cache.add(order.order_uid, order)
        self.logger.info(
            "Order created, added to cache", extra={"correlation_id": order.order_uid}
        )

    def get_by_uid(self, order_uid: str) -> Order:
        """
        Return an order, from the cache when possible.

        Raises:
            OrderNotFoundError: The store has no such order
            OrderUnavailableError: The store could not be queried (a subclass
                of OrderNotFoundError, so plain "not found" handling still applies)
        """
        order, found = self.cache.get(order_uid)
        if found:
            self.logger.debug("Cache hit", extra={"correlation_id": order_uid})
            return order

        self.logger.debug("Cache miss, querying database", extra={"correlation_id": order_uid})

        try:
            order = self.store.get_by_uid(order_uid)
        except OrderNotFoundError:
            self.logger.info("Order not found", extra={"correlation_id": order_uid})
            raise
        except Exception as e:
            self.logger.error(
                "Order lookup failed",
                extra={
                    "correlation_id": order_uid,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            raise OrderUnavailableError(order_uid) from e

        self.cache.add(order_uid, order)
        self.logger.debug("Order loaded from database, added to cache", extra={"correlation_id": order_uid})
        return order

    def get_latest(self, limit: int) -> List[Order]:
        """Most recent orders straight from the store; the cache is neither read nor filled."""
        return self.store.get_latest(limit)
