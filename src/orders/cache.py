"""
In-Memory Order Cache

Bounded, time-to-live order cache keyed by order_uid.

EVICTION:
- TTL: an entry expires ttl seconds after it was inserted (or replaced);
  reads do not extend it
- LRU: inserting into a full cache evicts the least recently used entry;
  get() hits and add() both count as use

EXPIRY:
- Passive: get() never returns an expired entry, it drops it instead
- Active: add() sweeps every expired entry at most once per ttl period, before
  the capacity check, so expired entries go before live ones are evicted;
  purge_expired() runs the same sweep on demand

THREAD SAFETY:
The consumer thread adds while API threads read. All state sits behind one
lock owned by the cache; callers never lock. No I/O happens under the lock.
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from src.orders.domain import Order


class OrderCache:
    """
    LRU + TTL mapping from order_uid to Order.

    There is no delete or update: orders are immutable, so add() on an
    existing key only replaces it with an equal value and refreshes it.
    """

    def __init__(
        self,
        max_size: int,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            max_size: Maximum number of entries (>= 1)
            ttl: Seconds an entry stays valid after insertion (> 0)
            clock: Monotonic clock in seconds (injectable for tests)
            logger: Logger to use; defaults to this module's logger
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        # order_uid -> (expires_at, order); oldest use first
        self._entries: "OrderedDict[str, Tuple[float, Order]]" = OrderedDict()
        self._next_sweep = clock() + ttl
        self.logger = logger or logging.getLogger(__name__)

    def get(self, order_uid: str) -> Tuple[Optional[Order], bool]:
        """
        Look an order up.

        Returns:
            (order, True) on a hit, (None, False) on a miss or expired entry
        """
        with self._lock:
            entry = self._entries.get(order_uid)
            if entry is None:
                return None, False

            expires_at, order = entry
            if self._clock() >= expires_at:
                del self._entries[order_uid]
                return None, False

            self._entries.move_to_end(order_uid)
            return order, True

    def add(self, order_uid: str, order: Order) -> None:
        """Insert or replace an entry, evicting the least recently used one when full."""
        evicted = None
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._purge_locked(now)

            if order_uid in self._entries:
                self._entries.move_to_end(order_uid)
            elif len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
            self._entries[order_uid] = (now + self.ttl, order)

        if evicted is not None:
            self.logger.debug("Cache entry evicted", extra={"correlation_id": evicted})

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [uid for uid, (expires_at, _) in self._entries.items() if now >= expires_at]
        for uid in expired:
            del self._entries[uid]
        self._next_sweep = now + self.ttl
        return len(expired)

    def __contains__(self, order_uid: object) -> bool:
        """Membership test that neither refreshes recency nor removes entries."""
        with self._lock:
            entry = self._entries.get(order_uid)  # type: ignore[arg-type]
            return entry is not None and self._clock() < entry[0]

    def __len__(self) -> int:
        """Number of stored entries, expired ones included until purged."""
        with self._lock:
            return len(self._entries)
