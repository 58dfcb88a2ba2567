"""
Order Service Error Taxonomy

Every failure crossing a component boundary is one of these types. Retry
decisions are made on the type, never on the message text.

TAXONOMY:
- Transient I/O: any other exception (connection reset, timeout, broker
  hiccup). Retried under the active backoff profile.
- PermanentError: never retried, whatever budget remains.
    - DuplicateOrderError: order_uid already stored (idempotency signal)
    - OrderNotFoundError: no row for a single-key read
        - OrderUnavailableError: store could not answer the lookup
    - InvalidOrderError: other constraint violation in the write
    - OrderDecodeError: stream payload is not a valid order
- RetryExhaustedError: backoff budget spent on transient failures
- RetryCancelledError: shutdown signal fired while waiting to retry
"""

from typing import Optional

from src.shared.backoff import PermanentError, RetryCancelledError, RetryExhaustedError

__all__ = [
    "OrderServiceError",
    "PermanentError",
    "DuplicateOrderError",
    "OrderNotFoundError",
    "OrderUnavailableError",
    "InvalidOrderError",
    "OrderDecodeError",
    "BrokerReadError",
    "RetryExhaustedError",
    "RetryCancelledError",
]


class OrderServiceError(Exception):
    """Base class for order service domain errors."""


class DuplicateOrderError(OrderServiceError, PermanentError):
    """An order with this order_uid is already stored."""

    def __init__(self, order_uid: str):
        self.order_uid = order_uid
        super().__init__(f"order already exists: {order_uid}")


class OrderNotFoundError(OrderServiceError, PermanentError):
    """No order with this order_uid exists."""

    def __init__(self, order_uid: str, message: Optional[str] = None):
        self.order_uid = order_uid
        super().__init__(message or f"order not found: {order_uid}")


class OrderUnavailableError(OrderNotFoundError):
    """
    The store could not be reached to look the order up.

    Subclasses OrderNotFoundError so callers that only distinguish
    found / not-found keep treating it as "not found", while callers that
    care can tell an unreachable store from a genuinely absent order.
    """

    def __init__(self, order_uid: str):
        super().__init__(order_uid, f"order lookup failed, store unavailable: {order_uid}")


class InvalidOrderError(OrderServiceError, PermanentError):
    """The order violates a store constraint other than the duplicate order key."""


class OrderDecodeError(OrderServiceError, PermanentError):
    """A stream payload could not be decoded into an Order."""


class BrokerReadError(OrderServiceError):
    """
    The broker returned an error instead of a message.

    Attributes:
        kafka_error: The confluent_kafka.KafkaError reported by the client
        fatal: True when librdkafka flags the client as unusable
    """

    def __init__(self, kafka_error):
        self.kafka_error = kafka_error
        self.fatal = bool(kafka_error.fatal())
        super().__init__(f"kafka read failed: {kafka_error.str()}")
