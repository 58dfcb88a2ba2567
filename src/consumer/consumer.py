"""
Kafka Order Consumer Implementation

Reads order events from the orders topic, persists each through the
OrderService and commits the offset only after the order is stored.

PER-MESSAGE STATE MACHINE:
┌─────────────────────────────────────────────────────────────────────────┐
│  READING     poll, under the broker_read backoff profile                │
│              exhausted -> log, back to READING (offset untouched)       │
│  PERSISTING  decode -> OrderService.create under the persist profile    │
│              malformed payload -> not retried, skipped                  │
│              exhausted         -> skipped                               │
│              duplicate order   -> already stored, go to COMMITTING      │
│  COMMITTING  synchronous commit of this message's offset                │
│              failure -> logged, the stored order stays stored           │
└─────────────────────────────────────────────────────────────────────────┘

SKIPPED MESSAGES:
- No dead-letter topic configured: the message is skipped WITHOUT an offset
  commit, so the broker redelivers it after a restart or rebalance
- Dead-letter topic configured: the message is published there (with the
  failure reason in headers) and, once that publish succeeds, its offset is
  committed

AT-LEAST-ONCE:
A crash between persist and commit redelivers the message. The second
create() hits the orders primary key, fails with DuplicateOrderError, and the
consumer commits and moves on.

CANCELLATION:
stop() ends the loop before the next read and interrupts broker read retries.
A persist retry already running is left to finish within its own budget.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, Message, Producer

from src.orders.config import OrderServiceConfig
from src.orders.domain import decode_order
from src.orders.errors import BrokerReadError, DuplicateOrderError, OrderDecodeError
from src.orders.repository import is_transient_db_error
from src.orders.service import OrderService
from src.shared.backoff import RetryExhaustedError, RetryStatus, run_with_backoff
from src.shared.logger import CorrelationAdapter


def _is_fatal_broker_error(exc: BaseException) -> bool:
    return isinstance(exc, BrokerReadError) and exc.fatal


def _is_permanent_persist_error(exc: BaseException) -> bool:
    """Only spent store retries and connection failures are worth another persist attempt."""
    return not (isinstance(exc, (RetryExhaustedError, OSError)) or is_transient_db_error(exc))


class DeadLetterError(Exception):
    """The dead-letter publish did not complete."""


class OrderConsumer:
    """
    Sequential Kafka consumer feeding the OrderService.

    Attributes:
        config: Order service configuration
        service: OrderService used to persist decoded orders
        consumer: Confluent Kafka consumer (or a substitute in tests)
        dead_letter_producer: Producer for the dead-letter topic, if configured
        messages_processed: Orders stored and committed
        messages_failed: Messages that could not be decoded or stored
        messages_skipped: Duplicate orders (already stored)
        messages_dead_lettered: Messages published to the dead-letter topic
        fatal_error: Broker error that stopped the consumer, if any
    """

    def __init__(
        self,
        config: OrderServiceConfig,
        service: OrderService,
        consumer: Optional[Any] = None,
        dead_letter_producer: Optional[Any] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Args:
            config: Order service configuration
            service: Order service to persist through
            consumer: Pre-built Kafka consumer; created from config when omitted
            dead_letter_producer: Pre-built producer; created from config when
                omitted and kafka_dead_letter_topic is set
            logger: Logger to use; defaults to this module's logger
            sleep: Wait function for retry delays (tests); defaults to an
                interruptible wait
        """
        self.config = config
        self.service = service
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep

        self.read_policy = config.get_backoff_policy("broker_read")
        self.persist_policy = config.get_backoff_policy("persist")
        self.send_policy = config.get_backoff_policy("producer_send")
        self.dead_letter_topic = config.kafka_dead_letter_topic

        self.messages_processed = 0
        self.messages_failed = 0
        self.messages_skipped = 0
        self.messages_dead_lettered = 0
        self.fatal_error: Optional[BaseException] = None
        self._stop_event = threading.Event()

        self.consumer = consumer if consumer is not None else self._create_consumer()
        self.consumer.subscribe([config.kafka_topic_orders])

        if dead_letter_producer is None and self.dead_letter_topic:
            dead_letter_producer = Producer(config.get_producer_config())
        self.dead_letter_producer = dead_letter_producer

        self.logger.info(
            "Order consumer initialized",
            extra={
                "topic": config.kafka_topic_orders,
                "group_id": config.consumer_group_id,
                "bootstrap_servers": config.kafka_bootstrap_servers,
                "dead_letter_topic": self.dead_letter_topic,
            },
        )

    def _create_consumer(self) -> Consumer:
        kafka_config = self.config.get_kafka_config()
        self.logger.debug("Creating Kafka consumer", extra={"config": kafka_config})
        return Consumer(kafka_config)

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    # ==========================================================================
    # MAIN LOOP
    # ==========================================================================

    def start(self) -> None:
        """Consume until stop() is called, then close the Kafka client."""
        self.logger.info("Starting consumer loop...")

        try:
            self.process_messages()
        except Exception:
            self.logger.error("Fatal error in consumer loop", exc_info=True)
            raise
        finally:
            self.close()

    def process_messages(
        self, max_messages: Optional[int] = None, timeout: Optional[float] = None
    ) -> int:
        """
        Run the read -> persist -> commit loop.

        Args:
            max_messages: Stop after handling this many messages (None = no limit)
            timeout: Stop after this many seconds (None = no limit)

        Returns:
            Number of messages handled (stored, skipped or failed)
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        handled = 0

        while not self._stop_event.is_set():
            if max_messages is not None and handled >= max_messages:
                break
            if deadline is not None and time.monotonic() >= deadline:
                break

            msg = self._read_message()
            if msg is None:
                continue

            handled += 1
            self._handle_message(msg)

        return handled

    # ==========================================================================
    # READING
    # ==========================================================================

    def _read_message(self) -> Optional[Message]:
        outcome = run_with_backoff(
            self._poll,
            self.read_policy,
            is_permanent=_is_fatal_broker_error,
            description="kafka.read",
            logger=self.logger,
            cancel_event=self._stop_event,
            sleep=self._sleep,
        )

        if outcome.succeeded:
            return outcome.value

        if outcome.status is RetryStatus.PERMANENT:
            self.fatal_error = outcome.error
            self.logger.critical(
                "Fatal Kafka error, shutting down", extra={"error": str(outcome.error)}
            )
            self.stop()
        elif outcome.status is RetryStatus.EXHAUSTED:
            self.logger.error(
                "Failed to read message after retries",
                extra={"attempts": outcome.attempts, "error": str(outcome.error)},
            )
        return None

    def _poll(self) -> Optional[Message]:
        """One poll. None means no message yet; broker errors are raised."""
        msg = self.consumer.poll(timeout=self.config.kafka_poll_timeout)
        if msg is None:
            return None

        error = msg.error()
        if error is None:
            return msg

        if error.code() == KafkaError._PARTITION_EOF:
            self.logger.debug(
                "Reached end of partition", extra={"partition": msg.partition()}
            )
            return None

        raise BrokerReadError(error)

    # ==========================================================================
    # PERSISTING
    # ==========================================================================

    def _handle_message(self, msg: Message) -> None:
        start_time = time.time()
        location = {"topic": msg.topic(), "partition": msg.partition(), "offset": msg.offset()}

        try:
            order = decode_order(msg.value())
        except OrderDecodeError as e:
            self.messages_failed += 1
            self.logger.error(
                "Failed to decode order message", extra={**location, "error": str(e)}
            )
            self._dead_letter(msg, e)
            return

        order_logger = CorrelationAdapter(self.logger, {"correlation_id": order.order_uid})
        order_logger.debug("Processing message", extra=location)

        outcome = run_with_backoff(
            lambda: self.service.create(order),
            self.persist_policy,
            is_permanent=_is_permanent_persist_error,
            description="order.persist",
            logger=order_logger,
            sleep=self._sleep,
        )

        if outcome.succeeded:
            self._commit(msg, order_logger)
            self.messages_processed += 1
            order_logger.info(
                "Order processed successfully",
                extra={
                    **location,
                    "items_count": len(order.items),
                    "processing_time_ms": round((time.time() - start_time) * 1000, 2),
                    "messages_processed": self.messages_processed,
                },
            )
        elif isinstance(outcome.error, DuplicateOrderError):
            self.messages_skipped += 1
            order_logger.warning(
                "Duplicate order, already stored; committing offset",
                extra={**location, "messages_skipped": self.messages_skipped},
            )
            self._commit(msg, order_logger)
        else:
            self.messages_failed += 1
            order_logger.error(
                "Failed to persist order",
                extra={
                    **location,
                    "status": outcome.status.value,
                    "attempts": outcome.attempts,
                    "error": str(outcome.error),
                },
            )
            self._dead_letter(msg, outcome.error)

    # ==========================================================================
    # COMMITTING
    # ==========================================================================

    def _commit(self, msg: Message, logger: Any) -> bool:
        try:
            self.consumer.commit(message=msg, asynchronous=False)
            return True
        except KafkaException as e:
            logger.error(
                "Failed to commit offset",
                extra={"partition": msg.partition(), "offset": msg.offset(), "error": str(e)},
            )
            return False

    def _dead_letter(self, msg: Message, error: Optional[BaseException]) -> None:
        """Publish an unprocessable message to the dead-letter topic, then commit it."""
        if self.dead_letter_producer is None or not self.dead_letter_topic:
            self.logger.warning(
                "Message skipped without offset commit",
                extra={"partition": msg.partition(), "offset": msg.offset()},
            )
            return

        outcome = run_with_backoff(
            lambda: self._publish_dead_letter(msg, error),
            self.send_policy,
            description="kafka.dead_letter",
            logger=self.logger,
            sleep=self._sleep,
        )
        if not outcome.succeeded:
            self.logger.error(
                "Dead-letter publish failed, offset not committed",
                extra={"partition": msg.partition(), "offset": msg.offset()},
            )
            return

        self.messages_dead_lettered += 1
        self.logger.warning(
            "Message moved to dead-letter topic",
            extra={
                "dead_letter_topic": self.dead_letter_topic,
                "partition": msg.partition(),
                "offset": msg.offset(),
            },
        )
        self._commit(msg, self.logger)

    def _publish_dead_letter(self, msg: Message, error: Optional[BaseException]) -> None:
        delivery = {}

        def on_delivery(err: Optional[KafkaError], _msg: Any) -> None:
            delivery["error"] = err

        self.dead_letter_producer.produce(
            self.dead_letter_topic,
            key=msg.key(),
            value=msg.value(),
            headers=[
                ("error_type", type(error).__name__),
                ("error_reason", str(error)),
                ("source_topic", str(msg.topic())),
                ("source_partition", str(msg.partition())),
                ("source_offset", str(msg.offset())),
            ],
            on_delivery=on_delivery,
        )

        remaining = self.dead_letter_producer.flush(self.config.kafka_poll_timeout * 5)
        if remaining > 0:
            raise DeadLetterError(f"{remaining} dead-letter messages still in flight")
        if delivery.get("error") is not None:
            raise KafkaException(delivery["error"])

    # ==========================================================================
    # SHUTDOWN
    # ==========================================================================

    def stop(self) -> None:
        """Signal the loop to stop before the next read."""
        self.logger.info("Stopping consumer...")
        self._stop_event.set()

    def close(self) -> None:
        """Close the Kafka client(s) and log final counters."""
        self.logger.info(
            "Consumer shutting down",
            extra={
                "messages_processed": self.messages_processed,
                "messages_failed": self.messages_failed,
                "messages_skipped": self.messages_skipped,
                "messages_dead_lettered": self.messages_dead_lettered,
            },
        )

        try:
            self.consumer.close()
            self.logger.info("Kafka consumer closed")
        except (KafkaException, RuntimeError):
            self.logger.error("Error closing Kafka consumer", exc_info=True)

        if self.dead_letter_producer is not None:
            self.dead_letter_producer.flush(self.config.kafka_poll_timeout)
