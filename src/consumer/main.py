"""
Order Consumer Service - Main Entry Point

This module provides the command-line interface and main entry point for the
Kafka order consumer service.

USAGE:
    python -m src.consumer.main [options]

OPTIONS:
    --log-level    Logging level (DEBUG, INFO, WARNING, ERROR)
    --log-format   Log format (json or text)
    --help         Show help message

ENVIRONMENT VARIABLES:
    See src/orders/config.py for the full list of configuration options:
    - KAFKA_BOOTSTRAP_SERVERS: Kafka broker addresses
    - KAFKA_TOPIC_ORDERS: Topic to consume from
    - KAFKA_DEAD_LETTER_TOPIC: Topic for unprocessable messages (optional)
    - CONSUMER_GROUP_ID: Consumer group identifier
    - POSTGRES_HOST / POSTGRES_PORT / POSTGRES_DB: PostgreSQL location
    - CACHE_MAX_SIZE / CACHE_TTL: Order cache bounds
    - RETRY_<PROFILE>_*: Backoff budgets
    - SHUTDOWN_TIMEOUT: Grace period for in-flight work
    - LOG_LEVEL / LOG_FORMAT: Logging

GRACEFUL SHUTDOWN:
- SIGINT (Ctrl+C) and SIGTERM (Docker stop) call consumer.stop()
- The consumer thread finishes the message in hand and exits its loop
- The main thread waits up to SHUTDOWN_TIMEOUT seconds for that
- Kafka consumer and database pool are closed afterwards
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Optional

from src.consumer.consumer import OrderConsumer
from src.orders.cache import OrderCache
from src.orders.config import load_config
from src.orders.database import init_database
from src.orders.repository import OrderRepository
from src.orders.service import OrderService
from src.shared.logger import setup_logger

# ==============================================================================
# GLOBAL STATE
# ==============================================================================
# Signal handlers can only reach the consumer through module state

consumer_instance: Optional[OrderConsumer] = None

# ==============================================================================
# SIGNAL HANDLERS
# ==============================================================================


def signal_handler(signum: int, frame) -> None:
    """
    Handle shutdown signals (SIGINT, SIGTERM).

    Only asks the consumer to stop; the main thread does the waiting and the
    closing.
    """
    signal_name = signal.Signals(signum).name

    logger = logging.getLogger(__name__)
    logger.info(f"Received {signal_name}, initiating graceful shutdown...")

    if consumer_instance:
        consumer_instance.stop()


# ==============================================================================
# CLI ARGUMENT PARSING
# ==============================================================================


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Kafka Order Consumer Service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start consumer with default settings
  python -m src.consumer.main

  # Start with debug logging
  python -m src.consumer.main --log-level DEBUG

  # Start with plain text logs (for development)
  python -m src.consumer.main --log-format text

Environment Variables:
  KAFKA_BOOTSTRAP_SERVERS    Kafka broker addresses (default: localhost:9092)
  KAFKA_TOPIC_ORDERS         Topic to consume (default: orders)
  KAFKA_DEAD_LETTER_TOPIC    Dead-letter topic (default: unset, skip without commit)
  CONSUMER_GROUP_ID          Consumer group (default: orders-group)
  POSTGRES_HOST              Database host (default: localhost)
  POSTGRES_PORT              Database port (default: 5432)
  POSTGRES_DB                Database name (default: orders)
  POSTGRES_USER              Database user (default: postgres)
  POSTGRES_PASSWORD          Database password (default: postgres)
  CACHE_MAX_SIZE             Cached orders (default: 1000)
  CACHE_TTL                  Cache entry lifetime, seconds (default: 1800)
  SHUTDOWN_TIMEOUT           Shutdown grace, seconds (default: 30)
  LOG_LEVEL                  Logging level (default: INFO)
  LOG_FORMAT                 Log format: json or text (default: json)

Signals:
  SIGINT (Ctrl+C)            Graceful shutdown
  SIGTERM (Docker stop)      Graceful shutdown
        """,
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (overrides LOG_LEVEL env var)",
    )

    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Log output format (overrides LOG_FORMAT env var)",
    )

    return parser.parse_args(argv)


# ==============================================================================
# MAIN FUNCTION
# ==============================================================================


def main(argv=None) -> int:
    """
    Main entry point for the order consumer service.

    Returns:
        Exit code (0 = success, 1 = error)

    STARTUP SEQUENCE:
    1. Parse CLI arguments and load configuration
    2. Set up structured logging for the whole src package
    3. Initialize database connection and schema
    4. Wire repository -> cache -> service -> consumer
    5. Register signal handlers
    6. Run the consumer on a worker thread until a signal or fatal error
    7. Wait out the shutdown grace period, then close everything
    """
    global consumer_instance

    args = parse_args(argv)

    try:
        config = load_config()
    except Exception as e:
        print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format

    # Configure the package root so every src.* module logger is covered
    setup_logger(
        name="src",
        service_name="order-consumer",
        log_level=config.log_level,
        log_format=config.log_format,
    )
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting Order Consumer Service",
        extra={
            "kafka_bootstrap_servers": config.kafka_bootstrap_servers,
            "kafka_topic": config.kafka_topic_orders,
            "consumer_group": config.consumer_group_id,
            "dead_letter_topic": config.kafka_dead_letter_topic,
            "database_host": config.postgres_host,
            "database_name": config.postgres_db,
            "cache_max_size": config.cache_max_size,
            "cache_ttl": config.cache_ttl,
        },
    )

    try:
        db_manager = init_database(config)
    except Exception:
        logger.error("Failed to initialize database", exc_info=True)
        return 1

    repository = OrderRepository(
        db_manager,
        write_policy=config.get_backoff_policy("db_write"),
        read_policy=config.get_backoff_policy("db_read"),
    )
    cache = OrderCache(max_size=config.cache_max_size, ttl=config.cache_ttl)
    service = OrderService(repository, cache)

    try:
        consumer_instance = OrderConsumer(config, service)
        logger.info("Kafka consumer created successfully")
    except Exception:
        logger.error("Failed to create Kafka consumer", exc_info=True)
        db_manager.close()
        return 1

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    logger.info("Signal handlers registered (SIGINT, SIGTERM)")

    failures = []

    def run() -> None:
        try:
            consumer_instance.process_messages()
        except Exception as e:
            logger.critical("Consumer loop crashed", exc_info=True)
            failures.append(e)
            consumer_instance.stop()

    worker = threading.Thread(target=run, name="order-consumer", daemon=True)
    logger.info("Consumer starting, press Ctrl+C to stop...")
    worker.start()

    # Short joins keep the main thread responsive to signals
    while worker.is_alive() and consumer_instance.running:
        worker.join(timeout=0.5)

    worker.join(timeout=config.shutdown_timeout)
    exit_code = 1 if failures or consumer_instance.fatal_error else 0
    if worker.is_alive():
        logger.error(
            "Consumer did not stop within shutdown timeout",
            extra={"shutdown_timeout": config.shutdown_timeout},
        )
        exit_code = 1
    else:
        consumer_instance.close()

    db_manager.close()
    logger.info("Order Consumer Service stopped", extra={"exit_code": exit_code})
    return exit_code


# ==============================================================================
# ENTRY POINT
# ==============================================================================

if __name__ == "__main__":
    sys.exit(main())
