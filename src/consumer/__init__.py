"""
Order Consumer Service Package

This package implements the Kafka consumer service that:
1. Subscribes to the orders Kafka topic
2. Decodes each message into an Order
3. Persists it through the OrderService (PostgreSQL + cache)
4. Commits the offset only after the order is stored
5. Treats redelivered orders (duplicates) as already done

CONSUMER ARCHITECTURE:
┌─────────────┐     ┌──────────────┐     ┌──────────────┐     ┌────────────┐
│   Kafka     │────▶│ OrderConsumer│────▶│ OrderService │────▶│ PostgreSQL │
│   orders    │     │ (one thread) │     │              │     │ + cache    │
└─────────────┘     └──────┬───────┘     └──────────────┘     └────────────┘
                           │ unprocessable (optional)
                           ▼
                    ┌─────────────┐
                    │ dead-letter │
                    │   topic     │
                    └─────────────┘

OFFSET MANAGEMENT (at-least-once):
1. Read message from Kafka (retried with backoff on broker errors)
2. Decode and persist (retried with backoff on transient store errors)
3. Commit offset ONLY after the order is stored
4. Duplicate order on redelivery: already stored, commit and move on
5. Unprocessable message: dead-letter topic when configured, otherwise left
   uncommitted so the broker redelivers it

Package components:
- consumer.py: Kafka consumer implementation
- main.py: Entry point with CLI and shutdown handling
"""

__version__ = "1.0.0"

from src.consumer.consumer import OrderConsumer

__all__ = [
    "OrderConsumer",
]
