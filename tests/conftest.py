"""
Pytest Configuration and Shared Fixtures

Shared fixtures for the order service tests.

UNIT vs INTEGRATION:
- Unit tests run the real repository against in-memory SQLite (same table
  models, no Docker) and substitute the Kafka client with small fakes
- Integration tests use testcontainers to spin up real Kafka and PostgreSQL

FIXTURE SCOPES:
- session: Created once for entire test session (containers)
- function: Created for each test function (databases, configs, orders)
"""

import copy
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from testcontainers.kafka import KafkaContainer
from testcontainers.postgres import PostgresContainer

from src.orders.config import OrderServiceConfig
from src.orders.database import DatabaseManager
from src.orders.domain import Order
from src.orders.tables import Base
from src.shared.backoff import BackoffPolicy

# ==============================================================================
# ORDER DATA FIXTURES
# ==============================================================================

SAMPLE_ORDER = {
    "order_uid": "b563feb7b2b84b6test",
    "track_number": "WBILMTESTTRACK",
    "entry": "WBIL",
    "delivery": {
        "name": "Test Testov",
        "phone": "+9720000000",
        "zip": "2639809",
        "city": "Kiryat Mozkin",
        "address": "Ploshad Mira 15",
        "region": "Kraiot",
        "email": "test@gmail.com",
    },
    "payment": {
        "transaction": "b563feb7b2b84b6test",
        "request_id": "",
        "currency": "USD",
        "provider": "wbpay",
        "amount": 1817,
        "payment_dt": 1637907727,
        "bank": "alpha",
        "delivery_cost": 1500,
        "goods_total": 317,
        "custom_fee": 0,
    },
    "items": [
        {
            "chrt_id": 9934930,
            "track_number": "WBILMTESTTRACK",
            "price": 453,
            "rid": "ab4219087a764ae0btest",
            "name": "Mascaras",
            "sale": 30,
            "size": "0",
            "total_price": 317,
            "nm_id": 2389212,
            "brand": "Vivienne Sabo",
            "status": 202,
        }
    ],
    "locale": "en",
    "internal_signature": "",
    "customer_id": "test",
    "delivery_service": "meest",
    "shardkey": "9",
    "sm_id": 99,
    "date_created": "2021-11-26T06:22:19Z",
    "oof_shard": "1",
}


@pytest.fixture
def sample_order_data() -> dict:
    """A valid order message as a dictionary (fresh copy per test)."""
    return copy.deepcopy(SAMPLE_ORDER)


@pytest.fixture
def make_order():
    """
    Factory for valid orders with a chosen uid and optional overrides.

    Usage:
        def test_something(make_order):
            order = make_order("uid-1", date_created="2024-01-01T00:00:00Z")
    """

    def _make(order_uid: str = "b563feb7b2b84b6test", **overrides) -> Order:
        data = copy.deepcopy(SAMPLE_ORDER)
        data["order_uid"] = order_uid
        data["payment"]["transaction"] = order_uid
        data.update(overrides)
        return Order.model_validate(data)

    return _make


# ==============================================================================
# CONFIG AND DATABASE FIXTURES (UNIT)
# ==============================================================================

FAST_RETRY_SETTINGS = {
    f"retry_{profile}_{field}": value
    for profile in ("db_write", "db_read", "broker_read", "persist", "producer_send")
    for field, value in (
        ("max_elapsed_time", 0.05),
        ("initial_interval", 0.001),
        ("max_interval", 0.002),
    )
}


@pytest.fixture
def fast_policy() -> BackoffPolicy:
    """A backoff policy that gives up within a fraction of a second."""
    return BackoffPolicy(max_elapsed_time=0.05, initial_interval=0.001, max_interval=0.002)


@pytest.fixture
def unit_config() -> OrderServiceConfig:
    """Configuration with tiny retry budgets, independent of the environment."""
    return OrderServiceConfig(
        _env_file=None,
        kafka_topic_orders="orders",
        kafka_poll_timeout=0.01,
        **FAST_RETRY_SETTINGS,
    )


@pytest.fixture
def db_manager(unit_config) -> Generator[DatabaseManager, None, None]:
    """
    DatabaseManager over a private in-memory SQLite database with the schema
    created. StaticPool keeps the single connection alive for the test.
    """
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    manager = DatabaseManager(unit_config, engine=engine)
    manager.create_schema()
    try:
        yield manager
    finally:
        manager.close()


# ==============================================================================
# POSTGRESQL FIXTURES (INTEGRATION)
# ==============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Provides PostgreSQL testcontainer for the entire test session.

    Yields:
        PostgresContainer instance with running PostgreSQL
    """
    with PostgresContainer("postgres:15") as postgres:
        postgres.get_connection_url()
        yield postgres


@pytest.fixture(scope="function")
def postgres_config(postgres_container) -> OrderServiceConfig:
    """Configuration pointing at the PostgreSQL container."""
    return OrderServiceConfig(
        _env_file=None,
        postgres_host=postgres_container.get_container_host_ip(),
        postgres_port=int(postgres_container.get_exposed_port(5432)),
        postgres_user=postgres_container.username,
        postgres_password=postgres_container.password,
        postgres_db=postgres_container.dbname,
        **FAST_RETRY_SETTINGS,
    )


@pytest.fixture(scope="function")
def postgres_db_manager(postgres_config) -> Generator[DatabaseManager, None, None]:
    """
    DatabaseManager on the PostgreSQL container with a clean schema.

    - Creates all tables before the test
    - Drops all tables after the test
    """
    manager = DatabaseManager(postgres_config)
    manager.create_schema()
    try:
        yield manager
    finally:
        Base.metadata.drop_all(manager.engine)
        manager.close()


# ==============================================================================
# KAFKA FIXTURES (INTEGRATION)
# ==============================================================================


@pytest.fixture(scope="session")
def kafka_container() -> Generator[KafkaContainer, None, None]:
    """
    Provides Kafka testcontainer for the entire test session.

    Yields:
        KafkaContainer instance with running Kafka broker
    """
    with KafkaContainer() as kafka:
        kafka.get_bootstrap_server()
        yield kafka


# ==============================================================================
# TEST ENVIRONMENT CONFIGURATION
# ==============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires containers)"
    )
    config.addinivalue_line("markers", "slow: mark test as slow (takes more than 5 seconds)")
    config.addinivalue_line("markers", "unit: mark test as unit test (no external dependencies)")
