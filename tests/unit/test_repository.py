"""
Unit Tests for OrderRepository

Runs the real repository and table models against in-memory SQLite (see the
db_manager fixture in conftest.py). PostgreSQL-specific behaviour is covered
by tests/integration/test_repository_integration.py.

TEST STRATEGY:
- Round trip of a complete order
- All-or-nothing writes
- Duplicate detection is permanent and typed
- Reads use a fixed number of queries
- Transient failures are retried, then given up on, even mid-transaction
- Non-transient failures are never retried
"""

from contextlib import contextmanager

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from src.orders.errors import (
    DuplicateOrderError,
    InvalidOrderError,
    OrderNotFoundError,
    RetryExhaustedError,
)
from src.orders.repository import OrderRepository, is_transient_db_error
from src.orders.tables import DeliveryRecord, ItemRecord, OrderRecord, PaymentRecord


class FlakyDatabaseManager:
    """Wraps a DatabaseManager and fails the first `failures` sessions."""

    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.attempts = 0

    @contextmanager
    def get_session(self):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise OperationalError("BEGIN", {}, Exception("server closed the connection unexpectedly"))
        with self.inner.get_session() as session:
            yield session


@contextmanager
def failing_statement(db_manager, prefix, error, times=1):
    """Raise error from the first `times` statements starting with prefix, inside the open transaction."""
    state = {"remaining": times}

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith(prefix) and state["remaining"] > 0:
            state["remaining"] -= 1
            raise error

    event.listen(db_manager.engine, "before_cursor_execute", before_cursor_execute)
    try:
        yield
    finally:
        event.remove(db_manager.engine, "before_cursor_execute", before_cursor_execute)


@pytest.fixture
def repository(db_manager, fast_policy):
    return OrderRepository(db_manager, write_policy=fast_policy, read_policy=fast_policy)


@pytest.fixture
def statements(db_manager):
    """Collects every SQL statement the engine sends to the database."""
    captured = []

    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        captured.append(statement)

    event.listen(db_manager.engine, "before_cursor_execute", before_cursor_execute)
    yield captured
    event.remove(db_manager.engine, "before_cursor_execute", before_cursor_execute)


def count_rows(db_manager, record):
    with db_manager.get_session() as session:
        return session.execute(select(func.count()).select_from(record)).scalar_one()


def item(chrt_id, **fields):
    return {"chrt_id": chrt_id, "name": f"item-{chrt_id}", "price": 100, **fields}


def connection_lost(statement):
    return OperationalError(statement, {}, Exception("server closed the connection unexpectedly"))


def inserts_into(statements, table):
    return sum(1 for statement in statements if statement.startswith(f"INSERT INTO {table} "))


# ==============================================================================
# CREATE
# ==============================================================================


@pytest.mark.unit
def test_create_then_get_round_trip(repository, make_order):
    """Test a stored order reads back equal."""
    order = make_order("uid-1")

    repository.create(order)

    assert repository.get_by_uid("uid-1") == order


@pytest.mark.unit
def test_create_writes_all_four_tables(repository, db_manager, make_order):
    """Test create() writes one row per table and one per item."""
    repository.create(make_order("uid-1", items=[item(1), item(2), item(3)]))

    assert count_rows(db_manager, OrderRecord) == 1
    assert count_rows(db_manager, DeliveryRecord) == 1
    assert count_rows(db_manager, PaymentRecord) == 1
    assert count_rows(db_manager, ItemRecord) == 3


@pytest.mark.unit
def test_create_order_without_items(repository, make_order):
    """Test an order with no items is stored and read back."""
    repository.create(make_order("uid-1", items=[]))

    assert repository.get_by_uid("uid-1").items == []


@pytest.mark.unit
def test_duplicate_order_is_rejected(repository, db_manager, make_order):
    """Test a second create() for the same order_uid raises DuplicateOrderError."""
    repository.create(make_order("uid-1"))

    with pytest.raises(DuplicateOrderError) as exc_info:
        repository.create(make_order("uid-1"))

    assert exc_info.value.order_uid == "uid-1"
    assert count_rows(db_manager, OrderRecord) == 1
    assert count_rows(db_manager, ItemRecord) == 1


@pytest.mark.unit
def test_duplicate_is_not_retried(db_manager, fast_policy, make_order):
    """Test DuplicateOrderError ends the write after one attempt."""
    flaky = FlakyDatabaseManager(db_manager, failures=0)
    repository = OrderRepository(flaky, write_policy=fast_policy, read_policy=fast_policy)
    repository.create(make_order("uid-1"))

    with pytest.raises(DuplicateOrderError):
        repository.create(make_order("uid-1"))

    assert flaky.attempts == 2


@pytest.mark.unit
def test_failed_write_leaves_nothing_behind(repository, db_manager, make_order):
    """Two items with the same chrt_id fail the items insert after orders succeeded."""
    order = make_order("uid-1", items=[item(7), item(7)])

    with pytest.raises(InvalidOrderError):
        repository.create(order)

    for record in (OrderRecord, DeliveryRecord, PaymentRecord, ItemRecord):
        assert count_rows(db_manager, record) == 0
    with pytest.raises(OrderNotFoundError):
        repository.get_by_uid("uid-1")


@pytest.mark.unit
def test_create_retries_transient_failures(db_manager, fast_policy, make_order):
    """Test connection failures before the transaction are retried."""
    flaky = FlakyDatabaseManager(db_manager, failures=2)
    repository = OrderRepository(flaky, write_policy=fast_policy, read_policy=fast_policy)

    repository.create(make_order("uid-1"))

    assert flaky.attempts == 3
    assert count_rows(db_manager, OrderRecord) == 1


@pytest.mark.unit
def test_create_gives_up_after_budget(db_manager, fast_policy, make_order):
    """Test create() raises RetryExhaustedError once the write budget is spent."""
    flaky = FlakyDatabaseManager(db_manager, failures=10**6)
    repository = OrderRepository(flaky, write_policy=fast_policy, read_policy=fast_policy)

    with pytest.raises(RetryExhaustedError) as exc_info:
        repository.create(make_order("uid-1"))

    assert isinstance(exc_info.value.last_error, OperationalError)
    assert count_rows(db_manager, OrderRecord) == 0


@pytest.mark.unit
def test_transient_failure_mid_transaction_restarts_from_scratch(
    repository, db_manager, statements, make_order
):
    """Test a failure after orders, deliveries and payments were written restarts the whole transaction."""
    with failing_statement(db_manager, "INSERT INTO items", connection_lost("INSERT INTO items")):
        repository.create(make_order("uid-1", items=[item(1), item(2)]))

    assert inserts_into(statements, "orders") == 2
    assert count_rows(db_manager, OrderRecord) == 1
    assert count_rows(db_manager, DeliveryRecord) == 1
    assert count_rows(db_manager, PaymentRecord) == 1
    assert count_rows(db_manager, ItemRecord) == 2


@pytest.mark.unit
def test_exhaustion_mid_transaction_leaves_nothing_behind(repository, db_manager, make_order):
    """Test every attempt failing mid-transaction leaves no rows in any table."""
    with failing_statement(
        db_manager, "INSERT INTO items", connection_lost("INSERT INTO items"), times=10**6
    ):
        with pytest.raises(RetryExhaustedError) as exc_info:
            repository.create(make_order("uid-1", items=[item(1), item(2)]))

    assert exc_info.value.attempts > 1
    assert isinstance(exc_info.value.last_error, OperationalError)
    for record in (OrderRecord, DeliveryRecord, PaymentRecord, ItemRecord):
        assert count_rows(db_manager, record) == 0


@pytest.mark.unit
def test_value_refused_by_driver_is_invalid_and_not_retried(
    repository, db_manager, statements, make_order
):
    """psycopg2 refuses NUL characters with a plain ValueError: bad input, not an outage."""
    refused = ValueError("A string literal cannot contain NUL (0x00) characters.")

    with failing_statement(db_manager, "INSERT INTO deliveries", refused, times=10**6):
        with pytest.raises(InvalidOrderError) as exc_info:
            repository.create(make_order("uid-1"))

    assert exc_info.value.__cause__ is refused
    assert inserts_into(statements, "orders") == 1
    for record in (OrderRecord, DeliveryRecord, PaymentRecord, ItemRecord):
        assert count_rows(db_manager, record) == 0


@pytest.mark.unit
def test_unexpected_store_error_is_not_retried(repository, db_manager, statements, make_order):
    """Only connection-level failures are retried; anything else fails the call at once."""
    with failing_statement(db_manager, "INSERT INTO payments", RuntimeError("bug"), times=10**6):
        with pytest.raises(RuntimeError):
            repository.create(make_order("uid-1"))

    assert inserts_into(statements, "orders") == 1
    assert count_rows(db_manager, OrderRecord) == 0


@pytest.mark.unit
@pytest.mark.parametrize(
    "error, transient",
    [
        (OperationalError("SELECT 1", {}, Exception("connection reset")), True),
        (InterfaceError("SELECT 1", {}, Exception("connection already closed")), True),
        (DisconnectionError("stale connection"), True),
        (PoolTimeoutError("QueuePool limit reached"), True),
        (ValueError("NUL"), False),
        (InvalidOrderError("rejected"), False),
        (OrderNotFoundError("uid-1"), False),
    ],
)
def test_is_transient_db_error(error, transient):
    """Test which store errors count as transient."""
    assert is_transient_db_error(error) is transient


# ==============================================================================
# GET_BY_UID
# ==============================================================================


@pytest.mark.unit
def test_get_by_uid_not_found(repository):
    """Test an unknown order_uid raises OrderNotFoundError."""
    with pytest.raises(OrderNotFoundError):
        repository.get_by_uid("missing")


@pytest.mark.unit
def test_get_by_uid_not_found_is_not_retried(db_manager, fast_policy):
    """Test OrderNotFoundError ends the read after one attempt."""
    flaky = FlakyDatabaseManager(db_manager, failures=0)
    repository = OrderRepository(flaky, write_policy=fast_policy, read_policy=fast_policy)

    with pytest.raises(OrderNotFoundError):
        repository.get_by_uid("missing")

    assert flaky.attempts == 1


@pytest.mark.unit
def test_get_by_uid_retries_transient_failures(db_manager, fast_policy, make_order):
    """Test reads retry connection failures."""
    OrderRepository(db_manager).create(make_order("uid-1"))
    flaky = FlakyDatabaseManager(db_manager, failures=1)
    repository = OrderRepository(flaky, write_policy=fast_policy, read_policy=fast_policy)

    assert repository.get_by_uid("uid-1").order_uid == "uid-1"
    assert flaky.attempts == 2


@pytest.mark.unit
def test_items_come_back_ordered_by_chrt_id(repository, make_order):
    """Test items are returned ordered by chrt_id."""
    repository.create(make_order("uid-1", items=[item(30), item(10), item(20)]))

    assert [i.chrt_id for i in repository.get_by_uid("uid-1").items] == [10, 20, 30]


@pytest.mark.unit
def test_items_are_not_mixed_between_orders(repository, make_order):
    """Test items with the same chrt_id stay with their own order."""
    repository.create(make_order("uid-1", items=[item(1), item(2)]))
    repository.create(make_order("uid-2", items=[item(1), item(3)]))

    assert [i.chrt_id for i in repository.get_by_uid("uid-1").items] == [1, 2]
    assert [i.chrt_id for i in repository.get_by_uid("uid-2").items] == [1, 3]


# ==============================================================================
# GET_LATEST
# ==============================================================================


@pytest.mark.unit
def test_get_latest_newest_first_with_limit(repository, make_order):
    """Test get_latest() returns the newest orders first, up to limit."""
    for day in (1, 3, 2, 5, 4):
        repository.create(make_order(f"uid-{day}", date_created=f"2024-01-0{day}T12:00:00Z"))

    latest = repository.get_latest(3)

    assert [o.order_uid for o in latest] == ["uid-5", "uid-4", "uid-3"]


@pytest.mark.unit
def test_get_latest_returns_fewer_when_store_is_small(repository, make_order):
    """Test get_latest() returns what exists when below limit."""
    repository.create(make_order("uid-1"))

    assert len(repository.get_latest(10)) == 1


@pytest.mark.unit
def test_get_latest_empty_store(repository):
    """Test get_latest() on an empty store returns an empty list."""
    assert repository.get_latest(5) == []


@pytest.mark.unit
@pytest.mark.parametrize("limit", [0, -1])
def test_get_latest_rejects_non_positive_limit(repository, limit):
    """Test limit < 1 raises ValueError."""
    with pytest.raises(ValueError):
        repository.get_latest(limit)


@pytest.mark.unit
def test_get_latest_uses_fixed_number_of_queries(repository, statements, make_order):
    """One query for orders plus one per related table, however many rows."""
    for n in range(6):
        repository.create(
            make_order(
                f"uid-{n}",
                date_created=f"2024-01-0{n + 1}T00:00:00Z",
                items=[item(1), item(2), item(3)],
            )
        )
    statements.clear()

    latest = repository.get_latest(6)

    assert len(latest) == 6
    assert all(len(o.items) == 3 for o in latest)
    assert len(statements) == 4


@pytest.mark.unit
def test_get_by_uid_uses_fixed_number_of_queries(repository, statements, make_order):
    """Test get_by_uid() runs four queries however many items the order has."""
    repository.create(make_order("uid-1", items=[item(n) for n in range(10)]))
    statements.clear()

    repository.get_by_uid("uid-1")

    assert len(statements) == 4
