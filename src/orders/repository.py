"""
Order Repository (PostgreSQL)

Durable store for orders. Every public call is one transaction wrapped in the
backoff policy for its direction (write or read).

WRITE (create):
┌─────────────────────────────────────────────────────────────────────────┐
│  BEGIN                                                                  │
│    INSERT orders      -> PK violation here = DuplicateOrderError        │
│    INSERT deliveries                                                    │
│    INSERT payments                                                      │
│    INSERT items (one row per item, executemany)                         │
│  COMMIT  (any failure -> ROLLBACK, nothing of the order remains)        │
└─────────────────────────────────────────────────────────────────────────┘
- Transient failures restart the whole transaction from scratch
- DuplicateOrderError / InvalidOrderError are permanent: never retried

READ (get_by_uid, get_latest):
- One query for the order rows, then one batched IN (...) query per related
  table (deliveries, payments, items): 4 queries per call regardless of how
  many orders or items come back
- No row for get_by_uid is OrderNotFoundError (permanent)
- An empty get_latest page is a normal, empty result

ERROR CLASSIFICATION:
- Constraint violations are recognised by the driver's error code (SQLSTATE
  23505 on PostgreSQL, the extended result code on SQLite), not by message text
- Only connection-level failures (OperationalError, InterfaceError,
  DisconnectionError, pool TimeoutError) are retried; anything else fails
  the call at once
- Values the driver refuses to bind (ValueError/TypeError, e.g. a NUL byte
  in a PostgreSQL string) are InvalidOrderError
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import insert, select
from sqlalchemy.exc import (
    DataError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from src.orders.database import DatabaseManager
from src.orders.domain import Order
from src.orders.errors import DuplicateOrderError, InvalidOrderError, OrderNotFoundError
from src.orders.tables import Base, DeliveryRecord, ItemRecord, OrderRecord, PaymentRecord
from src.shared.backoff import BackoffPolicy, retry_call

_UNIQUE_VIOLATION_CODES = frozenset(
    {
        "23505",  # PostgreSQL unique_violation
        "SQLITE_CONSTRAINT_PRIMARYKEY",
        "SQLITE_CONSTRAINT_UNIQUE",
    }
)

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


def _constraint_code(error: IntegrityError) -> Optional[str]:
    """Driver-level error code of an IntegrityError (psycopg3, psycopg2, sqlite3)."""
    for attr in ("sqlstate", "pgcode", "sqlite_errorname"):
        code = getattr(error.orig, attr, None)
        if code:
            return code
    return None


def is_unique_violation(error: IntegrityError) -> bool:
    return _constraint_code(error) in _UNIQUE_VIOLATION_CODES


def is_transient_db_error(exc: BaseException) -> bool:
    """True for failures worth retrying: the connection, not the data, was the problem."""
    return isinstance(exc, _TRANSIENT_ERRORS)


def _is_permanent_db_error(exc: BaseException) -> bool:
    return not is_transient_db_error(exc)


def _rejected(uid: str, error: Exception) -> InvalidOrderError:
    return InvalidOrderError(f"order {uid} rejected: {getattr(error, 'orig', None) or error}")


class OrderRepository:
    """
    Transactional multi-table order storage.

    Safe to share between threads: state is limited to the database manager,
    whose pool hands each call its own connection.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        write_policy: Optional[BackoffPolicy] = None,
        read_policy: Optional[BackoffPolicy] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            db_manager: Source of transactional sessions
            write_policy: Backoff for create(); defaults to the db_write profile
            read_policy: Backoff for reads; defaults to the db_read profile
            logger: Logger to use; defaults to this module's logger
        """
        self.db_manager = db_manager
        self.write_policy = write_policy or BackoffPolicy.db_write()
        self.read_policy = read_policy or BackoffPolicy.db_read()
        self.logger = logger or logging.getLogger(__name__)

    # ==========================================================================
    # WRITE
    # ==========================================================================

    def create(self, order: Order) -> None:
        """
        Store one order across all four tables atomically.

        Raises:
            DuplicateOrderError: order_uid is already stored
            InvalidOrderError: another constraint or the driver rejected the order
            RetryExhaustedError: transient failures outlasted the write budget
        """
        retry_call(
            lambda: self._insert_order(order),
            self.write_policy,
            is_permanent=_is_permanent_db_error,
            description="repository.create",
            logger=self.logger,
        )
        self.logger.debug(
            "Order stored",
            extra={"correlation_id": order.order_uid, "items_count": len(order.items)},
        )

    def _insert_order(self, order: Order) -> None:
        uid = order.order_uid

        with self.db_manager.get_session() as session:
            try:
                session.execute(
                    insert(OrderRecord).values(
                        order_uid=uid,
                        **order.model_dump(exclude={"order_uid", "delivery", "payment", "items"}),
                    )
                )
            except IntegrityError as e:
                if is_unique_violation(e):
                    raise DuplicateOrderError(uid) from e
                raise _rejected(uid, e) from e
            except (DataError, ValueError, TypeError) as e:
                raise _rejected(uid, e) from e

            try:
                session.execute(
                    insert(DeliveryRecord).values(order_uid=uid, **order.delivery.model_dump())
                )
                session.execute(
                    insert(PaymentRecord).values(order_uid=uid, **order.payment.model_dump())
                )
                if order.items:
                    session.execute(
                        insert(ItemRecord),
                        [{"order_uid": uid, **item.model_dump()} for item in order.items],
                    )
            except (IntegrityError, DataError, ValueError, TypeError) as e:
                raise _rejected(uid, e) from e

    # ==========================================================================
    # READ
    # ==========================================================================

    def get_by_uid(self, order_uid: str) -> Order:
        """
        Load one order with its delivery, payment and items.

        Raises:
            OrderNotFoundError: No such order (not retried)
            RetryExhaustedError: Transient failures outlasted the read budget
        """
        return retry_call(
            lambda: self._select_one(order_uid),
            self.read_policy,
            is_permanent=_is_permanent_db_error,
            description="repository.get_by_uid",
            logger=self.logger,
        )

    def _select_one(self, order_uid: str) -> Order:
        with self.db_manager.get_session() as session:
            record = session.execute(
                select(OrderRecord).where(OrderRecord.order_uid == order_uid)
            ).scalar_one_or_none()
            if record is None:
                raise OrderNotFoundError(order_uid)
            return self._assemble(session, [record])[0]

    def get_latest(self, limit: int) -> List[Order]:
        """
        Load up to limit most recently created orders, newest first.

        Returns:
            List of orders (empty when the store is empty, never None)

        Raises:
            ValueError: limit < 1
            RetryExhaustedError: Transient failures outlasted the read budget
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        return retry_call(
            lambda: self._select_latest(limit),
            self.read_policy,
            is_permanent=_is_permanent_db_error,
            description="repository.get_latest",
            logger=self.logger,
        )

    def _select_latest(self, limit: int) -> List[Order]:
        with self.db_manager.get_session() as session:
            records = (
                session.execute(
                    select(OrderRecord)
                    .order_by(OrderRecord.date_created.desc(), OrderRecord.order_uid)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            if not records:
                return []
            return self._assemble(session, records)

    def _assemble(self, session: Session, records: Sequence[OrderRecord]) -> List[Order]:
        """Attach related rows to each order using one IN (...) query per table."""
        uids = [record.order_uid for record in records]

        deliveries: Dict[str, DeliveryRecord] = {
            row.order_uid: row
            for row in session.execute(
                select(DeliveryRecord).where(DeliveryRecord.order_uid.in_(uids))
            ).scalars()
        }
        payments: Dict[str, PaymentRecord] = {
            row.order_uid: row
            for row in session.execute(
                select(PaymentRecord).where(PaymentRecord.order_uid.in_(uids))
            ).scalars()
        }
        items: Dict[str, List[ItemRecord]] = defaultdict(list)
        for row in session.execute(
            select(ItemRecord)
            .where(ItemRecord.order_uid.in_(uids))
            .order_by(ItemRecord.order_uid, ItemRecord.chrt_id)
        ).scalars():
            items[row.order_uid].append(row)

        return [
            Order.model_validate(
                {
                    **_columns(record),
                    "delivery": _columns(deliveries.get(record.order_uid), skip_key=True),
                    "payment": _columns(payments.get(record.order_uid), skip_key=True),
                    "items": [_columns(item, skip_key=True) for item in items[record.order_uid]],
                }
            )
            for record in records
        ]


def _columns(record: Optional[Base], skip_key: bool = False) -> dict:
    """Column values of a row as a dict; a missing related row becomes {}."""
    if record is None:
        return {}
    names: Iterable[str] = (column.key for column in record.__table__.columns)
    return {
        name: getattr(record, name)
        for name in names
        if not (skip_key and name == "order_uid")
    }
