"""
Module: aid_kernel.db.locking
Responsibility: Pessimistic row locks taken in one global order, and the
    translation of lock-wait failures into retryable kernel errors.
Architecture position: Kernel > DB.  May import from db/, models/ and
    exceptions.  Used by every service that reads-then-writes shared state.

Invariants enforced:
    - Lock order: Request -> Donation -> Allocation -> Warehouse.
      RowLocker remembers the highest rank locked in the current unit
      of work and refuses a lower rank afterwards with
      LockOrderViolationError, before any SQL is sent.  A unit of work is
      the transaction, or the innermost SAVEPOINT when one is open: each
      batch item is ordered on its own, and a cross-item deadlock on
      PostgreSQL surfaces as LockTimeoutError for that item.
    - Every check-then-write happens on a row fetched with
      SELECT ... FOR UPDATE (populate_existing, so no stale identity-map
      copy is used).  On SQLite the FOR UPDATE clause is not rendered;
      the BEGIN IMMEDIATE installed by db/engine.py serializes writers.

Failure modes:
    - LockOrderViolationError: programming error, never retried.
    - LockTimeoutError: lock wait exceeded (PostgreSQL lock_timeout,
      deadlock detection, or SQLite busy timeout).  Retryable.

Audit relevance:
    Lock timeouts are logged as ``lock_timeout`` with the operation name;
    the unit of work is rolled back so no partial change or audit entry
    survives.
"""

from contextlib import contextmanager
from enum import IntEnum
from typing import Generator, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from aid_kernel.db.base import Base
from aid_kernel.exceptions import (
    AllocationNotFoundError,
    DonationNotFoundError,
    LockOrderViolationError,
    LockTimeoutError,
    RequestNotFoundError,
    WarehouseNotFoundError,
)
from aid_kernel.logging_config import get_logger

logger = get_logger("db.locking")

ModelType = TypeVar("ModelType", bound=Base)

_LEDGER_KEY = "aid_kernel.lock_ledger"

# lock_not_available, deadlock_detected, serialization_failure
_RETRYABLE_PGCODES = frozenset({"55P03", "40P01", "40001"})
_SQLITE_BUSY_MESSAGES = ("database is locked", "database table is locked")


class LockRank(IntEnum):
    """Global lock acquisition order.  Lower ranks are taken first."""

    REQUEST = 1
    DONATION = 2
    ALLOCATION = 3
    WAREHOUSE = 4


class RowLocker:
    """
    Takes FOR UPDATE locks on kernel rows in the global order.

    Contract:
        One RowLocker per service; all RowLockers on the same Session share
        the per-transaction lock ledger stored in ``session.info``.

    Guarantees:
        - A lock of rank r after a lock of rank > r in the same transaction
          raises LockOrderViolationError without touching the database.
        - A missing row raises the matching NotFoundError.

    Non-goals:
        - Does NOT release locks; they end with the transaction.
    """

    def __init__(self, session: Session):
        self._session = session

    def _unit(self):
        # A batch item runs under its own SAVEPOINT and is ordered on its own.
        return self._session.get_nested_transaction() or self._session.get_transaction()

    def _ledger(self) -> dict | None:
        ledger = self._session.info.get(_LEDGER_KEY)
        if ledger is None:
            return None
        # A new unit of work starts with an empty ledger.
        if ledger["transaction"] is not self._unit():
            return None
        return ledger

    def held_rank(self) -> LockRank | None:
        """Highest lock rank taken in the current transaction, if any."""
        ledger = self._ledger()
        return ledger["highest"] if ledger else None

    def _check_order(self, rank: LockRank) -> None:
        held = self.held_rank()
        if held is not None and rank < held:
            logger.error(
                "lock_order_violation",
                extra={"requested": rank.name, "held": held.name},
            )
            raise LockOrderViolationError(rank.name.lower(), held.name.lower())

    def _record(self, rank: LockRank) -> None:
        ledger = self._ledger()
        if ledger is None:
            self._session.info[_LEDGER_KEY] = {
                "transaction": self._unit(),
                "highest": rank,
            }
        elif rank > ledger["highest"]:
            ledger["highest"] = rank

    def _lock(self, model: type[ModelType], entity_id: UUID, rank: LockRank) -> ModelType | None:
        self._check_order(rank)
        row = self._session.execute(
            select(model)
            .where(model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        self._record(rank)
        logger.debug(
            "row_locked",
            extra={"entity_type": model.__name__, "entity_id": str(entity_id)},
        )
        return row

    def lock_request(self, request_id: UUID):
        """Lock an AidRequest row.  Raises RequestNotFoundError."""
        from aid_kernel.models.request import AidRequest

        request = self._lock(AidRequest, request_id, LockRank.REQUEST)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        return request

    def lock_donation(self, donation_id: UUID):
        """Lock a Donation row.  Raises DonationNotFoundError."""
        from aid_kernel.models.donation import Donation

        donation = self._lock(Donation, donation_id, LockRank.DONATION)
        if donation is None:
            raise DonationNotFoundError(str(donation_id))
        return donation

    def lock_allocation(self, allocation_id: UUID):
        """Lock an Allocation row.  Raises AllocationNotFoundError."""
        from aid_kernel.models.allocation import Allocation

        allocation = self._lock(Allocation, allocation_id, LockRank.ALLOCATION)
        if allocation is None:
            raise AllocationNotFoundError(str(allocation_id))
        return allocation

    def lock_warehouse(self, warehouse_id: UUID):
        """Lock a Warehouse row.  Raises WarehouseNotFoundError."""
        from aid_kernel.models.logistics import Warehouse

        warehouse = self._lock(Warehouse, warehouse_id, LockRank.WAREHOUSE)
        if warehouse is None:
            raise WarehouseNotFoundError(str(warehouse_id))
        return warehouse

    def lock_request_then_donation(self, request_id: UUID, donation_id: UUID):
        """Lock both rows in the global order and return (request, donation)."""
        request = self.lock_request(request_id)
        donation = self.lock_donation(donation_id)
        return request, donation


def is_lock_timeout(exc: OperationalError) -> bool:
    """True if ``exc`` is a lock wait that a retry may resolve."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _RETRYABLE_PGCODES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _SQLITE_BUSY_MESSAGES)


@contextmanager
def translate_lock_errors(operation: str) -> Generator[None, None, None]:
    """Re-raise driver lock-wait failures as LockTimeoutError."""
    try:
        yield
    except OperationalError as exc:
        if not is_lock_timeout(exc):
            raise
        logger.warning(
            "lock_timeout",
            extra={"operation": operation, "driver_message": str(exc.orig)},
        )
        raise LockTimeoutError(operation, str(exc.orig)) from exc
