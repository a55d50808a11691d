"""
SequenceService -- audit sequence numbers from a locked counter row.

Responsibility:
    Hands out the ``seq`` of each audit entry.  The counter row is read
    ``FOR UPDATE``, so two transactions appending audit entries queue on
    it and the chain head they link to is always the latest one.

Architecture position:
    Kernel > Services.  Called only by AuditTrailService.  The counter is
    the last lock a transaction takes (after Request, Donation,
    Allocation and Warehouse rows).

Invariants enforced:
    - seq is strictly increasing; it is never derived from max(seq) + 1.
    - A rolled-back transaction gives its value back.

Failure modes:
    - Two transactions creating the counter at once: the loser's insert
      fails inside a SAVEPOINT and it locks the winner's row instead.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aid_kernel.logging_config import get_logger
from aid_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """Named, transactional counters.  Flushes; never commits."""

    AUDIT_ENTRY = "audit_entry"

    def __init__(self, session: Session):
        self._session = session

    def _lock(self, name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create(self, name: str) -> SequenceCounter:
        savepoint = self._session.begin_nested()
        counter = SequenceCounter(name=name, current_value=0)
        self._session.add(counter)
        try:
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race", extra={"sequence_name": name})
            counter = self._lock(name)
            if counter is None:
                raise
            return counter
        savepoint.commit()
        return counter

    def next_value(self, name: str = AUDIT_ENTRY) -> int:
        """The next value of ``name``, starting at 1.  The row stays locked."""
        counter = self._lock(name) or self._create(name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": name, "value": counter.current_value},
        )
        return counter.current_value
