"""
Lock ordering and lock-timeout translation tests.
"""

import pytest
from sqlalchemy.exc import OperationalError

from aid_kernel.db.locking import LockRank, RowLocker, is_lock_timeout, translate_lock_errors
from aid_kernel.exceptions import LockOrderViolationError, LockTimeoutError


class _PgError(Exception):
    def __init__(self, pgcode):
        super().__init__("canceling statement due to lock timeout")
        self.pgcode = pgcode


def _operational(orig):
    return OperationalError("SELECT 1", {}, orig)


class TestRowLocker:
    def test_forward_order_is_allowed(self, session, approved_request, verified_donation):
        donation = verified_donation()
        locker = RowLocker(session)

        request, locked = locker.lock_request_then_donation(approved_request.id, donation.id)

        assert request.id == approved_request.id
        assert locked.id == donation.id
        assert locker.held_rank() == LockRank.DONATION
        session.rollback()

    def test_backward_order_is_refused_before_sql(self, session, approved_request, verified_donation):
        donation = verified_donation()
        locker = RowLocker(session)
        locker.lock_donation(donation.id)

        with pytest.raises(LockOrderViolationError) as exc_info:
            locker.lock_request(approved_request.id)
        assert exc_info.value.requested == "request"
        assert exc_info.value.held == "donation"
        session.rollback()

    def test_ledger_is_shared_by_lockers_on_one_session(
        self, session, approved_request, verified_donation,
    ):
        donation = verified_donation()
        RowLocker(session).lock_donation(donation.id)

        with pytest.raises(LockOrderViolationError):
            RowLocker(session).lock_request(approved_request.id)
        session.rollback()

    def test_new_transaction_starts_with_empty_ledger(
        self, session, approved_request, verified_donation,
    ):
        donation = verified_donation()
        locker = RowLocker(session)
        locker.lock_donation(donation.id)
        session.commit()

        assert locker.held_rank() is None
        assert locker.lock_request(approved_request.id).id == approved_request.id
        session.rollback()

    def test_each_savepoint_is_ordered_on_its_own(
        self, session, approved_request, verified_donation,
    ):
        donation = verified_donation()
        locker = RowLocker(session)

        first = session.begin_nested()
        locker.lock_request_then_donation(approved_request.id, donation.id)
        first.commit()

        second = session.begin_nested()
        assert locker.held_rank() is None
        assert locker.lock_request(approved_request.id).id == approved_request.id
        with pytest.raises(LockOrderViolationError):
            locker.lock_donation(donation.id)
            locker.lock_request(approved_request.id)
        second.rollback()
        session.rollback()


class TestLockTimeoutTranslation:
    @pytest.mark.parametrize("pgcode", ["55P03", "40P01", "40001"])
    def test_postgres_lock_codes_are_retryable(self, pgcode):
        assert is_lock_timeout(_operational(_PgError(pgcode)))

    def test_sqlite_busy_is_retryable(self):
        assert is_lock_timeout(_operational(Exception("database is locked")))

    def test_other_errors_are_not(self):
        assert not is_lock_timeout(_operational(Exception("no such table: widgets")))

    def test_translation_raises_lock_timeout(self):
        with pytest.raises(LockTimeoutError) as exc_info:
            with translate_lock_errors("contribute"):
                raise _operational(Exception("database is locked"))
        assert exc_info.value.retryable
        assert exc_info.value.operation == "contribute"

    def test_other_operational_errors_pass_through(self):
        with pytest.raises(OperationalError):
            with translate_lock_errors("contribute"):
                raise _operational(Exception("disk I/O error"))
