"""
Request lifecycle table tests.
"""

import pytest

from aid_kernel.domain.lifecycle import (
    ALLOWED_SOURCES,
    RequestOperation,
    can_apply,
    is_terminal,
    target_status,
)
from aid_kernel.domain.values import TERMINAL_REQUEST_STATUSES, RequestStatus


@pytest.mark.parametrize(
    "operation,source,target",
    [
        (RequestOperation.AUDIT, RequestStatus.PENDING, RequestStatus.APPROVED),
        (RequestOperation.CLAIM, RequestStatus.APPROVED, RequestStatus.CLAIMED),
        (RequestOperation.REQUEST_RECEDE, RequestStatus.CLAIMED, RequestStatus.RECEDE_REQUESTED),
        (RequestOperation.APPROVE_RECEDE, RequestStatus.RECEDE_REQUESTED, RequestStatus.APPROVED),
        (RequestOperation.COMPLETE, RequestStatus.CLAIMED, RequestStatus.COMPLETED),
        (RequestOperation.BATCH_CLOSE, RequestStatus.PENDING, RequestStatus.CLOSED_NO_MATCH),
        (RequestOperation.CANCEL, RequestStatus.RECEDE_REQUESTED, RequestStatus.CANCELLED),
    ],
)
def test_allowed_transitions(operation, source, target):
    assert can_apply(operation, source)
    assert target_status(operation, source) == target


@pytest.mark.parametrize(
    "operation,source",
    [
        (RequestOperation.AUDIT, RequestStatus.APPROVED),
        (RequestOperation.CLAIM, RequestStatus.PENDING),
        (RequestOperation.CLAIM, RequestStatus.CLAIMED),
        (RequestOperation.CONTRIBUTE, RequestStatus.CLAIMED),
        (RequestOperation.REQUEST_RECEDE, RequestStatus.APPROVED),
        (RequestOperation.COMPLETE, RequestStatus.RECEDE_REQUESTED),
    ],
)
def test_rejected_transitions(operation, source):
    assert not can_apply(operation, source)


@pytest.mark.parametrize("operation", list(RequestOperation))
@pytest.mark.parametrize("status", sorted(TERMINAL_REQUEST_STATUSES))
def test_terminal_statuses_admit_nothing(operation, status):
    assert is_terminal(status)
    assert not can_apply(operation, status)


def test_every_operation_is_declared():
    assert set(ALLOWED_SOURCES) == set(RequestOperation)


def test_boost_keeps_status():
    assert target_status(RequestOperation.BATCH_BOOST, "approved") == RequestStatus.APPROVED
