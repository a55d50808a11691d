"""
Request lifecycle table.

Responsibility:
    Declares which request statuses each operation may start from and
    which status it leaves behind.  RequestLifecycle and ContributionLedger
    consult this table before they mutate anything; nothing else decides
    whether a transition is legal.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Terminal statuses (completed, closed_no_match, cancelled) admit no
      further transition.
    - Funding-driven moves between APPROVED and CLAIMED are not listed
      here; they belong to aid_kernel.domain.funding.derive_funding_state.
"""

from enum import Enum

from aid_kernel.domain.values import TERMINAL_REQUEST_STATUSES, RequestStatus


class RequestOperation(str, Enum):
    AUDIT = "audit"
    CLAIM = "claim"
    CONTRIBUTE = "contribute"
    ADJUST_CONTRIBUTION = "adjust_contribution"
    REQUEST_RECEDE = "request_recede"
    APPROVE_RECEDE = "approve_recede"
    COMPLETE = "complete"
    BATCH_CLOSE = "batch_close"
    BATCH_BOOST = "batch_boost"
    FLAG = "flag"
    CANCEL = "cancel"
    ALLOCATE = "allocate"


NON_TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = (
    frozenset(RequestStatus) - TERMINAL_REQUEST_STATUSES
)

# Allowed source statuses per operation (operation -> statuses)
ALLOWED_SOURCES: dict[RequestOperation, frozenset[RequestStatus]] = {
    RequestOperation.AUDIT: frozenset({RequestStatus.PENDING}),
    RequestOperation.CLAIM: frozenset({RequestStatus.APPROVED}),
    RequestOperation.CONTRIBUTE: frozenset({RequestStatus.APPROVED}),
    RequestOperation.ADJUST_CONTRIBUTION: frozenset({
        RequestStatus.APPROVED, RequestStatus.CLAIMED,
    }),
    RequestOperation.REQUEST_RECEDE: frozenset({RequestStatus.CLAIMED}),
    RequestOperation.APPROVE_RECEDE: frozenset({RequestStatus.RECEDE_REQUESTED}),
    RequestOperation.COMPLETE: frozenset({RequestStatus.CLAIMED}),
    RequestOperation.BATCH_CLOSE: NON_TERMINAL_REQUEST_STATUSES,
    RequestOperation.BATCH_BOOST: NON_TERMINAL_REQUEST_STATUSES,
    RequestOperation.FLAG: NON_TERMINAL_REQUEST_STATUSES,
    RequestOperation.CANCEL: NON_TERMINAL_REQUEST_STATUSES,
    RequestOperation.ALLOCATE: frozenset({
        RequestStatus.APPROVED, RequestStatus.CLAIMED,
    }),
}

# Status left behind by operations that set one explicitly
TARGET_STATUS: dict[RequestOperation, RequestStatus] = {
    RequestOperation.AUDIT: RequestStatus.APPROVED,
    RequestOperation.CLAIM: RequestStatus.CLAIMED,
    RequestOperation.REQUEST_RECEDE: RequestStatus.RECEDE_REQUESTED,
    RequestOperation.APPROVE_RECEDE: RequestStatus.APPROVED,
    RequestOperation.COMPLETE: RequestStatus.COMPLETED,
    RequestOperation.BATCH_CLOSE: RequestStatus.CLOSED_NO_MATCH,
    RequestOperation.CANCEL: RequestStatus.CANCELLED,
}


def is_terminal(status: RequestStatus | str) -> bool:
    return RequestStatus(status) in TERMINAL_REQUEST_STATUSES


def can_apply(operation: RequestOperation, status: RequestStatus | str) -> bool:
    """True if ``operation`` may start from ``status``."""
    return RequestStatus(status) in ALLOWED_SOURCES[operation]


def target_status(
    operation: RequestOperation,
    current: RequestStatus | str,
) -> RequestStatus:
    """Status after ``operation``; unchanged for operations without a target."""
    return TARGET_STATUS.get(operation, RequestStatus(current))
