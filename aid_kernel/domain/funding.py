"""
Funding derivation -- the single rule that turns a committed sum into state.

Responsibility:
    Pure functions mapping the sum of committed contribution percentages
    on a request to its ``funding_status`` and (where the lifecycle says
    so) its ``status``.  ContributionLedger applies this after commit,
    update and withdraw; RequestLifecycle applies it after claim and
    recede.  There is no second implementation.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - funding_status is a pure function of the committed total:
      0 -> unfunded, 1..99 -> partially_funded, 100 -> fully_funded.
    - An APPROVED request that reaches 100% becomes CLAIMED; a CLAIMED
      request that drops below 100% reverts to APPROVED.  No other status
      is touched.

Failure modes:
    - ValueError for a total outside 0..100.  The ledger rejects
      over-commitment before calling in here, so this only fires on a bug.
"""

from dataclasses import dataclass

from aid_kernel.domain.values import FundingStatus, RequestStatus

FULL_FUNDING = 100


@dataclass(frozen=True)
class FundingState:
    """Derived (status, funding_status) pair for a request."""

    total: int
    funding_status: FundingStatus
    status: RequestStatus

    @property
    def remaining(self) -> int:
        return FULL_FUNDING - self.total

    @property
    def is_fully_funded(self) -> bool:
        return self.funding_status == FundingStatus.FULLY_FUNDED


def funding_status_for(total: int) -> FundingStatus:
    """Map a committed percentage total to its funding status."""
    if total < 0 or total > FULL_FUNDING:
        raise ValueError(f"Committed total {total} outside 0..{FULL_FUNDING}")
    if total == 0:
        return FundingStatus.UNFUNDED
    if total < FULL_FUNDING:
        return FundingStatus.PARTIALLY_FUNDED
    return FundingStatus.FULLY_FUNDED


def derive_funding_state(total: int, status: RequestStatus | str) -> FundingState:
    """
    Derive the funding state a request must hold for a committed total.

    Args:
        total: Sum of committed contribution percentages (0..100).
        status: The request's current lifecycle status.

    Returns:
        FundingState with the derived funding_status and, where the
        funding threshold moves it, the new lifecycle status.
    """
    current = RequestStatus(status)
    funding_status = funding_status_for(total)

    next_status = current
    if total >= FULL_FUNDING and current == RequestStatus.APPROVED:
        next_status = RequestStatus.CLAIMED
    elif total < FULL_FUNDING and current == RequestStatus.CLAIMED:
        next_status = RequestStatus.APPROVED

    return FundingState(total=total, funding_status=funding_status, status=next_status)


def remaining_share(total: int) -> int:
    """Percentage still open for new commitments."""
    return max(0, FULL_FUNDING - total)
