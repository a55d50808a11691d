"""
Module: aid_kernel.selectors.request_selector
Responsibility: Read-only queries over aid requests: the funding
    marketplace listing, the review queue, and the candidate lists the
    batch tasks work through.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Funded percentages are recomputed from committed contributions,
      never read from a cached column.
    - Candidate lists are hints only; the services re-check eligibility
      under the row lock before changing anything.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, or_, select

from aid_kernel.domain.dtos import AvailableRequest, RequestInfo
from aid_kernel.domain.values import (
    TERMINAL_REQUEST_STATUSES,
    ContributionStatus,
    FundingStatus,
    RequestStatus,
)
from aid_kernel.exceptions import RequestNotFoundError
from aid_kernel.models.contribution import Contribution
from aid_kernel.models.request import AidRequest
from aid_kernel.selectors.base import BaseSelector

_OPEN_STATUSES = [RequestStatus.PENDING.value, RequestStatus.APPROVED.value]
_TERMINAL = [s.value for s in TERMINAL_REQUEST_STATUSES]


def _committed_totals():
    return (
        select(
            Contribution.request_id.label("request_id"),
            func.sum(Contribution.percentage).label("total"),
        )
        .where(Contribution.status == ContributionStatus.COMMITTED.value)
        .group_by(Contribution.request_id)
        .subquery()
    )


class RequestSelector(BaseSelector):
    """Queries over AidRequest."""

    def get(self, request_id: UUID) -> RequestInfo:
        request = self.session.get(AidRequest, request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        return RequestInfo.from_model(request)

    def list_available(self, as_of: datetime, limit: int = 100) -> list[AvailableRequest]:
        """
        Approved, unexpired requests that still accept funding.

        Ordered by admin boost, then urgency score (unscored last), then
        newest first.
        """
        totals = _committed_totals()
        funded = func.coalesce(totals.c.total, 0)
        rows = self.session.execute(
            select(AidRequest, funded)
            .outerjoin(totals, totals.c.request_id == AidRequest.id)
            .where(
                AidRequest.status == RequestStatus.APPROVED.value,
                AidRequest.funding_status != FundingStatus.FULLY_FUNDED.value,
                or_(AidRequest.expires_at.is_(None), AidRequest.expires_at > as_of),
            )
            .order_by(
                AidRequest.admin_override.desc(),
                AidRequest.urgency_score.desc().nulls_last(),
                AidRequest.created_at.desc(),
            )
            .limit(limit)
        ).all()
        return [
            AvailableRequest(request=RequestInfo.from_model(r), funded_percentage=int(total))
            for r, total in rows
        ]

    def list_flagged(self, cutoff: datetime) -> list[RequestInfo]:
        """Review queue: non-terminal requests created before ``cutoff``, oldest first."""
        rows = self.session.execute(
            select(AidRequest)
            .where(
                AidRequest.status.not_in(_TERMINAL),
                AidRequest.created_at < cutoff,
            )
            .order_by(AidRequest.created_at, AidRequest.id)
        ).scalars().all()
        return [RequestInfo.from_model(r) for r in rows]

    def stale_unmatched_ids(self, cutoff: datetime) -> list[UUID]:
        """Open, unassigned, uncommitted requests created before ``cutoff``."""
        totals = _committed_totals()
        return list(
            self.session.execute(
                select(AidRequest.id)
                .outerjoin(totals, totals.c.request_id == AidRequest.id)
                .where(
                    AidRequest.status.in_(_OPEN_STATUSES),
                    AidRequest.assigned_supplier_id.is_(None),
                    AidRequest.created_at < cutoff,
                    totals.c.total.is_(None),
                )
                .order_by(AidRequest.created_at, AidRequest.id)
            ).scalars().all()
        )

    def unflagged_stale_ids(self, cutoff: datetime) -> list[UUID]:
        flagged = set(
            self.session.execute(
                select(AidRequest.id).where(AidRequest.is_flagged_for_review.is_(True))
            ).scalars().all()
        )
        return [rid for rid in self.stale_unmatched_ids(cutoff) if rid not in flagged]

    def expired_open_ids(self, as_of: datetime) -> list[UUID]:
        """Open, unassigned requests with no commitment whose expiry has passed."""
        totals = _committed_totals()
        return list(
            self.session.execute(
                select(AidRequest.id)
                .outerjoin(totals, totals.c.request_id == AidRequest.id)
                .where(
                    AidRequest.status.in_(_OPEN_STATUSES),
                    AidRequest.assigned_supplier_id.is_(None),
                    totals.c.total.is_(None),
                    AidRequest.expires_at.is_not(None),
                    AidRequest.expires_at <= as_of,
                )
                .order_by(AidRequest.expires_at, AidRequest.id)
            ).scalars().all()
        )
