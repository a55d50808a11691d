"""
Module: aid_kernel.selectors.regional_selector
Responsibility: Aggregated unmet need per region (the heat-map read model).
Architecture position: Kernel > Selectors.  Uses the pure ConflictGuard to
    drop self-dealt requests; never writes.

Invariants enforced:
    - Only requests of verified recipients that are non-terminal and
      unexpired are counted.
    - A request on which any counterparty (contributor or assigned
      supplier) is the recipient, or shares the recipient's identity, is
      excluded from every statistic.
    - net_need = max(0, quantity_required - live allocated quantity).
"""

from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, or_, select

from aid_kernel.domain.conflict_guard import ConflictGuard
from aid_kernel.domain.dtos import RegionNeed
from aid_kernel.domain.values import (
    TERMINAL_REQUEST_STATUSES,
    AllocationStatus,
    ContributionStatus,
    UrgencyLevel,
)
from aid_kernel.models.allocation import Allocation
from aid_kernel.models.contribution import Contribution
from aid_kernel.models.participant import Participant
from aid_kernel.models.request import AidRequest
from aid_kernel.selectors.base import BaseSelector

UNKNOWN_REGION = "Unknown"

HEAT_WEIGHTS: dict[UrgencyLevel, Decimal] = {
    UrgencyLevel.CRITICAL: Decimal("2.0"),
    UrgencyLevel.HIGH: Decimal("1.5"),
    UrgencyLevel.MEDIUM: Decimal("1.0"),
    UrgencyLevel.LOW: Decimal("0.5"),
}

# Points per request at each level for the regional urgency score (0..100)
SCORE_POINTS: dict[UrgencyLevel, int] = {
    UrgencyLevel.CRITICAL: 100,
    UrgencyLevel.HIGH: 70,
    UrgencyLevel.MEDIUM: 40,
    UrgencyLevel.LOW: 10,
}


def urgency_level_of(value: str | None) -> UrgencyLevel:
    """Parse a stored urgency level; anything unknown counts as LOW."""
    try:
        return UrgencyLevel((value or "").strip().lower())
    except ValueError:
        return UrgencyLevel.LOW


class _RegionAccumulator:
    def __init__(self, region: str):
        self.region = region
        self.total_requests = 0
        self.requested = 0
        self.allocated = 0
        self.net_need = 0
        self.levels: dict[UrgencyLevel, int] = defaultdict(int)
        self.heat = Decimal("0")
        self.flagged = 0
        self.request_ids = []

    def add(self, request: AidRequest, allocated: int) -> None:
        level = urgency_level_of(request.urgency_level)
        net = max(0, request.quantity_required - allocated)
        self.total_requests += 1
        self.requested += request.quantity_required
        self.allocated += allocated
        self.net_need += net
        self.levels[level] += 1
        self.heat += net * HEAT_WEIGHTS[level]
        if request.is_flagged_for_review:
            self.flagged += 1
        self.request_ids.append(request.id)

    def to_dto(self) -> RegionNeed:
        score = 0
        if self.total_requests:
            points = sum(SCORE_POINTS[level] * n for level, n in self.levels.items())
            score = round(points / self.total_requests)
        return RegionNeed(
            region=self.region,
            total_requests=self.total_requests,
            total_requested_quantity=self.requested,
            total_allocated_quantity=self.allocated,
            net_need=self.net_need,
            critical_requests=self.levels[UrgencyLevel.CRITICAL],
            high_urgency_requests=self.levels[UrgencyLevel.HIGH],
            medium_urgency_requests=self.levels[UrgencyLevel.MEDIUM],
            low_urgency_requests=self.levels[UrgencyLevel.LOW],
            urgency_weighted_heat=self.heat,
            urgency_score=score,
            flagged_requests=self.flagged,
            request_ids=tuple(self.request_ids),
        )


class RegionalNeedSelector(BaseSelector):
    """Per-region need aggregation."""

    def __init__(self, session, guard: ConflictGuard | None = None):
        super().__init__(session)
        self._guard = guard or ConflictGuard()

    def _allocated_by_request(self, request_ids) -> dict:
        if not request_ids:
            return {}
        rows = self.session.execute(
            select(Allocation.request_id, func.sum(Allocation.quantity_allocated))
            .where(
                Allocation.request_id.in_(request_ids),
                Allocation.status != AllocationStatus.CANCELLED.value,
            )
            .group_by(Allocation.request_id)
        ).all()
        return {rid: int(total) for rid, total in rows}

    def _counterparty_ids(self, request_ids) -> dict:
        counterparts = defaultdict(set)
        if not request_ids:
            return counterparts
        rows = self.session.execute(
            select(Contribution.request_id, Contribution.supplier_id).where(
                Contribution.request_id.in_(request_ids),
                Contribution.status == ContributionStatus.COMMITTED.value,
            )
        ).all()
        for rid, supplier_id in rows:
            counterparts[rid].add(supplier_id)
        return counterparts

    def region_needs(self, as_of: datetime) -> list[RegionNeed]:
        """Need per region, regions sorted by name."""
        terminal = [s.value for s in TERMINAL_REQUEST_STATUSES]
        candidates = self.session.execute(
            select(AidRequest, Participant)
            .join(Participant, Participant.id == AidRequest.recipient_id)
            .where(
                Participant.is_verified.is_(True),
                AidRequest.status.not_in(terminal),
                or_(AidRequest.expires_at.is_(None), AidRequest.expires_at > as_of),
            )
        ).all()
        if not candidates:
            return []

        request_ids = [r.id for r, _ in candidates]
        counterparts = self._counterparty_ids(request_ids)
        for r, _ in candidates:
            if r.assigned_supplier_id is not None:
                counterparts[r.id].add(r.assigned_supplier_id)

        party_ids = set().union(*counterparts.values()) if counterparts else set()
        identities = {}
        if party_ids:
            for p in self.session.execute(
                select(Participant).where(Participant.id.in_(party_ids))
            ).scalars():
                identities[p.id] = p.identity()

        allocated = self._allocated_by_request(request_ids)
        regions: dict[str, _RegionAccumulator] = {}
        for request, recipient in candidates:
            parties = [
                identities[pid]
                for pid in counterparts.get(request.id, ())
                if pid in identities
            ]
            if self._guard.request_is_self_dealt(recipient.identity(), parties):
                continue
            name = request.region or UNKNOWN_REGION
            acc = regions.setdefault(name, _RegionAccumulator(name))
            acc.add(request, allocated.get(request.id, 0))

        return [regions[name].to_dto() for name in sorted(regions)]

    def region_need(self, region: str, as_of: datetime) -> RegionNeed:
        for need in self.region_needs(as_of):
            if need.region == region:
                return need
        return RegionNeed(region=region)
