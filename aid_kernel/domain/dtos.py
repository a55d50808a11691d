"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable snapshots returned by every service and selector in the
    kernel.  Callers never receive ORM entities, so nothing outside a
    service can mutate a row behind the ledger's back.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``from_model()`` class methods are
    boundary converters invoked only from services and selectors.

Audit relevance:
    ``FundingSummary`` and ``AuditPage`` are the read models auditors use
    to reconcile a request's funding status against its contributions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from aid_kernel.domain.clock import ensure_utc
from aid_kernel.domain.funding import FULL_FUNDING
from aid_kernel.domain.values import (
    AllocationStatus,
    ContributionStatus,
    DisposeAction,
    DonationStatus,
    DonationType,
    FundingStatus,
    ParticipantRole,
    RequestStatus,
    RouteStatus,
)

if TYPE_CHECKING:
    from aid_kernel.models.allocation import Allocation as AllocationModel
    from aid_kernel.models.audit_entry import AuditEntry as AuditEntryModel
    from aid_kernel.models.contribution import Contribution as ContributionModel
    from aid_kernel.models.donation import Donation as DonationModel
    from aid_kernel.models.logistics import DeliveryRoute as DeliveryRouteModel
    from aid_kernel.models.participant import Participant as ParticipantModel
    from aid_kernel.models.request import AidRequest as AidRequestModel


@dataclass(frozen=True)
class ParticipantInfo:
    id: UUID
    name: str
    role: ParticipantRole
    phone: str | None
    national_id: str | None
    is_verified: bool
    is_active: bool

    @classmethod
    def from_model(cls, model: ParticipantModel) -> ParticipantInfo:
        return cls(
            id=model.id,
            name=model.name,
            role=ParticipantRole(model.role),
            phone=model.phone,
            national_id=model.national_id,
            is_verified=model.is_verified,
            is_active=model.is_active,
        )


@dataclass(frozen=True)
class RequestInfo:
    """Snapshot of an aid request."""

    id: UUID
    recipient_id: UUID
    title: str
    region: str | None
    status: RequestStatus
    funding_status: FundingStatus
    assigned_supplier_id: UUID | None
    quantity_required: int
    unit: str | None
    urgency_score: Decimal | None
    urgency_level: str | None
    admin_override: int
    is_flagged_for_review: bool
    flagged_at: datetime | None
    created_at: datetime
    expires_at: datetime | None
    last_audited_at: datetime | None = None
    audited_by_id: UUID | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AidRequestModel) -> RequestInfo:
        return cls(
            id=model.id,
            recipient_id=model.recipient_id,
            title=model.title,
            region=model.region,
            status=RequestStatus(model.status),
            funding_status=FundingStatus(model.funding_status),
            assigned_supplier_id=model.assigned_supplier_id,
            quantity_required=model.quantity_required,
            unit=model.unit,
            urgency_score=model.urgency_score,
            urgency_level=model.urgency_level,
            admin_override=model.admin_override,
            is_flagged_for_review=model.is_flagged_for_review,
            flagged_at=ensure_utc(model.flagged_at),
            created_at=ensure_utc(model.created_at),
            expires_at=ensure_utc(model.expires_at),
            last_audited_at=ensure_utc(model.last_audited_at),
            audited_by_id=model.audited_by_id,
            completed_at=ensure_utc(model.completed_at),
        )

    def age_days(self, as_of: datetime) -> int:
        return (ensure_utc(as_of) - self.created_at).days


@dataclass(frozen=True)
class ContributionInfo:
    id: UUID
    request_id: UUID
    supplier_id: UUID
    percentage: int
    amount_value: Decimal | None
    status: ContributionStatus
    created_at: datetime
    withdrawn_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ContributionModel) -> ContributionInfo:
        return cls(
            id=model.id,
            request_id=model.request_id,
            supplier_id=model.supplier_id,
            percentage=model.percentage,
            amount_value=model.amount_value,
            status=ContributionStatus(model.status),
            created_at=ensure_utc(model.created_at),
            withdrawn_at=ensure_utc(model.withdrawn_at),
        )


@dataclass(frozen=True)
class FundingSummary:
    """Committed funding on a request, recomputed from the ledger."""

    request_id: UUID
    total_committed: int
    contribution_count: int
    funding_status: FundingStatus
    contributions: tuple[ContributionInfo, ...] = ()

    @property
    def remaining(self) -> int:
        return max(0, FULL_FUNDING - self.total_committed)


@dataclass(frozen=True)
class AvailableRequest:
    """A request open for funding, with its funding progress."""

    request: RequestInfo
    funded_percentage: int

    @property
    def remaining_percentage(self) -> int:
        return max(0, FULL_FUNDING - self.funded_percentage)


@dataclass(frozen=True)
class DonationInfo:
    id: UUID
    supplier_id: UUID
    donation_type: DonationType
    item: str
    unit: str | None
    quantity: int
    remaining_quantity: int
    status: DonationStatus
    warehouse_id: UUID | None
    targeted_request_id: UUID | None
    expiry_date: date | None

    @classmethod
    def from_model(cls, model: DonationModel) -> DonationInfo:
        return cls(
            id=model.id,
            supplier_id=model.supplier_id,
            donation_type=DonationType(model.donation_type),
            item=model.item,
            unit=model.unit,
            quantity=model.quantity,
            remaining_quantity=model.remaining_quantity,
            status=DonationStatus(model.status),
            warehouse_id=model.warehouse_id,
            targeted_request_id=model.targeted_request_id,
            expiry_date=model.expiry_date,
        )


@dataclass(frozen=True)
class AllocationInfo:
    id: UUID
    request_id: UUID
    donation_id: UUID
    quantity_allocated: int
    allocator_id: UUID
    status: AllocationStatus
    allocated_date: datetime
    actual_delivery_date: datetime | None = None

    @classmethod
    def from_model(cls, model: AllocationModel) -> AllocationInfo:
        return cls(
            id=model.id,
            request_id=model.request_id,
            donation_id=model.donation_id,
            quantity_allocated=model.quantity_allocated,
            allocator_id=model.allocator_id,
            status=AllocationStatus(model.status),
            allocated_date=ensure_utc(model.allocated_date),
            actual_delivery_date=ensure_utc(model.actual_delivery_date),
        )


@dataclass(frozen=True)
class RouteInfo:
    id: UUID
    allocation_id: UUID
    warehouse_id: UUID | None
    status: RouteStatus
    scheduled_date: datetime | None
    actual_arrival_date: datetime | None

    @classmethod
    def from_model(cls, model: DeliveryRouteModel) -> RouteInfo:
        return cls(
            id=model.id,
            allocation_id=model.allocation_id,
            warehouse_id=model.warehouse_id,
            status=RouteStatus(model.status),
            scheduled_date=ensure_utc(model.scheduled_date),
            actual_arrival_date=ensure_utc(model.actual_arrival_date),
        )


@dataclass(frozen=True)
class DisposeResult:
    """Outcome of an administrative batch disposition."""

    action: DisposeAction
    updated_ids: tuple[UUID, ...]
    skipped_ids: tuple[UUID, ...]

    @property
    def updated_count(self) -> int:
        return len(self.updated_ids)


@dataclass(frozen=True)
class AuditEntryView:
    seq: int
    action: str
    entity_type: str
    entity_id: UUID
    actor_id: UUID | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    description: str | None
    created_at: datetime
    hash: str

    @classmethod
    def from_model(cls, model: AuditEntryModel) -> AuditEntryView:
        return cls(
            seq=model.seq,
            action=str(getattr(model.action, "value", model.action)),
            entity_type=model.entity_type,
            entity_id=model.entity_id,
            actor_id=model.actor_id,
            old_values=model.old_values,
            new_values=model.new_values,
            description=model.description,
            created_at=ensure_utc(model.created_at),
            hash=model.hash,
        )


@dataclass(frozen=True)
class AuditPage:
    """One page of audit entries, newest first."""

    entries: tuple[AuditEntryView, ...]
    page: int
    per_page: int
    total: int

    @property
    def last_page(self) -> int:
        if self.total == 0:
            return 1
        return (self.total + self.per_page - 1) // self.per_page

    @property
    def has_more(self) -> bool:
        return self.page < self.last_page


@dataclass(frozen=True)
class RegionNeed:
    """Aggregated unmet need for one region."""

    region: str
    total_requests: int = 0
    total_requested_quantity: int = 0
    total_allocated_quantity: int = 0
    net_need: int = 0
    critical_requests: int = 0
    high_urgency_requests: int = 0
    medium_urgency_requests: int = 0
    low_urgency_requests: int = 0
    urgency_weighted_heat: Decimal = Decimal("0")
    urgency_score: int = 0
    flagged_requests: int = 0
    request_ids: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def has_stale_data(self) -> bool:
        return self.flagged_requests > 0
