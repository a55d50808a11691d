"""
Module: aid_kernel.models.request
Responsibility: ORM persistence for aid requests.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - funding_status equals funding_status_for(sum of committed
      contributions).  Written only through derive_funding_state.
    - status moves only along aid_kernel.domain.lifecycle.
    - The Request row is the lock that serializes every funding change
      (ContributionLedger) and every claim/recede (RequestLifecycle).

Failure modes:
    - IntegrityError on a dangling recipient or supplier reference.

Audit relevance:
    Every status change, funding change and flag change on a request is
    paired with an AuditEntry in the same transaction.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import TrackedBase, UUIDString
from aid_kernel.domain.values import FundingStatus, RequestStatus


class AidRequest(TrackedBase):
    """
    A recipient's request for aid.

    Contract:
        Created PENDING and UNFUNDED.  Funding and lifecycle columns are
        written by the services in aid_kernel.services only.

    Guarantees:
        - assigned_supplier_id is set only while a single supplier holds
          the request via claim.

    Non-goals:
        - Urgency fields are opaque inputs from the scorer; the engine never
          reads them when deciding funding or allocation.
    """

    __tablename__ = "aid_requests"

    __table_args__ = (
        Index("idx_request_status", "status"),
        Index("idx_request_recipient", "recipient_id"),
        Index("idx_request_region", "region"),
        Index("idx_request_created", "created_at"),
        CheckConstraint("quantity_required >= 0", name="ck_request_quantity_nonneg"),
    )

    recipient_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("participants.id"),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    need_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    region: Mapped[str | None] = mapped_column(String(100), nullable=True)

    quantity_required: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[RequestStatus] = mapped_column(
        String(30),
        nullable=False,
        default=RequestStatus.PENDING.value,
    )

    funding_status: Mapped[FundingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=FundingStatus.UNFUNDED.value,
    )

    assigned_supplier_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("participants.id"),
        nullable=True,
    )

    # Opaque scorer output
    urgency_score: Mapped[Decimal | None] = mapped_column(nullable=True)
    urgency_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    admin_override: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_flagged_for_review: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    flagged_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_audited_at: Mapped[datetime | None] = mapped_column(nullable=True)
    audited_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<AidRequest {self.title!r} {self.status}/{self.funding_status}>"
