"""
Module: aid_kernel.models.allocation
Responsibility: ORM persistence for quantities of donated stock committed
    to a request.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - quantity_allocated > 0 (check constraint).
    - Non-cancelled allocations never exceed the donation's quantity;
      AllocationEngine checks under the donation lock.

Failure modes:
    - IntegrityError on a non-positive quantity or dangling reference.

Audit relevance:
    Creation, route attachment, delivery and cancellation are audited.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import TrackedBase, UUIDString
from aid_kernel.domain.values import AllocationStatus


class Allocation(TrackedBase):
    """Quantity of a donation assigned to a request."""

    __tablename__ = "allocations"

    __table_args__ = (
        Index("idx_allocation_request", "request_id"),
        Index("idx_allocation_donation", "donation_id", "status"),
        CheckConstraint("quantity_allocated > 0", name="ck_allocation_quantity_positive"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("aid_requests.id"),
        nullable=False,
    )

    donation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("donations.id"),
        nullable=False,
    )

    quantity_allocated: Mapped[int] = mapped_column(Integer, nullable=False)

    allocator_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("participants.id"),
        nullable=False,
    )

    status: Mapped[AllocationStatus] = mapped_column(
        String(20),
        nullable=False,
        default=AllocationStatus.PENDING.value,
    )

    allocated_date: Mapped[datetime] = mapped_column(nullable=False)

    actual_delivery_date: Mapped[datetime | None] = mapped_column(nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Allocation {self.quantity_allocated} of {self.donation_id} ({self.status})>"

    @property
    def is_live(self) -> bool:
        return self.status != AllocationStatus.CANCELLED
