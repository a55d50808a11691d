"""
Module: aid_kernel.models.donation
Responsibility: ORM persistence for donated stock.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - Sum of non-cancelled allocations against a donation <= quantity.
      Enforced by AllocationEngine under the donation row lock.
    - remaining_quantity is a cache of quantity minus live allocations.
      The recomputed value is authoritative; DonationStock reports drift
      as StockCacheDriftError.

Failure modes:
    - IntegrityError on negative quantity or remaining_quantity.

Audit relevance:
    Verification, rejection, payment confirmation, warehouse assignment
    and delivery each produce an AuditEntry on the donation.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import TrackedBase, UUIDString
from aid_kernel.domain.values import DonationStatus, DonationType


class Donation(TrackedBase):
    """
    Stock offered by a supplier or donor.

    Contract:
        Allocatable while VERIFIED (or ALLOCATED with residual stock), not
        on or past expiry_date, and either untargeted or targeted at the
        receiving request.

    Guarantees:
        - remaining_quantity starts equal to quantity.
    """

    __tablename__ = "donations"

    __table_args__ = (
        Index("idx_donation_status", "status"),
        Index("idx_donation_supplier", "supplier_id"),
        Index("idx_donation_warehouse", "warehouse_id"),
        CheckConstraint("quantity >= 0", name="ck_donation_quantity_nonneg"),
        CheckConstraint(
            "remaining_quantity >= 0",
            name="ck_donation_remaining_nonneg",
        ),
    )

    supplier_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("participants.id"),
        nullable=False,
    )

    donation_type: Mapped[DonationType] = mapped_column(String(20), nullable=False)

    item: Mapped[str] = mapped_column(String(255), nullable=False)

    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    remaining_quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[DonationStatus] = mapped_column(
        String(20),
        nullable=False,
        default=DonationStatus.PENDING.value,
    )

    warehouse_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("warehouses.id"),
        nullable=True,
    )

    targeted_request_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("aid_requests.id"),
        nullable=True,
    )

    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Donation {self.item!r} {self.remaining_quantity}/{self.quantity} ({self.status})>"

    def is_expired(self, as_of: date) -> bool:
        return self.expiry_date is not None and self.expiry_date <= as_of
