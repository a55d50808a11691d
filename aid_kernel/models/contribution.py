"""
Module: aid_kernel.models.contribution
Responsibility: ORM persistence for percentage-based funding commitments.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - 1 <= percentage <= 100 (check constraint).
    - At most one COMMITTED contribution per (request, supplier): partial
      unique index uq_contribution_committed.  Withdrawn rows stay as
      history and do not block a later commitment.
    - Sum of committed percentages per request <= 100: enforced by
      ContributionLedger under the request row lock (not expressible as a
      row constraint).

Failure modes:
    - IntegrityError on a duplicate committed (request, supplier) pair.

Audit relevance:
    Withdrawal is a status change, not a delete, so every commitment that
    ever existed remains queryable.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import TrackedBase, UUIDString
from aid_kernel.domain.values import ContributionStatus


class Contribution(TrackedBase):
    """
    A supplier's committed share of a request.

    Contract:
        Created COMMITTED by ContributionLedger.commit (or by a claim, which
        commits the remaining share).  Becomes WITHDRAWN by withdraw or by
        an approved recede.

    Guarantees:
        - Only COMMITTED rows count toward the request's funding total.
    """

    __tablename__ = "contributions"

    __table_args__ = (
        Index("idx_contribution_request", "request_id", "status"),
        Index("idx_contribution_supplier", "supplier_id"),
        Index(
            "uq_contribution_committed",
            "request_id",
            "supplier_id",
            unique=True,
            postgresql_where=text("status = 'committed'"),
            sqlite_where=text("status = 'committed'"),
        ),
        CheckConstraint(
            "percentage >= 1 AND percentage <= 100",
            name="ck_contribution_percentage_range",
        ),
        CheckConstraint(
            "amount_value IS NULL OR amount_value >= 0",
            name="ck_contribution_amount_nonneg",
        ),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("aid_requests.id"),
        nullable=False,
    )

    supplier_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("participants.id"),
        nullable=False,
    )

    percentage: Mapped[int] = mapped_column(Integer, nullable=False)

    # Optional pledged money value for reporting
    amount_value: Mapped[Decimal | None] = mapped_column(nullable=True)

    status: Mapped[ContributionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=ContributionStatus.COMMITTED.value,
    )

    withdrawn_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Contribution {self.percentage}% by {self.supplier_id} ({self.status})>"

    @property
    def is_committed(self) -> bool:
        return self.status == ContributionStatus.COMMITTED
