"""
Module: aid_kernel.models.participant
Responsibility: ORM persistence for marketplace participants (recipients,
    suppliers, donors, administrators, auditors).
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - is_verified is written only by the external KYC workflow; the engine
      reads it through VerificationGateway.
    - phone and national_id feed ConflictGuard identity matching.

Failure modes:
    - IntegrityError on a missing name or role.

Audit relevance:
    Every audit entry carries the acting participant's id.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import Base
from aid_kernel.domain.conflict_guard import PartyIdentity
from aid_kernel.domain.values import ParticipantRole


class Participant(Base):
    """
    A marketplace account.

    Contract:
        One row per account.  The same person may hold several accounts;
        ConflictGuard links them through phone and national ID.

    Guarantees:
        - role is one of ParticipantRole.
    """

    __tablename__ = "participants"

    __table_args__ = (
        Index("idx_participant_role", "role"),
        Index("idx_participant_phone", "phone"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    role: Mapped[ParticipantRole] = mapped_column(String(20), nullable=False)

    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Government identity card number (Ghana Card in the pilot deployment)
    national_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Participant {self.name} ({self.role})>"

    def has_role(self, *roles: ParticipantRole) -> bool:
        return ParticipantRole(self.role) in roles

    @property
    def is_admin(self) -> bool:
        return self.has_role(ParticipantRole.ADMIN)

    @property
    def is_supplier(self) -> bool:
        return self.has_role(ParticipantRole.SUPPLIER)

    def identity(self) -> PartyIdentity:
        return PartyIdentity(
            participant_id=self.id,
            phone=self.phone,
            national_id=self.national_id,
        )
