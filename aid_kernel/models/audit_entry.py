"""
Module: aid_kernel.models.audit_entry
Responsibility: ORM persistence for the append-only, hash-chained audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit entries are append-only; UPDATE and DELETE are rejected by ORM
      listeners (aid_kernel.db.immutability).
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash),
      computed by AuditTrailService and re-checked by validate_chain.
    - seq is strictly increasing, allocated by SequenceService.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    AuditEntry IS the audit trail.  Every successful mutation of a
    request, contribution, donation, allocation or route produces one
    entry in the same transaction.  Rejected attempts produce none.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable actions."""

    CREATED = "created"
    UPDATED = "updated"

    # Request lifecycle
    AUDITED = "audited"
    CLAIMED = "claimed"
    RECEDE_REQUESTED = "recede_requested"
    RECEDE_APPROVED = "recede_approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FLAGGED = "flagged"
    BATCH_CLOSED = "batch_closed"
    BATCH_BOOSTED = "batch_boosted"

    # Funding ledger
    WITHDRAWN = "withdrawn"

    # Stock
    VERIFIED = "verified"
    REJECTED = "rejected"
    PAYMENT_CONFIRMED = "payment_confirmed"
    WAREHOUSE_ASSIGNED = "warehouse_assigned"

    # Allocation and delivery
    ALLOCATED = "allocated"
    ROUTE_ATTACHED = "route_attached"
    DELIVERED = "delivered"
    ALLOCATION_CANCELLED = "allocation_cancelled"


class AuditEntry(Base):
    """
    Audit entry with hash chain for tamper evidence.

    Contract:
        Rows are append-only, never updated or deleted.  Each row's hash
        includes the previous row's hash.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis entry.

    Non-goals:
        - This model does NOT compute hashes at INSERT time; that is
          AuditTrailService's job.
    """

    __tablename__ = "audit_entries"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_created", "created_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    action: Mapped[AuditAction] = mapped_column(String(50), nullable=False)

    # e.g. "AidRequest", "Contribution", "Donation"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Null for system-initiated actions (scheduled flagging)
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEntry #{self.seq} {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
