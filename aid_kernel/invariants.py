"""
Engine Invariants Contract.

These invariants are structural law. They hold regardless of configuration:
settings may move the stale-request threshold or the lock timeout, never
whether these rules apply.

This module exists solely to declare the invariants explicitly. Enforcement
is distributed across the contribution ledger, the allocation engine, the
row locker, the conflict guard and the audit trail.
"""

from enum import Enum, unique


@unique
class EngineInvariant(str, Enum):
    """Non-configurable invariants enforced by the engine."""

    FUNDING_CAP = "funding_cap"
    """The committed contribution percentages of a request never sum above
    100. Enforced by ContributionLedger under the Request row lock."""

    QUANTITY_CAP = "quantity_cap"
    """Non-cancelled allocations of a donation never sum above its quantity.
    Enforced by AllocationEngine under the Donation row lock."""

    DERIVED_FUNDING_STATUS = "derived_funding_status"
    """funding_status is a pure function of the committed sum, applied in
    the same transaction as the ledger change. Enforced by
    aid_kernel.domain.funding.derive_funding_state."""

    NO_SELF_DEALING = "no_self_dealing"
    """A request's recipient (or anyone sharing their phone or national ID)
    never claims, funds or targets it. Enforced by ConflictGuard."""

    LOCK_ORDER = "lock_order"
    """Rows are locked Request -> Donation -> Allocation -> Warehouse
    within a transaction. Enforced by aid_kernel.db.locking.RowLocker."""

    AUDIT_APPEND_ONLY = "audit_append_only"
    """Audit entries are written in the mutating transaction and are never
    updated or deleted. Enforced by AuditTrailService and ORM listeners
    (aid_kernel.db.immutability)."""

    SEQUENCE_MONOTONICITY = "sequence_monotonicity"
    """Audit sequence numbers are strictly monotonic. Enforced by
    SequenceService with a locked counter row."""


# All invariants as a frozenset for programmatic checks.
ALL_ENGINE_INVARIANTS: frozenset[EngineInvariant] = frozenset(EngineInvariant)

# The kernel package may not import from these packages.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "aid_services",
    "aid_batch",
    "aid_config",
)
