"""
Pure domain layer.

Status vocabularies, the funding derivation, the lifecycle table and the
self-dealing guard.  Nothing here touches the ORM, the database or I/O
(apart from SystemClock, the sanctioned time boundary).
"""

from aid_kernel.domain.clock import Clock, DeterministicClock, SystemClock, ensure_utc
from aid_kernel.domain.conflict_guard import (
    ConflictGuard,
    PartyIdentity,
    identity_matches,
    is_self_dealing,
    request_is_self_dealt,
)
from aid_kernel.domain.funding import (
    FULL_FUNDING,
    FundingState,
    derive_funding_state,
    funding_status_for,
    remaining_share,
)
from aid_kernel.domain.gateways import NullScorer, VerificationGateway, VulnerabilityScorer
from aid_kernel.domain.lifecycle import RequestOperation, can_apply, is_terminal, target_status
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
    UrgencyLevel,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "ensure_utc",
    "ConflictGuard",
    "PartyIdentity",
    "identity_matches",
    "is_self_dealing",
    "request_is_self_dealt",
    "FULL_FUNDING",
    "FundingState",
    "derive_funding_state",
    "funding_status_for",
    "remaining_share",
    "NullScorer",
    "VerificationGateway",
    "VulnerabilityScorer",
    "RequestOperation",
    "can_apply",
    "is_terminal",
    "target_status",
    "AllocationStatus",
    "ContributionStatus",
    "DisposeAction",
    "DonationStatus",
    "DonationType",
    "FundingStatus",
    "ParticipantRole",
    "RequestStatus",
    "RouteStatus",
    "UrgencyLevel",
]
