"""
Kernel services.

Flush-only mutators.  Each takes the caller's Session and never commits;
MarketplaceCoordinator (aid_services) owns transaction boundaries.
"""

from aid_kernel.services.allocation_service import AllocationEngine
from aid_kernel.services.audit_service import AuditTrailService
from aid_kernel.services.contribution_service import ContributionLedger
from aid_kernel.services.donation_service import DonationStock
from aid_kernel.services.participant_service import (
    ParticipantService,
    ParticipantVerificationGateway,
)
from aid_kernel.services.request_service import RequestLifecycle
from aid_kernel.services.sequence_service import SequenceService

__all__ = [
    "AllocationEngine",
    "AuditTrailService",
    "ContributionLedger",
    "DonationStock",
    "ParticipantService",
    "ParticipantVerificationGateway",
    "RequestLifecycle",
    "SequenceService",
]
