"""Domain models for the aid kernel."""

from aid_kernel.models.allocation import Allocation
from aid_kernel.models.audit_entry import AuditAction, AuditEntry
from aid_kernel.models.contribution import Contribution
from aid_kernel.models.donation import Donation
from aid_kernel.models.logistics import DeliveryRoute, Warehouse
from aid_kernel.models.participant import Participant
from aid_kernel.models.request import AidRequest
from aid_kernel.models.sequence import SequenceCounter

__all__ = [
    "AidRequest",
    "Allocation",
    "AuditAction",
    "AuditEntry",
    "Contribution",
    "DeliveryRoute",
    "Donation",
    "Participant",
    "SequenceCounter",
    "Warehouse",
]
