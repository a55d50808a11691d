"""
Status vocabularies shared by models, services and pure domain functions.

All enums are ``str`` mixins: the ORM stores their ``.value`` in String
columns, and a loaded plain string compares equal to the member.
"""

from enum import Enum


class ParticipantRole(str, Enum):
    """Marketplace role.  One role per participant account."""

    RECIPIENT = "recipient"
    SUPPLIER = "supplier"
    DONOR = "donor"
    ADMIN = "admin"
    AUDITOR = "auditor"


class RequestStatus(str, Enum):
    """
    Request lifecycle status.

    State machine (see aid_kernel.domain.lifecycle):
        PENDING -> APPROVED -> CLAIMED -> COMPLETED
        CLAIMED -> RECEDE_REQUESTED -> APPROVED
        CLAIMED -> APPROVED (funding drops below 100%)
        PENDING | APPROVED -> CLOSED_NO_MATCH (batch close)
        any non-terminal -> CANCELLED
        COMPLETED, CLOSED_NO_MATCH, CANCELLED: terminal
    """

    PENDING = "pending"
    APPROVED = "approved"
    CLAIMED = "claimed"
    RECEDE_REQUESTED = "recede_requested"
    COMPLETED = "completed"
    CLOSED_NO_MATCH = "closed_no_match"
    CANCELLED = "cancelled"


TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.COMPLETED,
    RequestStatus.CLOSED_NO_MATCH,
    RequestStatus.CANCELLED,
})


class FundingStatus(str, Enum):
    """Derived from the committed contribution sum; never set directly."""

    UNFUNDED = "unfunded"
    PARTIALLY_FUNDED = "partially_funded"
    FULLY_FUNDED = "fully_funded"


class ContributionStatus(str, Enum):
    COMMITTED = "committed"
    WITHDRAWN = "withdrawn"


class DonationType(str, Enum):
    GOODS = "goods"
    MONETARY = "monetary"
    SERVICES = "services"


class DonationStatus(str, Enum):
    """
    Donation status.

    PENDING -> VERIFIED (inspection, price lock, or payment webhook)
    PENDING -> REJECTED
    VERIFIED -> ALLOCATED (first allocation) -> DELIVERED (delivery signal)
    """

    PENDING = "pending"
    VERIFIED = "verified"
    ALLOCATED = "allocated"
    DELIVERED = "delivered"
    REJECTED = "rejected"


# Statuses from which residual stock may still be allocated.
ALLOCATABLE_DONATION_STATUSES: frozenset[DonationStatus] = frozenset({
    DonationStatus.VERIFIED,
    DonationStatus.ALLOCATED,
})


class AllocationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class RouteStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ACTIVE_ROUTE_STATUSES: frozenset[RouteStatus] = frozenset({
    RouteStatus.SCHEDULED,
    RouteStatus.IN_TRANSIT,
})


class UrgencyLevel(str, Enum):
    """Opaque output of the upstream vulnerability scorer."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DisposeAction(str, Enum):
    """Administrative disposition of stale requests."""

    CLOSE = "close"
    BOOST = "boost"
