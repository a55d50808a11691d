"""
Typed Exception Hierarchy for the Aid Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Every rejection the engine produces is something a caller has to act on:
show the remaining funding share, ask the user to retry, raise a security
alert.  Callers must never parse message strings to decide which.

Every exception here therefore has:
  1. Its own class (catch by type, not message)
  2. A ``code`` class attribute (machine-readable, API-safe)
  3. Structured attributes for the data a caller needs (``remaining``,
     ``available``, ``current_status``, ...)

Example:
    try:
        coordinator.contribute(request_id, supplier_id, percentage=50)
    except PercentageOvercommitError as e:
        show(f"Only {e.remaining}% remaining")

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    AidKernelError (base)
    |
    +-- ValidationError
    |
    +-- ConflictError
    |   +-- PercentageOvercommitError
    |   +-- QuantityOvercommitError
    |   +-- WarehouseCapacityError
    |   +-- DuplicateContributionError
    |   +-- SelfDealingError
    |   +-- UnverifiedRecipientError
    |
    +-- StateError
    |   +-- InvalidTransitionError
    |   +-- DonationUnavailableError
    |   +-- DeliveryIncompleteError
    |   +-- ActiveRouteExistsError
    |
    +-- AuthorizationError
    |
    +-- NotFoundError
    |   +-- RequestNotFoundError
    |   +-- ContributionNotFoundError
    |   +-- DonationNotFoundError
    |   +-- AllocationNotFoundError
    |   +-- ParticipantNotFoundError
    |   +-- WarehouseNotFoundError
    |   +-- DeliveryRouteNotFoundError
    |
    +-- ConcurrencyError
    |   +-- LockTimeoutError
    |   +-- LockOrderViolationError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- DataIntegrityError
        +-- FundingStateDriftError
        +-- StockCacheDriftError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Malformed input (percentage, quantity)
----------------|-----------------------------|-----------------------------------------
Conflict        | PERCENTAGE_OVERCOMMIT       | Contribution exceeds remaining share
                | QUANTITY_OVERCOMMIT         | Allocation exceeds available stock
                | WAREHOUSE_CAPACITY_EXCEEDED | Warehouse cannot hold incoming stock
                | DUPLICATE_CONTRIBUTION      | Supplier already committed to request
                | SELF_DEALING                | Counterparty is the recipient
                | UNVERIFIED_RECIPIENT        | Recipient has not passed verification
----------------|-----------------------------|-----------------------------------------
State           | INVALID_TRANSITION          | Operation not allowed in current status
                | DONATION_UNAVAILABLE        | Donation not verified, expired, targeted
                | DELIVERY_INCOMPLETE         | Completion without a delivered route
                | ACTIVE_ROUTE_EXISTS         | Allocation already has a live route
----------------|-----------------------------|-----------------------------------------
Authorization   | NOT_AUTHORIZED              | Actor may not perform the operation
----------------|-----------------------------|-----------------------------------------
Not found       | *_NOT_FOUND                 | Referenced row does not exist
----------------|-----------------------------|-----------------------------------------
Concurrency     | LOCK_TIMEOUT                | Row lock wait exceeded (retryable)
                | LOCK_ORDER_VIOLATION        | Request locked after Donation
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | UPDATE/DELETE of an audit entry
Audit           | AUDIT_CHAIN_BROKEN          | Hash chain validation failed
----------------|-----------------------------|-----------------------------------------
Integrity       | FUNDING_STATE_DRIFT         | funding_status disagrees with ledger
                | STOCK_CACHE_DRIFT           | remaining_quantity disagrees with ledger

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Categories map to caller-visible classes (see
   ``aid_services.error_mapping``): ConflictError -> 409, StateError -> 422,
   AuthorizationError and SelfDealingError -> 403, ConcurrencyError ->
   retry.
2. DataIntegrityError signals a bug, never a user error.  It is logged at
   CRITICAL and reported generically.
"""


class AidKernelError(Exception):
    """
    Base exception for all aid kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "AID_KERNEL_ERROR"


# Validation


class ValidationError(AidKernelError):
    """Input failed a structural check before any lock was taken."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


# Conflict-related exceptions


class ConflictError(AidKernelError):
    """Base exception for commitments that collide with existing state."""

    code: str = "CONFLICT"


class PercentageOvercommitError(ConflictError):
    """Requested funding share exceeds what is still uncommitted."""

    code: str = "PERCENTAGE_OVERCOMMIT"

    def __init__(self, request_id: str, requested: int, remaining: int):
        self.request_id = request_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Cannot contribute {requested}% to request {request_id}: "
            f"only {remaining}% remaining"
        )


class QuantityOvercommitError(ConflictError):
    """Requested allocation exceeds the donation's available quantity."""

    code: str = "QUANTITY_OVERCOMMIT"

    def __init__(self, donation_id: str, requested: int, available: int):
        self.donation_id = donation_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot allocate {requested} from donation {donation_id}: "
            f"only {available} available"
        )


class WarehouseCapacityError(ConflictError):
    """Incoming stock would exceed the warehouse's capacity."""

    code: str = "WAREHOUSE_CAPACITY_EXCEEDED"

    def __init__(self, warehouse_id: str, incoming: int, available: int):
        self.warehouse_id = warehouse_id
        self.incoming = incoming
        self.available = available
        super().__init__(
            f"Warehouse {warehouse_id} cannot accept {incoming} units: "
            f"only {available} free"
        )


class DuplicateContributionError(ConflictError):
    """Supplier already holds a committed contribution on the request."""

    code: str = "DUPLICATE_CONTRIBUTION"

    def __init__(self, request_id: str, supplier_id: str):
        self.request_id = request_id
        self.supplier_id = supplier_id
        super().__init__(
            f"Supplier {supplier_id} already contributed to request {request_id}; "
            "update the existing contribution instead"
        )


class SelfDealingError(ConflictError):
    """Counterparty is the request's recipient, or shares their identity."""

    code: str = "SELF_DEALING"

    def __init__(self, request_id: str, participant_id: str):
        self.request_id = request_id
        self.participant_id = participant_id
        super().__init__(
            f"Participant {participant_id} may not act as counterparty on "
            f"request {request_id}: identity matches the recipient"
        )


class UnverifiedRecipientError(ConflictError):
    """Stock may only be allocated to verified recipients."""

    code: str = "UNVERIFIED_RECIPIENT"

    def __init__(self, request_id: str, recipient_id: str):
        self.request_id = request_id
        self.recipient_id = recipient_id
        super().__init__(
            f"Recipient {recipient_id} of request {request_id} is not verified"
        )


# State-related exceptions


class StateError(AidKernelError):
    """Base exception for operations that the current status forbids."""

    code: str = "STATE_ERROR"


class InvalidTransitionError(StateError):
    """Entity is not in a status from which the operation is allowed."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_status: str,
        operation: str,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} {entity_type} {entity_id} "
            f"in status '{current_status}'"
        )


class DonationUnavailableError(StateError):
    """Donation is not verified, has expired, or is targeted elsewhere."""

    code: str = "DONATION_UNAVAILABLE"

    def __init__(self, donation_id: str, reason: str):
        self.donation_id = donation_id
        self.reason = reason
        super().__init__(f"Donation {donation_id} is not available: {reason}")


class DeliveryIncompleteError(StateError):
    """A request with allocations completes only after a delivery lands."""

    code: str = "DELIVERY_INCOMPLETE"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"Request {request_id} has allocations but none has been delivered"
        )


class ActiveRouteExistsError(StateError):
    """Allocation already has a scheduled or in-transit route."""

    code: str = "ACTIVE_ROUTE_EXISTS"

    def __init__(self, allocation_id: str, route_id: str):
        self.allocation_id = allocation_id
        self.route_id = route_id
        super().__init__(
            f"Allocation {allocation_id} already has active route {route_id}"
        )


# Authorization


class AuthorizationError(AidKernelError):
    """Actor's role or relationship does not permit the operation."""

    code: str = "NOT_AUTHORIZED"

    def __init__(self, actor_id: str, operation: str, reason: str = ""):
        self.actor_id = actor_id
        self.operation = operation
        self.reason = reason
        message = f"Actor {actor_id} may not {operation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# Not-found exceptions


class NotFoundError(AidKernelError):
    """Base exception for missing rows."""

    code: str = "NOT_FOUND"
    entity_label: str = "Entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_label} not found: {entity_id}")


class RequestNotFoundError(NotFoundError):
    code: str = "REQUEST_NOT_FOUND"
    entity_label = "Request"


class ContributionNotFoundError(NotFoundError):
    code: str = "CONTRIBUTION_NOT_FOUND"
    entity_label = "Contribution"


class DonationNotFoundError(NotFoundError):
    code: str = "DONATION_NOT_FOUND"
    entity_label = "Donation"


class AllocationNotFoundError(NotFoundError):
    code: str = "ALLOCATION_NOT_FOUND"
    entity_label = "Allocation"


class ParticipantNotFoundError(NotFoundError):
    code: str = "PARTICIPANT_NOT_FOUND"
    entity_label = "Participant"


class WarehouseNotFoundError(NotFoundError):
    code: str = "WAREHOUSE_NOT_FOUND"
    entity_label = "Warehouse"


class DeliveryRouteNotFoundError(NotFoundError):
    code: str = "DELIVERY_ROUTE_NOT_FOUND"
    entity_label = "Delivery route"


# Concurrency-related exceptions


class ConcurrencyError(AidKernelError):
    """Base exception for lock contention.  Callers may retry."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = False


class LockTimeoutError(ConcurrencyError):
    """Waiting for a row lock exceeded the configured timeout."""

    code: str = "LOCK_TIMEOUT"
    retryable: bool = True

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        super().__init__(
            f"Timed out waiting for a lock during {operation}; retry the operation"
        )


class LockOrderViolationError(ConcurrencyError):
    """A lock was requested out of the global acquisition order."""

    code: str = "LOCK_ORDER_VIOLATION"

    def __init__(self, requested: str, held: str):
        self.requested = requested
        self.held = held
        super().__init__(
            f"Cannot lock {requested} while holding a {held} lock: "
            "locks must be taken Request -> Donation -> Allocation -> Warehouse"
        )


# Immutability-related exceptions


class ImmutabilityError(AidKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Audit-related exceptions


class AuditError(AidKernelError):
    """Base exception for audit-related errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_entry_id: str, expected_hash: str, actual_hash: str):
        self.audit_entry_id = audit_entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_entry_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Data-integrity exceptions (bugs, not user errors)


class DataIntegrityError(AidKernelError):
    """Base exception for derived state that disagrees with its source."""

    code: str = "DATA_INTEGRITY_ERROR"


class FundingStateDriftError(DataIntegrityError):
    """Stored funding_status differs from the committed contribution sum."""

    code: str = "FUNDING_STATE_DRIFT"

    def __init__(self, request_id: str, stored: str, derived: str, total: int):
        self.request_id = request_id
        self.stored = stored
        self.derived = derived
        self.total = total
        super().__init__(
            f"Request {request_id} stores funding_status '{stored}' but "
            f"committed total {total}% derives '{derived}'"
        )


class StockCacheDriftError(DataIntegrityError):
    """Cached remaining_quantity differs from the allocation ledger."""

    code: str = "STOCK_CACHE_DRIFT"

    def __init__(self, donation_id: str, cached: int, computed: int):
        self.donation_id = donation_id
        self.cached = cached
        self.computed = computed
        super().__init__(
            f"Donation {donation_id} caches remaining_quantity={cached} "
            f"but allocations leave {computed}"
        )
