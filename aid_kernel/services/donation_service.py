"""
DonationStock -- donated inventory, its availability and its storage.

Responsibility:
    Creates donations, moves them through verification, recomputes the
    quantity still available for allocation, and places them in
    warehouses without exceeding capacity.

Architecture position:
    Kernel > Services -- imperative shell.  AllocationEngine asks this
    service whether a donation is available and how much of it is left.

Invariants enforced:
    - Available quantity = quantity - sum of non-cancelled allocations,
      always recomputed.  ``remaining_quantity`` is a cache written only
      under the donation lock; ``check_stock_cache`` reports divergence.
    - Warehouse capacity: sum of quantities of undelivered, unrejected
      donations stored at a warehouse never exceeds its capacity.  Checked
      under the warehouse row lock.
    - A targeted donation passes the conflict guard and may only target an
      APPROVED request.

Failure modes:
    - ValidationError, AuthorizationError, InvalidTransitionError,
      SelfDealingError, WarehouseCapacityError (carries ``available``),
      StockCacheDriftError.

Audit relevance:
    Creation, verification, rejection, payment confirmation and
    warehouse assignment each append a Donation entry.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from aid_kernel.db.locking import RowLocker
from aid_kernel.domain.clock import Clock
from aid_kernel.domain.conflict_guard import ConflictGuard
from aid_kernel.domain.dtos import DonationInfo
from aid_kernel.domain.values import (
    ALLOCATABLE_DONATION_STATUSES,
    AllocationStatus,
    DonationStatus,
    DonationType,
    ParticipantRole,
    RequestStatus,
)
from aid_kernel.exceptions import (
    DonationNotFoundError,
    InvalidTransitionError,
    StockCacheDriftError,
    ValidationError,
    WarehouseCapacityError,
)
from aid_kernel.logging_config import get_logger
from aid_kernel.models.allocation import Allocation
from aid_kernel.models.audit_entry import AuditAction
from aid_kernel.models.donation import Donation
from aid_kernel.models.request import AidRequest
from aid_kernel.services.audit_service import AuditTrailService
from aid_kernel.services.base import BaseService

logger = get_logger("services.donation")

# Statuses whose stock still occupies warehouse space
_STORED_STATUSES = frozenset({
    DonationStatus.PENDING,
    DonationStatus.VERIFIED,
    DonationStatus.ALLOCATED,
})


def donation_state(donation: Donation) -> dict:
    return {
        "status": donation.status,
        "quantity": donation.quantity,
        "remaining_quantity": donation.remaining_quantity,
        "warehouse_id": donation.warehouse_id,
        "targeted_request_id": donation.targeted_request_id,
    }


class DonationStock(BaseService):
    """
    Donated stock and its availability.

    Contract:
        Mutating methods lock the donation row (and, for a targeted
        donation, the request row first) before checking anything.

    Guarantees:
        - ``available_quantity`` never trusts the cached remaining value.

    Non-goals:
        - Does NOT allocate; see AllocationEngine.
        - Does NOT talk to the payment gateway; ``mark_payment_succeeded``
          is the webhook's effect only.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        guard: ConflictGuard | None = None,
        audit: AuditTrailService | None = None,
    ):
        super().__init__(session, clock)
        self._locker = RowLocker(session)
        self._guard = guard or ConflictGuard()
        self._audit = audit or AuditTrailService(session, self.clock)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def allocated_quantity(self, donation_id: UUID) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(Allocation.quantity_allocated), 0)).where(
                Allocation.donation_id == donation_id,
                Allocation.status != AllocationStatus.CANCELLED.value,
            )
        ).scalar_one()
        return int(total)

    def available_quantity(self, donation_id: UUID) -> int:
        """Quantity minus live allocations, recomputed from the ledger."""
        donation = self.session.get(Donation, donation_id)
        if donation is None:
            raise DonationNotFoundError(str(donation_id))
        return donation.quantity - self.allocated_quantity(donation_id)

    def unavailability_reason(
        self,
        donation: Donation,
        request_id: UUID,
        as_of: date,
    ) -> str | None:
        """None if ``donation`` may be allocated to ``request_id``, else why not."""
        if DonationStatus(donation.status) not in ALLOCATABLE_DONATION_STATUSES:
            return f"status is {donation.status}"
        if donation.is_expired(as_of):
            return f"expired on {donation.expiry_date.isoformat()}"
        if donation.targeted_request_id is not None and donation.targeted_request_id != request_id:
            return "targeted at another request"
        return None

    def is_available(self, donation: Donation, request_id: UUID, as_of: date) -> bool:
        return self.unavailability_reason(donation, request_id, as_of) is None

    def check_stock_cache(self, donation_id: UUID) -> int:
        """
        Compare remaining_quantity with the recomputed value.

        Raises:
            StockCacheDriftError: The cache disagrees with the allocations.
        """
        computed = self.available_quantity(donation_id)
        donation = self.session.get(Donation, donation_id)
        if donation.remaining_quantity != computed:
            logger.critical(
                "stock_cache_drift",
                extra={
                    "donation_id": str(donation_id),
                    "cached": donation.remaining_quantity,
                    "computed": computed,
                },
            )
            raise StockCacheDriftError(
                str(donation_id), donation.remaining_quantity, computed,
            )
        return computed

    def get(self, donation_id: UUID) -> DonationInfo:
        donation = self.session.get(Donation, donation_id)
        if donation is None:
            raise DonationNotFoundError(str(donation_id))
        return DonationInfo.from_model(donation)

    # ------------------------------------------------------------------
    # Creation and verification
    # ------------------------------------------------------------------

    def create_donation(
        self,
        supplier_id: UUID,
        donation_type: DonationType | str,
        item: str,
        quantity: int,
        unit: str | None = None,
        expiry_date: date | None = None,
        targeted_request_id: UUID | None = None,
    ) -> DonationInfo:
        """
        Record offered stock.

        Untargeted donations wait in PENDING for an admin.  A targeted
        non-monetary donation is VERIFIED at once; a monetary one stays
        PENDING until the payment webhook fires.

        Raises:
            ValidationError, AuthorizationError, InvalidTransitionError,
            SelfDealingError.
        """
        try:
            donation_type = DonationType(donation_type)
        except ValueError:
            raise ValidationError("donation_type", f"unknown type {donation_type!r}") from None
        if not item or not item.strip():
            raise ValidationError("item", "must not be blank")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity", "must be a positive whole number")

        supplier = self._require_role(
            supplier_id, "donate", ParticipantRole.SUPPLIER, ParticipantRole.DONOR,
        )

        status = DonationStatus.PENDING
        if targeted_request_id is not None:
            request = self._locker.lock_request(targeted_request_id)
            recipient = self._get_participant(request.recipient_id)
            self._guard.ensure_not_self_dealing(
                request.id, recipient.identity(), supplier.identity(),
            )
            if request.status != RequestStatus.APPROVED:
                raise InvalidTransitionError(
                    "AidRequest", str(request.id), request.status, "target a donation at",
                )
            if donation_type != DonationType.MONETARY:
                status = DonationStatus.VERIFIED

        now = self.clock.now()
        donation = Donation(
            supplier_id=supplier_id,
            donation_type=donation_type.value,
            item=item.strip(),
            unit=unit,
            quantity=quantity,
            remaining_quantity=quantity,
            status=status.value,
            targeted_request_id=targeted_request_id,
            expiry_date=expiry_date,
            verified_at=now if status == DonationStatus.VERIFIED else None,
            created_at=now,
            created_by_id=supplier_id,
        )
        self.session.add(donation)
        self.session.flush()

        self._audit.append(
            entity_type="Donation",
            entity_id=donation.id,
            action=AuditAction.CREATED,
            actor_id=supplier_id,
            new_values=donation_state(donation),
        )
        logger.info(
            "donation_created",
            extra={
                "donation_id": str(donation.id),
                "donation_type": donation_type.value,
                "quantity": quantity,
                "targeted": targeted_request_id is not None,
            },
        )
        return DonationInfo.from_model(donation)

    def _transition(
        self,
        donation: Donation,
        new_status: DonationStatus,
        action: AuditAction,
        actor_id: UUID | None,
        description: str | None = None,
    ) -> None:
        before = donation_state(donation)
        donation.status = new_status.value
        if new_status == DonationStatus.VERIFIED:
            donation.verified_at = self.clock.now()
        donation.updated_by_id = actor_id
        self.session.flush()
        self._audit.append(
            entity_type="Donation",
            entity_id=donation.id,
            action=action,
            actor_id=actor_id,
            old_values=before,
            new_values=donation_state(donation),
            description=description,
        )
        logger.info(
            "donation_status_changed",
            extra={
                "donation_id": str(donation.id),
                "from_status": before["status"],
                "to_status": new_status.value,
            },
        )

    def verify(self, donation_id: UUID, admin_id: UUID) -> DonationInfo:
        self._require_role(admin_id, "verify donation", ParticipantRole.ADMIN)
        donation = self._locker.lock_donation(donation_id)
        if donation.status != DonationStatus.PENDING:
            raise InvalidTransitionError("Donation", str(donation_id), donation.status, "verify")
        self._transition(donation, DonationStatus.VERIFIED, AuditAction.VERIFIED, admin_id)
        return DonationInfo.from_model(donation)

    def reject(
        self,
        donation_id: UUID,
        admin_id: UUID,
        reason: str | None = None,
    ) -> DonationInfo:
        self._require_role(admin_id, "reject donation", ParticipantRole.ADMIN)
        donation = self._locker.lock_donation(donation_id)
        if donation.status not in (DonationStatus.PENDING, DonationStatus.VERIFIED):
            raise InvalidTransitionError("Donation", str(donation_id), donation.status, "reject")
        self._transition(
            donation, DonationStatus.REJECTED, AuditAction.REJECTED, admin_id, reason,
        )
        return DonationInfo.from_model(donation)

    def mark_payment_succeeded(self, donation_id: UUID) -> bool:
        """
        Payment webhook effect: a pending monetary donation becomes VERIFIED.

        Idempotent.  Returns False (and changes nothing) for a donation
        that is not a pending monetary one, so webhook retries are safe.
        """
        donation = self._locker.lock_donation(donation_id)
        if (
            donation.donation_type != DonationType.MONETARY
            or donation.status != DonationStatus.PENDING
        ):
            logger.info(
                "payment_webhook_ignored",
                extra={"donation_id": str(donation_id), "status": donation.status},
            )
            return False
        self._transition(
            donation,
            DonationStatus.VERIFIED,
            AuditAction.PAYMENT_CONFIRMED,
            None,
            "payment gateway confirmed",
        )
        return True

    # ------------------------------------------------------------------
    # Warehousing
    # ------------------------------------------------------------------

    def stored_quantity(self, warehouse_id: UUID, exclude_donation_id: UUID | None = None) -> int:
        """Units currently occupying ``warehouse_id``."""
        query = select(func.coalesce(func.sum(Donation.quantity), 0)).where(
            Donation.warehouse_id == warehouse_id,
            Donation.status.in_([s.value for s in _STORED_STATUSES]),
        )
        if exclude_donation_id is not None:
            query = query.where(Donation.id != exclude_donation_id)
        return int(self.session.execute(query).scalar_one())

    def assign_warehouse(
        self,
        donation_id: UUID,
        warehouse_id: UUID,
        admin_id: UUID,
    ) -> DonationInfo:
        """
        Place a donation in a warehouse.

        Raises:
            InvalidTransitionError: Donation already delivered or rejected.
            WarehouseCapacityError: Incoming quantity exceeds free space.
        """
        self._require_role(admin_id, "assign warehouse", ParticipantRole.ADMIN)
        donation = self._locker.lock_donation(donation_id)
        warehouse = self._locker.lock_warehouse(warehouse_id)

        if DonationStatus(donation.status) not in _STORED_STATUSES:
            raise InvalidTransitionError(
                "Donation", str(donation_id), donation.status, "assign a warehouse to",
            )
        if donation.warehouse_id == warehouse.id:
            return DonationInfo.from_model(donation)

        used = self.stored_quantity(warehouse.id, exclude_donation_id=donation.id)
        available = max(0, warehouse.capacity - used)
        if donation.quantity > available:
            logger.info(
                "warehouse_capacity_rejected",
                extra={
                    "warehouse_id": str(warehouse_id),
                    "incoming": donation.quantity,
                    "available": available,
                },
            )
            raise WarehouseCapacityError(str(warehouse_id), donation.quantity, available)

        before = donation_state(donation)
        donation.warehouse_id = warehouse.id
        donation.updated_by_id = admin_id
        self.session.flush()
        self._audit.append(
            entity_type="Donation",
            entity_id=donation.id,
            action=AuditAction.WAREHOUSE_ASSIGNED,
            actor_id=admin_id,
            old_values=before,
            new_values=donation_state(donation),
        )
        return DonationInfo.from_model(donation)

    def adjust_stock_cache(self, donation: Donation, delta: int) -> int:
        """
        Move remaining_quantity by ``delta``.  Donation must be locked.

        The cache is never rewritten from the ledger, so ``check_stock_cache``
        still sees any earlier drift.  Allocation decisions use
        ``available_quantity``, not the cache.
        """
        donation.remaining_quantity += delta
        return donation.remaining_quantity
