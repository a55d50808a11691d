"""
AllocationEngine -- committing donated stock to requests.

Responsibility:
    Creates allocations of donated quantity against approved requests,
    attaches delivery routes, applies the delivery collaborator's
    "delivered" signal, and cancels allocations (releasing stock).

Architecture position:
    Kernel > Services -- imperative shell.  Uses RowLocker for every
    check-then-write, DonationStock for availability, and the
    VerificationGateway for the recipient's KYC status.

Invariants enforced:
    - Sum of non-cancelled allocations per donation <= donation quantity.
      Recomputed under the donation lock; the cached remaining quantity
      is never trusted for the decision.
    - Locks are taken Request -> Donation -> Allocation.  Paths that start
      from an allocation or route read it unlocked, then lock the donation
      and only then the allocation.
    - At most one active (scheduled or in-transit) route per allocation.
    - Stock only flows to verified recipients, and the allocating admin
      may not be the recipient.

Failure modes:
    - ValidationError, AuthorizationError, InvalidTransitionError,
      SelfDealingError, UnverifiedRecipientError,
      DonationUnavailableError, QuantityOvercommitError (carries
      ``available``), ActiveRouteExistsError.

Audit relevance:
    Allocation, route attachment, delivery and cancellation append
    Allocation entries; the donation status and stock changes they cause
    append Donation entries.
"""

from datetime import datetime
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from aid_kernel.db.locking import RowLocker
from aid_kernel.domain.clock import Clock
from aid_kernel.domain.conflict_guard import ConflictGuard
from aid_kernel.domain.dtos import AllocationInfo, RouteInfo
from aid_kernel.domain.gateways import VerificationGateway
from aid_kernel.domain.lifecycle import RequestOperation, can_apply
from aid_kernel.domain.values import (
    ACTIVE_ROUTE_STATUSES,
    AllocationStatus,
    DonationStatus,
    ParticipantRole,
    RouteStatus,
)
from aid_kernel.exceptions import (
    ActiveRouteExistsError,
    AllocationNotFoundError,
    DeliveryRouteNotFoundError,
    DonationUnavailableError,
    InvalidTransitionError,
    QuantityOvercommitError,
    UnverifiedRecipientError,
    ValidationError,
    WarehouseNotFoundError,
)
from aid_kernel.logging_config import get_logger
from aid_kernel.models.allocation import Allocation
from aid_kernel.models.audit_entry import AuditAction
from aid_kernel.models.donation import Donation
from aid_kernel.models.logistics import DeliveryRoute, Warehouse
from aid_kernel.models.request import AidRequest
from aid_kernel.services.audit_service import AuditTrailService
from aid_kernel.services.base import BaseService
from aid_kernel.services.donation_service import DonationStock, donation_state
from aid_kernel.services.participant_service import ParticipantVerificationGateway

logger = get_logger("services.allocation")

# Allocation statuses that may still be cancelled or routed
_OPEN_ALLOCATION_STATUSES = frozenset({AllocationStatus.PENDING, AllocationStatus.APPROVED})


def allocation_state(allocation: Allocation) -> dict:
    return {
        "request_id": allocation.request_id,
        "donation_id": allocation.donation_id,
        "quantity_allocated": allocation.quantity_allocated,
        "status": allocation.status,
    }


class AllocationEngine(BaseService):
    """
    Allocation of donated stock.

    Contract:
        ``create`` locks the request and then the donation before any
        check; the rest lock the donation before the allocation.

    Guarantees:
        - Rejected attempts leave stock, cache and audit trail untouched.
        - ``remaining_quantity`` moves by the allocated quantity on create
          and cancel; delivery leaves it unchanged.

    Non-goals:
        - Does NOT track physical delivery; it consumes the delivered
          signal only.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        guard: ConflictGuard | None = None,
        verification: VerificationGateway | None = None,
        audit: AuditTrailService | None = None,
        stock: DonationStock | None = None,
    ):
        super().__init__(session, clock)
        self._locker = RowLocker(session)
        self._guard = guard or ConflictGuard()
        self._verification = verification or ParticipantVerificationGateway(session)
        self._audit = audit or AuditTrailService(session, self.clock)
        self._stock = stock or DonationStock(session, self.clock, self._guard, self._audit)

    def _audit_donation(
        self,
        donation: Donation,
        before: dict,
        actor_id: UUID | None,
        description: str,
    ) -> None:
        after = donation_state(donation)
        if after == before:
            return
        self._audit.append(
            entity_type="Donation",
            entity_id=donation.id,
            action=AuditAction.UPDATED,
            actor_id=actor_id,
            old_values=before,
            new_values=after,
            description=description,
        )

    def _live_allocations(self, donation_id: UUID) -> list[Allocation]:
        return list(
            self.session.execute(
                select(Allocation).where(
                    Allocation.donation_id == donation_id,
                    Allocation.status != AllocationStatus.CANCELLED.value,
                )
            ).scalars().all()
        )

    def _active_route(self, allocation_id: UUID) -> DeliveryRoute | None:
        return self.session.execute(
            select(DeliveryRoute).where(
                DeliveryRoute.allocation_id == allocation_id,
                DeliveryRoute.status.in_([s.value for s in ACTIVE_ROUTE_STATUSES]),
            )
        ).scalars().first()

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def create(
        self,
        request_id: UUID,
        donation_id: UUID,
        quantity: int,
        allocator_id: UUID,
        notes: str | None = None,
    ) -> AllocationInfo:
        """
        Allocate ``quantity`` units of a donation to a request.

        Raises:
            ValidationError, AuthorizationError, InvalidTransitionError,
            SelfDealingError, UnverifiedRecipientError,
            DonationUnavailableError, QuantityOvercommitError.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity", "must be a positive whole number")

        allocator = self._require_role(allocator_id, "allocate", ParticipantRole.ADMIN)
        request, donation = self._locker.lock_request_then_donation(request_id, donation_id)

        if not can_apply(RequestOperation.ALLOCATE, request.status):
            raise InvalidTransitionError(
                "AidRequest", str(request_id), request.status, "allocate to",
            )

        recipient = self._get_participant(request.recipient_id)
        self._guard.ensure_not_self_dealing(
            request.id, recipient.identity(), allocator.identity(),
        )
        if not self._verification.is_verified(request.recipient_id):
            raise UnverifiedRecipientError(str(request_id), str(request.recipient_id))

        reason = self._stock.unavailability_reason(donation, request.id, self.clock.today())
        if reason is not None:
            raise DonationUnavailableError(str(donation_id), reason)

        available = self._stock.available_quantity(donation.id)
        if quantity > available:
            logger.info(
                "allocation_rejected_overcommit",
                extra={
                    "donation_id": str(donation_id),
                    "requested": quantity,
                    "available": available,
                },
            )
            raise QuantityOvercommitError(str(donation_id), quantity, available)

        now = self.clock.now()
        allocation = Allocation(
            request_id=request.id,
            donation_id=donation.id,
            quantity_allocated=quantity,
            allocator_id=allocator_id,
            status=AllocationStatus.PENDING.value,
            allocated_date=now,
            notes=notes,
            created_at=now,
            created_by_id=allocator_id,
        )
        self.session.add(allocation)
        self.session.flush()

        donation_before = donation_state(donation)
        donation.status = DonationStatus.ALLOCATED.value
        self._stock.adjust_stock_cache(donation, -quantity)
        donation.updated_by_id = allocator_id
        self.session.flush()

        self._audit.append(
            entity_type="Allocation",
            entity_id=allocation.id,
            action=AuditAction.ALLOCATED,
            actor_id=allocator_id,
            new_values=allocation_state(allocation),
        )
        self._audit_donation(donation, donation_before, allocator_id, "stock allocated")

        logger.info(
            "allocation_created",
            extra={
                "allocation_id": str(allocation.id),
                "request_id": str(request_id),
                "donation_id": str(donation_id),
                "quantity": quantity,
                "remaining": donation.remaining_quantity,
            },
        )
        return AllocationInfo.from_model(allocation)

    # ------------------------------------------------------------------
    # Routes and delivery
    # ------------------------------------------------------------------

    def attach_route(
        self,
        allocation_id: UUID,
        actor_id: UUID,
        warehouse_id: UUID | None = None,
        scheduled_date: datetime | None = None,
    ) -> RouteInfo:
        """
        Attach a delivery route; a PENDING allocation becomes APPROVED.

        Raises:
            InvalidTransitionError: Allocation not pending or approved.
            ActiveRouteExistsError: A scheduled or in-transit route exists.
        """
        self._require_role(actor_id, "attach route", ParticipantRole.ADMIN)
        allocation = self._locker.lock_allocation(allocation_id)

        if AllocationStatus(allocation.status) not in _OPEN_ALLOCATION_STATUSES:
            raise InvalidTransitionError(
                "Allocation", str(allocation_id), allocation.status, "attach a route to",
            )
        existing = self._active_route(allocation.id)
        if existing is not None:
            raise ActiveRouteExistsError(str(allocation_id), str(existing.id))
        if warehouse_id is not None and self.session.get(Warehouse, warehouse_id) is None:
            raise WarehouseNotFoundError(str(warehouse_id))

        route = DeliveryRoute(
            allocation_id=allocation.id,
            warehouse_id=warehouse_id,
            status=RouteStatus.SCHEDULED.value,
            scheduled_date=scheduled_date,
            created_at=self.clock.now(),
            created_by_id=actor_id,
        )
        self.session.add(route)

        before = allocation_state(allocation)
        if allocation.status == AllocationStatus.PENDING:
            allocation.status = AllocationStatus.APPROVED.value
            allocation.updated_by_id = actor_id
        self.session.flush()

        self._audit.append(
            entity_type="Allocation",
            entity_id=allocation.id,
            action=AuditAction.ROUTE_ATTACHED,
            actor_id=actor_id,
            old_values=before,
            new_values={**allocation_state(allocation), "route_id": route.id},
        )
        logger.info(
            "route_attached",
            extra={"allocation_id": str(allocation_id), "route_id": str(route.id)},
        )
        return RouteInfo.from_model(route)

    def mark_delivered(self, route_id: UUID, actor_id: UUID | None = None) -> RouteInfo:
        """
        Apply the delivery collaborator's "delivered" signal.

        Route and allocation become DELIVERED.  The donation becomes
        DELIVERED once nothing is left to allocate and every live
        allocation has been delivered.  A repeated signal is a no-op.
        """
        route = self.session.get(DeliveryRoute, route_id)
        if route is None:
            raise DeliveryRouteNotFoundError(str(route_id))
        found = self.session.get(Allocation, route.allocation_id)
        if found is None:
            raise AllocationNotFoundError(str(route.allocation_id))

        donation = self._locker.lock_donation(found.donation_id)
        allocation = self._locker.lock_allocation(found.id)
        route = self.session.execute(
            select(DeliveryRoute)
            .where(DeliveryRoute.id == route_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

        if route.status == RouteStatus.DELIVERED:
            return RouteInfo.from_model(route)
        if route.status == RouteStatus.CANCELLED or allocation.status == AllocationStatus.CANCELLED:
            raise InvalidTransitionError(
                "DeliveryRoute", str(route_id), route.status, "mark delivered",
            )

        now = self.clock.now()
        route.status = RouteStatus.DELIVERED.value
        route.actual_arrival_date = now
        route.updated_by_id = actor_id

        before = allocation_state(allocation)
        allocation.status = AllocationStatus.DELIVERED.value
        allocation.actual_delivery_date = now
        allocation.updated_by_id = actor_id
        self.session.flush()

        self._audit.append(
            entity_type="Allocation",
            entity_id=allocation.id,
            action=AuditAction.DELIVERED,
            actor_id=actor_id,
            old_values=before,
            new_values={**allocation_state(allocation), "route_id": route.id},
        )

        donation_before = donation_state(donation)
        if self._stock.available_quantity(donation.id) == 0 and all(
            a.status == AllocationStatus.DELIVERED for a in self._live_allocations(donation.id)
        ):
            donation.status = DonationStatus.DELIVERED.value
            donation.updated_by_id = actor_id
        self.session.flush()
        self._audit_donation(donation, donation_before, actor_id, "delivery completed")

        logger.info(
            "allocation_delivered",
            extra={"allocation_id": str(allocation.id), "route_id": str(route_id)},
        )
        return RouteInfo.from_model(route)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, allocation_id: UUID, actor_id: UUID) -> AllocationInfo:
        """
        Cancel an allocation that has not shipped, releasing its stock.

        Raises:
            InvalidTransitionError: Allocation in transit, delivered or
                already cancelled.
        """
        self._require_role(actor_id, "cancel allocation", ParticipantRole.ADMIN)
        found = self.session.get(Allocation, allocation_id)
        if found is None:
            raise AllocationNotFoundError(str(allocation_id))

        donation = self._locker.lock_donation(found.donation_id)
        allocation = self._locker.lock_allocation(allocation_id)
        self._cancel_locked(allocation, donation, actor_id, "allocation cancelled")
        return AllocationInfo.from_model(allocation)

    def release_for_request(
        self,
        request: AidRequest,
        actor_id: UUID | None,
        description: str = "request cancelled",
    ) -> list[UUID]:
        """Cancel every pending or approved allocation of a locked request."""
        return self.release_for_requests([request], actor_id, description)

    def release_for_requests(
        self,
        requests: Iterable[AidRequest],
        actor_id: UUID | None,
        description: str,
    ) -> list[UUID]:
        """
        Cancel the pending or approved allocations of already locked requests.

        Donations are locked in id order, then allocations in id order.
        In-transit and delivered allocations are left as they are.
        """
        request_ids = [request.id for request in requests]
        if not request_ids:
            return []
        open_allocations = self.session.execute(
            select(Allocation)
            .where(
                Allocation.request_id.in_(request_ids),
                Allocation.status.in_([s.value for s in _OPEN_ALLOCATION_STATUSES]),
            )
            .order_by(Allocation.id)
        ).scalars().all()
        if not open_allocations:
            return []

        donations = {
            donation_id: self._locker.lock_donation(donation_id)
            for donation_id in sorted({a.donation_id for a in open_allocations}, key=str)
        }
        released = []
        for found in sorted(open_allocations, key=lambda a: str(a.id)):
            allocation = self._locker.lock_allocation(found.id)
            if AllocationStatus(allocation.status) not in _OPEN_ALLOCATION_STATUSES:
                continue
            self._cancel_locked(
                allocation, donations[allocation.donation_id], actor_id, description,
            )
            released.append(allocation.id)
        return released

    def _cancel_locked(
        self,
        allocation: Allocation,
        donation: Donation,
        actor_id: UUID | None,
        description: str,
    ) -> None:
        if AllocationStatus(allocation.status) not in _OPEN_ALLOCATION_STATUSES:
            raise InvalidTransitionError(
                "Allocation", str(allocation.id), allocation.status, "cancel",
            )

        route = self._active_route(allocation.id)
        if route is not None:
            route.status = RouteStatus.CANCELLED.value
            route.updated_by_id = actor_id

        before = allocation_state(allocation)
        allocation.status = AllocationStatus.CANCELLED.value
        allocation.updated_by_id = actor_id
        self.session.flush()

        donation_before = donation_state(donation)
        self._stock.adjust_stock_cache(donation, allocation.quantity_allocated)
        if donation.status == DonationStatus.ALLOCATED and not self._live_allocations(donation.id):
            donation.status = DonationStatus.VERIFIED.value
        donation.updated_by_id = actor_id
        self.session.flush()

        self._audit.append(
            entity_type="Allocation",
            entity_id=allocation.id,
            action=AuditAction.ALLOCATION_CANCELLED,
            actor_id=actor_id,
            old_values=before,
            new_values=allocation_state(allocation),
            description=description,
        )
        self._audit_donation(donation, donation_before, actor_id, "stock released")

        logger.info(
            "allocation_cancelled",
            extra={
                "allocation_id": str(allocation.id),
                "donation_id": str(donation.id),
                "released": allocation.quantity_allocated,
            },
        )

    def get(self, allocation_id: UUID) -> AllocationInfo:
        allocation = self.session.get(Allocation, allocation_id)
        if allocation is None:
            raise AllocationNotFoundError(str(allocation_id))
        return AllocationInfo.from_model(allocation)
