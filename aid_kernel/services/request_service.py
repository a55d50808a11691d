"""
RequestLifecycle -- the state machine of an aid request.

Responsibility:
    Creates requests and moves them through audit, claim, recede,
    completion, cancellation and the administrative batch dispositions,
    consulting the pure lifecycle table before every change.

Architecture position:
    Kernel > Services -- imperative shell.  Delegates every funding
    consequence to ContributionLedger (a claim is a committed
    contribution) and every stock consequence to AllocationEngine.

Invariants enforced:
    - A transition starts only from a status the lifecycle table allows
      for it; otherwise InvalidTransitionError carries the current status.
    - status and funding_status move together: after claim and recede the
      ledger re-derives funding state from the committed sum.
    - No self-dealing: a claimer may not be the recipient or share an
      identity with the recipient or another account on the request.
    - Cancellation replaces deletion; requests are never removed.

Failure modes:
    - ValidationError, AuthorizationError, InvalidTransitionError,
      SelfDealingError, PercentageOvercommitError (claim on a fully
      funded request), DeliveryIncompleteError.

Audit relevance:
    Every transition appends an AidRequest entry.  Scheduled flagging and
    auto-close record a null actor.
"""

from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session

from aid_kernel.db.locking import RowLocker
from aid_kernel.domain.clock import Clock, ensure_utc
from aid_kernel.domain.conflict_guard import ConflictGuard
from aid_kernel.domain.dtos import DisposeResult, RequestInfo
from aid_kernel.domain.funding import FULL_FUNDING
from aid_kernel.domain.lifecycle import (
    RequestOperation,
    can_apply,
    is_terminal,
    target_status,
)
from aid_kernel.domain.values import (
    AllocationStatus,
    ContributionStatus,
    DisposeAction,
    FundingStatus,
    ParticipantRole,
    RequestStatus,
    RouteStatus,
)
from aid_kernel.exceptions import (
    AuthorizationError,
    DeliveryIncompleteError,
    InvalidTransitionError,
    PercentageOvercommitError,
    RequestNotFoundError,
    ValidationError,
)
from aid_kernel.logging_config import get_logger
from aid_kernel.models.allocation import Allocation
from aid_kernel.models.audit_entry import AuditAction
from aid_kernel.models.contribution import Contribution
from aid_kernel.models.logistics import DeliveryRoute
from aid_kernel.models.request import AidRequest
from aid_kernel.services.allocation_service import AllocationEngine
from aid_kernel.services.audit_service import AuditTrailService
from aid_kernel.services.base import BaseService
from aid_kernel.services.contribution_service import ContributionLedger, request_state

logger = get_logger("services.request")

DEFAULT_EXPIRY_DAYS = 30


class RequestLifecycle(BaseService):
    """
    Lifecycle transitions for aid requests.

    Contract:
        Each transition locks the request row, checks the lifecycle table
        and the actor, mutates, and appends an audit entry, all inside the
        caller's transaction.

    Guarantees:
        - Checks run before mutation; a rejected transition leaves the
          request and the audit trail unchanged.

    Non-goals:
        - Does NOT commit.
        - Does NOT compute urgency; the scorer owns those fields.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        guard: ConflictGuard | None = None,
        audit: AuditTrailService | None = None,
        ledger: ContributionLedger | None = None,
        allocations: AllocationEngine | None = None,
    ):
        super().__init__(session, clock)
        self._locker = RowLocker(session)
        self._guard = guard or ConflictGuard()
        self._audit = audit or AuditTrailService(session, self.clock)
        self._ledger = ledger or ContributionLedger(
            session, self.clock, self._guard, self._audit,
        )
        self._allocations = allocations or AllocationEngine(
            session, self.clock, self._guard, audit=self._audit,
        )

    def _check(self, operation: RequestOperation, request: AidRequest) -> None:
        if not can_apply(operation, request.status):
            raise InvalidTransitionError(
                "AidRequest", str(request.id), request.status, operation.value,
            )

    def _record(
        self,
        request: AidRequest,
        action: AuditAction,
        before: dict,
        actor_id: UUID | None,
        description: str | None = None,
    ) -> None:
        request.updated_by_id = actor_id
        self.session.flush()
        self._audit.append(
            entity_type="AidRequest",
            entity_id=request.id,
            action=action,
            actor_id=actor_id,
            old_values=before,
            new_values=request_state(request),
            description=description,
        )
        logger.info(
            "request_transition",
            extra={
                "request_id": str(request.id),
                "action": action.value,
                "from_status": before["status"],
                "to_status": request.status,
            },
        )

    def get(self, request_id: UUID) -> RequestInfo:
        request = self.session.get(AidRequest, request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        return RequestInfo.from_model(request)

    # ------------------------------------------------------------------
    # Creation and review
    # ------------------------------------------------------------------

    def create_request(
        self,
        recipient_id: UUID,
        title: str,
        actor_id: UUID,
        quantity_required: int = 0,
        region: str | None = None,
        unit: str | None = None,
        description: str | None = None,
        need_type: str | None = None,
        expires_at: datetime | None = None,
        expiry_days: int = DEFAULT_EXPIRY_DAYS,
    ) -> RequestInfo:
        """
        File a new PENDING, UNFUNDED request.

        Raises:
            ValidationError: Blank title, negative quantity, or the
                recipient does not hold the recipient role.
            AuthorizationError: Actor is neither the recipient nor an admin.
        """
        if not title or not title.strip():
            raise ValidationError("title", "must not be blank")
        if isinstance(quantity_required, bool) or not isinstance(quantity_required, int):
            raise ValidationError("quantity_required", "must be a whole number")
        if quantity_required < 0:
            raise ValidationError("quantity_required", "must not be negative")

        actor = self._require_role(
            actor_id, "create request", ParticipantRole.RECIPIENT, ParticipantRole.ADMIN,
        )
        if actor.id != recipient_id and not actor.is_admin:
            raise AuthorizationError(
                str(actor_id), "create request", "only for yourself unless admin"
            )
        recipient = self._get_participant(recipient_id)
        if not recipient.has_role(ParticipantRole.RECIPIENT):
            raise ValidationError("recipient_id", "participant is not a recipient")

        now = self.clock.now()
        request = AidRequest(
            recipient_id=recipient_id,
            title=title.strip(),
            description=description,
            need_type=need_type,
            region=region,
            quantity_required=quantity_required,
            unit=unit,
            status=RequestStatus.PENDING.value,
            funding_status=FundingStatus.UNFUNDED.value,
            admin_override=0,
            is_flagged_for_review=False,
            created_at=now,
            created_by_id=actor_id,
            expires_at=expires_at or now + timedelta(days=expiry_days),
        )
        self.session.add(request)
        self.session.flush()

        self._audit.append(
            entity_type="AidRequest",
            entity_id=request.id,
            action=AuditAction.CREATED,
            actor_id=actor_id,
            new_values={**request_state(request), "title": request.title},
        )
        logger.info(
            "request_created",
            extra={"request_id": str(request.id), "recipient_id": str(recipient_id)},
        )
        return RequestInfo.from_model(request)

    def audit(self, request_id: UUID, auditor_id: UUID) -> RequestInfo:
        """PENDING -> APPROVED after review by an admin or auditor."""
        self._require_role(
            auditor_id, "audit request", ParticipantRole.ADMIN, ParticipantRole.AUDITOR,
        )
        request = self._locker.lock_request(request_id)
        self._check(RequestOperation.AUDIT, request)

        before = request_state(request)
        request.status = target_status(RequestOperation.AUDIT, request.status).value
        request.last_audited_at = self.clock.now()
        request.audited_by_id = auditor_id
        self._record(request, AuditAction.AUDITED, before, auditor_id)
        return RequestInfo.from_model(request)

    # ------------------------------------------------------------------
    # Claim and recede
    # ------------------------------------------------------------------

    def claim(self, request_id: UUID, supplier_id: UUID) -> RequestInfo:
        """
        A supplier takes on the rest of a request.

        Recorded as the claimer committing the open share, plus the
        assignment; the ledger then derives CLAIMED / FULLY_FUNDED.

        Raises:
            SelfDealingError, InvalidTransitionError,
            PercentageOvercommitError (already fully funded).
        """
        supplier = self._require_role(supplier_id, "claim request", ParticipantRole.SUPPLIER)
        request = self._locker.lock_request(request_id)

        self._guard.ensure_not_self_dealing(
            request.id,
            self._ledger.recipient_identity(request),
            supplier.identity(),
            self._ledger.counterparties(request),
        )

        total = self._ledger.committed_total(request.id)
        if total >= FULL_FUNDING:
            raise PercentageOvercommitError(str(request_id), FULL_FUNDING, 0)
        self._check(RequestOperation.CLAIM, request)

        self._ledger.commit_remaining_share(request, supplier_id)
        request.assigned_supplier_id = supplier_id
        state = self._ledger.apply_funding_state(request, supplier_id)

        logger.info(
            "request_claimed",
            extra={
                "request_id": str(request_id),
                "supplier_id": str(supplier_id),
                "status": state.status.value,
            },
        )
        return RequestInfo.from_model(request)

    def request_recede(self, request_id: UUID, supplier_id: UUID) -> RequestInfo:
        """The assigned supplier asks to be released: CLAIMED -> RECEDE_REQUESTED."""
        self._require_role(supplier_id, "request recede", ParticipantRole.SUPPLIER)
        request = self._locker.lock_request(request_id)
        self._check(RequestOperation.REQUEST_RECEDE, request)
        if request.assigned_supplier_id != supplier_id:
            raise AuthorizationError(
                str(supplier_id), "request recede", "not the assigned supplier"
            )

        before = request_state(request)
        request.status = target_status(RequestOperation.REQUEST_RECEDE, request.status).value
        self._record(request, AuditAction.RECEDE_REQUESTED, before, supplier_id)
        return RequestInfo.from_model(request)

    def approve_recede(self, request_id: UUID, admin_id: UUID) -> RequestInfo:
        """
        RECEDE_REQUESTED -> APPROVED.

        The supplier is unassigned and their committed share withdrawn;
        funding state is then re-derived from what remains.
        """
        self._require_role(admin_id, "approve recede", ParticipantRole.ADMIN)
        request = self._locker.lock_request(request_id)
        self._check(RequestOperation.APPROVE_RECEDE, request)

        supplier_id = request.assigned_supplier_id
        before = request_state(request)
        request.status = target_status(RequestOperation.APPROVE_RECEDE, request.status).value
        request.assigned_supplier_id = None
        self._record(
            request,
            AuditAction.RECEDE_APPROVED,
            before,
            admin_id,
            description=f"supplier {supplier_id} released",
        )

        if supplier_id is not None:
            self._ledger.withdraw_supplier_share(request, supplier_id, admin_id)
        self._ledger.apply_funding_state(request, admin_id)
        return RequestInfo.from_model(request)

    # ------------------------------------------------------------------
    # Completion and cancellation
    # ------------------------------------------------------------------

    def _has_delivered_route(self, request_id: UUID) -> bool:
        return bool(
            self.session.execute(
                select(
                    exists().where(
                        DeliveryRoute.allocation_id == Allocation.id,
                        Allocation.request_id == request_id,
                        DeliveryRoute.status == RouteStatus.DELIVERED.value,
                    )
                )
            ).scalar()
        )

    def _has_live_allocations(self, request_id: UUID) -> bool:
        return bool(
            self.session.execute(
                select(
                    exists().where(
                        Allocation.request_id == request_id,
                        Allocation.status != AllocationStatus.CANCELLED.value,
                    )
                )
            ).scalar()
        )

    def complete(self, request_id: UUID, actor_id: UUID) -> RequestInfo:
        """
        CLAIMED -> COMPLETED by the assigned supplier or an admin.

        Raises:
            DeliveryIncompleteError: Allocations exist but none delivered.
        """
        actor = self._require_role(actor_id, "complete request")
        request = self._locker.lock_request(request_id)
        self._check(RequestOperation.COMPLETE, request)
        if request.assigned_supplier_id != actor_id and not actor.is_admin:
            raise AuthorizationError(
                str(actor_id), "complete request", "only the assigned supplier or an admin"
            )
        if self._has_live_allocations(request.id) and not self._has_delivered_route(request.id):
            raise DeliveryIncompleteError(str(request_id))

        before = request_state(request)
        request.status = target_status(RequestOperation.COMPLETE, request.status).value
        request.completed_at = self.clock.now()
        self._record(request, AuditAction.COMPLETED, before, actor_id)
        return RequestInfo.from_model(request)

    def cancel(self, request_id: UUID, actor_id: UUID, reason: str | None = None) -> RequestInfo:
        """
        Any non-terminal status -> CANCELLED by the recipient or an admin.

        Pending and approved allocations are released first.
        """
        actor = self._require_role(actor_id, "cancel request")
        request = self._locker.lock_request(request_id)
        self._check(RequestOperation.CANCEL, request)
        if request.recipient_id != actor_id and not actor.is_admin:
            raise AuthorizationError(
                str(actor_id), "cancel request", "only the recipient or an admin"
            )

        released = self._allocations.release_for_request(request, actor_id)

        before = request_state(request)
        request.status = target_status(RequestOperation.CANCEL, request.status).value
        request.is_flagged_for_review = False
        description = reason
        if released:
            description = f"{reason or 'cancelled'}; released {len(released)} allocation(s)"
        self._record(request, AuditAction.CANCELLED, before, actor_id, description)
        return RequestInfo.from_model(request)

    # ------------------------------------------------------------------
    # Stale-request review
    # ------------------------------------------------------------------

    def _committed_count(self, request_id: UUID) -> int:
        return int(
            self.session.execute(
                select(func.count(Contribution.id)).where(
                    Contribution.request_id == request_id,
                    Contribution.status == ContributionStatus.COMMITTED.value,
                )
            ).scalar_one()
        )

    def is_unmatched(self, request: AidRequest) -> bool:
        """Open for matching but nobody has committed to it."""
        return (
            request.status in (RequestStatus.PENDING, RequestStatus.APPROVED)
            and request.assigned_supplier_id is None
            and self._committed_count(request.id) == 0
        )

    def is_stale_unmatched(self, request: AidRequest, cutoff: datetime) -> bool:
        return ensure_utc(request.created_at) < ensure_utc(cutoff) and self.is_unmatched(request)

    def flag_for_review(self, request_id: UUID, cutoff: datetime) -> bool:
        """
        Flag a stale, unmatched request for manual review.

        Returns False (no change, no entry) if the request no longer
        qualifies or is already flagged.
        """
        request = self._locker.lock_request(request_id)
        if request.is_flagged_for_review or not self.is_stale_unmatched(request, cutoff):
            return False
        self._check(RequestOperation.FLAG, request)

        before = request_state(request)
        request.is_flagged_for_review = True
        request.flagged_at = self.clock.now()
        self._record(
            request, AuditAction.FLAGGED, before, None,
            description=f"unmatched since before {ensure_utc(cutoff).date().isoformat()}",
        )
        return True

    def close_unmatched(self, request_id: UUID, cutoff: datetime) -> bool:
        """
        Close an unmatched request that is stale or expired.

        Pending and approved allocations are released first.

        Returns False if the request no longer qualifies.
        """
        request = self._locker.lock_request(request_id)
        now = self.clock.now()
        if not self.is_unmatched(request):
            return False
        expired = (
            request.expires_at is not None
            and ensure_utc(request.expires_at) <= now
        )
        if not (expired or ensure_utc(request.created_at) < ensure_utc(cutoff)):
            return False
        self._check(RequestOperation.BATCH_CLOSE, request)

        released = self._allocations.release_for_request(request, None, "request closed")

        before = request_state(request)
        request.status = target_status(RequestOperation.BATCH_CLOSE, request.status).value
        request.is_flagged_for_review = False
        description = "expired" if expired else "no match before cutoff"
        if released:
            description = f"{description}; released {len(released)} allocation(s)"
        self._record(request, AuditAction.BATCH_CLOSED, before, None, description=description)
        return True

    def batch_dispose(
        self,
        request_ids: Iterable[UUID],
        action: DisposeAction | str,
        admin_id: UUID,
        cutoff: datetime,
        boost_value: int,
    ) -> DisposeResult:
        """
        Close or boost a batch of old requests.

        Eligible: exists, non-terminal, created before ``cutoff``.  Other
        ids are skipped, not rejected.  Rows are locked in id order so two
        overlapping batches cannot deadlock.  Closing releases the pending
        and approved allocations of every closed request, after all the
        request rows are locked.
        """
        action = DisposeAction(action)
        self._require_role(admin_id, "dispose requests", ParticipantRole.ADMIN)
        operation = (
            RequestOperation.BATCH_CLOSE if action == DisposeAction.CLOSE
            else RequestOperation.BATCH_BOOST
        )

        updated: list[UUID] = []
        skipped: list[UUID] = []
        closed: list[AidRequest] = []
        for request_id in sorted(set(request_ids), key=str):
            try:
                request = self._locker.lock_request(request_id)
            except RequestNotFoundError:
                skipped.append(request_id)
                continue
            if (
                is_terminal(request.status)
                or not can_apply(operation, request.status)
                or ensure_utc(request.created_at) >= ensure_utc(cutoff)
            ):
                skipped.append(request_id)
                continue

            before = request_state(request)
            request.is_flagged_for_review = False
            if action == DisposeAction.CLOSE:
                request.status = target_status(operation, request.status).value
                audit_action = AuditAction.BATCH_CLOSED
                closed.append(request)
            else:
                request.admin_override = boost_value
                audit_action = AuditAction.BATCH_BOOSTED
            self._record(request, audit_action, before, admin_id)
            updated.append(request_id)

        released = self._allocations.release_for_requests(closed, admin_id, "request closed")

        logger.info(
            "batch_dispose_completed",
            extra={
                "action": action.value,
                "updated": len(updated),
                "skipped": len(skipped),
                "released_allocations": len(released),
            },
        )
        return DisposeResult(
            action=action,
            updated_ids=tuple(updated),
            skipped_ids=tuple(skipped),
        )
