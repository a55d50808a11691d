"""
ContributionLedger -- percentage-based funding commitments.

Responsibility:
    Commits, adjusts and withdraws suppliers' percentage shares of a
    request, and keeps the request's funding_status (and the
    APPROVED <-> CLAIMED move it drives) equal to the derivation of the
    committed sum.

Architecture position:
    Kernel > Services -- imperative shell.  Calls the pure
    ``derive_funding_state`` for every change; there is no second
    implementation of the funding rule.  RequestLifecycle reuses
    ``apply_funding_state`` after claim and recede.

Invariants enforced:
    - Sum of committed percentages per request <= 100.  Checked under the
      request row lock, so two concurrent commits on one request are
      serialized and the second sees the first's row.
    - At most one committed contribution per (request, supplier).
    - funding_status == funding_status_for(committed sum) after every
      commit, update and withdraw.
    - No self-dealing: the contributor may not be the recipient, nor share
      an identity with the recipient or with another account already on
      the request.

Failure modes:
    - ValidationError: percentage outside 1..100, negative amount.
    - InvalidTransitionError: request not open for the change.
    - SelfDealingError, DuplicateContributionError,
      PercentageOvercommitError (carries ``remaining``).
    - AuthorizationError: update/withdraw by someone other than the owner
      or an admin.
    - FundingStateDriftError from ``check_funding_consistency``.

Audit relevance:
    Each contribution change appends a Contribution entry; each resulting
    funding or status change appends an AidRequest entry.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from aid_kernel.db.locking import RowLocker
from aid_kernel.domain.clock import Clock
from aid_kernel.domain.conflict_guard import ConflictGuard, PartyIdentity
from aid_kernel.domain.dtos import ContributionInfo, FundingSummary
from aid_kernel.domain.funding import (
    FULL_FUNDING,
    FundingState,
    derive_funding_state,
    funding_status_for,
    remaining_share,
)
from aid_kernel.domain.lifecycle import RequestOperation, can_apply
from aid_kernel.domain.values import ContributionStatus, ParticipantRole, RequestStatus
from aid_kernel.exceptions import (
    AuthorizationError,
    ContributionNotFoundError,
    DuplicateContributionError,
    FundingStateDriftError,
    InvalidTransitionError,
    PercentageOvercommitError,
    RequestNotFoundError,
    ValidationError,
)
from aid_kernel.logging_config import get_logger
from aid_kernel.models.audit_entry import AuditAction
from aid_kernel.models.contribution import Contribution
from aid_kernel.models.participant import Participant
from aid_kernel.models.request import AidRequest
from aid_kernel.services.audit_service import AuditTrailService
from aid_kernel.services.base import BaseService

logger = get_logger("services.contribution")


def request_state(request: AidRequest) -> dict:
    """Audit snapshot of the request fields the engine mutates."""
    return {
        "status": request.status,
        "funding_status": request.funding_status,
        "assigned_supplier_id": request.assigned_supplier_id,
        "is_flagged_for_review": request.is_flagged_for_review,
        "admin_override": request.admin_override,
    }


def contribution_state(contribution: Contribution) -> dict:
    return {
        "request_id": contribution.request_id,
        "supplier_id": contribution.supplier_id,
        "percentage": contribution.percentage,
        "amount_value": contribution.amount_value,
        "status": contribution.status,
    }


def _validate_percentage(percentage: int) -> None:
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise ValidationError("percentage", "must be a whole number")
    if percentage < 1 or percentage > FULL_FUNDING:
        raise ValidationError("percentage", f"must be between 1 and {FULL_FUNDING}")


class ContributionLedger(BaseService):
    """
    The funding ledger for aid requests.

    Contract:
        Every mutating method locks the request row first, re-reads what
        it checks, applies the change, re-derives funding state and audits,
        all within the caller's transaction.

    Guarantees:
        - A rejected attempt writes nothing.
        - Withdrawn contributions are kept as history, never deleted.

    Non-goals:
        - Does NOT commit.  MarketplaceCoordinator owns the transaction.
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
    # Ledger reads
    # ------------------------------------------------------------------

    def committed_total(self, request_id: UUID) -> int:
        """Sum of committed percentages on a request (0 if none)."""
        total = self.session.execute(
            select(func.coalesce(func.sum(Contribution.percentage), 0)).where(
                Contribution.request_id == request_id,
                Contribution.status == ContributionStatus.COMMITTED.value,
            )
        ).scalar_one()
        return int(total)

    def _committed_contributions(self, request_id: UUID) -> list[Contribution]:
        return list(
            self.session.execute(
                select(Contribution)
                .where(
                    Contribution.request_id == request_id,
                    Contribution.status == ContributionStatus.COMMITTED.value,
                )
                .order_by(Contribution.created_at, Contribution.id)
            ).scalars().all()
        )

    def _committed_by(self, request_id: UUID, supplier_id: UUID) -> Contribution | None:
        return self.session.execute(
            select(Contribution).where(
                Contribution.request_id == request_id,
                Contribution.supplier_id == supplier_id,
                Contribution.status == ContributionStatus.COMMITTED.value,
            )
        ).scalar_one_or_none()

    def counterparties(self, request: AidRequest) -> list[PartyIdentity]:
        """Identities already on the request: contributors and assigned supplier."""
        ids = {c.supplier_id for c in self._committed_contributions(request.id)}
        if request.assigned_supplier_id is not None:
            ids.add(request.assigned_supplier_id)
        if not ids:
            return []
        participants = self.session.execute(
            select(Participant).where(Participant.id.in_(ids))
        ).scalars().all()
        return [p.identity() for p in participants]

    def recipient_identity(self, request: AidRequest) -> PartyIdentity:
        return self._get_participant(request.recipient_id).identity()

    # ------------------------------------------------------------------
    # Funding derivation
    # ------------------------------------------------------------------

    def apply_funding_state(self, request: AidRequest, actor_id: UUID | None) -> FundingState:
        """
        Re-derive and store funding state for a locked request.

        A CLAIMED request that drops below 100% reverts to APPROVED and
        loses its assigned supplier.  An entry is appended only when
        something changed.

        Preconditions:
            - ``request`` is locked in the current transaction and all
              contribution changes are flushed.
        """
        total = self.committed_total(request.id)
        state = derive_funding_state(total, request.status)
        before = request_state(request)
        previous_status = RequestStatus(request.status)

        changed = False
        if request.funding_status != state.funding_status:
            request.funding_status = state.funding_status.value
            changed = True
        if previous_status != state.status:
            request.status = state.status.value
            changed = True
            if state.status == RequestStatus.APPROVED:
                request.assigned_supplier_id = None

        if not changed:
            return state

        request.updated_by_id = actor_id
        self.session.flush()

        reached_claim = state.status == RequestStatus.CLAIMED and previous_status != state.status
        self._audit.append(
            entity_type="AidRequest",
            entity_id=request.id,
            action=AuditAction.CLAIMED if reached_claim else AuditAction.UPDATED,
            actor_id=actor_id,
            old_values=before,
            new_values=request_state(request),
            description=f"committed funding now {total}%",
        )
        logger.info(
            "funding_state_derived",
            extra={
                "request_id": str(request.id),
                "total": total,
                "funding_status": state.funding_status.value,
                "status": state.status.value,
            },
        )
        return state

    # ------------------------------------------------------------------
    # Commit / update / withdraw
    # ------------------------------------------------------------------

    def commit(
        self,
        request_id: UUID,
        supplier_id: UUID,
        percentage: int,
        amount_value=None,
    ) -> ContributionInfo:
        """
        Commit a share of a request's funding.

        Raises:
            ValidationError, InvalidTransitionError, SelfDealingError,
            DuplicateContributionError, PercentageOvercommitError.
        """
        _validate_percentage(percentage)
        if amount_value is not None and amount_value < 0:
            raise ValidationError("amount_value", "must not be negative")

        supplier = self._require_role(supplier_id, "contribute", ParticipantRole.SUPPLIER)
        request = self._locker.lock_request(request_id)

        if not can_apply(RequestOperation.CONTRIBUTE, request.status):
            raise InvalidTransitionError(
                "AidRequest", str(request_id), request.status, "contribute to",
            )

        self._guard.ensure_not_self_dealing(
            request.id,
            self.recipient_identity(request),
            supplier.identity(),
            self.counterparties(request),
        )

        if self._committed_by(request.id, supplier_id) is not None:
            raise DuplicateContributionError(str(request_id), str(supplier_id))

        remaining = remaining_share(self.committed_total(request.id))
        if percentage > remaining:
            logger.info(
                "contribution_rejected_overcommit",
                extra={
                    "request_id": str(request_id),
                    "requested": percentage,
                    "remaining": remaining,
                },
            )
            raise PercentageOvercommitError(str(request_id), percentage, remaining)

        contribution = Contribution(
            request_id=request.id,
            supplier_id=supplier_id,
            percentage=percentage,
            amount_value=amount_value,
            status=ContributionStatus.COMMITTED.value,
            created_at=self.clock.now(),
            created_by_id=supplier_id,
        )
        self.session.add(contribution)
        self.session.flush()

        self._audit.append(
            entity_type="Contribution",
            entity_id=contribution.id,
            action=AuditAction.CREATED,
            actor_id=supplier_id,
            new_values=contribution_state(contribution),
        )
        self.apply_funding_state(request, supplier_id)

        logger.info(
            "contribution_committed",
            extra={
                "request_id": str(request_id),
                "contribution_id": str(contribution.id),
                "percentage": percentage,
            },
        )
        return ContributionInfo.from_model(contribution)

    def commit_remaining_share(self, request: AidRequest, supplier_id: UUID) -> Contribution:
        """
        Record a claim: the claimer commits whatever share is still open.

        An existing committed contribution by the claimer is raised to
        cover the remainder instead of adding a second row.

        Preconditions:
            - ``request`` is locked, APPROVED, not fully funded, and the
              claimer passed the conflict guard.
        """
        remaining = remaining_share(self.committed_total(request.id))
        existing = self._committed_by(request.id, supplier_id)

        if existing is not None:
            before = contribution_state(existing)
            existing.percentage += remaining
            existing.updated_by_id = supplier_id
            self.session.flush()
            self._audit.append(
                entity_type="Contribution",
                entity_id=existing.id,
                action=AuditAction.UPDATED,
                actor_id=supplier_id,
                old_values=before,
                new_values=contribution_state(existing),
                description="raised to cover claim",
            )
            return existing

        contribution = Contribution(
            request_id=request.id,
            supplier_id=supplier_id,
            percentage=remaining,
            status=ContributionStatus.COMMITTED.value,
            created_at=self.clock.now(),
            created_by_id=supplier_id,
        )
        self.session.add(contribution)
        self.session.flush()
        self._audit.append(
            entity_type="Contribution",
            entity_id=contribution.id,
            action=AuditAction.CREATED,
            actor_id=supplier_id,
            new_values=contribution_state(contribution),
            description="claim",
        )
        return contribution

    def _lock_for_change(self, contribution_id: UUID, actor_id: UUID, operation: str):
        """Lock the owning request, then re-read the contribution under it."""
        actor = self._get_participant(actor_id)
        found = self.session.get(Contribution, contribution_id)
        if found is None:
            raise ContributionNotFoundError(str(contribution_id))

        request = self._locker.lock_request(found.request_id)
        contribution = self.session.execute(
            select(Contribution)
            .where(Contribution.id == contribution_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

        if contribution.supplier_id != actor_id and not actor.is_admin:
            raise AuthorizationError(
                str(actor_id), operation, "only the contributor or an admin"
            )
        if not contribution.is_committed:
            raise InvalidTransitionError(
                "Contribution", str(contribution_id), contribution.status, operation,
            )
        if not can_apply(RequestOperation.ADJUST_CONTRIBUTION, request.status):
            raise InvalidTransitionError(
                "AidRequest", str(request.id), request.status, operation,
            )
        return request, contribution

    def update(
        self,
        contribution_id: UUID,
        new_percentage: int,
        actor_id: UUID,
    ) -> ContributionInfo:
        """
        Change a committed contribution's percentage.

        Raises:
            ValidationError, AuthorizationError, InvalidTransitionError,
            PercentageOvercommitError.
        """
        _validate_percentage(new_percentage)
        request, contribution = self._lock_for_change(
            contribution_id, actor_id, "update contribution",
        )

        others = self.committed_total(request.id) - contribution.percentage
        remaining = remaining_share(others)
        if new_percentage > remaining:
            raise PercentageOvercommitError(str(request.id), new_percentage, remaining)

        if new_percentage == contribution.percentage:
            return ContributionInfo.from_model(contribution)

        before = contribution_state(contribution)
        contribution.percentage = new_percentage
        contribution.updated_by_id = actor_id
        self.session.flush()

        self._audit.append(
            entity_type="Contribution",
            entity_id=contribution.id,
            action=AuditAction.UPDATED,
            actor_id=actor_id,
            old_values=before,
            new_values=contribution_state(contribution),
        )
        self.apply_funding_state(request, actor_id)

        logger.info(
            "contribution_updated",
            extra={
                "contribution_id": str(contribution_id),
                "old_percentage": before["percentage"],
                "new_percentage": new_percentage,
            },
        )
        return ContributionInfo.from_model(contribution)

    def withdraw(self, contribution_id: UUID, actor_id: UUID) -> ContributionInfo:
        """
        Withdraw a committed contribution.

        Raises:
            AuthorizationError, InvalidTransitionError.
        """
        request, contribution = self._lock_for_change(
            contribution_id, actor_id, "withdraw contribution",
        )
        self._withdraw_locked(contribution, actor_id)
        self.apply_funding_state(request, actor_id)
        return ContributionInfo.from_model(contribution)

    def withdraw_supplier_share(
        self,
        request: AidRequest,
        supplier_id: UUID,
        actor_id: UUID,
    ) -> Contribution | None:
        """
        Withdraw ``supplier_id``'s committed share on a locked request.

        Used when an admin approves a recede.  Funding is not re-derived
        here; the caller does that once its own changes are in.
        """
        contribution = self._committed_by(request.id, supplier_id)
        if contribution is None:
            return None
        self._withdraw_locked(contribution, actor_id, description="recede approved")
        return contribution

    def _withdraw_locked(
        self,
        contribution: Contribution,
        actor_id: UUID,
        description: str | None = None,
    ) -> None:
        before = contribution_state(contribution)
        contribution.status = ContributionStatus.WITHDRAWN.value
        contribution.withdrawn_at = self.clock.now()
        contribution.updated_by_id = actor_id
        self.session.flush()

        self._audit.append(
            entity_type="Contribution",
            entity_id=contribution.id,
            action=AuditAction.WITHDRAWN,
            actor_id=actor_id,
            old_values=before,
            new_values=contribution_state(contribution),
            description=description,
        )
        logger.info(
            "contribution_withdrawn",
            extra={
                "contribution_id": str(contribution.id),
                "request_id": str(contribution.request_id),
                "percentage": contribution.percentage,
            },
        )

    # ------------------------------------------------------------------
    # Summaries and consistency
    # ------------------------------------------------------------------

    def request_funding_summary(self, request_id: UUID) -> FundingSummary:
        """Committed funding on a request, recomputed from the ledger."""
        if self.session.get(AidRequest, request_id) is None:
            raise RequestNotFoundError(str(request_id))
        contributions = self._committed_contributions(request_id)
        total = sum(c.percentage for c in contributions)
        return FundingSummary(
            request_id=request_id,
            total_committed=total,
            contribution_count=len(contributions),
            funding_status=funding_status_for(total),
            contributions=tuple(ContributionInfo.from_model(c) for c in contributions),
        )

    def check_funding_consistency(self, request_id: UUID) -> FundingSummary:
        """
        Compare stored funding_status with the ledger.

        Raises:
            FundingStateDriftError: The stored value is not the derivation
                of the committed sum.
        """
        summary = self.request_funding_summary(request_id)
        request = self.session.get(AidRequest, request_id)
        if request.funding_status != summary.funding_status:
            logger.critical(
                "funding_state_drift",
                extra={
                    "request_id": str(request_id),
                    "stored": str(request.funding_status),
                    "derived": summary.funding_status.value,
                    "total": summary.total_committed,
                },
            )
            raise FundingStateDriftError(
                str(request_id),
                str(request.funding_status),
                summary.funding_status.value,
                summary.total_committed,
            )
        return summary
