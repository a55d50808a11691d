"""
aid_services.coordinator -- Transaction owner for marketplace operations.

Responsibility:
    Wires every kernel service exactly once around one Session and runs
    each external operation as one unit of work: bind log context, call
    the kernel, commit on success, roll back on any failure.  Scoring of
    new or boosted requests is handed to the background queue only after
    the commit that made them visible.

Architecture position:
    Services -- imperative shell over aid_kernel.  The kernel services
    only flush; this is the only place that commits.

Invariants enforced:
    - One transaction per mutating operation.  A rejected operation
      leaves no row and no audit entry behind.
    - Lock-wait failures surface as LockTimeoutError (retryable); the
      unit is rolled back first.
    - Scoring is enqueued after commit and never awaited.

Failure modes:
    - Any AidKernelError raised by the kernel propagates unchanged after
      rollback.  Use ``aid_services.error_mapping.describe_error`` to turn
      it into a caller-visible report.

Audit relevance:
    ``operation_started`` / ``operation_completed`` / ``operation_failed``
    log entries carry the operation name, actor, duration and error code,
    complementing the hash-chained audit trail written by the kernel.

Usage:
    coordinator = MarketplaceCoordinator(session, clock=clock)
    coordinator.contribute(request_id, supplier_id, percentage=60)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from typing import Any, Protocol, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from aid_config.schema import EngineSettings
from aid_kernel.db.immutability import register_immutability_listeners
from aid_kernel.db.locking import translate_lock_errors
from aid_kernel.domain.clock import Clock, SystemClock
from aid_kernel.domain.conflict_guard import ConflictGuard
from aid_kernel.domain.dtos import (
    AllocationInfo,
    AuditEntryView,
    AuditPage,
    AvailableRequest,
    ContributionInfo,
    DisposeResult,
    DonationInfo,
    FundingSummary,
    ParticipantInfo,
    RegionNeed,
    RequestInfo,
    RouteInfo,
)
from aid_kernel.domain.gateways import VerificationGateway
from aid_kernel.domain.values import DisposeAction, DonationType, ParticipantRole
from aid_kernel.logging_config import LogContext, get_logger
from aid_kernel.selectors.audit_selector import AuditFilter, AuditSelector
from aid_kernel.selectors.regional_selector import RegionalNeedSelector
from aid_kernel.selectors.request_selector import RequestSelector
from aid_kernel.services.allocation_service import AllocationEngine
from aid_kernel.services.audit_service import AuditTrailService
from aid_kernel.services.contribution_service import ContributionLedger
from aid_kernel.services.donation_service import DonationStock
from aid_kernel.services.participant_service import (
    ParticipantService,
    ParticipantVerificationGateway,
)
from aid_kernel.services.request_service import RequestLifecycle

logger = get_logger("services.coordinator")

T = TypeVar("T")


class ScoringSink(Protocol):
    """Anything that accepts request ids for background rescoring."""

    def submit(self, request_id: UUID) -> Any: ...


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


class MarketplaceCoordinator:
    """
    Entry point for every marketplace operation.

    Contract:
        Receives a Session and optional Clock, EngineSettings,
        VerificationGateway and scoring sink.  Constructs the kernel
        services once, sharing the same Session, Clock, ConflictGuard and
        AuditTrailService.

    Guarantees:
        - With ``auto_commit=True`` (default) each mutating call commits
          or rolls back before returning.
        - With ``auto_commit=False`` the caller owns the transaction
          (e.g. ``session_scope``); queued scoring is dispatched by
          ``dispatch_pending_scoring`` after the caller commits.

    Non-goals:
        - Does NOT retry LockTimeoutError; the caller decides.
        - Does NOT authenticate actors; ids are trusted as given.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        verification: VerificationGateway | None = None,
        scoring: ScoringSink | None = None,
        auto_commit: bool = True,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._scoring = scoring
        self._auto_commit = auto_commit
        self._pending_scoring: list[UUID] = []

        register_immutability_listeners()

        # Order matters: later services receive the earlier instances.
        self.guard = ConflictGuard()
        self.audit_trail = AuditTrailService(session, self._clock)
        self.participants = ParticipantService(session, self._clock, self.audit_trail)
        self.verification = verification or ParticipantVerificationGateway(session)
        self.stock = DonationStock(session, self._clock, self.guard, self.audit_trail)
        self.ledger = ContributionLedger(session, self._clock, self.guard, self.audit_trail)
        self.allocations = AllocationEngine(
            session,
            self._clock,
            self.guard,
            verification=self.verification,
            audit=self.audit_trail,
            stock=self.stock,
        )
        self.lifecycle = RequestLifecycle(
            session,
            self._clock,
            self.guard,
            audit=self.audit_trail,
            ledger=self.ledger,
            allocations=self.allocations,
        )

        self.requests = RequestSelector(session)
        self.audit_log = AuditSelector(session)
        self.regions = RegionalNeedSelector(session, self.guard)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Unit-of-work plumbing
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        fn: Callable[[], T],
        actor_id: UUID | None = None,
        request_id: UUID | None = None,
    ) -> T:
        start = time.monotonic()
        with LogContext.bind(
            operation=operation,
            actor_id=_str_or_none(actor_id),
            request_id=_str_or_none(request_id),
        ):
            logger.info("operation_started")
            try:
                with translate_lock_errors(operation):
                    result = fn()
                    if self._auto_commit:
                        self._session.commit()
            except Exception as exc:
                if self._auto_commit:
                    self._session.rollback()
                    self._pending_scoring.clear()
                logger.warning(
                    "operation_failed",
                    extra={
                        "error_code": getattr(exc, "code", type(exc).__name__),
                        "duration_ms": int((time.monotonic() - start) * 1000),
                    },
                )
                raise

            logger.info(
                "operation_completed",
                extra={"duration_ms": int((time.monotonic() - start) * 1000)},
            )
            if self._auto_commit:
                self.dispatch_pending_scoring()
            return result

    def _read(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            with translate_lock_errors(operation):
                return fn()
        finally:
            # Reads must not keep the write transaction (or SQLite's
            # reserved lock) open between calls.
            if self._auto_commit:
                self._session.rollback()

    def _queue_scoring(self, request_id: UUID) -> None:
        if self._scoring is not None:
            self._pending_scoring.append(request_id)

    def dispatch_pending_scoring(self) -> int:
        """Hand queued request ids to the scoring sink.  Call after commit."""
        pending, self._pending_scoring = self._pending_scoring, []
        for request_id in pending:
            self._scoring.submit(request_id)
        return len(pending)

    def _stale_cutoff(self) -> datetime:
        return self._clock.now() - timedelta(days=self._settings.review.stale_after_days)

    # ------------------------------------------------------------------
    # Participants (KYC effect)
    # ------------------------------------------------------------------

    def register_participant(
        self,
        name: str,
        role: ParticipantRole | str,
        phone: str | None = None,
        national_id: str | None = None,
        is_verified: bool = False,
    ) -> ParticipantInfo:
        return self._run(
            "register_participant",
            lambda: self.participants.register(
                name, role, phone=phone, national_id=national_id, is_verified=is_verified,
            ),
        )

    def set_participant_verified(self, participant_id: UUID, verified: bool = True) -> ParticipantInfo:
        return self._run(
            "set_participant_verified",
            lambda: self.participants.set_verified(participant_id, verified),
        )

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    def create_request(
        self,
        recipient_id: UUID,
        title: str,
        actor_id: UUID | None = None,
        quantity_required: int = 0,
        region: str | None = None,
        unit: str | None = None,
        description: str | None = None,
        need_type: str | None = None,
        expires_at: datetime | None = None,
    ) -> RequestInfo:
        def op() -> RequestInfo:
            info = self.lifecycle.create_request(
                recipient_id,
                title,
                actor_id or recipient_id,
                quantity_required=quantity_required,
                region=region,
                unit=unit,
                description=description,
                need_type=need_type,
                expires_at=expires_at,
                expiry_days=self._settings.requests.expiry_days,
            )
            self._queue_scoring(info.id)
            return info

        return self._run("create_request", op, actor_id or recipient_id)

    def audit(self, request_id: UUID, auditor_id: UUID) -> RequestInfo:
        return self._run(
            "audit", lambda: self.lifecycle.audit(request_id, auditor_id),
            auditor_id, request_id,
        )

    def claim(self, request_id: UUID, supplier_id: UUID) -> RequestInfo:
        return self._run(
            "claim", lambda: self.lifecycle.claim(request_id, supplier_id),
            supplier_id, request_id,
        )

    def request_recede(self, request_id: UUID, supplier_id: UUID) -> RequestInfo:
        return self._run(
            "request_recede", lambda: self.lifecycle.request_recede(request_id, supplier_id),
            supplier_id, request_id,
        )

    def approve_recede(self, request_id: UUID, admin_id: UUID) -> RequestInfo:
        return self._run(
            "approve_recede", lambda: self.lifecycle.approve_recede(request_id, admin_id),
            admin_id, request_id,
        )

    def complete(self, request_id: UUID, actor_id: UUID) -> RequestInfo:
        return self._run(
            "complete", lambda: self.lifecycle.complete(request_id, actor_id),
            actor_id, request_id,
        )

    def cancel_request(
        self,
        request_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
    ) -> RequestInfo:
        return self._run(
            "cancel_request", lambda: self.lifecycle.cancel(request_id, actor_id, reason),
            actor_id, request_id,
        )

    def batch_dispose(
        self,
        request_ids: Iterable[UUID],
        action: DisposeAction | str,
        admin_id: UUID,
    ) -> DisposeResult:
        """Close or boost requests older than the configured stale age."""
        ids = list(request_ids)

        def op() -> DisposeResult:
            result = self.lifecycle.batch_dispose(
                ids,
                action,
                admin_id,
                cutoff=self._stale_cutoff(),
                boost_value=self._settings.review.boost_override,
            )
            if result.action == DisposeAction.BOOST:
                for request_id in result.updated_ids:
                    self._queue_scoring(request_id)
            return result

        return self._run("batch_dispose", op, admin_id)

    # ------------------------------------------------------------------
    # Contributions
    # ------------------------------------------------------------------

    def contribute(
        self,
        request_id: UUID,
        supplier_id: UUID,
        percentage: int,
        amount_value=None,
    ) -> ContributionInfo:
        return self._run(
            "contribute",
            lambda: self.ledger.commit(request_id, supplier_id, percentage, amount_value),
            supplier_id, request_id,
        )

    def update_contribution(
        self,
        contribution_id: UUID,
        new_percentage: int,
        actor_id: UUID,
    ) -> ContributionInfo:
        return self._run(
            "update_contribution",
            lambda: self.ledger.update(contribution_id, new_percentage, actor_id),
            actor_id,
        )

    def withdraw_contribution(self, contribution_id: UUID, actor_id: UUID) -> ContributionInfo:
        return self._run(
            "withdraw_contribution",
            lambda: self.ledger.withdraw(contribution_id, actor_id),
            actor_id,
        )

    # ------------------------------------------------------------------
    # Donations and warehouses
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
        return self._run(
            "create_donation",
            lambda: self.stock.create_donation(
                supplier_id,
                donation_type,
                item,
                quantity,
                unit=unit,
                expiry_date=expiry_date,
                targeted_request_id=targeted_request_id,
            ),
            supplier_id, targeted_request_id,
        )

    def verify_donation(self, donation_id: UUID, admin_id: UUID) -> DonationInfo:
        return self._run(
            "verify_donation", lambda: self.stock.verify(donation_id, admin_id), admin_id,
        )

    def reject_donation(
        self,
        donation_id: UUID,
        admin_id: UUID,
        reason: str | None = None,
    ) -> DonationInfo:
        return self._run(
            "reject_donation", lambda: self.stock.reject(donation_id, admin_id, reason), admin_id,
        )

    def payment_succeeded(self, donation_id: UUID) -> bool:
        """Payment webhook.  True if the donation was verified by this call."""
        return self._run(
            "payment_succeeded", lambda: self.stock.mark_payment_succeeded(donation_id),
        )

    def assign_warehouse(
        self,
        donation_id: UUID,
        warehouse_id: UUID,
        admin_id: UUID,
    ) -> DonationInfo:
        return self._run(
            "assign_warehouse",
            lambda: self.stock.assign_warehouse(donation_id, warehouse_id, admin_id),
            admin_id,
        )

    # ------------------------------------------------------------------
    # Allocations and delivery
    # ------------------------------------------------------------------

    def allocate(
        self,
        request_id: UUID,
        donation_id: UUID,
        quantity: int,
        allocator_id: UUID,
        notes: str | None = None,
    ) -> AllocationInfo:
        return self._run(
            "allocate",
            lambda: self.allocations.create(request_id, donation_id, quantity, allocator_id, notes),
            allocator_id, request_id,
        )

    def attach_route(
        self,
        allocation_id: UUID,
        actor_id: UUID,
        warehouse_id: UUID | None = None,
        scheduled_date: datetime | None = None,
    ) -> RouteInfo:
        return self._run(
            "attach_route",
            lambda: self.allocations.attach_route(
                allocation_id, actor_id, warehouse_id=warehouse_id, scheduled_date=scheduled_date,
            ),
            actor_id,
        )

    def mark_delivered(self, route_id: UUID, actor_id: UUID | None = None) -> RouteInfo:
        """Delivery collaborator's signal."""
        return self._run(
            "mark_delivered", lambda: self.allocations.mark_delivered(route_id, actor_id), actor_id,
        )

    def cancel_allocation(self, allocation_id: UUID, actor_id: UUID) -> AllocationInfo:
        return self._run(
            "cancel_allocation", lambda: self.allocations.cancel(allocation_id, actor_id), actor_id,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request(self, request_id: UUID) -> RequestInfo:
        return self._read("get_request", lambda: self.requests.get(request_id))

    def funding_summary(self, request_id: UUID) -> FundingSummary:
        return self._read(
            "funding_summary", lambda: self.ledger.request_funding_summary(request_id),
        )

    def list_available(self, limit: int = 100) -> list[AvailableRequest]:
        return self._read(
            "list_available", lambda: self.requests.list_available(self._clock.now(), limit),
        )

    def list_flagged(self) -> list[RequestInfo]:
        return self._read(
            "list_flagged", lambda: self.requests.list_flagged(self._stale_cutoff()),
        )

    def audit_page(
        self,
        filters: AuditFilter | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> AuditPage:
        size = per_page if per_page is not None else self._settings.audit.page_size
        return self._read("audit_page", lambda: self.audit_log.page(filters, page, size))

    def entity_history(self, entity_type: str, entity_id: UUID) -> tuple[AuditEntryView, ...]:
        return self._read(
            "entity_history", lambda: self.audit_log.history(entity_type, entity_id),
        )

    def region_needs(self) -> list[RegionNeed]:
        return self._read(
            "region_needs", lambda: self.regions.region_needs(self._clock.now()),
        )

    def validate_audit_chain(self) -> bool:
        """Raises AuditChainBrokenError on tampering."""
        return self._read("validate_audit_chain", self.audit_trail.validate_chain)
