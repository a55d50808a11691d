"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every mutating service in the kernel.  Services receive a SQLAlchemy
    ``Session`` and use ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Every service in
    ``aid_kernel/services/`` that writes rows extends this class.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back themselves.  The caller
      (MarketplaceCoordinator, the batch executor, or a test harness) owns
      commit/rollback, so a guard failure, a failed audit append or a
      lock timeout discards the whole unit of work.

Failure modes:
    - A subclass that calls ``session.commit()`` breaks the all-or-nothing
      pairing of a mutation with its audit entry.
"""

from abc import ABC
from uuid import UUID

from sqlalchemy.orm import Session

from aid_kernel.domain.clock import Clock, SystemClock
from aid_kernel.domain.values import ParticipantRole
from aid_kernel.exceptions import AuthorizationError, ParticipantNotFoundError
from aid_kernel.models.participant import Participant


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` (and optionally a Clock) from the
        caller and uses ``session.flush()`` to persist changes within the
        active transaction.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide list/report queries; those belong in
          ``aid_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def _get_participant(self, participant_id: UUID) -> Participant:
        participant = self.session.get(Participant, participant_id)
        if participant is None:
            raise ParticipantNotFoundError(str(participant_id))
        return participant

    def _require_role(
        self,
        actor_id: UUID,
        operation: str,
        *roles: ParticipantRole,
    ) -> Participant:
        """
        Load the actor and check its role.

        Raises:
            ParticipantNotFoundError: Unknown actor.
            AuthorizationError: Actor is inactive or holds none of ``roles``.
        """
        actor = self._get_participant(actor_id)
        if not actor.is_active:
            raise AuthorizationError(str(actor_id), operation, "account is inactive")
        if roles and not actor.has_role(*roles):
            allowed = ", ".join(r.value for r in roles)
            raise AuthorizationError(
                str(actor_id), operation, f"requires role {allowed}"
            )
        return actor
