"""
ParticipantService -- marketplace accounts and their verification flag.

Responsibility:
    Registers participants, exposes them as ParticipantInfo DTOs, and
    records the KYC workflow's verification outcome.  Also provides the
    default VerificationGateway, which reads the stored flag.

Architecture position:
    Kernel > Services -- imperative shell.  The KYC workflow itself is an
    external collaborator; only its boolean result enters the kernel.

Failure modes:
    - ValidationError for a blank name.
    - ParticipantNotFoundError for an unknown id.
"""

from uuid import UUID

from sqlalchemy.orm import Session

from aid_kernel.domain.clock import Clock
from aid_kernel.domain.dtos import ParticipantInfo
from aid_kernel.domain.values import ParticipantRole
from aid_kernel.exceptions import ValidationError
from aid_kernel.logging_config import get_logger
from aid_kernel.models.audit_entry import AuditAction
from aid_kernel.models.participant import Participant
from aid_kernel.services.audit_service import AuditTrailService
from aid_kernel.services.base import BaseService

logger = get_logger("services.participant")


class ParticipantVerificationGateway:
    """VerificationGateway backed by ``participants.is_verified``."""

    def __init__(self, session: Session):
        self._session = session

    def is_verified(self, participant_id: UUID) -> bool:
        participant = self._session.get(Participant, participant_id)
        return bool(participant is not None and participant.is_verified)


class ParticipantService(BaseService):
    """
    Registration and lookup of participants.

    Contract:
        ``register`` creates an active participant; ``set_verified``
        applies a KYC decision.  Both are audited.

    Non-goals:
        - Does NOT run identity verification.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit: AuditTrailService | None = None,
    ):
        super().__init__(session, clock)
        self._audit = audit or AuditTrailService(session, self.clock)

    def register(
        self,
        name: str,
        role: ParticipantRole | str,
        phone: str | None = None,
        national_id: str | None = None,
        is_verified: bool = False,
        participant_id: UUID | None = None,
    ) -> ParticipantInfo:
        if not name or not name.strip():
            raise ValidationError("name", "must not be blank")
        try:
            role = ParticipantRole(role)
        except ValueError:
            raise ValidationError("role", f"unknown role {role!r}") from None

        participant = Participant(
            name=name.strip(),
            role=role.value,
            phone=phone,
            national_id=national_id,
            is_verified=is_verified,
            is_active=True,
            created_at=self.clock.now(),
        )
        if participant_id is not None:
            participant.id = participant_id
        self.session.add(participant)
        self.session.flush()

        self._audit.append(
            entity_type="Participant",
            entity_id=participant.id,
            action=AuditAction.CREATED,
            actor_id=participant.id,
            new_values={"name": participant.name, "role": role, "is_verified": is_verified},
        )
        logger.info(
            "participant_registered",
            extra={"participant_id": str(participant.id), "role": role.value},
        )
        return ParticipantInfo.from_model(participant)

    def get(self, participant_id: UUID) -> ParticipantInfo:
        return ParticipantInfo.from_model(self._get_participant(participant_id))

    def set_verified(self, participant_id: UUID, verified: bool = True) -> ParticipantInfo:
        """Apply the KYC workflow's decision."""
        participant = self._get_participant(participant_id)
        if participant.is_verified == verified:
            return ParticipantInfo.from_model(participant)

        participant.is_verified = verified
        self.session.flush()
        self._audit.append(
            entity_type="Participant",
            entity_id=participant.id,
            action=AuditAction.VERIFIED if verified else AuditAction.UPDATED,
            actor_id=None,
            old_values={"is_verified": not verified},
            new_values={"is_verified": verified},
            description="identity verification result",
        )
        logger.info(
            "participant_verification_set",
            extra={"participant_id": str(participant_id), "verified": verified},
        )
        return ParticipantInfo.from_model(participant)
