"""
AuditTrailService -- append-only, hash-chained audit entries.

Responsibility:
    Appends one AuditEntry per successful state change, inside the
    caller's transaction, and validates the hash chain on demand.

Architecture position:
    Kernel > Services -- imperative shell.  Called by every mutating
    service after its guards have passed and its rows are flushed.
    Read-side queries live in ``aid_kernel.selectors.audit_selector``.

Invariants enforced:
    - Append-only: entries are never updated or deleted (ORM listeners in
      ``aid_kernel.db.immutability``).
    - Sequence monotonicity via SequenceService, never max-plus-one.
    - Chain integrity: ``hash = H(seq | entity_type | entity_id |
      action | payload_hash | prev_hash)`` and ``payload_hash`` covers actor,
      old/new values and description.

Failure modes:
    - Any exception during ``append`` propagates; the coordinator rolls
      back the business change with it.  An operation never commits
      without its entry.
    - AuditChainBrokenError from ``validate_chain`` on a recomputed hash
      mismatch or broken linkage.

Audit relevance:
    This IS the audit trail.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from aid_kernel.domain.clock import Clock, SystemClock
from aid_kernel.exceptions import AuditChainBrokenError
from aid_kernel.logging_config import get_logger
from aid_kernel.models.audit_entry import AuditAction, AuditEntry
from aid_kernel.services.sequence_service import SequenceService
from aid_kernel.utils.hashing import hash_audit_entry, hash_payload, to_json_safe

logger = get_logger("services.audit")


def _entry_payload(
    actor_id: UUID | str | None,
    old_values: dict | None,
    new_values: dict | None,
    description: str | None,
) -> dict[str, Any]:
    """The hashed part of an entry, in its stored (JSON-safe) form."""
    return {
        "actor_id": str(actor_id) if actor_id is not None else None,
        "old_values": old_values,
        "new_values": new_values,
        "description": description,
    }


def _action_value(action: AuditAction | str) -> str:
    return action.value if isinstance(action, AuditAction) else str(action)


class AuditTrailService:
    """
    Creates and validates tamper-evident audit entries.

    Contract:
        ``append`` records (entity_type, entity_id, action, actor,
        old_values, new_values, description) and flushes it in the caller's
        transaction.

    Guarantees:
        - Every entry's ``hash`` is a deterministic function of its fields
          and its predecessor's hash; ``validate_chain`` detects tampering
          with any of them.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT record rejected attempts.  Guards raise before append.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_entry = self._session.execute(
            select(AuditEntry).order_by(AuditEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_entry.hash if last_entry else None

    def append(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        description: str | None = None,
    ) -> AuditEntry:
        """
        Append an audit entry linked to the current chain head.

        Preconditions:
            - The caller has already flushed the change being recorded.

        Postconditions:
            - A new AuditEntry is flushed with the next ``seq`` and a valid
              chain link.

        Args:
            actor_id: Acting participant; None for scheduled system work.
        """
        # The counter lock also serializes chain-head reads.
        seq = self._sequence_service.next_value()
        prev_hash = self._get_last_hash()

        safe_old = to_json_safe(old_values)
        safe_new = to_json_safe(new_values)
        payload_hash = hash_payload(
            _entry_payload(actor_id, safe_old, safe_new, description)
        )
        entry_hash = hash_audit_entry(
            seq=seq,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=_action_value(action),
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        entry = AuditEntry(
            seq=seq,
            action=_action_value(action),
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            old_values=safe_old,
            new_values=safe_new,
            description=description,
            created_at=self._clock.now(),
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=entry_hash,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "audit_entry_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": _action_value(action),
                "seq": seq,
            },
        )
        return entry

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Postconditions:
            - Returns True only if every entry's payload hash and hash
              match their recomputed values and every ``prev_hash`` equals
              its predecessor's ``hash``.

        Raises:
            AuditChainBrokenError: At the first entry that fails.
        """
        entries = self._session.execute(
            select(AuditEntry)
            .order_by(AuditEntry.seq)
            .execution_options(populate_existing=True)
        ).scalars().all()

        previous: AuditEntry | None = None
        for entry in entries:
            expected_prev = previous.hash if previous else None
            if entry.prev_hash != expected_prev:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "reason": "linkage"},
                )
                raise AuditChainBrokenError(
                    str(entry.id),
                    expected_prev or "None",
                    entry.prev_hash or "None",
                )

            expected_payload_hash = hash_payload(
                _entry_payload(
                    entry.actor_id,
                    entry.old_values,
                    entry.new_values,
                    entry.description,
                )
            )
            if entry.payload_hash != expected_payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "reason": "payload"},
                )
                raise AuditChainBrokenError(
                    str(entry.id),
                    expected_payload_hash,
                    entry.payload_hash,
                )

            expected_hash = hash_audit_entry(
                seq=entry.seq,
                entity_type=entry.entity_type,
                entity_id=str(entry.entity_id),
                action=_action_value(entry.action),
                payload_hash=entry.payload_hash,
                prev_hash=entry.prev_hash,
            )
            if entry.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"seq": entry.seq, "reason": "hash"},
                )
                raise AuditChainBrokenError(str(entry.id), expected_hash, entry.hash)

            previous = entry

        logger.info("audit_chain_valid", extra={"entry_count": len(entries)})
        return True
