"""
ORM-Level Append-Only Enforcement for the Audit Trail.

===============================================================================
WHY THIS EXISTS
===============================================================================

The audit trail is the answer to "who changed this, and from what?" for
every request, contribution, donation and allocation.  An entry that can
be edited answers nothing.  Corrections are made by appending, never by
rewriting.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here intercept them for AuditEntry:

    session.flush()
         |
         v
    [before_update] --> _check_audit_entry_update() --> ImmutabilityViolationError
    [before_delete] --> _check_audit_entry_delete() --> ImmutabilityViolationError

If a check fails the flush aborts, the caller's transaction rolls back,
and the database is never modified.

The hash chain (AuditTrailService.validate_chain) catches what these
listeners cannot: raw SQL and direct database edits.

===============================================================================
USAGE
===============================================================================

Called once during application startup (the coordinator does this):

    from aid_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event

from aid_kernel.exceptions import ImmutabilityViolationError
from aid_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_audit_entry_update(mapper, connection, target):
    """Prevent any updates to AuditEntry records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "invariant": "audit_append_only",
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    """Prevent deletion of AuditEntry records."""
    logger.error(
        "immutability_violation_blocked",
        extra={
            "invariant": "audit_append_only",
            "entity_type": "AuditEntry",
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=str(target.id),
        reason="Audit entries cannot be deleted",
    )


def register_immutability_listeners():
    """
    Register append-only enforcement on AuditEntry.

    Idempotent: registering twice leaves exactly one listener per event.
    """
    from aid_kernel.models.audit_entry import AuditEntry

    if not event.contains(AuditEntry, "before_update", _check_audit_entry_update):
        event.listen(AuditEntry, "before_update", _check_audit_entry_update)
    if not event.contains(AuditEntry, "before_delete", _check_audit_entry_delete):
        event.listen(AuditEntry, "before_delete", _check_audit_entry_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove append-only enforcement listeners.

    WARNING: Only use this in tests that tamper with entries on purpose
    to verify chain validation.
    """
    from aid_kernel.models.audit_entry import AuditEntry

    _safe_remove_listener(AuditEntry, "before_update", _check_audit_entry_update)
    _safe_remove_listener(AuditEntry, "before_delete", _check_audit_entry_delete)
