"""
aid_services.error_mapping -- Kernel exceptions to caller-visible reports.

Responsibility:
    Classifies any exception raised by a coordinator operation into an
    ``ErrorReport`` an outer surface (HTTP handler, CLI) can render
    without parsing messages.

Invariants enforced:
    - Classification is by exception type, never by message text.
    - Unexpected exceptions and data-integrity errors are reported with a
      generic message; the detail goes to the server log only.

Failure modes:
    - None.  ``describe_error`` never raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from aid_kernel.exceptions import (
    AidKernelError,
    AuthorizationError,
    ConcurrencyError,
    ConflictError,
    DataIntegrityError,
    LockTimeoutError,
    NotFoundError,
    SelfDealingError,
    StateError,
    ValidationError,
)
from aid_kernel.logging_config import get_logger

logger = get_logger("services.errors")

GENERIC_MESSAGE = "An internal error occurred"

# Structured attributes copied into ErrorReport.details when present.
_DETAIL_ATTRIBUTES = (
    "field",
    "request_id",
    "donation_id",
    "warehouse_id",
    "supplier_id",
    "participant_id",
    "recipient_id",
    "allocation_id",
    "route_id",
    "entity_type",
    "entity_id",
    "current_status",
    "operation",
    "requested",
    "remaining",
    "available",
    "incoming",
    "reason",
)


@dataclass(frozen=True)
class ErrorReport:
    """What a caller is told about a failed operation."""

    status: int
    category: str
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


def _details(exc: AidKernelError) -> dict[str, Any]:
    details = {}
    for name in _DETAIL_ATTRIBUTES:
        value = getattr(exc, name, None)
        if value is not None and value != "":
            details[name] = value if isinstance(value, (int, str)) else str(value)
    return details


def _internal(exc: BaseException, code: str) -> ErrorReport:
    logger.error(
        "internal_error",
        extra={"error_code": code, "error_type": type(exc).__name__},
        exc_info=exc,
    )
    return ErrorReport(status=500, category="internal", code=code, message=GENERIC_MESSAGE)


def describe_error(exc: BaseException) -> ErrorReport:
    """Map an exception to its ErrorReport."""
    if not isinstance(exc, AidKernelError):
        return _internal(exc, "INTERNAL_ERROR")

    if isinstance(exc, DataIntegrityError):
        logger.critical(
            "data_integrity_violation",
            extra={"error_code": exc.code, "detail": str(exc)},
        )
        return ErrorReport(
            status=500, category="internal", code=exc.code, message=GENERIC_MESSAGE,
        )

    details = _details(exc)

    # SelfDealingError is a ConflictError but is reported as forbidden.
    if isinstance(exc, SelfDealingError):
        return ErrorReport(403, "self_dealing", exc.code, str(exc), details)
    if isinstance(exc, AuthorizationError):
        return ErrorReport(403, "authorization", exc.code, str(exc), details)
    if isinstance(exc, ValidationError):
        return ErrorReport(422, "validation", exc.code, str(exc), details)
    if isinstance(exc, ConflictError):
        return ErrorReport(409, "conflict", exc.code, str(exc), details)
    if isinstance(exc, NotFoundError):
        return ErrorReport(404, "not_found", exc.code, str(exc), details)
    if isinstance(exc, StateError):
        return ErrorReport(422, "state", exc.code, str(exc), details)
    if isinstance(exc, LockTimeoutError):
        return ErrorReport(409, "concurrency", exc.code, str(exc), details, retryable=True)
    if isinstance(exc, ConcurrencyError) and exc.retryable:
        return ErrorReport(409, "concurrency", exc.code, str(exc), details, retryable=True)

    return _internal(exc, exc.code)
