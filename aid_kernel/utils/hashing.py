"""
Canonical JSON and SHA-256 helpers for the audit hash chain.

An audit entry is hashed twice:

    payload_hash = sha256(canonical(actor, old_values, new_values, description))
    hash         = sha256(seq | entity_type | entity_id | action
                          | payload_hash | prev_hash)

Both are recomputed by ``AuditTrailService.validate_chain`` from the stored
row, so the stored JSON must be exactly what was hashed.  ``to_json_safe``
gives callers that stored form up front.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS_MARKER = "AID-GENESIS"


def _encode(obj: Any) -> Any:
    # Enum first: the status enums are str mixins.
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        # 10.50 and 10.5 are the same pledge
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Cannot hash value of type {type(obj).__name__}")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, kernel types reduced to strings."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode)


def to_json_safe(data: dict | None) -> dict | None:
    """The JSON-column form of an audit payload (None stays None)."""
    if data is None:
        return None
    return json.loads(canonicalize_json(data))


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict) -> str:
    return _sha256(canonicalize_json(payload))


def hash_audit_entry(
    seq: int,
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """Chain hash of one entry.  ``prev_hash`` is None only for the first entry."""
    return _sha256(
        "|".join((
            str(seq),
            entity_type,
            str(entity_id),
            action,
            payload_hash,
            prev_hash or GENESIS_MARKER,
        ))
    )
