"""Utility modules for the aid kernel."""

from aid_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
    to_json_safe,
)

__all__ = [
    "hash_payload",
    "hash_audit_entry",
    "canonicalize_json",
    "to_json_safe",
]
