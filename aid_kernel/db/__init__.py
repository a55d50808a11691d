"""Database layer: engine, base classes, ordered locking, append-only guards."""

from aid_kernel.db.base import Base, TrackedBase, UUIDString
from aid_kernel.db.engine import create_tables, get_engine, get_session, session_scope

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session",
    "session_scope",
]
