"""
Module: aid_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
    Selectors are the query side of the kernel: structured read access to
    requests, the audit trail and regional need, without mutation.
Architecture position: Kernel > Selectors.  May import from models/ and
    the pure domain layer (DTOs, conflict guard).  MUST NOT import from
    services/ or outer layers.

Invariants enforced:
    - Read-only: selectors never call session.add(), session.delete(),
      session.flush() or session.commit().
    - DTO return convention: frozen dataclasses, never ORM instances.
    - Session ownership: the caller owns the session and its transaction.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Accepts a Session from the caller, performs read-only queries and
        returns DTOs.

    Non-goals:
        - Does NOT take row locks.  Reads see committed data as of the
          caller's transaction snapshot.
    """

    def __init__(self, session: Session):
        self.session = session
