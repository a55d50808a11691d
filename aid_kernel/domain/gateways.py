"""
Protocols for the external collaborators the engine consumes.

The KYC workflow and the vulnerability scorer are owned elsewhere.  The
engine sees only these narrow interfaces; services receive them by
constructor injection.
"""

from typing import Protocol, runtime_checkable
from uuid import UUID


@runtime_checkable
class VerificationGateway(Protocol):
    """Answers whether a participant has passed identity verification."""

    def is_verified(self, participant_id: UUID) -> bool: ...


@runtime_checkable
class VulnerabilityScorer(Protocol):
    """Recomputes a recipient's urgency score.

    Called off the request path, after commit.  The engine never waits on
    it and never reads its result during funding or allocation decisions.
    """

    def score(self, request_id: UUID) -> None: ...


class NullScorer:
    """Scorer that does nothing.  Default where no scoring backend is wired."""

    def score(self, request_id: UUID) -> None:
        return None
