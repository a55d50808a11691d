"""
ScoringQueue -- fire-and-forget vulnerability rescoring.

Contract:
    ``submit(request_id)`` hands the id to a thread pool that calls the
    configured ``VulnerabilityScorer``.  Nothing waits on the result.

Invariants enforced:
    - No ordering guarantee between submissions.
    - A scorer failure is logged and never propagated to the submitter.
    - Funding and allocation logic never reads scoring output; the scorer
      writes urgency fields through its own session.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from uuid import UUID

from aid_kernel.domain.gateways import NullScorer, VulnerabilityScorer
from aid_kernel.logging_config import get_logger

logger = get_logger("batch.scoring")


class ScoringQueue:
    """Background pool feeding a VulnerabilityScorer."""

    def __init__(self, scorer: VulnerabilityScorer | None = None, max_workers: int = 2):
        self._scorer = scorer or NullScorer()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="aid-scoring")
        self._lock = threading.Lock()
        self._submitted = 0
        self._failed = 0
        self._closed = False

    def _score(self, request_id: UUID) -> bool:
        try:
            self._scorer.score(request_id)
        except Exception:
            with self._lock:
                self._failed += 1
            logger.exception("scoring_failed", extra={"request_id": str(request_id)})
            return False
        logger.debug("scoring_completed", extra={"request_id": str(request_id)})
        return True

    def submit(self, request_id: UUID) -> Future | None:
        """Queue a rescoring.  Returns None once the queue is shut down."""
        with self._lock:
            if self._closed:
                logger.warning("scoring_dropped", extra={"request_id": str(request_id)})
                return None
            self._submitted += 1
        return self._pool.submit(self._score, request_id)

    @property
    def submitted(self) -> int:
        return self._submitted

    @property
    def failed(self) -> int:
        return self._failed

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "ScoringQueue":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown(wait=True)
