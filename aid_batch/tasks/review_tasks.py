"""
Batch tasks: stale-request review (flag for review, auto-close).

Both tasks take ``stale_after_days`` from the job parameters.  A request
qualifies when it is open (pending or approved), has no assigned
supplier, no committed contribution, and was created before
``as_of - stale_after_days``.  Auto-close also takes requests that meet
the same open, unmatched test and whose expiry has passed; closing
releases their pending and approved allocations.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from aid_batch.domain.types import BatchItemStatus
from aid_batch.tasks.base import BatchItemInput, BatchTaskResult
from aid_kernel.domain.clock import Clock, SystemClock
from aid_kernel.exceptions import AidKernelError
from aid_kernel.selectors.request_selector import RequestSelector
from aid_kernel.services.request_service import RequestLifecycle

DEFAULT_STALE_AFTER_DAYS = 30


def stale_cutoff(parameters: dict[str, Any], as_of: datetime) -> datetime:
    days = int(parameters.get("stale_after_days", DEFAULT_STALE_AFTER_DAYS))
    return as_of - timedelta(days=days)


def _items(request_ids) -> tuple[BatchItemInput, ...]:
    return tuple(
        BatchItemInput(item_index=i, item_key=str(rid), payload={"request_id": str(rid)})
        for i, rid in enumerate(request_ids)
    )


class FlagStaleRequestsTask:
    """Flag stale, unmatched requests for manual review."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    @property
    def task_type(self) -> str:
        return "review.flag_stale"

    @property
    def description(self) -> str:
        return "Flag unmatched requests older than the stale threshold"

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        cutoff = stale_cutoff(parameters, as_of)
        return _items(RequestSelector(session).unflagged_stale_ids(cutoff))

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        request_id = UUID(item.payload["request_id"])
        lifecycle = RequestLifecycle(session, self._clock)
        try:
            flagged = lifecycle.flag_for_review(request_id, stale_cutoff(parameters, as_of))
        except AidKernelError as exc:
            return BatchTaskResult(
                status=BatchItemStatus.FAILED,
                error_code=exc.code,
                error_message=str(exc),
            )
        if not flagged:
            return BatchTaskResult(status=BatchItemStatus.SKIPPED)
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={"request_id": item.payload["request_id"]},
        )


class CloseUnmatchedRequestsTask:
    """Close expired requests and stale requests nobody matched."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    @property
    def task_type(self) -> str:
        return "review.close_unmatched"

    @property
    def description(self) -> str:
        return "Close expired or stale unmatched requests as closed_no_match"

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        selector = RequestSelector(session)
        candidates = selector.expired_open_ids(as_of)
        candidates += selector.stale_unmatched_ids(stale_cutoff(parameters, as_of))
        # Lock in id order, like batch_dispose.
        return _items(sorted(set(candidates), key=str))

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        request_id = UUID(item.payload["request_id"])
        lifecycle = RequestLifecycle(session, self._clock)
        try:
            closed = lifecycle.close_unmatched(request_id, stale_cutoff(parameters, as_of))
        except AidKernelError as exc:
            return BatchTaskResult(
                status=BatchItemStatus.FAILED,
                error_code=exc.code,
                error_message=str(exc),
            )
        if not closed:
            return BatchTaskResult(status=BatchItemStatus.SKIPPED)
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={"request_id": item.payload["request_id"]},
        )
