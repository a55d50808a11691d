"""
aid_batch.domain.types -- Pure frozen dataclasses for batch runs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class BatchRunStatus(str, Enum):
    """Outcome of a whole run."""

    COMPLETED = "completed"  # No item failed
    PARTIALLY_COMPLETED = "partially_completed"  # Some items failed
    FAILED = "failed"  # Every item failed, or preparation failed


class BatchItemStatus(str, Enum):
    """Outcome of one item."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # No longer eligible when re-checked under lock


@dataclass(frozen=True)
class BatchItemResult:
    item_index: int
    item_key: str
    status: BatchItemStatus
    error_code: str | None = None
    error_message: str | None = None
    result_data: dict[str, Any] | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class BatchRunResult:
    """Summary of one executor run.  ``run_id`` ties it to the log."""

    run_id: UUID
    task_type: str
    status: BatchRunStatus
    total_items: int
    succeeded: int
    failed: int
    skipped: int
    item_results: tuple[BatchItemResult, ...]
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    error_summary: str | None = None

    @property
    def succeeded_keys(self) -> tuple[str, ...]:
        return tuple(
            r.item_key for r in self.item_results if r.status == BatchItemStatus.SUCCEEDED
        )
