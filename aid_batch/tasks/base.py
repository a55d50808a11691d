"""
Review task protocol, item DTOs and the task registry.

A review task is two steps:

    prepare_items   -- read-only candidate query, run once per batch run
    execute_item    -- re-check one candidate under its row lock and act

Candidates are hints.  Between ``prepare_items`` and ``execute_item`` a
supplier may commit to a request, so every task re-checks eligibility and
reports SKIPPED rather than acting on stale data.

Architecture: aid_batch/tasks.  Concrete tasks call kernel services and
selectors; the executor owns SAVEPOINTs, the caller owns the commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.orm import Session

from aid_batch.domain.types import BatchItemStatus


@dataclass(frozen=True)
class BatchItemInput:
    """One candidate.  ``item_key`` is what the run log and result report."""

    item_index: int
    item_key: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchTaskResult:
    status: BatchItemStatus
    result_data: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None


@runtime_checkable
class BatchTask(Protocol):
    """Interface the executor drives.

    Contract:
        - ``task_type`` is the registry key and the CLI's task name.
        - ``execute_item`` changes at most the one row its item names.
    """

    @property
    def task_type(self) -> str: ...

    @property
    def description(self) -> str: ...

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]: ...

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult: ...


class TaskRegistry:
    """Tasks by ``task_type``.  Registering a type twice is a ValueError."""

    def __init__(self) -> None:
        self._by_type: dict[str, BatchTask] = {}

    def register(self, task: BatchTask) -> None:
        if task.task_type in self._by_type:
            raise ValueError(f"Task type '{task.task_type}' is already registered")
        self._by_type[task.task_type] = task

    def get(self, task_type: str) -> BatchTask:
        task = self._by_type.get(task_type)
        if task is None:
            raise KeyError(
                f"No task registered for type '{task_type}'. "
                f"Available: {', '.join(self.list_tasks()) or 'none'}"
            )
        return task

    def list_tasks(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_type))

    def __len__(self) -> int:
        return len(self._by_type)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._by_type
