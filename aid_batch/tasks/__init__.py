"""Batch task protocol, registry and the review tasks."""

from __future__ import annotations

from aid_batch.tasks.base import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    TaskRegistry,
)
from aid_batch.tasks.review_tasks import CloseUnmatchedRequestsTask, FlagStaleRequestsTask
from aid_kernel.domain.clock import Clock


def default_task_registry(clock: Clock | None = None) -> TaskRegistry:
    """Registry with every review task registered."""
    registry = TaskRegistry()
    registry.register(FlagStaleRequestsTask(clock))
    registry.register(CloseUnmatchedRequestsTask(clock))
    return registry


__all__ = [
    "BatchItemInput",
    "BatchTask",
    "BatchTaskResult",
    "CloseUnmatchedRequestsTask",
    "FlagStaleRequestsTask",
    "TaskRegistry",
    "default_task_registry",
]
