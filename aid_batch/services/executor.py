"""
Runs one review task over a board of candidate requests.

Contract:
    Runs one registered task: prepare the candidate items, then execute
    each inside its own SAVEPOINT.  A failed or skipped item is rolled
    back to its SAVEPOINT; the rest of the run continues.

Architecture: aid_batch/services.  Imports aid_batch.domain,
    aid_batch.tasks and the kernel clock and logging.

Invariants enforced:
    - A request that fails its re-check never rolls back its neighbours.
    - started_at and completed_at come from the injected Clock.
    - No commit here; the caller owns the outer transaction.
"""

from __future__ import annotations

import time
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from aid_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchRunResult,
    BatchRunStatus,
)
from aid_batch.tasks.base import BatchTask, TaskRegistry
from aid_kernel.domain.clock import Clock, SystemClock
from aid_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.executor")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class BatchExecutor:
    """Drives one task from the registry: prepare, then each item under a SAVEPOINT.

    Run history is not stored; the log lines and the audit trail are the
    record of a run.
    """

    def __init__(
        self,
        session: Session,
        task_registry: TaskRegistry,
        clock: Clock | None = None,
    ):
        self._session = session
        self._task_registry = task_registry
        self._clock = clock or SystemClock()

    def run(self, task_type: str, parameters: dict[str, Any] | None = None) -> BatchRunResult:
        """Run ``task_type`` once.

        Raises:
            KeyError: If task_type is not registered.
        """
        task = self._task_registry.get(task_type)
        parameters = parameters or {}
        run_id = uuid4()
        with LogContext.bind(batch_run_id=str(run_id), operation=task_type):
            return self._execute(task, parameters, run_id)

    def _execute(self, task: BatchTask, parameters: dict[str, Any], run_id) -> BatchRunResult:
        start_time = time.monotonic()
        started_at = self._clock.now()
        as_of = started_at

        logger.info("batch_run_started", extra={"task_type": task.task_type})

        try:
            items = task.prepare_items(parameters=parameters, session=self._session, as_of=as_of)
        except Exception as exc:
            logger.error(
                "batch_prepare_failed",
                extra={"task_type": task.task_type, "error": str(exc)},
                exc_info=True,
            )
            return BatchRunResult(
                run_id=run_id,
                task_type=task.task_type,
                status=BatchRunStatus.FAILED,
                total_items=0,
                succeeded=0,
                failed=0,
                skipped=0,
                item_results=(),
                started_at=started_at,
                completed_at=self._clock.now(),
                duration_ms=_elapsed_ms(start_time),
                error_summary=f"prepare_items failed: {exc}",
            )

        succeeded = 0
        failed = 0
        skipped = 0
        item_results: list[BatchItemResult] = []

        for batch_item in items:
            item_start = time.monotonic()
            savepoint = self._session.begin_nested()
            try:
                result = task.execute_item(
                    item=batch_item,
                    parameters=parameters,
                    session=self._session,
                    as_of=as_of,
                )
            except Exception as exc:
                savepoint.rollback()
                failed += 1
                logger.error(
                    "batch_item_failed",
                    extra={"item_key": batch_item.item_key, "error": str(exc)},
                    exc_info=True,
                )
                item_results.append(BatchItemResult(
                    item_index=batch_item.item_index,
                    item_key=batch_item.item_key,
                    status=BatchItemStatus.FAILED,
                    error_code="UNHANDLED_EXCEPTION",
                    error_message=str(exc),
                    duration_ms=_elapsed_ms(item_start),
                ))
                continue

            if result.status == BatchItemStatus.SUCCEEDED:
                savepoint.commit()
                succeeded += 1
            else:
                savepoint.rollback()
                if result.status == BatchItemStatus.SKIPPED:
                    skipped += 1
                else:
                    failed += 1
                    logger.warning(
                        "batch_item_failed",
                        extra={
                            "item_key": batch_item.item_key,
                            "error_code": result.error_code,
                        },
                    )

            item_results.append(BatchItemResult(
                item_index=batch_item.item_index,
                item_key=batch_item.item_key,
                status=result.status,
                error_code=result.error_code,
                error_message=result.error_message,
                result_data=result.result_data,
                duration_ms=_elapsed_ms(item_start),
            ))

        if failed == 0:
            status = BatchRunStatus.COMPLETED
        elif succeeded == 0 and skipped == 0:
            status = BatchRunStatus.FAILED
        else:
            status = BatchRunStatus.PARTIALLY_COMPLETED

        duration = _elapsed_ms(start_time)
        logger.info(
            "batch_run_completed",
            extra={
                "task_type": task.task_type,
                "status": status.value,
                "total_items": len(items),
                "succeeded": succeeded,
                "failed": failed,
                "skipped": skipped,
                "duration_ms": duration,
            },
        )

        return BatchRunResult(
            run_id=run_id,
            task_type=task.task_type,
            status=status,
            total_items=len(items),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            item_results=tuple(item_results),
            started_at=started_at,
            completed_at=self._clock.now(),
            duration_ms=duration,
            error_summary=f"{failed} item(s) failed" if failed else None,
        )
