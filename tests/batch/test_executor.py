"""
Tests for aid_batch.services.executor.

Validates BatchExecutor: run status derivation, SAVEPOINT-per-item
isolation, prepare failures, unhandled item exceptions and run logging.
"""

from datetime import datetime
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from aid_batch.domain.types import BatchItemStatus, BatchRunStatus
from aid_batch.services.executor import BatchExecutor
from aid_batch.tasks.base import BatchItemInput, BatchTaskResult, TaskRegistry
from aid_kernel.models.logistics import Warehouse


# =============================================================================
# Test tasks
# =============================================================================


class WarehouseTask:
    """Creates one warehouse per item; items listed in ``fail`` report FAILED."""

    @property
    def task_type(self) -> str:
        return "test.warehouses"

    @property
    def description(self) -> str:
        return "Create warehouses"

    def prepare_items(
        self, parameters: dict[str, Any], session: Session, as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        return tuple(
            BatchItemInput(item_index=i, item_key=name)
            for i, name in enumerate(parameters["names"])
        )

    def execute_item(
        self, item: BatchItemInput, parameters: dict[str, Any],
        session: Session, as_of: datetime,
    ) -> BatchTaskResult:
        session.add(Warehouse(
            name=item.item_key, capacity=10, created_by_id=parameters["admin_id"],
        ))
        session.flush()
        if item.item_key in parameters.get("fail", ()):
            return BatchTaskResult(
                status=BatchItemStatus.FAILED,
                error_code="REJECTED",
                error_message=f"{item.item_key} rejected",
            )
        if item.item_key in parameters.get("skip", ()):
            return BatchTaskResult(status=BatchItemStatus.SKIPPED)
        if item.item_key in parameters.get("explode", ()):
            raise RuntimeError(f"boom on {item.item_key}")
        return BatchTaskResult(
            status=BatchItemStatus.SUCCEEDED,
            result_data={"name": item.item_key},
        )


class BrokenPrepareTask:
    @property
    def task_type(self) -> str:
        return "test.broken_prepare"

    @property
    def description(self) -> str:
        return "prepare_items raises"

    def prepare_items(self, parameters, session, as_of):
        raise RuntimeError("candidate query failed")

    def execute_item(self, item, parameters, session, as_of):
        raise AssertionError("never reached")


@pytest.fixture
def executor(session, deterministic_clock):
    registry = TaskRegistry()
    registry.register(WarehouseTask())
    registry.register(BrokenPrepareTask())
    return BatchExecutor(session, registry, deterministic_clock)


def _warehouse_names(session) -> set[str]:
    return set(session.execute(select(Warehouse.name)).scalars().all())


# =============================================================================
# Run status
# =============================================================================


class TestRunStatus:
    def test_all_succeed(self, executor, admin):
        result = executor.run(
            "test.warehouses", {"names": ["north", "south"], "admin_id": admin.id},
        )

        assert result.status == BatchRunStatus.COMPLETED
        assert (result.total_items, result.succeeded, result.failed) == (2, 2, 0)
        assert result.succeeded_keys == ("north", "south")
        assert result.error_summary is None

    def test_some_fail(self, executor, admin):
        result = executor.run(
            "test.warehouses",
            {"names": ["a", "b", "c"], "fail": ["b"], "admin_id": admin.id},
        )

        assert result.status == BatchRunStatus.PARTIALLY_COMPLETED
        assert result.failed == 1
        assert result.error_summary == "1 item(s) failed"
        failed = [r for r in result.item_results if r.status == BatchItemStatus.FAILED]
        assert failed[0].error_code == "REJECTED"

    def test_all_fail(self, executor, admin):
        result = executor.run(
            "test.warehouses", {"names": ["a"], "fail": ["a"], "admin_id": admin.id},
        )

        assert result.status == BatchRunStatus.FAILED

    def test_skipped_items_do_not_fail_the_run(self, executor, admin):
        result = executor.run(
            "test.warehouses", {"names": ["a", "b"], "skip": ["b"], "admin_id": admin.id},
        )

        assert result.status == BatchRunStatus.COMPLETED
        assert (result.succeeded, result.skipped) == (1, 1)

    def test_empty_run_completes(self, executor, admin):
        result = executor.run("test.warehouses", {"names": [], "admin_id": admin.id})

        assert result.status == BatchRunStatus.COMPLETED
        assert result.total_items == 0

    def test_timestamps_come_from_the_clock(self, executor, admin, deterministic_clock):
        result = executor.run("test.warehouses", {"names": [], "admin_id": admin.id})

        assert result.started_at == deterministic_clock.now()
        assert result.completed_at == deterministic_clock.now()

    def test_unknown_task_type(self, executor):
        with pytest.raises(KeyError, match="No task registered"):
            executor.run("test.missing")


# =============================================================================
# SAVEPOINT isolation
# =============================================================================


class TestSavepointIsolation:
    def test_failed_item_writes_are_rolled_back(self, executor, session, admin):
        executor.run(
            "test.warehouses",
            {"names": ["keep-1", "drop", "keep-2"], "fail": ["drop"], "admin_id": admin.id},
        )

        assert _warehouse_names(session) == {"keep-1", "keep-2"}

    def test_skipped_item_writes_are_rolled_back(self, executor, session, admin):
        executor.run(
            "test.warehouses",
            {"names": ["keep", "skip"], "skip": ["skip"], "admin_id": admin.id},
        )

        assert _warehouse_names(session) == {"keep"}

    def test_unhandled_exception_is_contained(self, executor, session, admin):
        result = executor.run(
            "test.warehouses",
            {"names": ["a", "bad", "c"], "explode": ["bad"], "admin_id": admin.id},
        )

        assert result.status == BatchRunStatus.PARTIALLY_COMPLETED
        [bad] = [r for r in result.item_results if r.item_key == "bad"]
        assert bad.error_code == "UNHANDLED_EXCEPTION"
        assert "boom on bad" in bad.error_message
        assert _warehouse_names(session) == {"a", "c"}


# =============================================================================
# Prepare failure and logging
# =============================================================================


class TestPrepareAndLogging:
    def test_prepare_failure_fails_the_run(self, executor):
        result = executor.run("test.broken_prepare")

        assert result.status == BatchRunStatus.FAILED
        assert result.total_items == 0
        assert "candidate query failed" in result.error_summary

    def test_run_logs_carry_run_id(self, executor, admin, captured_logs):
        result = executor.run("test.warehouses", {"names": ["x"], "admin_id": admin.id})

        logs = [r for r in captured_logs() if r["message"].startswith("batch_run_")]
        assert [r["message"] for r in logs] == ["batch_run_started", "batch_run_completed"]
        assert all(r["batch_run_id"] == str(result.run_id) for r in logs)
        assert logs[-1]["status"] == "completed"

    def test_failed_item_is_logged(self, executor, admin, captured_logs):
        executor.run(
            "test.warehouses", {"names": ["a"], "fail": ["a"], "admin_id": admin.id},
        )

        [record] = [r for r in captured_logs() if r["message"] == "batch_item_failed"]
        assert record["level"] == "WARNING"
        assert record["error_code"] == "REJECTED"
