"""
aid-review -- administrative review commands.

Usage:
    aid-review flag-stale [--stale-after-days N]
    aid-review close-unmatched [--stale-after-days N]
    aid-review dispose --admin-id UUID --action close|boost REQUEST_ID...
    aid-review audit-verify

Settings come from ``aid_config.get_active_config`` (``--config`` or
$AID_CONFIG_PATH); ``--db-url`` overrides the configured database.

Exit codes: 0 success, 1 operation failed, 2 usage error.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from uuid import UUID


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aid-review",
        description="Stale-request review and audit verification.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="Settings override file.")
    parser.add_argument("--db-url", default=None, help="Database URL (overrides config).")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before running.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("flag-stale", "Flag unmatched requests older than the stale threshold."),
        ("close-unmatched", "Close expired or stale unmatched requests."),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument(
            "--stale-after-days",
            type=int,
            default=None,
            help="Override review.stale_after_days.",
        )

    dispose = sub.add_parser("dispose", help="Close or boost a list of old requests.")
    dispose.add_argument("--admin-id", type=UUID, required=True)
    dispose.add_argument("--action", choices=["close", "boost"], required=True)
    dispose.add_argument("request_ids", type=UUID, nargs="+")

    sub.add_parser("audit-verify", help="Validate the audit hash chain.")
    return parser


def _emit(payload: dict) -> None:
    print(json.dumps(payload, default=str, indent=2))


def _run_review_task(session, task_type: str, stale_after_days: int, clock) -> int:
    from aid_batch.domain.types import BatchRunStatus
    from aid_batch.services.executor import BatchExecutor
    from aid_batch.tasks import default_task_registry

    executor = BatchExecutor(session, default_task_registry(clock), clock)
    result = executor.run(task_type, {"stale_after_days": stale_after_days})
    session.commit()
    _emit({
        "task_type": result.task_type,
        "status": result.status.value,
        "total_items": result.total_items,
        "succeeded": result.succeeded,
        "skipped": result.skipped,
        "failed": result.failed,
        "updated_ids": list(result.succeeded_keys),
    })
    return 0 if result.status == BatchRunStatus.COMPLETED else 1


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    # Lazy imports so argument errors fail fast
    from aid_config import get_active_config
    from aid_kernel.db.engine import create_tables, init_engine_from_url, session_scope
    from aid_kernel.domain.clock import SystemClock
    from aid_kernel.exceptions import AidKernelError
    from aid_kernel.logging_config import configure_logging
    from aid_services import MarketplaceCoordinator, describe_error

    settings = get_active_config(args.config)
    configure_logging(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        json_output=settings.logging.json_output,
    )
    init_engine_from_url(
        args.db_url or settings.database.url,
        echo=settings.database.echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        lock_timeout_ms=settings.database.lock_timeout_ms,
    )
    if args.create_tables:
        create_tables()

    clock = SystemClock()
    try:
        with session_scope() as session:
            if args.command in ("flag-stale", "close-unmatched"):
                days = args.stale_after_days or settings.review.stale_after_days
                task_type = (
                    "review.flag_stale" if args.command == "flag-stale"
                    else "review.close_unmatched"
                )
                return _run_review_task(session, task_type, days, clock)

            coordinator = MarketplaceCoordinator(session, clock=clock, settings=settings)
            if args.command == "dispose":
                result = coordinator.batch_dispose(args.request_ids, args.action, args.admin_id)
                _emit({
                    "action": result.action.value,
                    "updated_count": result.updated_count,
                    "updated_ids": [str(i) for i in result.updated_ids],
                    "skipped_ids": [str(i) for i in result.skipped_ids],
                })
                return 0

            coordinator.validate_audit_chain()
            _emit({"audit_chain": "valid", "entries": coordinator.audit_log.count()})
            return 0
    except AidKernelError as exc:
        report = describe_error(exc)
        _emit({"error": report.code, "category": report.category, "message": report.message})
        return 1


if __name__ == "__main__":
    sys.exit(main())
