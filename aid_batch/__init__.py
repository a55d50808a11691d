"""
aid_batch -- Administrative batch work for the aid marketplace.

Stale-request review tasks run through the SAVEPOINT-per-item
``BatchExecutor``; ``ScoringQueue`` feeds the background vulnerability
scorer; ``aid_batch.cli`` is the ``aid-review`` command.
"""

from aid_batch.scoring import ScoringQueue
from aid_batch.services.executor import BatchExecutor
from aid_batch.tasks import default_task_registry

__all__ = ["BatchExecutor", "ScoringQueue", "default_task_registry"]
