"""Worker process management for resque-pool.

This package provides the registry of running workers, the executor that
starts and signals worker processes, and the engine that converges the
running workers to the configured counts.
"""

from resque_pool.workers.reconciler import ReconcileResult, ReconciliationEngine
from resque_pool.workers.registry import WorkerRecord, WorkerRegistry
from resque_pool.workers.worker_executor import (
    DirectWorkerExecutor,
    ExitedWorker,
    WorkerExecutor,
)

__all__ = [
    "DirectWorkerExecutor",
    "ExitedWorker",
    "ReconcileResult",
    "ReconciliationEngine",
    "WorkerExecutor",
    "WorkerRecord",
    "WorkerRegistry",
]
