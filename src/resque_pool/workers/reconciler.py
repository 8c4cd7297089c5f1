"""Convergence of running workers to the desired worker counts."""

import logging
from collections.abc import Mapping
from typing import Literal

from attrs import define, field

from resque_pool.errors import SpawnError
from resque_pool.workers.registry import WorkerRecord, WorkerRegistry
from resque_pool.workers.worker_executor import WorkerExecutor

logger = logging.getLogger(__name__)

StopPolicy = Literal["newest", "oldest"]

STOP_POLICIES = ("newest", "oldest")


@define
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    spawned: list[int] = field(factory=list)
    stopped: list[int] = field(factory=list)
    failures: dict[str, str] = field(factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.spawned or self.stopped)


class ReconciliationEngine:
    """Spawn and stop workers until the registry matches a configuration.

    Workers that were asked to stop do not count towards a queue spec's
    actual workers, so repeated passes never stop the same surplus twice.
    Queue specs that are running but no longer configured are drained
    completely.
    """

    def __init__(self, executor: WorkerExecutor, stop_policy: StopPolicy = "newest"):
        if stop_policy not in STOP_POLICIES:
            raise ValueError(f"Stop policy must be one of {STOP_POLICIES}, got {stop_policy!r}")
        self.executor = executor
        self.stop_policy = stop_policy

    def reconcile(self, desired: Mapping[str, int], registry: WorkerRegistry) -> ReconcileResult:
        """Converge the workers in ``registry`` to the ``desired`` counts.

        Each queue spec is handled independently; a spawn failure for one
        queue spec is recorded in the result and does not prevent the others
        from being reconciled.

        Raises:
            ValueError: If a desired count is not a non-negative integer
        """
        for queue_spec, count in desired.items():
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ValueError(f"Invalid worker count for {queue_spec!r}: {count!r}")

        result = ReconcileResult()
        queue_specs = list(dict.fromkeys([*desired, *registry.queue_specs()]))

        for queue_spec in queue_specs:
            wanted = desired.get(queue_spec, 0)
            active = registry.active_for(queue_spec)

            if wanted > len(active):
                self._spawn(queue_spec, wanted - len(active), registry, result)
            elif wanted < len(active):
                self._stop(queue_spec, self.select_for_stop(active, len(active) - wanted), registry, result)

        if result.changed:
            logger.info(
                f"Reconciled workers: {len(result.spawned)} spawned, {len(result.stopped)} stopped"
            )
        return result

    def select_for_stop(self, workers: list[WorkerRecord], count: int) -> list[WorkerRecord]:
        """Pick ``count`` workers to stop according to the stop policy."""
        newest_first = self.stop_policy == "newest"
        ordered = sorted(workers, key=lambda worker: worker.sequence, reverse=newest_first)
        return ordered[:count]

    def _spawn(
        self, queue_spec: str, count: int, registry: WorkerRegistry, result: ReconcileResult
    ) -> None:
        logger.debug(f"Spawning {count} worker(s) for {queue_spec!r}")
        for _ in range(count):
            try:
                pid = self.executor.start_worker(queue_spec)
            except SpawnError as e:
                logger.error(f"{e}; will retry on the next pass")
                result.failures[queue_spec] = e.reason
                return
            registry.record(pid, queue_spec)
            result.spawned.append(pid)

    def _stop(
        self,
        queue_spec: str,
        workers: list[WorkerRecord],
        registry: WorkerRegistry,
        result: ReconcileResult,
    ) -> None:
        logger.debug(f"Stopping {len(workers)} worker(s) for {queue_spec!r}")
        for worker in workers:
            self.executor.stop_worker(worker.pid, graceful=True)
            registry.mark_stopping(worker.pid)
            result.stopped.append(worker.pid)
