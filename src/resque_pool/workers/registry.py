"""Bookkeeping for the worker processes of a pool."""

import itertools
from datetime import datetime

from attrs import define, field


@define
class WorkerRecord:
    """A running worker process.

    Attributes:
        pid: Process id of the worker
        queue_spec: Queue spec the worker services
        sequence: Spawn order within the registry (higher is newer)
        spawned_at: When the worker was recorded
        stop_requested: A graceful stop was sent; the record stays until reaped
    """

    pid: int
    queue_spec: str
    sequence: int
    spawned_at: datetime = field(factory=datetime.now)
    stop_requested: bool = False


class WorkerRegistry:
    """The live workers of a pool, keyed by pid.

    Records are kept in spawn order. The registry does not touch processes;
    spawning and signalling is done by the worker executor.
    """

    def __init__(self):
        self._records: dict[int, WorkerRecord] = {}
        self._sequence = itertools.count(1)

    def record(self, pid: int, queue_spec: str) -> WorkerRecord:
        """Register a newly spawned worker.

        Raises:
            ValueError: If a live worker with this pid is already registered
        """
        if pid in self._records:
            raise ValueError(f"Worker with pid {pid} is already registered")
        worker = WorkerRecord(pid=pid, queue_spec=queue_spec, sequence=next(self._sequence))
        self._records[pid] = worker
        return worker

    def remove(self, pid: int) -> WorkerRecord | None:
        """Forget a worker; unknown pids are ignored."""
        return self._records.pop(pid, None)

    def mark_stopping(self, pid: int) -> None:
        worker = self._records.get(pid)
        if worker is not None:
            worker.stop_requested = True

    def count_for(self, queue_spec: str) -> int:
        return sum(1 for worker in self._records.values() if worker.queue_spec == queue_spec)

    def for_queue(self, queue_spec: str) -> list[WorkerRecord]:
        return [worker for worker in self._records.values() if worker.queue_spec == queue_spec]

    def active_for(self, queue_spec: str) -> list[WorkerRecord]:
        """Workers for a queue spec that have not been asked to stop."""
        return [worker for worker in self.for_queue(queue_spec) if not worker.stop_requested]

    def queue_specs(self) -> list[str]:
        return list(dict.fromkeys(worker.queue_spec for worker in self._records.values()))

    def all(self) -> list[WorkerRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, pid: object) -> bool:
        return pid in self._records
