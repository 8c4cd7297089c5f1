"""Worker executor abstractions.

This module provides the interface the pool uses to control worker processes
and the default implementation that runs each worker as a direct subprocess.
"""

import logging
import os
import shlex
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO

from attrs import frozen

from resque_pool.errors import SpawnError
from resque_pool.logging.log_paths import get_worker_log_path

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = "rq worker"


@frozen
class ExitedWorker:
    """A worker process that has been reaped.

    Attributes:
        pid: Process id of the worker
        returncode: Exit status; negative values are the terminating signal
    """

    pid: int
    returncode: int


def signal_from_name(name: str | int | signal.Signals) -> signal.Signals:
    """Convert ``"TERM"``, ``"SIGTERM"`` or ``15`` to ``signal.SIGTERM``.

    Raises:
        ValueError: If the name does not denote a signal on this platform
    """
    if isinstance(name, signal.Signals):
        return name
    if isinstance(name, int):
        return signal.Signals(name)

    normalized = name.strip().upper()
    if not normalized.startswith("SIG"):
        normalized = f"SIG{normalized}"
    try:
        return signal.Signals[normalized]
    except KeyError:
        raise ValueError(f"Unknown signal: {name}") from None


class WorkerExecutor(ABC):
    """Abstract base class for worker executors.

    Executors own the OS side of worker processes. Starting a worker never
    waits for it to become ready, and stopping a worker only sends a signal;
    exited workers are collected with ``reap``.
    """

    @abstractmethod
    def start_worker(self, queue_spec: str) -> int:
        """Start a worker servicing ``queue_spec``.

        Returns:
            Process id of the new worker

        Raises:
            SpawnError: If the worker could not be started
        """

    @abstractmethod
    def signal_worker(self, pid: int, signum: int) -> bool:
        """Send a signal to a worker.

        Returns:
            True if the signal was delivered, False if the worker is gone
        """

    @abstractmethod
    def stop_worker(self, pid: int, graceful: bool = True) -> bool:
        """Ask a worker to stop, gracefully or immediately.

        Returns:
            True if the stop signal was delivered, False if the worker is gone
        """

    @abstractmethod
    def reap(self) -> list[ExitedWorker]:
        """Collect workers that have exited since the last call, without blocking."""

    @abstractmethod
    def is_worker_running(self, pid: int) -> bool:
        """Check if a worker is currently running."""


class DirectWorkerExecutor(WorkerExecutor):
    """Executor for running workers as direct subprocesses.

    Each worker runs ``command`` followed by the queue names of its queue spec
    (in priority order), with ``QUEUES`` set to the queue spec. Workers get a
    session of their own so terminal signals reach only the supervisor, and
    their output is appended to a per-worker log file.
    """

    def __init__(
        self,
        command: str | Sequence[str] = DEFAULT_WORKER_COMMAND,
        log_dir: Path | None = None,
        env: Mapping[str, str] | None = None,
        graceful_stop_signal: str | int = "TERM",
        force_stop_signal: str | int = "KILL",
    ):
        """Initialize direct process executor.

        Args:
            command: Worker command, as a shell-style string or argument list
            log_dir: Base log directory; defaults to the platform log directory
            env: Extra environment variables for the workers
            graceful_stop_signal: Signal asking a worker to finish its job and exit
            force_stop_signal: Signal terminating a worker immediately
        """
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Worker command must not be empty")

        self.log_dir = log_dir
        self.env = dict(env or {})
        self.graceful_stop_signal = signal_from_name(graceful_stop_signal)
        self.force_stop_signal = signal_from_name(force_stop_signal)
        self.processes: dict[int, subprocess.Popen] = {}
        self.log_files: dict[int, IO[str]] = {}
        self._spawn_count = 0

    def build_command(self, queue_spec: str) -> list[str]:
        queues = [queue.strip() for queue in queue_spec.split(",") if queue.strip()]
        return [*self.command, *queues]

    def start_worker(self, queue_spec: str) -> int:
        self._spawn_count += 1
        index = self._spawn_count

        env = os.environ.copy()
        env.update(self.env)
        env["QUEUES"] = queue_spec

        cmd = self.build_command(queue_spec)
        logger.debug(f"Command: {' '.join(cmd)}")

        try:
            log_file_path = get_worker_log_path(queue_spec, index, self.log_dir)
            # Append mode so logs persist across restarts
            log_file = open(log_file_path, "a", encoding="utf-8", buffering=1)
        except OSError as e:
            raise SpawnError(queue_spec, f"cannot open worker log: {e}") from e

        # os.setsid is only available on Unix
        preexec_fn = getattr(os, "setsid", None) if sys.platform != "win32" else None

        try:
            process = subprocess.Popen(
                cmd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                preexec_fn=preexec_fn,
            )
        except (OSError, subprocess.SubprocessError) as e:
            log_file.close()
            raise SpawnError(queue_spec, str(e)) from e

        self.processes[process.pid] = process
        self.log_files[process.pid] = log_file

        logger.info(f"Started worker for {queue_spec!r} (PID: {process.pid}, log: {log_file_path})")
        return process.pid

    def signal_worker(self, pid: int, signum: int) -> bool:
        process = self.processes.get(pid)
        if process is not None and process.poll() is not None:
            logger.debug(f"Worker {pid} already terminated")
            return False

        try:
            if process is not None and sys.platform != "win32":
                # Signal the whole process group to reach any children of the worker
                os.killpg(os.getpgid(pid), signum)
            else:
                os.kill(pid, signum)
        except ProcessLookupError:
            logger.debug(f"Worker {pid} no longer exists")
            return False
        return True

    def stop_worker(self, pid: int, graceful: bool = True) -> bool:
        signum = self.graceful_stop_signal if graceful else self.force_stop_signal
        logger.info(f"Stopping worker {pid} with {signal.Signals(signum).name}")
        return self.signal_worker(pid, signum)

    def reap(self) -> list[ExitedWorker]:
        exited = []
        for pid, process in list(self.processes.items()):
            returncode = process.poll()
            if returncode is None:
                continue

            if returncode < 0:
                logger.info(f"Worker {pid} killed by signal {-returncode}")
            elif returncode > 0:
                logger.warning(f"Worker {pid} exited with status {returncode}")
            else:
                logger.info(f"Worker {pid} exited")

            self._forget(pid)
            exited.append(ExitedWorker(pid=pid, returncode=returncode))
        return exited

    def is_worker_running(self, pid: int) -> bool:
        process = self.processes.get(pid)
        return process is not None and process.poll() is None

    def _forget(self, pid: int) -> None:
        self.processes.pop(pid, None)
        log_file = self.log_files.pop(pid, None)
        if log_file is not None:
            try:
                log_file.close()
            except OSError as e:
                logger.debug(f"Error closing worker log file: {e}")
