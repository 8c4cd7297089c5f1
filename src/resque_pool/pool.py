"""The pool supervisor.

The pool keeps the configured number of worker processes running per queue
spec. It is driven by OS signals:

- HUP: reload the configuration and converge the workers to it
- QUIT, INT: graceful shutdown; stop all workers and exit once they are reaped
- TERM: immediate shutdown; kill all workers and exit without waiting
- CHLD: reap exited workers (and replace them while running)
- WINCH: stop all workers but keep running; HUP brings them back
- USR1, USR2, CONT: forwarded to all workers

Signal handlers only append an event to a queue. All state changes happen on
the thread running ``join``, one event at a time and in arrival order.
"""

import logging
import queue
import signal
import time
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from resque_pool.config import PoolSettings, get_settings
from resque_pool.config_sources import ConfigSource, FileOrHashSource
from resque_pool.environment import EnvironmentResolver
from resque_pool.errors import ConfigLoadError
from resque_pool.workers.reconciler import ReconcileResult, ReconciliationEngine, StopPolicy
from resque_pool.workers.registry import WorkerRegistry
from resque_pool.workers.worker_executor import (
    DirectWorkerExecutor,
    ExitedWorker,
    WorkerExecutor,
)

logger = logging.getLogger(__name__)


class SignalEvent(Enum):
    RELOAD = "reload"
    GRACEFUL_SHUTDOWN = "graceful_shutdown"
    FORCE_SHUTDOWN = "force_shutdown"
    CHILD_REAP = "child_reap"
    SHRINK = "shrink"
    FORWARD_USR1 = "forward_usr1"
    FORWARD_USR2 = "forward_usr2"
    FORWARD_CONT = "forward_cont"


class PoolState(Enum):
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


SIGNAL_NAMES: dict[str, SignalEvent] = {
    "SIGHUP": SignalEvent.RELOAD,
    "SIGQUIT": SignalEvent.GRACEFUL_SHUTDOWN,
    "SIGINT": SignalEvent.GRACEFUL_SHUTDOWN,
    "SIGTERM": SignalEvent.FORCE_SHUTDOWN,
    "SIGCHLD": SignalEvent.CHILD_REAP,
    "SIGWINCH": SignalEvent.SHRINK,
    "SIGUSR1": SignalEvent.FORWARD_USR1,
    "SIGUSR2": SignalEvent.FORWARD_USR2,
    "SIGCONT": SignalEvent.FORWARD_CONT,
}

FORWARDED_SIGNAL_NAMES: dict[SignalEvent, str] = {
    SignalEvent.FORWARD_USR1: "SIGUSR1",
    SignalEvent.FORWARD_USR2: "SIGUSR2",
    SignalEvent.FORWARD_CONT: "SIGCONT",
}


def signal_events() -> dict[int, SignalEvent]:
    """Map the signal numbers available on this platform to pool events."""
    return {
        getattr(signal, name): event
        for name, event in SIGNAL_NAMES.items()
        if hasattr(signal, name)
    }


def as_config_source(source: ConfigSource | Mapping[str, Any] | str | Path | None) -> ConfigSource:
    """Use ``source`` as config source, wrapping mappings and paths."""
    if isinstance(source, ConfigSource):
        return source
    return FileOrHashSource(source)


class Pool:
    """Supervisor for a pool of worker processes.

    Args:
        config_source: Where the worker counts come from. A ``ConfigSource``,
            or a mapping, a file path, or None (auto-detected file), which are
            wrapped in a ``FileOrHashSource``.
        resolver: Determines the environment; defaults to RACK_ENV/RESQUE_ENV
        executor: Starts and signals worker processes
        registry: Registry of the running workers
        stop_policy: Which surplus workers are stopped first
        tick_interval: Seconds between maintenance passes of ``join``
        drain_timeout: Seconds to wait for workers on graceful shutdown before
            killing them; None waits indefinitely

    Raises:
        ConfigLoadError: If the initial configuration cannot be loaded
    """

    def __init__(
        self,
        config_source: ConfigSource | Mapping[str, Any] | str | Path | None = None,
        *,
        resolver: EnvironmentResolver | None = None,
        executor: WorkerExecutor | None = None,
        registry: WorkerRegistry | None = None,
        stop_policy: StopPolicy = "newest",
        tick_interval: float = 1.0,
        drain_timeout: float | None = None,
    ):
        self.config_source = as_config_source(config_source)
        self.resolver = resolver if resolver is not None else EnvironmentResolver()
        self.executor = executor if executor is not None else DirectWorkerExecutor()
        self.registry = registry if registry is not None else WorkerRegistry()
        self.engine = ReconciliationEngine(self.executor, stop_policy=stop_policy)
        self.tick_interval = tick_interval
        self.drain_timeout = drain_timeout

        self.sig_queue: queue.SimpleQueue[SignalEvent] = queue.SimpleQueue()
        self.signal_events = signal_events()
        self.state = PoolState.RUNNING
        self._drain_started: float | None = None
        self._previous_handlers: dict[int, Any] = {}

        self.environment = self.resolver.resolve()
        self.config: dict[str, int] = dict(self.config_source.retrieve_config(self.environment))
        logger.info(
            f"Pool configuration for environment {self.environment or '(none)'}: {self.config}"
        )

    @classmethod
    def create_configured(
        cls,
        settings: PoolSettings | None = None,
        config_source: ConfigSource | Mapping[str, Any] | str | Path | None = None,
    ) -> "Pool":
        """Create a pool from settings.

        Without ``config_source`` the pool reads ``settings.supervisor.config_path``,
        or an auto-detected configuration file if that is not set either.
        """
        settings = settings or get_settings()
        if config_source is None:
            config_source = FileOrHashSource(settings.supervisor.config_path)

        log_dir = Path(settings.workers.log_dir) if settings.workers.log_dir else None
        executor = DirectWorkerExecutor(
            command=settings.workers.command,
            log_dir=log_dir,
            graceful_stop_signal=settings.workers.graceful_stop_signal,
            force_stop_signal=settings.workers.force_stop_signal,
        )

        return cls(
            config_source,
            resolver=EnvironmentResolver(settings.supervisor.environment),
            executor=executor,
            stop_policy=settings.workers.stop_policy,
            tick_interval=settings.supervisor.tick_interval,
            drain_timeout=settings.supervisor.drain_timeout,
        )

    # Configuration and workers

    def reload(self) -> dict[str, int]:
        """Re-read the configuration for the current environment.

        The environment is resolved again, the config source is reset and
        asked for a fresh configuration.

        Raises:
            ConfigLoadError: If the configuration cannot be loaded; the
                previous configuration stays in effect
        """
        environment = self.resolver.resolve()
        self.config_source.reset()
        config = self.config_source.retrieve_config(environment)

        self.environment = environment
        self.config = dict(config)
        logger.info(
            f"Reloaded pool configuration for environment {environment or '(none)'}: {self.config}"
        )
        return self.config

    def maintain_worker_count(self) -> ReconcileResult | None:
        """Converge the workers to the configuration; only while running."""
        if self.state is not PoolState.RUNNING:
            return None
        return self.engine.reconcile(self.config, self.registry)

    def reap_workers(self) -> list[ExitedWorker]:
        """Remove exited workers from the registry."""
        exited = self.executor.reap()
        for worker in exited:
            record = self.registry.remove(worker.pid)
            if record is None:
                logger.debug(f"Reaped worker {worker.pid} was not registered")
                continue
            uptime = (datetime.now() - record.spawned_at).total_seconds()
            logger.debug(
                f"Reaped worker {worker.pid} for {record.queue_spec!r} after {uptime:.1f}s "
                f"(status {worker.returncode})"
            )
        return exited

    def stop_all_workers(self, graceful: bool = True) -> int:
        """Send the graceful or immediate stop signal to all workers.

        A graceful stop is sent only once per worker.

        Returns:
            Number of workers signalled
        """
        signalled = 0
        for worker in self.registry.all():
            if graceful and worker.stop_requested:
                continue
            self.executor.stop_worker(worker.pid, graceful=graceful)
            self.registry.mark_stopping(worker.pid)
            signalled += 1
        return signalled

    def start(self) -> "Pool":
        """Spawn the initial workers."""
        logger.info(f"Starting pool with configuration from {self._describe_source()}")
        self.maintain_worker_count()
        return self

    # Signal handling

    def install_signal_handlers(self) -> None:
        """Route the pool's signals into the signal queue."""
        for signum in self.signal_events:
            self._previous_handlers[signum] = signal.signal(signum, self.trap_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def trap_signal(self, signum: int, frame: Any = None) -> None:
        """Signal handler: queue the event for the signal, nothing else."""
        # NOTE: Do not log here - signal handlers can interrupt logging
        event = self.signal_events.get(signum)
        if event is not None:
            self.sig_queue.put(event)

    def handle_sig_queue(self) -> None:
        """Dispatch all queued events in arrival order."""
        while True:
            try:
                event = self.sig_queue.get_nowait()
            except queue.Empty:
                return
            self.dispatch(event)

    def dispatch(self, event: SignalEvent) -> None:
        """Apply one event to the pool."""
        if self.state is PoolState.TERMINATED:
            logger.debug(f"Ignoring {event.name}: pool is terminated")
            return

        logger.debug(f"Handling {event.name} in state {self.state.name}")
        if event is SignalEvent.RELOAD:
            self._on_reload()
        elif event is SignalEvent.GRACEFUL_SHUTDOWN:
            self._on_graceful_shutdown()
        elif event is SignalEvent.FORCE_SHUTDOWN:
            self._on_force_shutdown()
        elif event is SignalEvent.CHILD_REAP:
            self._on_child_reap()
        elif event is SignalEvent.SHRINK:
            self._on_shrink()
        elif event in FORWARDED_SIGNAL_NAMES:
            self._on_forward(event)

    def _on_reload(self) -> None:
        if self.state is not PoolState.RUNNING:
            logger.info("Ignoring reload during shutdown")
            return

        logger.info("HUP: reloading configuration")
        try:
            self.reload()
        except ConfigLoadError as e:
            logger.error(f"Reload rejected, keeping previous configuration: {e}")
            return
        self.maintain_worker_count()

    def _on_graceful_shutdown(self) -> None:
        if self.state is PoolState.RUNNING:
            logger.info(f"Graceful shutdown: stopping {len(self.registry)} worker(s)")
            self.state = PoolState.DRAINING
            self._drain_started = time.monotonic()
        self.stop_all_workers(graceful=True)
        self._check_drained()

    def _on_force_shutdown(self) -> None:
        logger.info(f"Immediate shutdown: killing {len(self.registry)} worker(s)")
        self.stop_all_workers(graceful=False)
        self.state = PoolState.TERMINATED
        self.reap_workers()

    def _on_child_reap(self) -> None:
        self.reap_workers()
        if self.state is PoolState.DRAINING:
            self._check_drained()
        else:
            self.maintain_worker_count()

    def _on_shrink(self) -> None:
        if self.state is not PoolState.RUNNING:
            logger.info("Ignoring shrink during shutdown")
            return
        logger.info("WINCH: stopping all workers until the next reload")
        self.config = {}
        self.maintain_worker_count()

    def _on_forward(self, event: SignalEvent) -> None:
        signum = getattr(signal, FORWARDED_SIGNAL_NAMES[event], None)
        if signum is None:
            return
        # Exited workers are left to the reaper
        workers = [w for w in self.registry.all() if self.executor.is_worker_running(w.pid)]
        logger.info(f"Forwarding {FORWARDED_SIGNAL_NAMES[event]} to {len(workers)} worker(s)")
        for worker in workers:
            self.executor.signal_worker(worker.pid, signum)

    def _check_drained(self) -> None:
        if len(self.registry) == 0:
            logger.info("All workers stopped")
            self.state = PoolState.TERMINATED
        else:
            logger.debug(f"Waiting for {len(self.registry)} worker(s) to exit")

    # Main loop

    def tick(self) -> None:
        """Maintenance pass run when no event arrived for ``tick_interval``."""
        if self.state is PoolState.RUNNING:
            self.reap_workers()
            self.maintain_worker_count()
        elif self.state is PoolState.DRAINING:
            self.reap_workers()
            self._check_drained()
            if self.state is PoolState.DRAINING and self._drain_timed_out():
                logger.warning(
                    f"{len(self.registry)} worker(s) still running after "
                    f"{self.drain_timeout}s, killing them"
                )
                self.dispatch(SignalEvent.FORCE_SHUTDOWN)

    def _drain_timed_out(self) -> bool:
        if self.drain_timeout is None or self._drain_started is None:
            return False
        return time.monotonic() - self._drain_started > self.drain_timeout

    def join(self) -> None:
        """Process events until the pool is terminated."""
        while self.state is not PoolState.TERMINATED:
            try:
                event = self.sig_queue.get(timeout=self.tick_interval)
            except queue.Empty:
                event = None

            try:
                if event is None:
                    self.tick()
                else:
                    self.dispatch(event)
            except Exception as e:
                logger.error(f"Error in pool loop: {e}", exc_info=True)

        logger.info("Pool terminated")

    def run(self) -> None:
        """Install signal handlers, start the workers and run until terminated."""
        self.install_signal_handlers()
        try:
            self.start()
            self.join()
        finally:
            self.restore_signal_handlers()

    def _describe_source(self) -> str:
        describe = getattr(self.config_source, "describe", None)
        return describe() if callable(describe) else repr(self.config_source)
