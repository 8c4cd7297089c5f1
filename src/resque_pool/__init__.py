"""Supervisor for pools of queue worker processes.

The pool reads a worker-count mapping (queue spec -> number of workers) from a
configuration source, starts that many worker processes per queue spec, and
converges the running processes to a new mapping whenever it receives SIGHUP.
"""

from resque_pool.config_sources import ConfigSource, FileOrHashSource
from resque_pool.environment import EnvironmentResolver
from resque_pool.errors import ConfigLoadError, ResquePoolError, SpawnError
from resque_pool.pool import Pool, PoolState, SignalEvent

__all__ = [
    "ConfigLoadError",
    "ConfigSource",
    "EnvironmentResolver",
    "FileOrHashSource",
    "Pool",
    "PoolState",
    "ResquePoolError",
    "SignalEvent",
    "SpawnError",
]
