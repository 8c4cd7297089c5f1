"""Exceptions raised by resque-pool."""


class ResquePoolError(Exception):
    """Base class for all resque-pool errors."""


class ConfigLoadError(ResquePoolError):
    """The pool configuration could not be loaded.

    Raised for unparsable or malformed documents and for explicitly named
    configuration files that cannot be read.
    """


class SpawnError(ResquePoolError):
    """A worker process could not be started."""

    def __init__(self, queue_spec: str, reason: str):
        super().__init__(f"Could not spawn worker for {queue_spec!r}: {reason}")
        self.queue_spec = queue_spec
        self.reason = reason
