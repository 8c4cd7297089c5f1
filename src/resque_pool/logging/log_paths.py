"""Centralized log path management for resque-pool.

The supervisor and its worker processes log to files below the
system-appropriate log directory unless a directory is configured.
"""

import re
from pathlib import Path

import platformdirs

APP_NAME = "resque-pool"


def get_log_dir() -> Path:
    """Get the system-appropriate log directory for resque-pool.

    Returns:
        Path to the log directory (created if it doesn't exist)
        - Windows: %LOCALAPPDATA%/resque-pool/Logs
        - macOS: ~/Library/Logs/resque-pool
        - Linux: ~/.local/state/resque-pool/log
    """
    log_dir = Path(platformdirs.user_log_dir(APP_NAME, appauthor=False))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def get_main_log_path() -> Path:
    """Get the path to the supervisor's log file."""
    return get_log_dir() / "resque-pool.log"


def get_worker_log_dir(base_dir: Path | None = None) -> Path:
    """Get the directory for worker log files.

    Args:
        base_dir: Configured log directory; defaults to ``get_log_dir()``

    Returns:
        Path to the workers/ subdirectory (created if it doesn't exist)
    """
    worker_log_dir = (base_dir or get_log_dir()) / "workers"
    worker_log_dir.mkdir(parents=True, exist_ok=True)
    return worker_log_dir


def worker_log_name(queue_spec: str, index: int) -> str:
    """File name for the log of a worker servicing ``queue_spec``.

    >>> worker_log_name("high,low", 3)
    'high_low-3.log'
    >>> worker_log_name("*", 1)
    'all-1.log'
    """
    if queue_spec.strip() == "*":
        stem = "all"
    else:
        stem = re.sub(r"[^A-Za-z0-9_.-]+", "_", queue_spec).strip("_") or "worker"
    return f"{stem}-{index}.log"


def get_worker_log_path(queue_spec: str, index: int, base_dir: Path | None = None) -> Path:
    return get_worker_log_dir(base_dir) / worker_log_name(queue_spec, index)
