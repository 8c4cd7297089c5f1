"""Settings management for resque-pool.

These settings configure the supervisor itself (logging, how workers are
started and stopped, loop timing). The worker counts per queue come from the
pool configuration (see ``resque_pool.config_sources``).

Settings Priority (highest to lowest):
1. Environment variables
2. Project settings file (.resque-pool/settings.toml or resque-pool.toml)
3. User settings file (~/.config/resque-pool/settings.toml)
4. System settings file (/etc/resque-pool/settings.toml)
5. Programmatic values
6. Default values

Environment Variable Naming:
- Nested fields: RESQUE_POOL_<SECTION>__<FIELD>
  (e.g., RESQUE_POOL_LOGGING__LOG_LEVEL, RESQUE_POOL_WORKERS__COMMAND)
- RESQUE_POOL_ENVIRONMENT: environment override (same as
  RESQUE_POOL_SUPERVISOR__ENVIRONMENT)
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from resque_pool.workers.worker_executor import DEFAULT_WORKER_COMMAND, signal_from_name

logger = logging.getLogger(__name__)

APP_NAME = "resque-pool"


class ShortcutEnvSettingsSource(PydanticBaseSettingsSource):
    """Settings source for environment variables outside the nested scheme.

    ``RESQUE_POOL_ENVIRONMENT`` is the documented way to set the environment
    override; it maps to ``supervisor.environment``.
    """

    SHORTCUT_ENV_VARS = {
        ("supervisor", "environment"): "RESQUE_POOL_ENVIRONMENT",
    }

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        raise ValueError(f"Field {field_name} not found in shortcut environment")

    def __call__(self) -> dict[str, Any]:
        data: dict[str, Any] = {}

        for field_path, env_var in self.SHORTCUT_ENV_VARS.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue

            current = data
            for part in field_path[:-1]:
                current = current.setdefault(part, {})
            current[field_path[-1]] = env_value

        return data


class LoggingConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    console_logging: bool = Field(
        default=True,
        description="Also log to the console (stderr), not only to the log file",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}, got {v}")
        return v_upper


class WorkerSettings(BaseModel):
    """How worker processes are started and stopped."""

    command: str = Field(
        default=DEFAULT_WORKER_COMMAND,
        description="Worker command; the queue names are appended as arguments",
    )

    graceful_stop_signal: str = Field(
        default="TERM",
        description="Signal asking a worker to finish its current job and exit",
    )

    force_stop_signal: str = Field(
        default="KILL",
        description="Signal terminating a worker immediately",
    )

    stop_policy: Literal["newest", "oldest"] = Field(
        default="newest",
        description="Which surplus workers to stop first when a count shrinks",
    )

    log_dir: str = Field(
        default="",
        description="Directory for worker logs (empty = platform log directory)",
    )

    @field_validator("graceful_stop_signal", "force_stop_signal")
    @classmethod
    def validate_signal(cls, v: str) -> str:
        """Validate and normalize a signal name."""
        return signal_from_name(v).name

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Worker command must not be empty")
        return v


class SupervisorSettings(BaseModel):
    """Supervisor loop configuration."""

    environment: str | None = Field(
        default=None,
        description="Environment override (wins over RACK_ENV and RESQUE_ENV)",
    )

    config_path: str | None = Field(
        default=None,
        description="Pool configuration file (default: auto-detect)",
    )

    tick_interval: float = Field(
        default=1.0,
        gt=0,
        le=60,
        description="Seconds between maintenance passes when no signal arrives",
    )

    drain_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait for workers on graceful shutdown before killing them",
    )

    pidfile: str | None = Field(
        default=None,
        description="Write the supervisor's pid to this file",
    )


class PoolSettings(BaseSettings):
    """Main resque-pool settings.

    Loaded from multiple sources in priority order: environment variables >
    project settings > user settings > system settings > programmatic values >
    defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="RESQUE_POOL_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )

    workers: WorkerSettings = Field(
        default_factory=WorkerSettings,
        description="Worker process configuration",
    )

    supervisor: SupervisorSettings = Field(
        default_factory=SupervisorSettings,
        description="Supervisor loop configuration",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the sources and their priority for settings.

        pydantic-settings gives sources on the left priority over sources on
        the right.
        """
        settings_files = find_settings_files()

        toml_sources = []
        for location in ("system", "user", "project"):
            path = settings_files[location]
            if path is None:
                continue
            toml_sources.append(TomlConfigSettingsSource(settings_cls, toml_file=path))
            logger.debug(f"Loaded {location} settings: {path}")

        return (
            env_settings,
            ShortcutEnvSettingsSource(settings_cls),
            *reversed(toml_sources),  # project > user > system
            init_settings,
        )


def find_settings_files() -> dict[str, Path | None]:
    """Find settings files in standard locations.

    Returns:
        Dictionary with keys 'system', 'user', 'project', each containing
        a Path to the settings file if it exists, or None otherwise.
    """
    settings_files: dict[str, Path | None] = {
        "system": None,
        "user": None,
        "project": None,
    }

    locations = get_settings_file_locations()
    if locations["system"].exists():
        settings_files["system"] = locations["system"]
    if locations["user"].exists():
        settings_files["user"] = locations["user"]

    cwd = Path.cwd()
    for project_settings in (cwd / ".resque-pool" / "settings.toml", cwd / "resque-pool.toml"):
        if project_settings.exists():
            settings_files["project"] = project_settings
            break

    return settings_files


def get_settings_file_locations() -> dict[str, Path]:
    """Get the standard settings file locations (which may not exist)."""
    user_config_dir = Path(platformdirs.user_config_dir(APP_NAME, appauthor=False))
    return {
        "system": Path("/etc") / APP_NAME / "settings.toml",
        "user": user_config_dir / "settings.toml",
        "project": Path.cwd() / ".resque-pool" / "settings.toml",
    }


# Lazily initialized on first access
_settings: PoolSettings | None = None


def get_settings(reload: bool = False) -> PoolSettings:
    """Get the global settings instance.

    Args:
        reload: If True, reload the settings from files and environment.
    """
    global _settings

    if _settings is None or reload:
        _settings = PoolSettings()

    return _settings


def create_example_settings() -> str:
    """Create an example settings file with all options documented."""
    return f"""# resque-pool settings
#
# Settings files are loaded from (in priority order):
#   1. .resque-pool/settings.toml or resque-pool.toml (project directory)
#   2. ~/.config/resque-pool/settings.toml (user directory)
#   3. /etc/resque-pool/settings.toml (system directory, Linux/Unix only)
#
# Environment variables override any setting (highest priority).
# Nested settings use double underscores: RESQUE_POOL_<SECTION>__<KEY>
#
# The number of workers per queue is NOT configured here but in the pool
# configuration file (resque-pool.yml, config/resque-pool.yml or the file
# named by RESQUE_POOL_CONFIG).

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
# Environment variable: RESQUE_POOL_LOGGING__LOG_LEVEL
log_level = "INFO"

# Log to stderr in addition to the log file
# Environment variable: RESQUE_POOL_LOGGING__CONSOLE_LOGGING
console_logging = true

[workers]
# Worker command; the queue names of a queue spec are appended as arguments
# and QUEUES is set to the queue spec
# Environment variable: RESQUE_POOL_WORKERS__COMMAND
command = "{DEFAULT_WORKER_COMMAND}"

# Signal asking a worker to finish its current job and exit
graceful_stop_signal = "TERM"

# Signal terminating a worker immediately
force_stop_signal = "KILL"

# Which workers to stop first when a count shrinks: "newest" or "oldest"
stop_policy = "newest"

# Directory for worker logs (empty = platform log directory)
log_dir = ""

[supervisor]
# Environment whose section of the pool configuration applies
# (wins over RACK_ENV and RESQUE_ENV)
# Environment variable: RESQUE_POOL_ENVIRONMENT
# environment = "production"

# Pool configuration file (default: auto-detect)
# config_path = "config/resque-pool.yml"

# Seconds between maintenance passes when no signal arrives
tick_interval = 1.0

# Seconds to wait for workers on graceful shutdown before killing them
# drain_timeout = 60

# pidfile = "tmp/pids/resque-pool.pid"
"""


def write_example_settings(location: str = "user") -> Path:
    """Write an example settings file to a standard location.

    Args:
        location: One of "user", "project" or "system"

    Returns:
        Path to the created settings file.

    Raises:
        ValueError: If location is invalid.
        PermissionError: If cannot write to the location.
    """
    locations = get_settings_file_locations()

    if location not in locations:
        raise ValueError(f"Invalid location '{location}'. Must be one of: user, project, system")

    settings_path = locations[location]
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(create_example_settings())

    logger.info(f"Created example settings at: {settings_path}")

    return settings_path
