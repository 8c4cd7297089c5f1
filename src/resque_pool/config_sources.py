"""Sources for the pool configuration.

A pool configuration maps queue specs (one or more comma-joined queue names)
to the number of worker processes that should service them. Configuration
documents may contain environment sections that overlay the defaults:

    foo: 1
    "foo,bar": 2
    production:
      "foo,bar": 8

The pool asks its config source for the configuration of the active
environment once at startup and again after every reload.
"""

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import jinja2
import yaml

from resque_pool.errors import ConfigLoadError

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV_VAR = "RESQUE_POOL_CONFIG"

CONFIG_FILES = ("resque-pool.yml", "config/resque-pool.yml")


@runtime_checkable
class ConfigSource(Protocol):
    """Anything that can produce a pool configuration.

    Implementations decide where the configuration comes from (a file, a
    remote service, a hardcoded mapping). They may cache the result; the pool
    calls ``reset`` before every reload.
    """

    def retrieve_config(self, environment: str | None) -> dict[str, int]: ...

    def reset(self) -> None: ...


def resolve_config(document: Mapping[str, Any], environment: str | None) -> dict[str, int]:
    """Resolve a raw configuration document for an environment.

    The entries of the environment's section override the top-level defaults.
    Sections of other environments (and any other nested mapping) are
    dropped.

    Args:
        document: Raw configuration document
        environment: Active environment name, or None for defaults only

    Returns:
        Mapping from queue spec to desired worker count

    Raises:
        ConfigLoadError: If the document is not a mapping or a count is not a
            non-negative integer
    """
    if not isinstance(document, Mapping):
        raise ConfigLoadError(
            f"Pool configuration must be a mapping, got {type(document).__name__}"
        )

    result = dict(document)
    if environment:
        overlay = document.get(environment)
        if isinstance(overlay, Mapping):
            result.update(overlay)

    config: dict[str, int] = {}
    for key, value in result.items():
        if isinstance(value, Mapping):
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ConfigLoadError(
                f"Worker count for {key!r} must be a non-negative integer, got {value!r}"
            )
        config[str(key)] = value
    return config


def choose_config_file(environ: Mapping[str, str] | None = None) -> Path | None:
    """Find the pool configuration file.

    ``RESQUE_POOL_CONFIG`` wins if it is set; otherwise the first existing
    file of ``CONFIG_FILES`` (relative to the working directory) is used.

    Returns:
        Path to the configuration file, or None if there is none
    """
    environ = os.environ if environ is None else environ

    explicit = environ.get(CONFIG_PATH_ENV_VAR)
    if explicit:
        return Path(explicit)

    for candidate in CONFIG_FILES:
        path = Path(candidate)
        if path.exists():
            return path
    return None


def load_config_file(path: Path, environ: Mapping[str, str] | None = None) -> Any:
    """Render a configuration file as a Jinja2 template and parse it as YAML.

    The template sees the process environment as ``env``.

    Raises:
        ConfigLoadError: If the file cannot be read, rendered or parsed
    """
    environ = os.environ if environ is None else environ

    try:
        source = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigLoadError(f"Cannot read pool configuration {path}: {e}") from e

    try:
        rendered = jinja2.Template(source, undefined=jinja2.StrictUndefined).render(
            env=environ
        )
    except jinja2.TemplateError as e:
        raise ConfigLoadError(f"Cannot render pool configuration {path}: {e}") from e

    try:
        document = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Cannot parse pool configuration {path}: {e}") from e

    return {} if document is None else document


class FileOrHashSource:
    """Config source backed by a YAML file or an in-memory mapping.

    Without an argument the file is auto-detected when the configuration is
    first retrieved (see ``choose_config_file``). If no file is found the pool
    runs no workers.

    The resolved configuration is cached until ``reset`` is called, so edits
    to the file only take effect on reload.
    """

    def __init__(
        self,
        filename_or_mapping: str | os.PathLike | Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.filename: Path | None = None
        self.static_config: dict[str, Any] | None = None

        if isinstance(filename_or_mapping, Mapping):
            self.static_config = dict(filename_or_mapping)
        elif isinstance(filename_or_mapping, (str, os.PathLike)):
            self.filename = Path(filename_or_mapping)
        elif filename_or_mapping is not None:
            raise TypeError(
                f"{type(self).__name__} cannot be initialized with {filename_or_mapping!r}"
            )

        self._environ = environ
        self._config: dict[str, int] | None = None

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def retrieve_config(self, environment: str | None) -> dict[str, int]:
        if self._config is None:
            self._config = resolve_config(self._load_document(), environment)
        return dict(self._config)

    def reset(self) -> None:
        self._config = None

    def describe(self) -> str:
        if self.static_config is not None:
            return "in-memory mapping"
        path = self.filename or choose_config_file(self.environ)
        if path is None:
            return "no configuration file found"
        return f"file '{path}'"

    def _load_document(self) -> Any:
        if self.static_config is not None:
            return self.static_config

        path = self.filename or choose_config_file(self.environ)
        if path is None:
            logger.warning("No pool configuration file found, running without workers")
            return {}

        logger.debug(f"Loading pool configuration from {path}")
        return load_config_file(path, self.environ)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.describe()})"
