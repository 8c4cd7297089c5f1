"""Detection of the active deployment environment."""

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

ENVIRONMENT_VARIABLES = ("RACK_ENV", "RESQUE_ENV")


class EnvironmentResolver:
    """Determine the deployment environment whose config overlay applies.

    Precedence (first non-empty value wins):

    1. ``override``, set by the host (CLI option, settings, embedding code)
    2. ``RACK_ENV``
    3. ``RESQUE_ENV``

    If none is set there is no environment and only the top-level defaults of
    the configuration apply.
    """

    def __init__(self, override: str | None = None, environ: Mapping[str, str] | None = None):
        self.override = override
        self._environ = environ

    def resolve(self) -> str | None:
        if self.override:
            return self.override

        environ = os.environ if self._environ is None else self._environ
        for name in ENVIRONMENT_VARIABLES:
            value = environ.get(name)
            if value:
                logger.debug(f"Environment {value!r} taken from {name}")
                return value
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(override={self.override!r})"
