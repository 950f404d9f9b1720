import logging
from typing import Any, Dict

import pipeline_manifold.settings as default_settings

log = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when a pipeline configuration or setting override is invalid."""

    pass


class MergedSettings:
    """
    Runtime settings of the supervisor, read as attributes.

    Precedence, lowest first:
    1. Values in `settings.py`.
    2. Environment variables and `.env` (read by `settings.py`).
    3. The `settings:` section of the pipeline file, for keys in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self) -> None:
        self._load_defaults()

    def _load_defaults(self) -> None:
        for name in dir(default_settings):
            if name.isupper():
                setattr(self, name, getattr(default_settings, name))

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """
        Applies the `settings:` section of a pipeline file.

        Unknown and non-modifiable keys are skipped with a warning. Values are
        coerced to the type of the default they replace.

        :param overrides: A mapping of setting names to new values.
        :raises ConfigurationError: If a value cannot be coerced.
        """
        for name, value in overrides.items():
            name = str(name).upper()
            if not hasattr(self, name):
                log.warning(f"Unknown setting '{name}' in pipeline file. Ignoring.")
                continue
            if name not in self.MODIFIABLE_SETTINGS:
                log.warning(f"Setting '{name}' cannot be changed from a pipeline file. Ignoring.")
                continue

            default = getattr(self, name)
            try:
                if isinstance(default, str):
                    coerced = str(value).upper() if name == "LOG_LEVEL" else str(value)
                else:
                    coerced = type(default)(value)
            except (ValueError, TypeError) as e:
                raise ConfigurationError(f"Invalid value '{value}' for setting '{name}': {e}") from e

            setattr(self, name, coerced)
            log.debug(f"Setting {name} = {coerced!r}")

    def reset(self) -> None:
        """Restores every setting to its default value."""
        self._load_defaults()


effective_settings = MergedSettings()
