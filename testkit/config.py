import logging
from typing import Any, Dict, Optional

import testkit.settings as default_settings
from testkit.supervisor.readiness import ReadinessConfig
from testkit.supervisor.shutdown import ShutdownPolicy

log = logging.getLogger(__name__)

_TRUE_VALUES = ('true', '1', 't', 'yes', 'y')


class MergedSettings:
    """
    Merges the default settings with per-run command-line overrides.

    This class provides a unified, attribute-based access point for all
    configuration. It follows a clear precedence:
    1. Base values from `settings.py`.
    2. Overrides from the environment / `.env` file (handled in settings.py).
    3. Command-line overrides for settings in `MODIFIABLE_SETTINGS`.
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None) -> None:
        """
        Initializes the settings object by loading defaults and overrides.

        :param overrides: Option names (e.g. 'port', 'readiness-timeout') mapped to raw values.
        :raises ValueError: If an override value cannot be converted to the setting's type.
        """
        self._load_defaults()
        for option, value in (overrides or {}).items():
            self.apply_override(option, value)

    def _load_defaults(self) -> None:
        """Loads all uppercase attributes from the settings.py module as defaults."""
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    @staticmethod
    def setting_key(option: str) -> str:
        """Maps a command-line option name to the name of the setting it overrides."""
        option = option.lstrip("-")
        return default_settings.OPTION_ALIASES.get(option, option.upper().replace("-", "_"))

    def apply_override(self, option: str, value: Any) -> bool:
        """
        Applies a single override, coercing it to the type of the default value.

        :param option: The option name as given on the command line.
        :param value: The raw value. `True` for bare flags.
        :return: True if the override was applied, False if it was rejected.
        :raises ValueError: If the value cannot be converted.
        """
        key = self.setting_key(option)
        if not hasattr(self, key):
            log.warning(f"Override setting '{option}' not found in default settings. Ignoring.")
            return False
        if key not in self.MODIFIABLE_SETTINGS:
            log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
            return False

        original_value = getattr(self, key)
        try:
            if isinstance(original_value, bool):
                new_value = str(value).lower() in _TRUE_VALUES
            elif original_value is not None:
                new_value = type(original_value)(value)
            else:
                new_value = value
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert value '{value}' for option '{option}': {e}") from e

        setattr(self, key, new_value)
        log.debug(f"Overridden setting: {key} = {new_value}")
        return True

    @property
    def readiness_url(self) -> str:
        """The URL probed for readiness; derived from host and port unless set explicitly."""
        if self.READINESS_URL:
            return self.READINESS_URL
        return f"http://{self.SERVER_HOST}:{self.SERVER_PORT}"

    def readiness_config(self) -> ReadinessConfig:
        return ReadinessConfig(
            target=self.readiness_url,
            timeout=self.READINESS_TIMEOUT,
            interval=self.POLL_INTERVAL,
            request_timeout=self.PROBE_REQUEST_TIMEOUT,
        )

    def shutdown_policy(self) -> ShutdownPolicy:
        return ShutdownPolicy.from_names(
            initial_signal=self.SHUTDOWN_SIGNAL,
            escalation_timeout=self.GRACEFUL_SHUTDOWN_TIMEOUT,
            escalation_signal=self.ESCALATION_SIGNAL,
            signal_children=self.SIGNAL_CHILDREN,
        )
