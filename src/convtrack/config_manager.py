"""
Configuration manager for the conversion tracking core.

Provides QSettings-backed configuration management with default fallbacks
and type safety.
"""

import logging
from typing import Any

import jsonschema
from PySide6.QtCore import QSettings

from .config import CONFIG_JSON_SCHEMA, DEFAULT_CONFIG, setup_qsettings
from .errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)

_TRUE_STRINGS = ("true", "1", "yes", "on")


def _coerce(value: Any, expected_type: type) -> Any:
    if expected_type is bool:
        # QSettings returns strings for booleans on some backends
        return value.lower() in _TRUE_STRINGS if isinstance(value, str) else bool(value)
    return expected_type(value)


class ConfigManager:
    """
    QSettings-backed configuration manager with robust defaults.

    Values are coerced to the type of their default; keys that are missing
    or hold unusable values fall back to DEFAULT_CONFIG.
    """

    def __init__(self, settings: QSettings | None = None) -> None:
        """
        Initialize the ConfigManager.

        Args:
            settings: QSettings to use; defaults to the application settings
        """
        if settings is None:
            setup_qsettings()
            settings = QSettings()
        self._settings = settings
        self._defaults = DEFAULT_CONFIG.copy()

    def get(self, key: str, default: Any | None = None) -> Any:
        """
        Get a configuration value with fallback to defaults.

        Args:
            key: Configuration key
            default: Override default value (if None, uses DEFAULT_CONFIG)

        Returns:
            Configuration value with type coercion and default fallback
        """
        fallback = default if default is not None else self._defaults.get(key)
        value = self._settings.value(key, fallback)

        if fallback is not None:
            expected_type = type(fallback)
            try:
                if expected_type in (bool, int, float, str):
                    value = _coerce(value, expected_type)
                elif not isinstance(value, expected_type):
                    logger.warning(f"Config key '{key}' has unexpected type, using default")
                    value = fallback
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to coerce config key '{key}': {e}, using default")
                value = fallback

        return value

    def set(self, key: str, value: Any) -> None:
        """Store a configuration value and persist it immediately."""
        self._settings.setValue(key, value)
        self._settings.sync()

    def load_all(self) -> dict[str, Any]:
        """
        Load all configuration values merged with defaults.

        Returns:
            Dictionary with every known key, stored values taking precedence
        """
        return {key: self.get(key) for key in self._defaults}

    def export_config(self) -> dict[str, Any]:
        return self.load_all()

    def import_config(self, config: dict[str, Any]) -> None:
        """
        Import configuration from a dictionary after schema validation.

        Raises:
            ConfigError: If the dictionary does not match the configuration schema
        """
        try:
            jsonschema.validate(config, CONFIG_JSON_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigError(
                ErrorCode.CONFIG_INVALID,
                f"Invalid configuration: {e.message}",
                technical_message=str(e),
            ) from e

        for key, value in config.items():
            self.set(key, value)

    def reset_to_defaults(self) -> None:
        """Clear all stored settings so every key reverts to its default."""
        self._settings.clear()
        self._settings.sync()
        logger.info("Configuration reset to defaults")

    def has_key(self, key: str) -> bool:
        return self._settings.contains(key)

    def remove_key(self, key: str) -> None:
        self._settings.remove(key)
        self._settings.sync()
