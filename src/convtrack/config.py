"""
Configuration defaults for the conversion tracking core.

This module provides the configuration schema, defaults and the Qt
application identifiers used by QSettings and the log directory.
"""

from pathlib import Path
from typing import Any

from PySide6.QtCore import QCoreApplication, QStandardPaths

# Application identifiers for QSettings
APP_ORGANIZATION = "Convtrack"
APP_NAME = "Tracker"

# Default configuration with all supported keys and JSON-serializable types
DEFAULT_CONFIG: dict[str, Any] = {
    # Job tracking
    "poll_interval_ms": 1000,
    "timer_interval_ms": 1000,
    "completion_deadline_ms": 0,  # 0 disables the fixed-deadline completion fallback
    "max_poll_failures": 3,
    "run_in_thread": True,
    "validate_payloads": True,
    # Website crawl defaults
    "max_depth": 2,
    "max_pages": 50,
    # Logging
    "log_level": "INFO",  # Options: "DEBUG", "INFO", "WARNING", "ERROR"
    "log_file": "",
}

# JSON Schema for imported configuration (draft-07)
CONFIG_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Convtrack configuration",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "poll_interval_ms": {"type": "integer", "minimum": 10},
        "timer_interval_ms": {"type": "integer", "minimum": 10},
        "completion_deadline_ms": {"type": "integer", "minimum": 0},
        "max_poll_failures": {"type": "integer", "minimum": 1},
        "run_in_thread": {"type": "boolean"},
        "validate_payloads": {"type": "boolean"},
        "max_depth": {"type": "integer", "minimum": 0},
        "max_pages": {"type": "integer", "minimum": 1},
        "log_level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR"]},
        "log_file": {"type": "string"},
    },
}


def get_app_config_dir() -> Path:
    """
    Get the application configuration directory using QStandardPaths.

    Returns:
        Path to the writable configuration directory for this application
    """
    config_location = QStandardPaths.writableLocation(QStandardPaths.StandardLocation.ConfigLocation)
    return Path(config_location) / APP_ORGANIZATION / APP_NAME


def get_log_dir() -> Path:
    """
    Get the directory for rotating log files.

    Uses the app data location, falling back to the configuration directory.
    """
    app_data_location = QStandardPaths.writableLocation(QStandardPaths.StandardLocation.AppDataLocation)
    if not app_data_location:
        return get_app_config_dir() / "logs"
    return Path(app_data_location) / "logs"


def setup_qsettings() -> None:
    """
    Configure QSettings with application identifiers.

    This should be called early in application startup to ensure
    QSettings uses the correct organization and application names.
    """
    QCoreApplication.setOrganizationName(APP_ORGANIZATION)
    QCoreApplication.setApplicationName(APP_NAME)
