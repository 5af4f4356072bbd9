"""Configuration module for the memory context client."""

from .logging_config import SafeJSONFormatter, SafeTextFormatter, configure_logging
from .settings import (
    LoggingSettings,
    ResilienceSettings,
    ServerSettings,
    Settings,
    get_settings,
)

__all__ = [
    "configure_logging",
    "get_settings",
    "LoggingSettings",
    "ResilienceSettings",
    "SafeJSONFormatter",
    "SafeTextFormatter",
    "ServerSettings",
    "Settings",
]
