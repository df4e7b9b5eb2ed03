"""Configuration module for the Qwen proxy."""

from .settings import (
    ConfigurationError,
    LoggingSettings,
    SecuritySettings,
    ServerSettings,
    Settings,
    StorageSettings,
    UploadSettings,
    UpstreamSettings,
    get_settings,
)


__all__ = [
    "ConfigurationError",
    "LoggingSettings",
    "SecuritySettings",
    "ServerSettings",
    "Settings",
    "StorageSettings",
    "UploadSettings",
    "UpstreamSettings",
    "get_settings",
]
