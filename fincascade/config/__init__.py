"""Configuration package."""

from fincascade.config.settings import (
    AnalyticsSettings,
    AppSettings,
    CacheSettings,
    CascadeSettings,
    ConfirmationSettings,
    GeminiSettings,
    GoogleSheetsSettings,
    QueueSettings,
    Settings,
    ShadowSettings,
    StorageSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AnalyticsSettings",
    "AppSettings",
    "CacheSettings",
    "CascadeSettings",
    "ConfirmationSettings",
    "GeminiSettings",
    "GoogleSheetsSettings",
    "QueueSettings",
    "Settings",
    "ShadowSettings",
    "StorageSettings",
    "get_settings",
    "validate_all_settings",
]
