"""
Storage Services Package

Provides abstract interfaces and concrete implementations for persisted
state: in-memory, JSON files, and Google Sheets.
"""

from fincascade.services.storage.interface import (
    ACTION_QUEUE_KEY,
    SHADOW_DAILY_COUNT_KEY,
    AnalyticsStorageInterface,
    KeyValueStorageInterface,
    StorageConnectionError,
    StorageError,
)
from fincascade.services.storage.local import (
    InMemoryKeyValueStorage,
    JsonFileKeyValueStorage,
)
from fincascade.services.storage.google_sheets import (
    GoogleSheetsAnalyticsStorage,
    GoogleSheetsClient,
    GoogleSheetsKeyValueStorage,
)

__all__ = [
    # Keys
    "ACTION_QUEUE_KEY",
    "SHADOW_DAILY_COUNT_KEY",
    # Interfaces
    "AnalyticsStorageInterface",
    "KeyValueStorageInterface",
    # Exceptions
    "StorageConnectionError",
    "StorageError",
    # Local implementations
    "InMemoryKeyValueStorage",
    "JsonFileKeyValueStorage",
    # Google Sheets implementation
    "GoogleSheetsAnalyticsStorage",
    "GoogleSheetsClient",
    "GoogleSheetsKeyValueStorage",
]
