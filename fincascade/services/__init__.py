"""Services package."""

from fincascade.services.storage import (
    AnalyticsStorageInterface,
    GoogleSheetsAnalyticsStorage,
    GoogleSheetsClient,
    GoogleSheetsKeyValueStorage,
    InMemoryKeyValueStorage,
    JsonFileKeyValueStorage,
    KeyValueStorageInterface,
    StorageConnectionError,
    StorageError,
)

__all__ = [
    "AnalyticsStorageInterface",
    "GoogleSheetsAnalyticsStorage",
    "GoogleSheetsClient",
    "GoogleSheetsKeyValueStorage",
    "InMemoryKeyValueStorage",
    "JsonFileKeyValueStorage",
    "KeyValueStorageInterface",
    "StorageConnectionError",
    "StorageError",
]
