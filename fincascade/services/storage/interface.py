"""
Abstract Storage Interface

DESIGN DECISION: Persisted state sits behind a small key-value interface.
The offline queue and the shadow harness's daily counter are the only
durable state the cascade owns; each is one JSON document under a fixed
key. Backends (in-memory, JSON files, Google Sheets) are swappable and
business logic never sees which one is in use.

The interface is intentionally simple - we're not building a database.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from fincascade.models.analytics import AnalyticsEvent


# Well-known keys
ACTION_QUEUE_KEY = "actionQueue"
SHADOW_DAILY_COUNT_KEY = "shadow_ab_daily_count"


class KeyValueStorageInterface(ABC):
    """
    Abstract interface for persisted JSON documents.

    Values must be JSON-serializable (dicts, lists, strings, numbers).
    """

    @abstractmethod
    async def get_json(self, key: str) -> Optional[Any]:
        """
        Read the document stored under a key.

        Returns:
            The decoded value, or None if the key is absent

        Raises:
            StorageError: If the backend cannot be read
        """
        pass

    @abstractmethod
    async def set_json(self, key: str, value: Any) -> None:
        """
        Replace the document stored under a key.

        Raises:
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Remove a key.

        Returns:
            True if the key existed
        """
        pass


class AnalyticsStorageInterface(ABC):
    """
    Abstract interface for analytics event storage.

    Events are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AnalyticsEvent) -> bool:
        """
        Append an analytics event.

        Returns:
            True if stored successfully

        Raises:
            StorageError: If the backend rejects the write
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
