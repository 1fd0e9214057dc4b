"""
Local key-value storage backends.

InMemoryKeyValueStorage is for tests and single-process dev runs.
JsonFileKeyValueStorage keeps one `<key>.json` file per key and
replaces it atomically on every write.
"""

import asyncio
import copy
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

from fincascade.services.storage.interface import (
    KeyValueStorageInterface,
    StorageError,
)


_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class InMemoryKeyValueStorage(KeyValueStorageInterface):
    """Dict-backed storage. Values are deep-copied in and out."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def get_json(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set_json(self, key: str, value: Any) -> None:
        # Reject anything a real backend could not serialize
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON-serializable: {e}")
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class JsonFileKeyValueStorage(KeyValueStorageInterface):
    """
    One JSON file per key under a directory.

    File I/O runs in a worker thread so the event loop is never blocked.
    """

    def __init__(self, directory: str):
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self._directory / f"{key}.json"

    def _read(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {path}: {e}")

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            payload = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON-serializable: {e}")
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}")

    def _delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}")

    async def get_json(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read, key)

    async def set_json(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)
