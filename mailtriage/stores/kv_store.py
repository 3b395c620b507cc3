"""
Durable key-value store used for continuation state, the label cache,
scan cursors and dispatch records.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """String-to-string property store. Each ``set_property`` is atomic."""

    @abstractmethod
    def get_property(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_property(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete_property(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> list:
        """Keys starting with ``prefix``."""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store (tests, dry runs)."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_property(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set_property(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete_property(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]


class JsonFileKeyValueStore(KeyValueStore):
    """
    Properties persisted in a single JSON file.

    Every write rewrites the file through a temporary file and ``os.replace``,
    so readers never observe a partial update.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.path), exist_ok=True)

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"State file {self.path} is not a JSON object")
        return data

    def _write(self, data: Dict[str, str]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=os.path.dirname(self.path), prefix=".state-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get_property(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set_property(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete_property(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def keys(self, prefix: str = "") -> list:
        with self._lock:
            return [k for k in self._read() if k.startswith(prefix)]
