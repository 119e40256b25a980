"""Key/value stores used to remember the last connected mixer.

Applications embedding pyxair can pass their own store (for example one
backed by platform preferences); anything with get/set/remove works.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

LAST_MIXER_KEY = "last-mixer"
DEFAULT_STORE_PATH = Path.home() / ".pyxair.json"


class KeyValueStore(ABC):

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any):
        pass

    @abstractmethod
    def remove(self, key: str):
        pass


class MemoryStore(KeyValueStore):

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any):
        with self._lock:
            self._data[key] = value

    def remove(self, key: str):
        with self._lock:
            self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Stores JSON-serialisable values in a single file.

    A missing or corrupt file reads as empty; it is rewritten on the next set().
    """

    def __init__(self, path=DEFAULT_STORE_PATH):
        self._logger = logging.getLogger(__name__)
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            self._logger.warning(f"Ignoring unreadable store {self._path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]):
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._path)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: Any):
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, key: str):
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)
