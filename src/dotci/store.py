# store.py
from __future__ import annotations

import threading
from typing import Dict, Generic, List, TypeVar

V = TypeVar("V")


class StoreError(KeyError):
    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else self.__class__.__name__


class KeyExistsError(StoreError):
    """store: key already exists"""


class KeyNotFoundError(StoreError):
    """store: key does not exist"""


class MemStore(Generic[V]):
    """
    In-memory key/value store guarded by a single lock.

    A store is created per run and handed to whoever needs it; nothing is
    persisted. Every operation holds the lock for its whole duration so no
    partial update is observable.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, V] = {}

    def set(self, key: str, value: V) -> None:
        """Insert a new key. Existing keys are left untouched."""
        with self._lock:
            if key in self._data:
                raise KeyExistsError(f"store: key already exists: {key}")
            self._data[key] = value

    def get(self, key: str) -> V:
        with self._lock:
            if key not in self._data:
                raise KeyNotFoundError(f"store: key does not exist: {key}")
            return self._data[key]

    def update(self, key: str, value: V) -> None:
        with self._lock:
            if key not in self._data:
                raise KeyNotFoundError(f"store: key does not exist: {key}")
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                raise KeyNotFoundError(f"store: key does not exist: {key}")
            del self._data[key]

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
