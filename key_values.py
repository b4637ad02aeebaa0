from __future__ import annotations

import threading
from typing import Dict, Optional


class KeyValueStore:
    """Operator-set overlay values (e.g. meet notes) served with the race data."""

    def __init__(self):
        self._store: Dict[str, str] = {}
        self._lock = threading.Lock()

    def set_value(self, key: str, value: Optional[str]) -> None:
        """Blank value removes the key."""
        with self._lock:
            if value is None or not value.strip():
                self._store.pop(key, None)
            else:
                self._store[key] = value

    def get_value(self, key: str) -> Optional[str]:
        with self._lock:
            return self._store.get(key)

    def all_values(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._store)

    def has_key(self, key: str) -> bool:
        with self._lock:
            return key in self._store

    def remove_key(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None
