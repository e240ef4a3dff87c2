"""
Key-Value Store Module

A JSON file backed key-value store used for the embedding cache, the local
capture cache, the image index and attendance cooldowns.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Persistent dictionary of JSON serializable values."""

    def __init__(self, path: str):
        """
        Initialize the store and load existing data.

        Args:
            path: JSON file path
        """
        self.path = path
        self._data: Dict[str, Any] = {}
        self._lock = threading.RLock()

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            logger.info(f"No key-value file at {self.path}, starting empty")
            return

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError('top-level value is not an object')
            self._data = data
            logger.debug(f"Loaded {len(self._data)} keys from {self.path}")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load key-value file {self.path}: {e}")
            self._data = {}

    def _save(self):
        directory = os.path.dirname(self.path) or '.'
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.kv-', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any):
        """Store a value and persist the file."""
        with self._lock:
            self._data[key] = value
            self._save()

    def remove(self, key: str) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
            self._save()
            return True

    def keys(self, prefix: Optional[str] = None) -> List[str]:
        with self._lock:
            if prefix is None:
                return list(self._data.keys())
            return [key for key in self._data if key.startswith(prefix)]

    def clear(self):
        with self._lock:
            self._data = {}
            self._save()

    def size_bytes(self, key: Optional[str] = None) -> int:
        """Approximate serialized size of one key or the whole store."""
        with self._lock:
            if key is not None:
                if key not in self._data:
                    return 0
                return len(json.dumps(self._data[key]))
            return len(json.dumps(self._data))
