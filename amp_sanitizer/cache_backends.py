"""
Key-value collaborators for the response cache and the validation error store.

Hosts can plug in their own store (object cache, Redis, a database table)
by implementing CacheBackend.  Values are JSON-compatible dicts and lists.

Bundled backends:
- InMemoryCacheBackend: per-process dict, for tests and single-process use
- FileCacheBackend: one JSON file per key, easy to inspect and edit by hand

Backends raise CacheBackendError when the store is unavailable; callers
decide whether that is fatal (the response cache treats it as a miss).
"""

import hashlib
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .exceptions import CacheBackendError
from .logger import get_module_logger

logger = get_module_logger("cache_backends")


class CacheBackend(ABC):
    """Minimal key-value store: read-then-write, no transactions."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Stored value, or None when the key is unknown."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Returns True if the key existed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        pass

    def clear(self, prefix: str = "") -> int:
        """Delete every key starting with `prefix`. Returns count deleted."""
        count = 0
        for key in self.keys(prefix):
            if self.delete(key):
                count += 1
        return count


class InMemoryCacheBackend(CacheBackend):

    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        # Stored serialized so callers never share mutable state with the store
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheBackendError(f"Value for '{key}' is not serializable: {e}", operation="set")

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._data if key.startswith(prefix))


class FileCacheBackend(CacheBackend):
    """
    File-based store.

    Each key is a JSON file in `cache_dir`, named by the hash of the key
    (keys are URLs and fingerprints, not safe file names).  The key itself is
    stored inside the file so keys() can list them.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        """
        Args:
            cache_dir: Directory to store cache files.
                      Defaults to ./amp_cache/
        """
        if cache_dir is None:
            cache_dir = Path.cwd() / "amp_cache"

        self.cache_dir = Path(cache_dir)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheBackendError(f"Cannot create cache directory {self.cache_dir}: {e}", operation="init")

        logger.info(f"File cache initialized at: {self.cache_dir}")

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{hashlib.md5(key.encode('utf-8')).hexdigest()}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CacheBackendError(f"Failed to read cache file {path.name}: {e}", operation="get")
        return data.get("value")

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        data = {
            "key": key,
            "updated_at": datetime.now().isoformat(),
            "value": value,
        }
        try:
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            raise CacheBackendError(f"Failed to write cache file {path.name}: {e}", operation="set")

    def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            if path.exists():
                path.unlink()
                return True
        except OSError as e:
            raise CacheBackendError(f"Failed to delete cache file {path.name}: {e}", operation="delete")
        return False

    def keys(self, prefix: str = "") -> list[str]:
        keys = []
        for path in sorted(self.cache_dir.glob("*.json")):
            try:
                key = json.loads(path.read_text(encoding="utf-8")).get("key")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable cache file {path.name}: {e}")
                continue
            if key and key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
