"""Key/value persistence and the TTL cache built on it.

``KeyValueStore`` is the storage seam: string keys to string values, like
browser local storage. ``MemoryKeyValueStore`` backs tests and short-lived
processes; ``FileKeyValueStore`` keeps one JSON file per key on disk.

``TTLCache`` stores JSON ``CacheEntry`` values under
``{namespace}:{type}:{entity_id}`` keys. Expired or undecodable entries are
evicted on read and reported as absent.
"""

import hashlib
import json
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from marketsync.config.constants import CACHE_PREFIX
from marketsync.core.models import CacheEntry
from marketsync.utils.logging import get_logger


logger = get_logger("kv_cache")


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


def _hash(key: str) -> str:
    h = hashlib.sha256()
    h.update(key.encode())
    return h.hexdigest()


class FileKeyValueStore(KeyValueStore):
    """One file per key under ``directory``; file names are key hashes."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = Path(directory or os.getenv("MARKETSYNC_CACHE_DIR", ".cache/marketsync"))
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_hash(key)}.json"

    def get(self, key: str) -> Optional[str]:
        p = self._path(key)
        if not p.exists():
            return None
        try:
            return p.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            logger.warning("Evicting undecodable cache file %s: %s", p, exc)
            self.delete(key)
            return None
        except OSError as exc:
            logger.warning("Unreadable cache file %s: %s", p, exc)
            return None

    def put(self, key: str, value: str) -> None:
        p = self._path(key)
        tmp = p.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(p)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


class TTLCache:
    def __init__(
        self,
        store: KeyValueStore,
        namespace: str = CACHE_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.namespace = namespace
        self._clock = clock

    def cache_key(self, kind: str, entity_id: str) -> str:
        return f"{self.namespace}:{kind}:{entity_id}"

    def set(
        self,
        kind: str,
        entity_id: str,
        data: Any,
        ttl: float,
        meta: Optional[Dict[str, Any]] = None,
    ) -> CacheEntry:
        entry = CacheEntry(data=data, expires_at=self._clock() + ttl, meta=meta)
        key = self.cache_key(kind, entity_id)
        try:
            self.store.put(key, json.dumps(entry.to_dict()))
        except (OSError, TypeError, ValueError) as exc:
            # best-effort cache
            logger.warning("Could not persist cache entry %s: %s", key, exc)
        return entry

    def get(self, kind: str, entity_id: str) -> Optional[CacheEntry]:
        key = self.cache_key(kind, entity_id)
        try:
            raw = self.store.get(key)
            if raw is None:
                return None
            entry = CacheEntry.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Evicting corrupted cache entry %s: %s", key, exc)
            self.store.delete(key)
            return None
        if entry.is_expired(self._clock()):
            self.store.delete(key)
            return None
        return entry

    def invalidate(self, kind: str, entity_id: str) -> None:
        self.store.delete(self.cache_key(kind, entity_id))
