"""Optional read-through cache for the target record listing."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .providers import TargetProvider
from .records import CanonicalRecord, ProviderRef

logger = logging.getLogger(__name__)

FRESHNESS_SECONDS = 300
EXPIRY_SECONDS = 3600


class JsonFileCache:
    """Small key/value cache persisted as one JSON document.

    Entries are {"timestamp": <epoch seconds>, "data": <value>}. Entries older
    than EXPIRY_SECONDS are treated as absent and pruned on the next write.
    I/O and decode errors propagate; callers decide whether they matter.
    """

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self._clock = clock

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        entries = json.loads(self.path.read_text("utf-8"))
        if not isinstance(entries, dict):
            raise ValueError(f"Cache file {self.path} does not contain an object")
        return entries

    def _save(self, entries: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(entries, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)

    def _expired(self, entry: Any, now: float) -> bool:
        if not isinstance(entry, dict):
            return True
        return now - float(entry.get("timestamp", 0)) > EXPIRY_SECONDS

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._load().get(key)
        if entry is None or self._expired(entry, self._clock()):
            return None
        return entry

    def put(self, key: str, data: Any) -> None:
        now = self._clock()
        entries = {k: v for k, v in self._load().items() if not self._expired(v, now)}
        entries[key] = {"timestamp": now, "data": data}
        self._save(entries)

    def invalidate(self, key: str) -> None:
        entries = self._load()
        if entries.pop(key, None) is not None:
            self._save(entries)


class CachedTarget(TargetProvider):
    """Target provider whose `fetch_all` reads through a JsonFileCache.

    Cache failures never fail a fetch; they only force a live request.
    Successful mutations drop the cached listing of the zone.
    """

    def __init__(
        self,
        target: TargetProvider,
        cache: JsonFileCache,
        freshness_seconds: float = FRESHNESS_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._target = target
        self._cache = cache
        self._freshness = freshness_seconds
        self._clock = clock

    @property
    def name(self) -> str:
        return self._target.name

    @property
    def zone(self) -> str:
        return self._target.zone

    @property
    def cache_key(self) -> str:
        return f"cloudns-records-{self.zone}"

    def test_connection(self) -> bool:
        return self._target.test_connection()

    def normalize(self, raw: Any) -> CanonicalRecord:
        return self._target.normalize(raw)

    def fetch_all(self) -> List[Dict[str, Any]]:
        try:
            entry = self._cache.get(self.cache_key)
            if entry is not None and self._clock() - float(entry["timestamp"]) <= self._freshness:
                logger.debug(f"Using cached {self.name} records for {self.zone}")
                return entry["data"]
        except Exception as e:
            logger.warning(f"Cache read failed for {self.cache_key}: {e}")

        records = self._target.fetch_all()
        try:
            self._cache.put(self.cache_key, records)
        except Exception as e:
            logger.warning(f"Cache write failed for {self.cache_key}: {e}")
        return records

    def _invalidate(self) -> None:
        try:
            self._cache.invalidate(self.cache_key)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {self.cache_key}: {e}")

    def add(self, record: CanonicalRecord) -> ProviderRef:
        ref = self._target.add(record)
        self._invalidate()
        return ref

    def update(self, ref: ProviderRef, record: CanonicalRecord) -> None:
        self._target.update(ref, record)
        self._invalidate()

    def delete(self, ref: ProviderRef) -> None:
        self._target.delete(ref)
        self._invalidate()
