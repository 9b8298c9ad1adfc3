"""
Turn caches

In-memory TTL caches for retrieval outcomes and finished answers. Keys are
SHA-256 digests of a canonical JSON payload, so the same question asked with
the same settings always maps to the same entry regardless of key order.
"""
from collections import OrderedDict
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar
import hashlib
import json
import logging
import time

logger = logging.getLogger(__name__)

T = TypeVar("T")


def hash_payload(payload: Any) -> str:
    """Stable digest: object keys sorted, sequences kept in order"""
    text = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TTLCache(Generic[T]):
    """
    Expiring LRU map

    A ``ttl_seconds`` of zero or less disables the cache: ``get`` always
    misses and ``set`` stores nothing. Expired entries are dropped on read.
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        max_size: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, T]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, key: str) -> Optional[T]:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: str, value: T) -> None:
        if not self.enabled:
            return
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"{self.name} cache full, evicted {evicted[:12]}")
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
