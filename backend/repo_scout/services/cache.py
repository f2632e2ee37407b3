import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Protocol, Tuple

from loguru import logger

from ..config import Settings, get_settings
from ..schemas import PipelineRun


def cache_key(query: str, mode: str) -> str:
    return f"{query.lower().strip()}:{mode}"


class ResultStore(Protocol):
    def get(self, key: str) -> Optional[PipelineRun]:
        ...

    def set(self, key: str, run: PipelineRun) -> None:
        ...

    def evict(self, key: str) -> bool:
        ...

    def clear(self) -> None:
        ...


class InMemoryCache:
    """LRU bounded by entry count; each entry expires ``ttl`` seconds after its last read or write."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or get_settings()
        self.max_entries = max_entries if max_entries is not None else settings.cache_max_entries
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds
        self.clock = clock
        self.store: "OrderedDict[str, Tuple[float, PipelineRun]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[PipelineRun]:
        with self._lock:
            entry = self.store.get(key)
            now = self.clock()
            if entry is None or now >= entry[0]:
                if entry is not None:
                    self.store.pop(key, None)
                self.misses += 1
                return None
            _, run = entry
            self.store[key] = (now + self.ttl, run)
            self.store.move_to_end(key)
            self.hits += 1
        return run.model_copy(update={"cached": True})

    def set(self, key: str, run: PipelineRun) -> None:
        with self._lock:
            self.store[key] = (self.clock() + self.ttl, run)
            self.store.move_to_end(key)
            while len(self.store) > self.max_entries:
                evicted, _ = self.store.popitem(last=False)
                logger.debug(f"[Cache] evicted {evicted}")

    def evict(self, key: str) -> bool:
        with self._lock:
            return self.store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self.store.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> Dict[str, object]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self.store),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
            }
