import datetime
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from signbot.config import DEFAULT_PLANNING_CACHE_TTL

logger = logging.getLogger(__name__)

V = TypeVar("V")


class ReadWriteLock:
    """Any number of readers at once; a writer gets exclusive access"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TTLCache(Generic[V]):
    """
    In-memory cache whose entries go stale once older than `ttl` seconds.

    The clock is injectable so tests can move time without sleeping.
    """

    def __init__(self, ttl: float = DEFAULT_PLANNING_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._lock = ReadWriteLock()
        self._entries: Dict[Hashable, Tuple[float, V]] = {}

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock.read():
            entry = self._entries.get(key)
        if entry is None:
            return None
        captured_at, value = entry
        if self.clock() - captured_at > self.ttl:
            # Stale: the next put drops it
            return None
        return value

    def put(self, key: Hashable, value: V):
        with self._lock.write():
            self._entries[key] = (self.clock(), value)
            self._evict_stale()

    def invalidate(self, key: Hashable):
        with self._lock.write():
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def _evict_stale(self):
        # Caller holds the write lock
        now = self.clock()
        stale = [k for k, (captured_at, _) in self._entries.items() if now - captured_at > self.ttl]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Evicted {len(stale)} stale cache entries")


def planning_cache_key(user_id: str, day: datetime.date) -> Tuple[str, str]:
    return user_id, day.isoformat()
