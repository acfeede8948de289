"""Time-boxed key/value cache with stale-grace reads."""

import hashlib
import logging
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Iterable, List, Optional, TypeVar

from .config import CacheOptions, DEFAULT_CACHE_MAX_AGE, DEFAULT_CACHE_TTL
from .models import CacheEntry, StaleRead

logger = logging.getLogger(__name__)

T = TypeVar("T")


def make_fingerprint(*parts: object) -> str:
    """Deterministic SHA-256 digest of the given parts, used as a cache key."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(str(part).encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


class TTLCache(Generic[T]):
    """
    Map-backed cache whose entries go stale after ``ttl`` seconds and are
    evicted after ``max_age`` seconds.

    Between ``ttl`` and ``max_age`` an entry is still returned by ``get()`` so
    callers degrade gracefully when fresh data cannot be computed; use
    ``get_stale()`` to find out whether that happened.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CACHE_TTL,
        max_age: float = DEFAULT_CACHE_MAX_AGE,
        clock: Callable[[], float] = time.time,
        name: str = "cache",
        max_entries: Optional[int] = None,
    ):
        """
        Initialize the cache.

        Args:
            ttl: Seconds an entry is considered fresh.
            max_age: Seconds after which an entry is evicted. Must be >= ttl.
            clock: Time source returning seconds; injectable for tests.
            name: Label used in log messages and statistics.
            max_entries: Optional size limit; the oldest entry is dropped when full.

        Raises:
            ValueError: If ttl is negative, max_age < ttl or max_entries < 1.
        """
        CacheOptions(ttl=ttl, max_age=max_age).validate()
        if max_entries is not None and max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.ttl = ttl
        self.max_age = max_age
        self.name = name
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry[T]]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_options(
        cls,
        options: CacheOptions,
        clock: Callable[[], float] = time.time,
        name: str = "cache",
        max_entries: Optional[int] = None,
    ) -> "TTLCache":
        return cls(ttl=options.ttl, max_age=options.max_age, clock=clock, name=name, max_entries=max_entries)

    def set(self, key: Hashable, data: T, tags: Optional[Iterable[str]] = None) -> None:
        """Store data under key, replacing any previous entry."""
        now = self._clock()
        # Re-insert so order stays oldest-first
        self._entries.pop(key, None)
        if self.max_entries is not None and len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = CacheEntry(
            data=data,
            created_at=now,
            expires_at=now + self.ttl,
            tags=frozenset(tags) if tags else frozenset(),
        )

    def get(self, key: Hashable) -> Optional[T]:
        """
        Return the cached data, fresh or stale-but-usable.

        Returns:
            The data if the entry is within max_age, else None (and the entry
            is evicted).
        """
        now = self._clock()
        entry = self._read(key, now)
        if entry is None:
            self._misses += 1
            return None

        if now <= entry.expires_at or now <= entry.created_at + self.max_age:
            self._hits += 1
            return entry.data

        del self._entries[key]
        self._misses += 1
        logger.debug(f"[{self.name}] Evicted expired entry {str(key)[:16]}")
        return None

    def get_stale(self, key: Hashable) -> Optional[StaleRead[T]]:
        """Like get(), but also report whether the entry is past its ttl."""
        now = self._clock()
        entry = self._read(key, now)
        if entry is None:
            self._misses += 1
            return None

        age = now - entry.created_at
        if age > self.max_age:
            del self._entries[key]
            self._misses += 1
            return None

        self._hits += 1
        return StaleRead(data=entry.data, is_stale=now > entry.expires_at, age=age)

    def has(self, key: Hashable) -> bool:
        """Check whether a readable entry exists, without touching hit counters."""
        now = self._clock()
        entry = self._read(key, now)
        if entry is None:
            return False
        if now - entry.created_at > self.max_age:
            del self._entries[key]
            return False
        return True

    def __contains__(self, key: Hashable) -> bool:
        return self.has(key)

    def delete(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Remove every entry and reset hit/miss counters."""
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[Hashable]:
        return list(self._entries.keys())

    def cleanup(self) -> int:
        """
        Evict every entry older than max_age.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired_keys = [
            key for key, entry in self._entries.items()
            if not self._is_sane(entry, now) or now - entry.created_at > self.max_age
        ]
        for key in expired_keys:
            del self._entries[key]

        if expired_keys:
            logger.debug(f"[{self.name}] Cleanup evicted {len(expired_keys)} entries")
        return len(expired_keys)

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        """
        Evict every entry whose tag set intersects ``tags``.

        Returns:
            Number of entries removed.
        """
        tag_set = set(tags)
        if not tag_set:
            return 0

        affected = [key for key, entry in self._entries.items() if not tag_set.isdisjoint(entry.tags)]
        for key in affected:
            del self._entries[key]
        return len(affected)

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "name": self.name,
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
            "miss_rate": self._misses / total if total else 0.0,
            "ttl": self.ttl,
            "max_age": self.max_age,
        }

    def _read(self, key: Hashable, now: float) -> Optional[CacheEntry[T]]:
        """Fetch the raw entry, evicting it if it fails a sanity check."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._is_sane(entry, now):
            logger.warning(f"[{self.name}] Discarding corrupt cache entry {str(key)[:16]}")
            del self._entries[key]
            return None
        return entry

    @staticmethod
    def _is_sane(entry: object, now: float) -> bool:
        if not isinstance(entry, CacheEntry):
            return False
        # created_at in the future means the clock went backwards or the entry was tampered with
        return entry.created_at <= entry.expires_at and entry.created_at <= now
