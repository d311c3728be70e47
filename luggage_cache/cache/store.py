"""Capacity-bounded, category-partitioned store for AI responses.

The store keeps an in-memory index of every entry and mirrors each mutation
to a :class:`~luggage_cache.cache.persistence.CachePersistence` backend so the
cache survives restarts. Reads never touch the backend.

Expiry:
    An entry is expired from ``expires_at`` on. ``get`` treats expired entries
    as misses but does not delete them; removal happens through
    :meth:`CacheStore.clear_expired`, the periodic sweep, or eviction.

Eviction:
    After an insertion pushes the store over ``max_size_bytes`` (or
    ``max_entries``), expired entries are removed first, then live entries in
    ascending ``(created_at, sequence)`` order until the store fits. The entry
    that was just inserted is never evicted by its own insertion; an entry
    that alone exceeds the byte budget is rejected with
    :class:`~luggage_cache.errors.CacheEntryTooLarge`.

Persistence failures:
    ``put`` raises :class:`~luggage_cache.errors.CacheStoreIOError` and leaves
    the previous state untouched. Deletions and loads absorb backend failures
    and log them, so a broken disk degrades the cache to a miss, never to a
    crash.

Counters:
    Writes, evictions, expired removals, sweeps and freed bytes accumulate for
    the lifetime of the instance and are reported by :meth:`CacheStore.statistics`.
"""

import itertools
import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional, Union

from luggage_cache.cache.models import CacheCategory, CacheEntry, CacheStatistics
from luggage_cache.cache.persistence import (
    CachePersistence,
    InMemoryPersistence,
    JsonDirectoryPersistence,
    SQLitePersistence,
    decode_record,
    encode_record,
)
from luggage_cache.errors import CacheEntryTooLarge, CacheMiss, CacheStoreIOError

if TYPE_CHECKING:
    from luggage_cache.config import CacheConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE_BYTES = 50 * 1024 * 1024


def build_persistence(config: "CacheConfig") -> CachePersistence:
    """Instantiate the backend named by ``config.backend``.

    A backend that cannot be opened (corrupted database, unwritable directory)
    is replaced by an in-memory one so the application still starts with an
    empty cache.
    """
    if config.backend == "memory":
        return InMemoryPersistence()
    try:
        if config.backend == "json":
            return JsonDirectoryPersistence(config.path)
        return SQLitePersistence(config.path)
    except CacheStoreIOError as exc:
        logger.warning("Cache persistence unavailable, falling back to memory: %s", exc)
        return InMemoryPersistence()


class CacheStore:
    """Durable key -> CacheEntry mapping with TTL expiry and a size budget."""

    def __init__(
        self,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        max_entries: Optional[int] = None,
        persistence: Optional[CachePersistence] = None,
        clock: Callable[[], float] = time.time,
        ttl_overrides: Optional[Mapping[CacheCategory, float]] = None,
        compress_threshold: Optional[int] = None,
    ):
        if max_size_bytes <= 0:
            raise ValueError(f"max_size_bytes must be positive (received {max_size_bytes}).")
        if max_entries is not None and max_entries <= 0:
            raise ValueError(f"max_entries must be positive (received {max_entries}).")

        self.max_size_bytes = max_size_bytes
        self.max_entries = max_entries
        self.persistence = persistence if persistence is not None else InMemoryPersistence()
        self.compress_threshold = compress_threshold
        self._clock = clock
        self._ttl_overrides: Dict[CacheCategory, float] = dict(ttl_overrides or {})

        self._entries: Dict[str, CacheEntry] = {}
        self._total_size = 0
        self._sequence = itertools.count()
        self._lock = threading.RLock()

        self._writes = 0
        self._evictions = 0
        self._expired_removed = 0
        self._cleanup_runs = 0
        self._freed_bytes = 0
        self._last_cleanup_at: Optional[float] = None

        self._cleanup_thread: Optional[threading.Thread] = None
        self._cleanup_stop = threading.Event()

        self._load()

    @classmethod
    def from_config(
        cls,
        config: "CacheConfig",
        persistence: Optional[CachePersistence] = None,
        clock: Callable[[], float] = time.time,
    ) -> "CacheStore":
        return cls(
            max_size_bytes=config.max_size_bytes,
            max_entries=config.max_entries,
            persistence=persistence if persistence is not None else build_persistence(config),
            clock=clock,
            ttl_overrides=config.ttl_overrides,
            compress_threshold=config.compress_threshold,
        )

    # --- Startup ---

    def _load(self) -> None:
        try:
            records = self.persistence.read_all()
        except CacheStoreIOError as exc:
            logger.warning("Failed to load persisted cache, starting empty: %s", exc)
            return

        last_sequence = -1
        with self._lock:
            for key, data in records.items():
                try:
                    entry = decode_record(data)
                except CacheStoreIOError as exc:
                    logger.warning("Dropping cache record %s: %s", key, exc)
                    self._delete_persisted(key)
                    continue
                if entry.key != key:
                    logger.warning("Dropping cache record %s stored under a mismatched key.", key)
                    self._delete_persisted(key)
                    continue
                self._entries[key] = entry
                self._total_size += entry.size_bytes
                last_sequence = max(last_sequence, entry.sequence)

            self._sequence = itertools.count(last_sequence + 1)
            self._enforce_budget(protected_key=None, now=self._clock())

        if self._entries:
            logger.info(
                "Loaded %d cache entries (%d bytes) from persistence.",
                len(self._entries),
                self._total_size,
            )

    # --- Lookups ---

    def ttl_for(self, category: Union[str, CacheCategory]) -> float:
        category = CacheCategory.parse(category)
        return self._ttl_overrides.get(category, category.default_ttl)

    def lookup(self, key: str) -> CacheEntry:
        """Return the live entry for ``key`` or raise :class:`CacheMiss`."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                raise CacheMiss(key)
            return entry

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key``; expired or absent entries yield ``None``."""
        try:
            return self.lookup(key)
        except CacheMiss:
            return None

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self, category: Optional[Union[str, CacheCategory]] = None) -> List[str]:
        with self._lock:
            if category is None:
                return list(self._entries)
            category = CacheCategory.parse(category)
            return [key for key, entry in self._entries.items() if entry.category == category]

    @property
    def total_size_bytes(self) -> int:
        with self._lock:
            return self._total_size

    # --- Mutations ---

    def put(
        self,
        key: str,
        category: Union[str, CacheCategory],
        payload: bytes,
        ttl: Optional[float] = None,
    ) -> CacheEntry:
        """Insert or overwrite ``key``, evicting older entries if the budget is exceeded."""
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError(f"Cache payloads must be bytes (received {type(payload).__name__}).")
        category = CacheCategory.parse(category)
        payload = bytes(payload)
        ttl = self.ttl_for(category) if ttl is None else float(ttl)
        if ttl <= 0:
            raise ValueError(f"TTL must be greater than 0 (received {ttl}).")
        if len(payload) > self.max_size_bytes:
            raise CacheEntryTooLarge(key, len(payload), self.max_size_bytes)

        with self._lock:
            now = self._clock()
            entry = CacheEntry.create(key, category, payload, ttl, now, sequence=next(self._sequence))
            self.persistence.write_entry(key, encode_record(entry, self.compress_threshold))

            previous = self._entries.get(key)
            if previous is not None:
                self._total_size -= previous.size_bytes
            self._entries[key] = entry
            self._total_size += entry.size_bytes
            self._writes += 1

            self._enforce_budget(protected_key=key, now=now)
        return entry

    def clear_expired(self) -> int:
        """Remove every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            self._freed_bytes += self._remove_many(expired)
            self._expired_removed += len(expired)
            self._cleanup_runs += 1
            self._last_cleanup_at = now
        if expired:
            logger.info("Removed %d expired cache entries.", len(expired))
        return len(expired)

    def clear_category(self, category: Union[str, CacheCategory]) -> int:
        """Remove every entry of ``category``; other categories are untouched."""
        category = CacheCategory.parse(category)
        with self._lock:
            keys = [key for key, entry in self._entries.items() if entry.category == category]
            self._remove_many(keys)
        logger.info("Cleared %d entries from cache category %s.", len(keys), category.value)
        return len(keys)

    def clear_all(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._total_size = 0
            try:
                self.persistence.delete_all()
            except CacheStoreIOError as exc:
                logger.warning("Failed to clear persisted cache entries: %s", exc)
        logger.info("Cleared all %d cache entries.", removed)
        return removed

    def delete(self, key: str) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            self._remove_many([key])
            return True

    def _remove_many(self, keys: Iterable[str]) -> int:
        freed = 0
        for key in keys:
            entry = self._entries.pop(key, None)
            if entry is None:
                continue
            self._total_size -= entry.size_bytes
            freed += entry.size_bytes
            self._delete_persisted(key)
        return freed

    def _delete_persisted(self, key: str) -> None:
        try:
            self.persistence.delete_entry(key)
        except CacheStoreIOError as exc:
            logger.warning("Failed to delete persisted cache entry %s: %s", key, exc)

    def _over_budget(self) -> bool:
        if self._total_size > self.max_size_bytes:
            return True
        return self.max_entries is not None and len(self._entries) > self.max_entries

    def _enforce_budget(self, protected_key: Optional[str], now: float) -> None:
        if not self._over_budget():
            return

        evicted = 0
        expired = [
            key
            for key, entry in self._entries.items()
            if key != protected_key and entry.is_expired(now)
        ]
        self._freed_bytes += self._remove_many(expired)
        self._expired_removed += len(expired)
        evicted += len(expired)

        if self._over_budget():
            oldest_first = sorted(
                (entry for key, entry in self._entries.items() if key != protected_key),
                key=lambda entry: (entry.created_at, entry.sequence),
            )
            for entry in oldest_first:
                if not self._over_budget():
                    break
                self._freed_bytes += self._remove_many([entry.key])
                self._evictions += 1
                evicted += 1

        logger.info(
            "Evicted %d cache entries to respect the budget (%d/%d bytes, %d entries).",
            evicted,
            self._total_size,
            self.max_size_bytes,
            len(self._entries),
        )

    # --- Statistics ---

    def statistics(self) -> CacheStatistics:
        with self._lock:
            category_counts: Dict[str, int] = {}
            category_sizes: Dict[str, int] = {}
            for entry in self._entries.values():
                name = entry.category.value
                category_counts[name] = category_counts.get(name, 0) + 1
                category_sizes[name] = category_sizes.get(name, 0) + entry.size_bytes
            return CacheStatistics(
                total_entries=len(self._entries),
                total_size_bytes=self._total_size,
                max_size_bytes=self.max_size_bytes,
                category_counts=category_counts,
                category_sizes=category_sizes,
                writes=self._writes,
                evictions=self._evictions,
                expired_removed=self._expired_removed,
                cleanup_runs=self._cleanup_runs,
                freed_bytes=self._freed_bytes,
                last_cleanup_at=self._last_cleanup_at,
            )

    # --- Background maintenance ---

    def start_periodic_cleanup(self, interval_seconds: float) -> None:
        """Sweep expired entries every ``interval_seconds`` on a daemon thread."""
        if interval_seconds <= 0:
            return
        with self._lock:
            if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
                return
            self._cleanup_stop = threading.Event()
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop,
                args=(interval_seconds, self._cleanup_stop),
                name="ai-cache-cleanup",
                daemon=True,
            )
            self._cleanup_thread.start()

    def stop_periodic_cleanup(self) -> None:
        self._cleanup_stop.set()
        thread = self._cleanup_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        self._cleanup_thread = None

    def _cleanup_loop(self, interval_seconds: float, stop: threading.Event) -> None:
        while not stop.wait(interval_seconds):
            try:
                self.clear_expired()
                with self._lock:
                    self._enforce_budget(protected_key=None, now=self._clock())
            except Exception as exc:
                logger.warning("Periodic cache cleanup failed: %s", exc)

    def close(self) -> None:
        self.stop_periodic_cleanup()
        self.persistence.close()
