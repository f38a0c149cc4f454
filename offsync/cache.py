"""Read-through, write-through cache backed by the durable store.

Online reads always go to the network and refresh the stored snapshot.
The snapshot is served when offline, or as a stale-but-available fallback
when a fresh fetch fails.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from .connectivity import ConnectivityMonitor
from .errors import NoCachedData, StoreError
from .store import DurableStore, decode_record, encode_record

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache:"

Fetcher = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    """Last known payload for a cache key."""

    key: str
    payload: Any
    stored_at: datetime
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "key": self.key,
            "payload": self.payload,
            "stored_at": self.stored_at.isoformat(),
            "stale": self.stale,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        """Create from dictionary."""
        return cls(
            key=data["key"],
            payload=data["payload"],
            stored_at=datetime.fromisoformat(data["stored_at"]),
            stale=data.get("stale", False),
        )


class ReadSource(str, Enum):
    NETWORK = "network"
    CACHE = "cache"


@dataclass(frozen=True)
class ReadResult:
    """Outcome of a cached read."""

    payload: Any
    source: ReadSource
    stored_at: datetime | None = None
    stale: bool = False

    @property
    def from_cache(self) -> bool:
        return self.source == ReadSource.CACHE


class ReadThroughCache:
    """Cache wrapping remote fetch operations."""

    def __init__(self, store: DurableStore, monitor: ConnectivityMonitor):
        self._store = store
        self._monitor = monitor

    @staticmethod
    def _storage_key(key: str) -> str:
        return f"{CACHE_PREFIX}{key}"

    async def read(self, key: str, fetch: Fetcher, use_cache: bool = True) -> Any:
        """Read through the cache and return the payload.

        Args:
            key: Cache key for the logical query.
            fetch: Coroutine function returning a fresh payload.
            use_cache: Whether the stored snapshot may be served.

        Returns:
            Fresh payload when online and the fetch succeeds, otherwise the
            stored snapshot.

        Raises:
            NoCachedData: Offline with no usable snapshot.
            Exception: Whatever ``fetch`` raised, when online with no usable
                snapshot.
        """
        result = await self.read_detailed(key, fetch, use_cache=use_cache)
        return result.payload

    async def read_detailed(
        self, key: str, fetch: Fetcher, use_cache: bool = True
    ) -> ReadResult:
        """Same as ``read()`` but reports where the payload came from."""
        if not self._monitor.is_online:
            entry = self.get_entry(key) if use_cache else None
            if entry is None:
                raise NoCachedData(key)
            logger.debug(f"Serving cached '{key}' (offline)")
            return ReadResult(
                payload=entry.payload,
                source=ReadSource.CACHE,
                stored_at=entry.stored_at,
                stale=entry.stale,
            )

        try:
            payload = await fetch()
        except Exception as e:
            entry = self.get_entry(key) if use_cache else None
            if entry is None:
                raise
            logger.warning(f"Fetch for '{key}' failed ({e}), serving cached data")
            return ReadResult(
                payload=entry.payload,
                source=ReadSource.CACHE,
                stored_at=entry.stored_at,
                stale=entry.stale,
            )

        try:
            entry = self.put(key, payload)
        except (StoreError, TypeError) as e:
            logger.warning(f"Could not cache '{key}': {e}")
            return ReadResult(payload=payload, source=ReadSource.NETWORK)

        return ReadResult(
            payload=payload,
            source=ReadSource.NETWORK,
            stored_at=entry.stored_at,
        )

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the stored entry for key, or None."""
        raw = self._store.get(self._storage_key(key))
        if raw is None:
            return None
        try:
            return CacheEntry.from_dict(decode_record(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry '{key}': {e}")
            return None

    def put(self, key: str, payload: Any) -> CacheEntry:
        """Store payload under key, replacing any previous entry.

        Payloads may be JSON values or bytes, nested at any depth.

        Raises:
            TypeError: The payload holds a value that cannot be stored.
        """
        entry = CacheEntry(key=key, payload=payload, stored_at=datetime.now())
        self._store.set(
            self._storage_key(key), encode_record(entry.to_dict())
        )
        logger.debug(f"Cached '{key}'")
        return entry

    def invalidate(self, key: str) -> bool:
        """Mark an entry stale. It stays available as an offline fallback.

        Returns:
            True if an entry existed.
        """
        entry = self.get_entry(key)
        if entry is None:
            return False

        entry.stale = True
        self._store.set(
            self._storage_key(key), encode_record(entry.to_dict())
        )
        logger.debug(f"Invalidated '{key}'")
        return True

    def evict(self, key: str) -> None:
        """Remove an entry entirely."""
        self._store.delete(self._storage_key(key))

    def keys(self) -> list[str]:
        """List cached keys."""
        return [
            k[len(CACHE_PREFIX):]
            for k in self._store.list_keys_with_prefix(CACHE_PREFIX)
        ]

    def clear(self) -> int:
        """Remove all entries.

        Returns:
            Number of entries removed.
        """
        keys = self.keys()
        for key in keys:
            self.evict(key)
        logger.info(f"Cleared cache ({len(keys)} entries)")
        return len(keys)

    def age(self, key: str) -> float | None:
        """Seconds since the entry was stored, or None if absent."""
        entry = self.get_entry(key)
        if entry is None:
            return None
        return (datetime.now() - entry.stored_at).total_seconds()

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        entries = [e for e in (self.get_entry(k) for k in self.keys()) if e]
        return {
            "total_entries": len(entries),
            "stale_entries": sum(1 for e in entries if e.stale),
            "oldest": min((e.stored_at for e in entries), default=None),
        }
