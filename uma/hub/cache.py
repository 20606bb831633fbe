"""Sharded in-memory TTL cache with soft/hard expiry and per-key sequencing."""

import asyncio
import logging
import threading
import time
import zlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from uma.hub.errors import CacheMiss, TelemetryError
from uma.hub.payloads import Envelope

logger = logging.getLogger(__name__)

# Deadline of an invalidated entry: past hard TTL at any clock reading
_EXPIRED = float("-inf")


@dataclass(frozen=True)
class CacheEntry:
    """Last-known state of one resource.

    Expiry deadlines are on the cache clock (monotonic seconds); fetched_at
    is wall-clock time of the last successful probe, for display only.
    """

    key: str
    payload: Any = None
    fetched_at: datetime | None = None
    soft_expires_at: float = 0.0
    hard_expires_at: float = 0.0
    stale: bool = True
    last_error: str | None = None
    error_type: str | None = None
    sequence: int = 0

    @property
    def has_value(self) -> bool:
        """True once any probe for this key has succeeded."""
        return self.fetched_at is not None

    def to_dict(self) -> dict[str, Any]:
        """Read-API shape: data plus stale/last_updated/last_error."""
        return {
            **Envelope.wrap(self.key, self.payload).model_dump(mode="json"),
            "stale": self.stale,
            "last_updated": self.fetched_at.isoformat() if self.fetched_at else None,
            "last_error": self.last_error,
            "error_type": self.error_type,
            "sequence": self.sequence,
        }


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: dict[str, CacheEntry] = {}


class TTLCache:
    """Keyed store of last-known values.

    Storage is split into independent shards, each guarding its own dict with
    its own lock, so a write to one resource never contends with reads of an
    unrelated one. Locks are never held across an await.
    """

    def __init__(self, shards: int = 16, clock: Callable[[], float] = time.monotonic):
        """Initialize cache.

        Args:
            shards: Number of independent shards
            clock: Monotonic time source used for expiry decisions
        """
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]
        self._clock = clock
        self._background: set[asyncio.Task] = set()
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._stale_hits = 0
        self._misses = 0
        self._refreshes = 0
        self._invalidations = 0

    def _shard(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def now(self) -> float:
        return self._clock()

    # ── Reads ───────────────────────────────────────────────────────────

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for key with staleness computed as of now."""
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.get(key)
        if entry is None:
            return None
        if not entry.stale and self._clock() > entry.soft_expires_at:
            return replace(entry, stale=True)
        return entry

    def keys(self) -> list[str]:
        keys: list[str] = []
        for shard in self._shards:
            with shard.lock:
                keys.extend(shard.entries)
        return sorted(keys)

    def __len__(self) -> int:
        return sum(len(s.entries) for s in self._shards)

    def __contains__(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return key in shard.entries

    # ── Writes ──────────────────────────────────────────────────────────

    def set(
        self,
        key: str,
        payload: Any,
        error: BaseException | None,
        soft_ttl: float,
        hard_ttl: float,
    ) -> CacheEntry:
        """Atomically overwrite the entry for key.

        On success the payload and both deadlines are replaced. On error the
        previous payload, fetched_at and deadlines are kept and the entry is
        marked stale with last_error set. The sequence number increases on
        every call.

        Returns:
            The entry as stored
        """
        if soft_ttl > hard_ttl:
            raise ValueError(f"soft_ttl ({soft_ttl}) must be <= hard_ttl ({hard_ttl})")

        now = self._clock()
        shard = self._shard(key)
        with shard.lock:
            previous = shard.entries.get(key)
            sequence = (previous.sequence if previous else 0) + 1
            if error is None:
                entry = CacheEntry(
                    key=key,
                    payload=payload,
                    fetched_at=datetime.now(tz=UTC),
                    soft_expires_at=now + soft_ttl,
                    hard_expires_at=now + hard_ttl,
                    stale=False,
                    sequence=sequence,
                )
            elif previous is not None:
                entry = replace(
                    previous,
                    stale=True,
                    last_error=str(error),
                    error_type=type(error).__name__,
                    sequence=sequence,
                )
            else:
                entry = CacheEntry(
                    key=key,
                    soft_expires_at=now,
                    hard_expires_at=now,
                    stale=True,
                    last_error=str(error),
                    error_type=type(error).__name__,
                    sequence=sequence,
                )
            shard.entries[key] = entry
        return entry

    def restore(
        self,
        key: str,
        payload: Any,
        fetched_at: datetime,
        sequence: int,
        hard_remaining: float,
    ) -> CacheEntry | None:
        """Seed an entry from a warm-start snapshot.

        Restored values are immediately soft-expired (served stale while the
        first probe runs) and keep only the hard-TTL budget left over from
        their original fetch. Existing entries are never overwritten.
        """
        if hard_remaining <= 0:
            return None
        now = self._clock()
        shard = self._shard(key)
        with shard.lock:
            if key in shard.entries:
                return None
            entry = CacheEntry(
                key=key,
                payload=payload,
                fetched_at=fetched_at,
                soft_expires_at=now,
                hard_expires_at=now + hard_remaining,
                stale=True,
                sequence=sequence,
            )
            shard.entries[key] = entry
        return entry

    def delete(self, key: str) -> bool:
        """Remove an entry. Only used when its resource is unregistered."""
        shard = self._shard(key)
        with shard.lock:
            return shard.entries.pop(key, None) is not None

    def invalidate(self, prefix: str) -> list[str]:
        """Expire every entry whose key starts with prefix.

        Entries stay in place with their payload and sequence; both deadlines
        move into the past, so the next read forces a refresh and a failed
        refresh surfaces as CacheMiss carrying the old value.

        Returns:
            Invalidated keys, sorted
        """
        if not prefix:
            raise ValueError("invalidation prefix must not be empty")
        invalidated = []
        for shard in self._shards:
            with shard.lock:
                for key, entry in shard.entries.items():
                    if key.startswith(prefix):
                        shard.entries[key] = replace(
                            entry, soft_expires_at=_EXPIRED, hard_expires_at=_EXPIRED, stale=True
                        )
                        invalidated.append(key)
        self._count("_invalidations", len(invalidated))
        if invalidated:
            logger.info("Invalidated %d cache entries with prefix '%s'", len(invalidated), prefix)
        return sorted(invalidated)

    # ── Read-through ────────────────────────────────────────────────────

    async def get_or_refresh(
        self,
        key: str,
        refresh: Callable[[], Awaitable[CacheEntry]],
        timeout: float | None = None,
    ) -> CacheEntry:
        """Serve key honouring the soft/hard expiry policy.

        - within soft TTL: return immediately
        - between soft and hard: return immediately, refresh in background
        - past hard TTL or absent: await refresh (bounded by timeout)

        Args:
            key: Resource key
            refresh: Coroutine function producing the refreshed entry; must be
                singleflight-guarded by the caller
            timeout: Upper bound on the synchronous wait, in seconds

        Raises:
            CacheMiss: No usable value and the refresh failed or timed out
        """
        entry = self.get(key)
        now = self._clock()

        if entry is not None and entry.has_value and now <= entry.hard_expires_at:
            if now <= entry.soft_expires_at:
                self._count("_hits")
            else:
                self._count("_stale_hits")
                self._refresh_in_background(key, refresh)
            return entry

        self._count("_misses")
        self._count("_refreshes")
        try:
            if timeout is None:
                refreshed = await refresh()
            else:
                async with asyncio.timeout(timeout):
                    refreshed = await refresh()
        except CacheMiss:
            raise
        except TimeoutError:
            current = self.get(key)
            raise CacheMiss(
                key,
                last_error=f"refresh did not complete within {timeout:.2f}s",
                entry=current,
            ) from None
        except TelemetryError as e:
            raise CacheMiss(key, last_error=str(e), entry=self.get(key)) from e

        if refreshed.last_error is not None:
            raise CacheMiss(key, last_error=refreshed.last_error, entry=refreshed)
        return refreshed

    def _refresh_in_background(self, key: str, refresh: Callable[[], Awaitable[CacheEntry]]):
        task = asyncio.create_task(refresh(), name=f"cache-refresh:{key}")
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background refresh %s failed: %s", task.get_name(), exc)

    async def close(self):
        """Cancel outstanding background refreshes."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Stats ───────────────────────────────────────────────────────────

    def _count(self, name: str, amount: int = 1):
        with self._stats_lock:
            setattr(self, name, getattr(self, name) + amount)

    def stats(self) -> dict[str, Any]:
        """Entry counts and read-path counters."""
        now = self._clock()
        entries = stale = errored = 0
        per_shard = []
        for shard in self._shards:
            with shard.lock:
                values = list(shard.entries.values())
            per_shard.append(len(values))
            for entry in values:
                entries += 1
                if entry.stale or now > entry.soft_expires_at:
                    stale += 1
                if entry.last_error:
                    errored += 1
        with self._stats_lock:
            hits, stale_hits, misses, refreshes = self._hits, self._stale_hits, self._misses, self._refreshes
            invalidations = self._invalidations
        total = hits + stale_hits + misses
        return {
            "entries": entries,
            "stale": stale,
            "errored": errored,
            "shards": len(self._shards),
            "shard_sizes": per_shard,
            "hits": hits,
            "stale_hits": stale_hits,
            "misses": misses,
            "sync_refreshes": refreshes,
            "invalidations": invalidations,
            "hit_rate": round((hits + stale_hits) / total * 100, 1) if total else 0.0,
        }
