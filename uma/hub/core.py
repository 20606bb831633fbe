"""UMA Hub - Core orchestration of probes, cache and event delivery."""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from uma.hub.cache import CacheEntry, TTLCache
from uma.hub.changes import ChangeDetector
from uma.hub.collector import Collector, ProbeRegistration
from uma.hub.config import HubConfig, OverflowPolicy
from uma.hub.errors import UnknownResource
from uma.hub.events import EventHub, Subscription
from uma.hub.probe import FunctionProbe, Probe, ProbeExecutor
from uma.hub.snapshot import SnapshotStore
from uma.hub.subscribers import SubscriberRegistry

logger = logging.getLogger(__name__)


class TelemetryHub:
    """Central hub wiring probes, cache, change detection and subscribers.

    Every component is constructed here and injected into the next; there
    is no module-level state.
    """

    def __init__(self, config: HubConfig | None = None, clock: Callable[[], float] = time.monotonic):
        """Initialize telemetry hub.

        Args:
            config: Hub configuration (defaults for everything if omitted)
            clock: Monotonic time source for cache expiry
        """
        self.config = config or HubConfig()
        self.cache = TTLCache(shards=self.config.cache_shards, clock=clock)
        self.events = EventHub(
            buffer_size=self.config.events.buffer_size,
            overflow_policy=self.config.events.overflow_policy,
        )
        self.detector = ChangeDetector(self.events, window=self.config.events.debounce_window)
        self.executor = ProbeExecutor(self.config.collector.max_concurrency)
        self.collector = Collector(
            self.cache,
            self.detector,
            executor=self.executor,
            config=self.config.collector,
            ttl_for=self.config.ttl_for,
        )
        self.registry = SubscriberRegistry(self.events)
        self.snapshots = SnapshotStore(str(self.config.snapshot_path)) if self.config.snapshot_path else None
        self.tasks: set[asyncio.Task] = set()
        self._running = False
        self._start_time: datetime | None = None
        self._request_count: int = 0
        self.logger = logging.getLogger("hub")

    async def initialize(self):
        """Restore the warm-start snapshot and start collection."""
        self.logger.info("Initializing UMA Hub...")
        self._running = True

        if self.snapshots is not None:
            try:
                await self.snapshots.initialize()
                restored = await self._restore_snapshot()
                self.logger.info("Restored %d cached value(s) from snapshot", restored)
            except Exception as e:
                self.logger.warning("Failed to restore snapshot, starting cold: %s", e)

            await self.schedule_task(
                "persist_snapshot",
                self._persist_snapshot,
                interval=timedelta(seconds=self.config.snapshot_interval),
                run_immediately=False,
            )

        self.collector.start()
        self._start_time = datetime.now(tz=UTC)
        self.logger.info("Hub initialized successfully")

    async def shutdown(self):
        """Cancel probes, drain subscribers and persist the snapshot."""
        self.logger.info("Shutting down UMA Hub...")
        self._running = False

        await self.collector.close()
        self.detector.flush_all()

        await self.registry.shutdown(grace=self.config.events.drain_grace)
        self.events.close(drain=True)
        self.detector.close()

        # Cancel all running tasks
        for task in self.tasks:
            if not task.done():
                task.cancel()

        # Wait for tasks to complete
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        await self.cache.close()

        if self.snapshots is not None:
            try:
                await self._persist_snapshot()
            except Exception as e:
                self.logger.error(f"Error saving snapshot: {e}")
            await self.snapshots.close()

        self.logger.info("Hub shutdown complete")

    # ── Probes ──────────────────────────────────────────────────────────

    def register_probe(
        self,
        key: str,
        probe: Probe | Callable[[], Any],
        interval: float | None = None,
        timeout: float | None = None,
        soft_ttl: float | None = None,
        hard_ttl: float | None = None,
        topic: str | None = None,
        kind: str = "generic",
    ) -> ProbeRegistration:
        """Register a probe for a resource key.

        Args:
            key: Resource key, e.g. ``docker.container.abc``
            probe: Probe instance, or a plain sync/async callable
            interval: Polling interval in seconds
            timeout: Per-call deadline in seconds
            soft_ttl: Override of the kind's soft TTL
            hard_ttl: Override of the kind's hard TTL
            topic: Pin the change topic (default: from key namespace)
            kind: Resource kind when probe is a plain callable
        """
        if not isinstance(probe, Probe):
            probe = FunctionProbe(probe, kind=kind)
        return self.collector.register(
            key,
            probe,
            interval=interval,
            timeout=timeout,
            soft_ttl=soft_ttl,
            hard_ttl=hard_ttl,
            topic=topic,
        )

    def unregister_probe(self, key: str) -> bool:
        """Stop probing key. Its last value ages out of the cache."""
        return self.collector.unregister(key)

    # ── Reads ───────────────────────────────────────────────────────────

    async def query(self, key: str, timeout: float | None = None) -> CacheEntry:
        """Point read of one resource.

        Refreshes synchronously only when the cached value is past its hard
        TTL (or absent).

        Raises:
            UnknownResource: Key is not registered and nothing usable is cached
            CacheMiss: No usable value and the forced refresh failed
        """
        if key not in self.collector:
            entry = self.cache.get(key)
            if entry is not None and entry.has_value and self.cache.now() <= entry.hard_expires_at:
                return entry
            self.cache.delete(key)
            raise UnknownResource(key)

        return await self.cache.get_or_refresh(key, lambda: self.collector.run_once(key), timeout=timeout)

    async def refresh(self, key: str) -> CacheEntry:
        """Probe key now regardless of TTL (singleflight-guarded)."""
        return await self.collector.run_once(key)

    def list_entries(self) -> list[CacheEntry]:
        """Cached entries for every known key, without refreshing."""
        return [entry for key in self.cache.keys() if (entry := self.cache.get(key)) is not None]

    async def invalidate(self, prefix: str, refresh: bool = False) -> list[str]:
        """Expire every cached value whose key starts with prefix.

        Used when an external action (container restart, array stop) makes
        cached state wrong before its TTL runs out. Invalidated values are
        kept but no longer served; the next read probes again.

        Args:
            prefix: Key prefix, e.g. ``docker.`` or ``storage.disk.``
            refresh: Probe the invalidated registered keys now

        Returns:
            Invalidated keys
        """
        keys = self.cache.invalidate(prefix)
        if refresh:
            registered = [key for key in keys if key in self.collector]
            await asyncio.gather(*(self.collector.run_once(key) for key in registered))
        return keys

    # ── Subscriptions ───────────────────────────────────────────────────

    def subscribe(
        self,
        topics: list[str] | tuple[str, ...],
        capacity: int | None = None,
        policy: OverflowPolicy | None = None,
    ) -> Subscription:
        """Open an in-process event subscription."""
        return self.events.subscribe(topics, capacity=capacity, policy=policy)

    def unsubscribe(self, subscription_id: str) -> bool:
        """Release a subscription's resources."""
        return self.events.unsubscribe(subscription_id)

    # ── Tasks ───────────────────────────────────────────────────────────

    async def schedule_task(
        self, task_id: str, coro: Callable, interval: timedelta | None = None, run_immediately: bool = True
    ):
        """Schedule a task to run periodically.

        Args:
            task_id: Unique task identifier
            coro: Async coroutine to run
            interval: Run interval (None = run once)
            run_immediately: If True, run immediately then schedule
        """

        async def run_task():
            self.logger.info(f"Task {task_id}: starting")

            if run_immediately:
                try:
                    await coro()
                except Exception as e:
                    self.logger.error(f"Task {task_id} error: {e}")

            if interval:
                while self._running:
                    await asyncio.sleep(interval.total_seconds())
                    try:
                        await coro()
                    except Exception as e:
                        self.logger.error(f"Task {task_id} error: {e}")

        task = asyncio.create_task(run_task())
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

        self.logger.info(f"Scheduled task: {task_id}" + (f" (interval: {interval})" if interval else " (one-time)"))

    async def _persist_snapshot(self):
        now = self.cache.now()
        saved = await self.snapshots.save([e for e in self.list_entries() if now <= e.hard_expires_at])
        self.logger.debug("Saved %d cached value(s) to snapshot", saved)

    async def _restore_snapshot(self) -> int:
        now = datetime.now(tz=UTC)
        restored = 0
        for row in await self.snapshots.load():
            reg = self.collector.get_registration(row["key"])
            if reg is None:
                continue
            age = (now - row["fetched_at"]).total_seconds()
            if self.cache.restore(row["key"], row["payload"], row["fetched_at"], row["sequence"], reg.ttl.hard_ttl - age):
                restored += 1
        return restored

    # ── Status ──────────────────────────────────────────────────────────

    def is_running(self) -> bool:
        """Check if hub is running.

        Returns:
            True if hub is running
        """
        return self._running

    def get_uptime_seconds(self) -> float:
        """Get hub uptime in seconds."""
        if self._start_time is None:
            return 0.0
        return (datetime.now(tz=UTC) - self._start_time).total_seconds()

    async def health_check(self) -> dict[str, Any]:
        """Perform health check on hub and probes.

        A hub with some stale or failing probes is still "ok"; it reports
        "degraded" only when every registered probe is currently failing.

        Returns:
            Health check results
        """
        probes = {}
        failing = 0
        for key in self.collector.keys():
            entry = self.cache.get(key)
            if entry is None:
                probes[key] = {"status": "pending"}
                continue
            if entry.last_error:
                failing += 1
            probes[key] = {
                "status": "error" if entry.last_error else ("stale" if entry.stale else "ok"),
                "last_updated": entry.fetched_at.isoformat() if entry.fetched_at else None,
                "last_error": entry.last_error,
            }

        if not self._running:
            status = "stopped"
        elif probes and failing == len(probes):
            status = "degraded"
        else:
            status = "ok"

        return {
            "status": status,
            "uptime_seconds": round(self.get_uptime_seconds()),
            "probes": probes,
            "subscriptions": len(self.events.list_subscriptions()),
            "connections": len(self.registry.connections),
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }

    def stats(self) -> dict[str, Any]:
        return {
            "requests": self._request_count,
            "cache": self.cache.stats(),
            "collector": self.collector.stats(),
            "changes": self.detector.stats(),
            "events": self.events.stats(),
            "subscribers": self.registry.stats(),
        }
