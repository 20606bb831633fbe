"""Probe scheduling, singleflight refresh and result folding.

The collector is the only writer of cache entries. Each registered key has
its own polling loop; on-demand refreshes (run_once) and polling share the
same in-flight task, so at most one probe call per key is ever running.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from uma.hub.adaptive import AdaptiveIntervals
from uma.hub.cache import CacheEntry, TTLCache
from uma.hub.changes import ChangeDetector
from uma.hub.config import DEFAULT_TTL_POLICIES, CollectorConfig, TTLPolicy
from uma.hub.constants import default_topic
from uma.hub.errors import UnknownResource
from uma.hub.probe import Probe, ProbeExecutor, ProbeJob, ProbeResult

logger = logging.getLogger(__name__)


@dataclass
class ProbeRegistration:
    """A recurring probe job for one resource key."""

    key: str
    probe: Probe
    interval: float
    timeout: float
    ttl: TTLPolicy
    topic: str

    def info(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "probe": self.probe.describe(),
            "kind": self.probe.kind,
            "interval": self.interval,
            "timeout": self.timeout,
            "soft_ttl": self.ttl.soft_ttl,
            "hard_ttl": self.ttl.hard_ttl,
            "topic": self.topic,
        }


class Collector:
    """Owns registered probes and folds their results into the cache."""

    def __init__(
        self,
        cache: TTLCache,
        detector: ChangeDetector,
        executor: ProbeExecutor | None = None,
        config: CollectorConfig | None = None,
        ttl_for: Callable[[str], TTLPolicy] | None = None,
    ):
        """Initialize collector.

        Args:
            cache: Cache the results are written into
            detector: Receives every successful update
            executor: Shared bounded probe executor
            config: Scheduling defaults
            ttl_for: Maps a probe kind to its default TTL policy
        """
        self.cache = cache
        self.detector = detector
        self.config = config or CollectorConfig()
        self.executor = executor or ProbeExecutor(self.config.max_concurrency)
        self.adaptive = AdaptiveIntervals(self.config.error_backoff_threshold, self.config.max_backoff_interval)
        self._ttl_for = ttl_for or (lambda kind: DEFAULT_TTL_POLICIES.get(kind, DEFAULT_TTL_POLICIES["generic"]))
        self._registrations: dict[str, ProbeRegistration] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._loops: dict[str, asyncio.Task] = {}
        self._running = False
        self.probe_calls = 0
        self.attached = 0

    # ── Registration ────────────────────────────────────────────────────

    def register(
        self,
        key: str,
        probe: Probe,
        interval: float | None = None,
        timeout: float | None = None,
        soft_ttl: float | None = None,
        hard_ttl: float | None = None,
        topic: str | None = None,
    ) -> ProbeRegistration:
        """Add a recurring probe job.

        TTLs default to the policy for the probe's kind; topic defaults to
        the key namespace's topic.

        Raises:
            ValueError: Key already registered, or invalid TTL/timeout
        """
        if key in self._registrations:
            raise ValueError(f"Probe for {key} already registered")

        policy = self._ttl_for(probe.kind)
        if soft_ttl is not None or hard_ttl is not None:
            soft = soft_ttl if soft_ttl is not None else policy.soft_ttl
            policy = TTLPolicy(soft, hard_ttl if hard_ttl is not None else max(soft, policy.hard_ttl))

        timeout = timeout if timeout is not None else self.config.default_timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        reg = ProbeRegistration(
            key=key,
            probe=probe,
            interval=interval if interval is not None else self.config.default_interval,
            timeout=timeout,
            ttl=policy,
            topic=topic or default_topic(key),
        )
        self._registrations[key] = reg
        logger.info("Registered probe %s (%s, every %.1fs, timeout %.1fs)", key, probe.describe(), reg.interval, timeout)

        if self._running:
            self._start_loop(reg)
        return reg

    def unregister(self, key: str) -> bool:
        """Remove a probe job. Its cache entry is left to age out."""
        reg = self._registrations.pop(key, None)
        if reg is None:
            return False
        loop_task = self._loops.pop(key, None)
        if loop_task is not None:
            loop_task.cancel()
        self.adaptive.forget(key)
        self.detector.forget(key)
        logger.info("Unregistered probe %s", key)
        return True

    def get_registration(self, key: str) -> ProbeRegistration | None:
        return self._registrations.get(key)

    def keys(self) -> list[str]:
        return sorted(self._registrations)

    def __contains__(self, key: str) -> bool:
        return key in self._registrations

    # ── Refresh ─────────────────────────────────────────────────────────

    async def run_once(self, key: str) -> CacheEntry:
        """Fetch key now, attaching to an in-flight fetch if there is one.

        The shared fetch is shielded: cancelling one waiter never cancels
        the probe call other waiters depend on.

        Raises:
            UnknownResource: No probe is registered for key
        """
        inflight = self._inflight.get(key)
        if inflight is not None:
            self.attached += 1
            return await asyncio.shield(inflight)

        reg = self._registrations.get(key)
        if reg is None:
            raise UnknownResource(key)

        task = asyncio.create_task(self._refresh(reg), name=f"refresh:{key}")
        self._track(key, task)
        return await asyncio.shield(task)

    def _track(self, key: str, future: asyncio.Future):
        self._inflight[key] = future

        def _done(f: asyncio.Future):
            if self._inflight.get(key) is f:
                del self._inflight[key]
            if not f.cancelled() and f.exception() is not None:
                logger.error("Refresh of %s failed: %s", key, f.exception())

        future.add_done_callback(_done)

    async def _refresh(self, reg: ProbeRegistration) -> CacheEntry:
        previous = self.cache.get(reg.key)
        self.probe_calls += 1
        result = await self.executor.run(reg.key, reg.probe, reg.timeout)
        return self._fold(reg, previous, result)

    def _fold(self, reg: ProbeRegistration, previous: CacheEntry | None, result: ProbeResult) -> CacheEntry:
        entry = self.cache.set(reg.key, result.payload, result.error, reg.ttl.soft_ttl, reg.ttl.hard_ttl)
        if result.ok:
            self.adaptive.record_success(reg.key)
            old = previous.payload if previous is not None and previous.has_value else None
            self.detector.observe(reg.key, reg.topic, old, result.payload)
            logger.debug("Probe %s ok in %.3fs (seq %d)", reg.key, result.duration, entry.sequence)
        else:
            self.adaptive.record_error(reg.key)
            logger.warning("Probe %s failed after %.3fs: %s", reg.key, result.duration, result.error)
        return entry

    async def collect_all(self) -> dict[str, CacheEntry]:
        """Probe every registered key concurrently.

        Results are folded into the cache in completion order, so a hung
        probe only delays its own key. Keys already being refreshed attach
        to the in-flight fetch instead of probing twice.

        Returns:
            Resulting entry per key
        """
        loop = asyncio.get_running_loop()
        entries: dict[str, CacheEntry] = {}
        attached: dict[str, asyncio.Future] = {}
        batch: dict[str, tuple[ProbeRegistration, asyncio.Future, CacheEntry | None]] = {}
        jobs: list[ProbeJob] = []

        for reg in list(self._registrations.values()):
            inflight = self._inflight.get(reg.key)
            if inflight is not None:
                attached[reg.key] = inflight
                continue
            future = loop.create_future()
            self._track(reg.key, future)
            batch[reg.key] = (reg, future, self.cache.get(reg.key))
            jobs.append(ProbeJob(reg.key, reg.probe, reg.timeout))

        self.probe_calls += len(jobs)
        try:
            async for result in self.executor.run_many(jobs):
                reg, future, previous = batch[result.key]
                entry = self._fold(reg, previous, result)
                entries[result.key] = entry
                future.set_result(entry)
        finally:
            for _, future, _ in batch.values():
                if not future.done():
                    future.cancel()

        if attached:
            results = await asyncio.gather(*(asyncio.shield(f) for f in attached.values()), return_exceptions=True)
            for key, result in zip(attached, results, strict=True):
                if isinstance(result, CacheEntry):
                    entries[key] = result

        logger.debug("Collected %d probe(s)", len(entries))
        return entries

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self):
        """Launch one polling loop per registered probe."""
        if self._running:
            return
        self._running = True
        for reg in self._registrations.values():
            self._start_loop(reg)
        logger.info("Collector started with %d probe(s)", len(self._registrations))

    def _start_loop(self, reg: ProbeRegistration):
        task = asyncio.create_task(self._poll(reg.key), name=f"poll:{reg.key}")
        self._loops[reg.key] = task
        task.add_done_callback(lambda t, key=reg.key: self._loops.pop(key, None) if self._loops.get(key) is t else None)

    async def _poll(self, key: str):
        while self._running:
            reg = self._registrations.get(key)
            if reg is None:
                return
            try:
                await self.run_once(key)
            except UnknownResource:
                return
            except Exception as e:
                logger.error("Polling %s error: %s", key, e)
            await asyncio.sleep(self.adaptive.interval_for(key, reg.interval))

    async def stop(self):
        """Cancel polling loops and every in-flight probe."""
        self._running = False
        pending = list(self._loops.values()) + list(self._inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._loops.clear()
        self._inflight.clear()
        logger.info("Collector stopped")

    async def close(self):
        """Stop and release probe resources."""
        await self.stop()
        for reg in self._registrations.values():
            try:
                await reg.probe.close()
            except Exception as e:
                logger.error("Error closing probe %s: %s", reg.key, e)

    @property
    def running(self) -> bool:
        return self._running

    def stats(self) -> dict[str, Any]:
        return {
            "registered": len(self._registrations),
            "polling": len(self._loops),
            "inflight": len(self._inflight),
            "probe_calls": self.probe_calls,
            "attached": self.attached,
            "executor": self.executor.stats(),
            "backoff": self.adaptive.snapshot(),
        }
