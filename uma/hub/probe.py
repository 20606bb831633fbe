"""Probe contract and the bounded probe executor.

A probe fetches one snapshot from one subsystem. Every call goes through
ProbeExecutor, which applies the deadline, converts failures into
ProbeTimeout/ProbeError and measures duration, so no caller needs its own
timeout or fan-out code.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from uma.hub.errors import ProbeError, ProbeTimeout, TelemetryError
from uma.hub.payloads import to_snapshot

logger = logging.getLogger(__name__)


class Probe(ABC):
    """Fetches a snapshot from one external subsystem.

    Implementations must be cancellation-safe: the executor cancels fetch()
    when the deadline passes or the hub shuts down.
    """

    kind: str = "generic"

    @abstractmethod
    async def fetch(self) -> Any:
        """Return the current snapshot or raise."""

    async def close(self):
        """Release probe resources (sessions, processes)."""

    def describe(self) -> str:
        return type(self).__name__


class FunctionProbe(Probe):
    """Adapts a plain callable to the Probe contract.

    Coroutine functions are awaited directly. Blocking functions run in a
    worker thread; the thread cannot be interrupted, so on timeout its result
    is simply discarded. Results are coerced into the snapshot model for
    kind, so a callable may return a plain mapping.
    """

    def __init__(self, fn: Callable[[], Any], kind: str = "generic"):
        self.fn = fn
        self.kind = kind
        self._is_async = inspect.iscoroutinefunction(fn)

    async def fetch(self) -> Any:
        if self._is_async:
            result = await self.fn()
        else:
            result = await asyncio.to_thread(self.fn)
        return to_snapshot(result, self.kind)

    def describe(self) -> str:
        return getattr(self.fn, "__name__", "function")


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe invocation. Folded into the cache, then dropped."""

    key: str
    payload: Any = None
    error: TelemetryError | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ProbeJob:
    key: str
    probe: Probe
    timeout: float


class ProbeExecutor:
    """Runs probes under independent, cancellable deadlines.

    Optionally caps how many probes run at once; time spent waiting for a
    slot does not count against a probe's deadline.
    """

    def __init__(self, max_concurrency: int | None = None):
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        self.calls = 0
        self.timeouts = 0
        self.errors = 0

    async def run(self, key: str, probe: Probe, timeout: float) -> ProbeResult:
        """Invoke probe once, never raising probe failures.

        Cancellation of the caller still propagates.
        """
        if self._semaphore is None:
            return await self._run(key, probe, timeout)
        async with self._semaphore:
            return await self._run(key, probe, timeout)

    async def _run(self, key: str, probe: Probe, timeout: float) -> ProbeResult:
        self.calls += 1
        start = time.monotonic()
        try:
            async with asyncio.timeout(timeout):
                payload = await probe.fetch()
        except TimeoutError:
            self.timeouts += 1
            return ProbeResult(key=key, error=ProbeTimeout(key, timeout), duration=time.monotonic() - start)
        except ProbeError as e:
            self.errors += 1
            return ProbeResult(key=key, error=e, duration=time.monotonic() - start)
        except Exception as e:
            self.errors += 1
            error = ProbeError(key, f"{type(e).__name__}: {e}")
            error.__cause__ = e
            return ProbeResult(key=key, error=error, duration=time.monotonic() - start)
        return ProbeResult(key=key, payload=payload, duration=time.monotonic() - start)

    async def run_many(self, jobs: Iterable[ProbeJob]) -> AsyncIterator[ProbeResult]:
        """Run jobs concurrently and yield results in completion order.

        Leaving the iteration early cancels every probe still running.
        """
        tasks = [asyncio.create_task(self.run(j.key, j.probe, j.timeout), name=f"probe:{j.key}") for j in jobs]
        try:
            for next_done in asyncio.as_completed(tasks):
                yield await next_done
        finally:
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    def stats(self) -> dict[str, int]:
        return {"calls": self.calls, "timeouts": self.timeouts, "errors": self.errors}
