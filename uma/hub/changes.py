"""Turns cache updates into discrete change events.

A candidate is raised whenever the semantic fingerprint of a key's payload
differs from the previous one. Candidates for the same key inside the
debounce window collapse into a single event carrying the latest payload.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from uma.hub.events import Event, EventHub
from uma.hub.payloads import fingerprint

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    topic: str
    payload: Any
    digest: str
    handle: asyncio.TimerHandle | None = None


class ChangeDetector:
    """Fingerprint comparison plus per-key trailing debounce.

    The window opens on the first candidate for a key and is not extended by
    later ones, so a key that changes continuously still publishes once per
    window.
    """

    def __init__(self, hub: EventHub, window: float = 1.0):
        self.hub = hub
        self.window = window
        self._pending: dict[str, _Pending] = {}
        self._last_emitted: dict[str, str] = {}
        self.candidates = 0
        self.coalesced = 0
        self.suppressed = 0
        self.emitted = 0

    def observe(self, key: str, topic: str, previous: Any, current: Any) -> bool:
        """Record a successful update of key.

        Args:
            key: Resource key
            topic: Topic the change publishes on
            previous: Payload before the update (None on first observation)
            current: Payload after the update

        Returns:
            True if the update produced a candidate event
        """
        digest = fingerprint(current)
        if previous is not None and fingerprint(previous) == digest:
            return False
        self.candidates += 1

        pending = self._pending.get(key)
        if pending is not None:
            self.coalesced += 1
            pending.topic = topic
            pending.payload = current
            pending.digest = digest
            return True

        if self.window <= 0:
            self._emit(key, _Pending(topic, current, digest))
            return True

        pending = _Pending(topic, current, digest)
        pending.handle = asyncio.get_running_loop().call_later(self.window, self._flush, key)
        self._pending[key] = pending
        return True

    def _flush(self, key: str):
        pending = self._pending.pop(key, None)
        if pending is not None:
            self._emit(key, pending)

    def _emit(self, key: str, pending: _Pending):
        if self._last_emitted.get(key) == pending.digest:
            self.suppressed += 1
            logger.debug("Change on %s reverted inside window, not publishing", key)
            return
        self._last_emitted[key] = pending.digest
        self.emitted += 1
        self.hub.publish(Event(topic=pending.topic, key=key, payload=pending.payload))

    def flush_all(self):
        """Publish every pending candidate now."""
        for key in list(self._pending):
            pending = self._pending[key]
            if pending.handle is not None:
                pending.handle.cancel()
            self._flush(key)

    def forget(self, key: str):
        pending = self._pending.pop(key, None)
        if pending is not None and pending.handle is not None:
            pending.handle.cancel()
        self._last_emitted.pop(key, None)

    def close(self):
        """Cancel pending timers without publishing."""
        for pending in self._pending.values():
            if pending.handle is not None:
                pending.handle.cancel()
        self._pending.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "window": self.window,
            "pending": len(self._pending),
            "candidates": self.candidates,
            "coalesced": self.coalesced,
            "suppressed": self.suppressed,
            "emitted": self.emitted,
        }
