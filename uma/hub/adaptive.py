"""Per-key interval backoff for repeatedly failing probes."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class _KeyState:
    consecutive_errors: int = 0
    total_errors: int = 0
    total_successes: int = 0


class AdaptiveIntervals:
    """Slows polling of a key once it keeps failing.

    After ``threshold`` consecutive errors the interval doubles with each
    further error, up to ``max_interval``. A single success restores the
    base interval.
    """

    def __init__(self, threshold: int = 3, max_interval: float = 300.0):
        self.threshold = max(1, threshold)
        self.max_interval = max_interval
        self._state: dict[str, _KeyState] = {}

    def interval_for(self, key: str, base: float) -> float:
        state = self._state.get(key)
        if state is None or state.consecutive_errors < self.threshold:
            return base
        factor = 2 ** (state.consecutive_errors - self.threshold + 1)
        return min(base * factor, max(base, self.max_interval))

    def record_success(self, key: str):
        state = self._state.setdefault(key, _KeyState())
        if state.consecutive_errors >= self.threshold:
            logger.info("Probe %s recovered after %d errors, restoring interval", key, state.consecutive_errors)
        state.consecutive_errors = 0
        state.total_successes += 1

    def record_error(self, key: str):
        state = self._state.setdefault(key, _KeyState())
        state.consecutive_errors += 1
        state.total_errors += 1
        if state.consecutive_errors == self.threshold:
            logger.warning("Probe %s has failed %d times in a row, backing off", key, state.consecutive_errors)

    def forget(self, key: str):
        self._state.pop(key, None)

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {
            key: {
                "consecutive_errors": s.consecutive_errors,
                "total_errors": s.total_errors,
                "total_successes": s.total_successes,
            }
            for key, s in self._state.items()
        }
