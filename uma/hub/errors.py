"""Error taxonomy for the telemetry hub.

Probe failures (ProbeTimeout, ProbeError) are folded into cache entries and
never abort a collection batch. CacheMiss is the only error surfaced to
readers. SubscriberOverflow is recorded in hub stats; it is never raised to
a producer.
"""

from __future__ import annotations

from typing import Any


class TelemetryError(Exception):
    """Base class for all hub errors."""


class ProbeTimeout(TelemetryError):
    """A probe did not return before its deadline."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"probe for '{key}' timed out after {timeout:.2f}s")
        self.key = key
        self.timeout = timeout


class ProbeError(TelemetryError):
    """The probed subsystem reported a failure."""

    def __init__(self, key: str, message: str):
        super().__init__(f"probe for '{key}' failed: {message}")
        self.key = key
        self.message = message


class CacheMiss(TelemetryError):
    """No usable value exists and the forced refresh did not produce one.

    Attributes:
        key: Resource key that was requested
        last_error: Text of the most recent probe error, if any
        entry: The stale entry that could not be served, if one exists
    """

    def __init__(self, key: str, last_error: str | None = None, entry: Any = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"no fresh value for '{key}'{detail}")
        self.key = key
        self.last_error = last_error
        self.entry = entry


class UnknownResource(CacheMiss):
    """The key has no registered probe and nothing cached."""

    def __init__(self, key: str):
        super().__init__(key, last_error="resource not registered")


class SubscriberOverflow(TelemetryError):
    """A subscriber's delivery buffer was full when an event arrived."""

    def __init__(self, subscription_id: str, capacity: int):
        super().__init__(f"subscription {subscription_id} overflowed its buffer of {capacity}")
        self.subscription_id = subscription_id
        self.capacity = capacity


class SubscriptionClosed(TelemetryError):
    """The subscription is closed and its buffer is empty."""


class InvalidTransition(TelemetryError):
    """A subscription state change that the lifecycle does not allow."""

    def __init__(self, current: Any, target: Any):
        super().__init__(f"cannot transition subscription from {current} to {target}")
        self.current = current
        self.target = target
