"""Configuration dataclasses for the telemetry hub.

Each sub-config has safe defaults and a from_env() constructor reading
``UMA_*`` environment variables. TTL windows are configured per resource
kind because subsystems refresh at very different rates (container state
changes within seconds, SMART attributes within minutes).
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class OverflowPolicy(str, Enum):
    """What the event hub does when a subscriber's buffer is full."""

    DROP_OLDEST = "drop_oldest"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class TTLPolicy:
    """Soft/hard expiry windows in seconds.

    Within soft_ttl a cached value is fresh. Between soft and hard it is
    served as stale while a background refresh runs. Past hard_ttl a reader
    blocks on a synchronous refresh.
    """
    soft_ttl: float
    hard_ttl: float

    def __post_init__(self):
        if self.soft_ttl <= 0:
            raise ValueError(f"soft_ttl must be positive, got {self.soft_ttl}")
        if self.hard_ttl < self.soft_ttl:
            raise ValueError(f"hard_ttl ({self.hard_ttl}) must be >= soft_ttl ({self.soft_ttl})")

    @classmethod
    def parse(cls, text: str) -> "TTLPolicy":
        """Parse ``"soft,hard"`` (seconds)."""
        soft, _, hard = text.partition(",")
        soft_ttl = float(soft)
        return cls(soft_ttl=soft_ttl, hard_ttl=float(hard) if hard else soft_ttl * 4)


DEFAULT_TTL_POLICIES: dict[str, TTLPolicy] = {
    "container": TTLPolicy(30, 120),
    "vm": TTLPolicy(30, 120),
    "disk": TTLPolicy(120, 480),
    "smart": TTLPolicy(300, 1200),
    "array": TTLPolicy(30, 120),
    "sensor": TTLPolicy(30, 120),
    "ups": TTLPolicy(30, 120),
    "generic": TTLPolicy(30, 120),
}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


@dataclass
class CollectorConfig:
    """Probe scheduling defaults."""
    default_interval: float = 10.0
    default_timeout: float = 5.0
    max_concurrency: int | None = None  # None = unbounded fan-out
    error_backoff_threshold: int = 3
    max_backoff_interval: float = 300.0

    def __post_init__(self):
        if self.default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1 or None")

    @classmethod
    def from_env(cls):
        max_concurrency = os.environ.get("UMA_MAX_CONCURRENCY")
        return cls(
            default_interval=_env_float("UMA_DEFAULT_INTERVAL", cls.default_interval),
            default_timeout=_env_float("UMA_DEFAULT_TIMEOUT", cls.default_timeout),
            max_concurrency=int(max_concurrency) if max_concurrency else None,
            error_backoff_threshold=_env_int("UMA_BACKOFF_THRESHOLD", cls.error_backoff_threshold),
            max_backoff_interval=_env_float("UMA_MAX_BACKOFF_INTERVAL", cls.max_backoff_interval),
        )


@dataclass
class EventConfig:
    """Event hub and delivery settings."""
    buffer_size: int = 256
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    debounce_window: float = 1.0
    drain_grace: float = 5.0

    def __post_init__(self):
        if self.buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        if self.debounce_window < 0:
            raise ValueError("debounce_window must be >= 0")
        self.overflow_policy = OverflowPolicy(self.overflow_policy)

    @classmethod
    def from_env(cls):
        return cls(
            buffer_size=_env_int("UMA_BUFFER_SIZE", cls.buffer_size),
            overflow_policy=OverflowPolicy(os.environ.get("UMA_OVERFLOW_POLICY", cls.overflow_policy.value)),
            debounce_window=_env_float("UMA_DEBOUNCE_WINDOW", cls.debounce_window),
            drain_grace=_env_float("UMA_DRAIN_GRACE", cls.drain_grace),
        )


@dataclass
class HubConfig:
    """Top-level config composing all sub-configs."""
    cache_shards: int = 16
    ttl_policies: dict[str, TTLPolicy] = field(default_factory=lambda: dict(DEFAULT_TTL_POLICIES))
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    events: EventConfig = field(default_factory=EventConfig)
    snapshot_path: Path | None = None
    snapshot_interval: float = 60.0

    def ttl_for(self, kind: str) -> TTLPolicy:
        """TTL policy for a resource kind, falling back to the generic policy."""
        return self.ttl_policies.get(kind) or self.ttl_policies.get("generic") or DEFAULT_TTL_POLICIES["generic"]

    @classmethod
    def from_env(cls):
        """Create config from environment variables (for production use)."""
        policies = dict(DEFAULT_TTL_POLICIES)
        for name, value in os.environ.items():
            if name.startswith("UMA_TTL_") and value:
                policies[name[len("UMA_TTL_"):].lower()] = TTLPolicy.parse(value)

        snapshot_path = os.environ.get("UMA_SNAPSHOT_PATH")
        return cls(
            cache_shards=_env_int("UMA_CACHE_SHARDS", cls.cache_shards),
            ttl_policies=policies,
            collector=CollectorConfig.from_env(),
            events=EventConfig.from_env(),
            snapshot_path=Path(snapshot_path) if snapshot_path else None,
            snapshot_interval=_env_float("UMA_SNAPSHOT_INTERVAL", cls.snapshot_interval),
        )
