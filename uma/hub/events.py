"""Topic-based publish/subscribe hub.

- publish never blocks: each matching subscription gets the event offered
  to its own bounded buffer
- ordering: per-topic sequence numbers are assigned at publish time, and
  every subscriber sees a topic's events in that order
- backpressure is explicit (OverflowPolicy): drop the oldest buffered event
  or disconnect the subscriber; a slow consumer never stalls the producer
  or other consumers

publish() and the Subscription receive side must run on the event loop
thread. The topic index is copy-on-write so publishes read it lock-free.
"""

import asyncio
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from uma.hub.config import OverflowPolicy
from uma.hub.constants import SLOW_DISPATCH_MS
from uma.hub.errors import InvalidTransition, SubscriberOverflow, SubscriptionClosed

logger = logging.getLogger(__name__)

__all__ = ["Event", "EventHub", "OverflowPolicy", "Subscription", "SubscriptionState"]


@dataclass(frozen=True)
class Event:
    """A discrete change on one resource, routed by topic."""

    topic: str
    key: str
    payload: Any = None
    sequence: int = 0
    timestamp: datetime | None = None


class SubscriptionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    DRAINING = "draining"
    CLOSED = "closed"


_TRANSITIONS = {
    SubscriptionState.CONNECTING: {SubscriptionState.ACTIVE, SubscriptionState.CLOSED},
    SubscriptionState.ACTIVE: {SubscriptionState.DRAINING, SubscriptionState.CLOSED},
    SubscriptionState.DRAINING: {SubscriptionState.CLOSED},
    SubscriptionState.CLOSED: set(),
}

_ids = itertools.count(1)


def match_topic(pattern: str, topic: str) -> bool:
    """Exact match, ``prefix.*`` match, or ``*`` for everything."""
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])
    return pattern == topic


class Subscription:
    """One consumer's view of the hub: a topic set and a bounded buffer.

    Iterate with ``async for event in subscription`` until it closes.
    """

    def __init__(
        self,
        topics: Iterable[str],
        capacity: int,
        policy: OverflowPolicy,
        subscription_id: str | None = None,
    ):
        self.id = subscription_id or f"sub-{next(_ids)}"
        self.topics: frozenset[str] = frozenset(topics)
        self.capacity = capacity
        self.policy = OverflowPolicy(policy)
        self.state = SubscriptionState.CONNECTING
        self.close_reason: str | None = None
        self.delivered = 0
        self.dropped = 0
        self.created_at = datetime.now(tz=UTC)
        self._buffer: deque[Event] = deque()
        self._ready = asyncio.Event()
        self._overflow_logged = False

    def __repr__(self):
        return f"<Subscription {self.id} {self.state.value} topics={sorted(self.topics)}>"

    # ── Lifecycle ───────────────────────────────────────────────────────

    def transition(self, target: SubscriptionState):
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, target)
        logger.debug("Subscription %s: %s -> %s", self.id, self.state.value, target.value)
        self.state = target
        self._ready.set()

    def activate(self):
        self.transition(SubscriptionState.ACTIVE)

    def drain(self):
        """Stop accepting events; buffered ones are still delivered.

        Closes immediately when nothing is buffered.
        """
        if self.state in (SubscriptionState.DRAINING, SubscriptionState.CLOSED):
            return
        if self.state == SubscriptionState.CONNECTING:
            self.close("drained before activation")
            return
        self.transition(SubscriptionState.DRAINING)
        if not self._buffer:
            self.close("drained")

    def close(self, reason: str = "closed"):
        """Close now and release the buffer. Closing twice is a no-op."""
        if self.state == SubscriptionState.CLOSED:
            return
        self.transition(SubscriptionState.CLOSED)
        self.close_reason = reason
        self._buffer.clear()

    @property
    def closed(self) -> bool:
        return self.state == SubscriptionState.CLOSED

    @property
    def pending(self) -> int:
        return len(self._buffer)

    # ── Producer side ───────────────────────────────────────────────────

    def offer(self, event: Event) -> bool:
        """Enqueue without blocking.

        Returns:
            True if the event was buffered

        Raises:
            SubscriberOverflow: Buffer was full; the configured policy has
                already been applied (oldest dropped, or subscription closed)
        """
        if self.state != SubscriptionState.ACTIVE:
            return False
        if len(self._buffer) >= self.capacity:
            if self.policy == OverflowPolicy.DISCONNECT:
                self.close("overflow")
                raise SubscriberOverflow(self.id, self.capacity)
            self._buffer.popleft()
            self.dropped += 1
            self._buffer.append(event)
            self._ready.set()
            raise SubscriberOverflow(self.id, self.capacity)
        self._buffer.append(event)
        self._ready.set()
        return True

    # ── Consumer side ───────────────────────────────────────────────────

    def get_nowait(self) -> Event | None:
        if self._buffer:
            return self._take()
        return None

    async def get(self) -> Event:
        """Wait for the next event.

        Raises:
            SubscriptionClosed: Closed, or draining with nothing left
        """
        while True:
            if self._buffer and self.state != SubscriptionState.CLOSED:
                return self._take()
            if self.state == SubscriptionState.DRAINING:
                self.close("drained")
            if self.state == SubscriptionState.CLOSED:
                raise SubscriptionClosed(self.id)
            self._ready.clear()
            await self._ready.wait()

    def _take(self) -> Event:
        event = self._buffer.popleft()
        self.delivered += 1
        if not self._buffer and self.state == SubscriptionState.DRAINING:
            self.close("drained")
        return event

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration from None

    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "topics": sorted(self.topics),
            "state": self.state.value,
            "pending": len(self._buffer),
            "capacity": self.capacity,
            "policy": self.policy.value,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "close_reason": self.close_reason,
        }


@dataclass
class _Stats:
    published: int = 0
    delivered: int = 0
    dropped: int = 0
    disconnected: int = 0
    per_topic: dict[str, int] = field(default_factory=dict)


class EventHub:
    """Routes events to subscriptions by topic."""

    def __init__(self, buffer_size: int = 256, overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST):
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be at least 1, got {buffer_size}")
        self.buffer_size = buffer_size
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self._write_lock = threading.Lock()
        # Copy-on-write views, replaced wholesale under _write_lock
        self._subscriptions: dict[str, Subscription] = {}
        self._exact: dict[str, tuple[Subscription, ...]] = {}
        self._patterns: tuple[Subscription, ...] = ()
        self._sequences: dict[str, int] = {}
        self._stats = _Stats()
        self._accepting = True

    # ── Subscription management ─────────────────────────────────────────

    def subscribe(
        self,
        topics: Iterable[str],
        capacity: int | None = None,
        policy: OverflowPolicy | None = None,
        activate: bool = True,
    ) -> Subscription:
        """Register a consumer.

        Args:
            topics: Exact topics, ``prefix.*`` patterns or ``*``
            capacity: Buffer size (defaults to the hub buffer size)
            policy: Overflow policy (defaults to the hub policy)
            activate: Move straight to Active; transports that handshake
                first pass False and call activate() themselves

        Raises:
            ValueError: capacity is less than 1
        """
        capacity = capacity if capacity is not None else self.buffer_size
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        sub = Subscription(
            topics,
            capacity=capacity,
            policy=policy or self.overflow_policy,
        )
        with self._write_lock:
            subs = dict(self._subscriptions)
            subs[sub.id] = sub
            self._rebuild(subs)
        if activate:
            sub.activate()
        logger.debug("Subscribed %s to %s", sub.id, sorted(sub.topics))
        return sub

    def update_topics(self, subscription_id: str, add: Iterable[str] = (), remove: Iterable[str] = ()) -> frozenset[str]:
        """Change a subscription's topic set in place.

        Returns:
            The new topic set

        Raises:
            KeyError: Unknown subscription
        """
        with self._write_lock:
            sub = self._subscriptions[subscription_id]
            sub.topics = (sub.topics | frozenset(add)) - frozenset(remove)
            self._rebuild(dict(self._subscriptions))
            return sub.topics

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription and release its buffer."""
        with self._write_lock:
            if subscription_id not in self._subscriptions:
                return False
            subs = dict(self._subscriptions)
            sub = subs.pop(subscription_id)
            self._rebuild(subs)
        sub.close("unsubscribed")
        logger.debug("Unsubscribed %s", subscription_id)
        return True

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self._subscriptions.get(subscription_id)

    def list_subscriptions(self) -> list[dict[str, Any]]:
        return [s.info() for s in self._subscriptions.values()]

    def _rebuild(self, subs: dict[str, Subscription]):
        exact: dict[str, list[Subscription]] = {}
        patterns: list[Subscription] = []
        for sub in subs.values():
            if any(t == "*" or t.endswith(".*") for t in sub.topics):
                patterns.append(sub)
            for topic in sub.topics:
                if topic != "*" and not topic.endswith(".*"):
                    exact.setdefault(topic, []).append(sub)
        self._subscriptions = subs
        self._exact = {t: tuple(v) for t, v in exact.items()}
        self._patterns = tuple(patterns)

    def _drop(self, sub: Subscription):
        with self._write_lock:
            if sub.id in self._subscriptions:
                subs = dict(self._subscriptions)
                subs.pop(sub.id)
                self._rebuild(subs)

    # ── Publishing ──────────────────────────────────────────────────────

    def publish(self, event: Event) -> Event:
        """Sequence and fan out an event.

        Returns:
            The event as delivered (sequence and timestamp stamped)
        """
        sequence = self._sequences.get(event.topic, 0) + 1
        self._sequences[event.topic] = sequence
        event = replace(event, sequence=sequence, timestamp=event.timestamp or datetime.now(tz=UTC))
        self._stats.published += 1
        self._stats.per_topic[event.topic] = sequence

        if not self._accepting:
            return event

        start = time.monotonic()
        targets = self._exact.get(event.topic, ())
        pattern_targets = tuple(
            s for s in self._patterns if s not in targets and any(match_topic(t, event.topic) for t in s.topics)
        )
        delivered = 0
        for sub in targets + pattern_targets:
            try:
                if sub.offer(event):
                    delivered += 1
            except SubscriberOverflow:
                self._on_overflow(sub)
                if not sub.closed:
                    delivered += 1
        self._stats.delivered += delivered

        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > SLOW_DISPATCH_MS:
            logger.warning(
                "Event '%s' dispatch took %.1f ms (threshold %d ms) for %d subscriber(s)",
                event.topic,
                elapsed_ms,
                SLOW_DISPATCH_MS,
                len(targets) + len(pattern_targets),
            )
        logger.debug("Published %s #%d for %s to %d subscriber(s)", event.topic, sequence, event.key, delivered)
        return event

    def _on_overflow(self, sub: Subscription):
        if sub.closed:
            self._stats.disconnected += 1
            self._drop(sub)
            logger.warning("Subscription %s disconnected: buffer of %d overflowed", sub.id, sub.capacity)
            return
        self._stats.dropped += 1
        if not sub._overflow_logged:
            sub._overflow_logged = True
            logger.warning("Subscription %s is falling behind, dropping oldest events (buffer %d)", sub.id, sub.capacity)
        else:
            logger.debug("Subscription %s dropped oldest event (%d dropped)", sub.id, sub.dropped)

    def last_sequence(self, topic: str) -> int:
        return self._sequences.get(topic, 0)

    # ── Shutdown ────────────────────────────────────────────────────────

    def close(self, drain: bool = True):
        """Stop routing and move every subscription towards Closed."""
        self._accepting = False
        for sub in list(self._subscriptions.values()):
            if drain:
                sub.drain()
            else:
                sub.close("hub closed")
        with self._write_lock:
            self._rebuild({})

    def stats(self) -> dict[str, Any]:
        return {
            "subscriptions": len(self._subscriptions),
            "published_total": self._stats.published,
            "delivered_total": self._stats.delivered,
            "dropped_total": self._stats.dropped,
            "disconnected_total": self._stats.disconnected,
            "topics": dict(self._stats.per_topic),
            "buffer_size": self.buffer_size,
            "overflow_policy": self.overflow_policy.value,
        }
