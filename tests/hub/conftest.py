"""Shared fixtures for tests/hub/ test suite.

Provides a controllable clock for cache expiry and the core components
wired together the way TelemetryHub wires them. Test doubles live in
fakes.py.
"""

import pytest
import pytest_asyncio
from fakes import FakeClock

from uma.hub.cache import TTLCache
from uma.hub.changes import ChangeDetector
from uma.hub.collector import Collector
from uma.hub.config import CollectorConfig
from uma.hub.events import EventHub


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(shards=4, clock=clock)


@pytest.fixture
def event_hub():
    return EventHub(buffer_size=8)


@pytest.fixture
def detector(event_hub):
    """Detector publishing immediately (no debounce window)."""
    return ChangeDetector(event_hub, window=0)


@pytest_asyncio.fixture
async def collector(cache, detector):
    c = Collector(cache, detector, config=CollectorConfig(default_interval=60, default_timeout=1.0))
    yield c
    await c.stop()
