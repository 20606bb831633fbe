"""Tests for change detection and debouncing."""

import asyncio

import pytest

from uma.hub.changes import ChangeDetector
from uma.hub.events import EventHub
from uma.hub.payloads import ContainerSnapshot, GenericSnapshot


def _drain(sub):
    events = []
    while (event := sub.get_nowait()) is not None:
        events.append(event)
    return events


@pytest.fixture
def hub():
    return EventHub(buffer_size=64)


class TestFingerprinting:
    def test_first_observation_is_a_change(self, hub):
        sub = hub.subscribe(["docker.events"])
        detector = ChangeDetector(hub, window=0)

        assert detector.observe("docker.container.abc", "docker.events", None, {"state": "running"}) is True
        assert len(_drain(sub)) == 1

    def test_identical_payload_ignored(self, hub):
        detector = ChangeDetector(hub, window=0)

        assert detector.observe("k", "t", {"state": "running"}, {"state": "running"}) is False
        assert detector.stats()["candidates"] == 0

    def test_volatile_dict_fields_ignored(self, hub):
        detector = ChangeDetector(hub, window=0)
        before = {"state": "running", "timestamp": "2024-01-01T00:00:00", "uptime": 10}
        after = {"state": "running", "timestamp": "2024-01-01T00:00:05", "uptime": 15}

        assert detector.observe("k", "t", before, after) is False

    def test_volatile_snapshot_fields_ignored(self, hub):
        detector = ChangeDetector(hub, window=0)
        before = ContainerSnapshot(id="abc", state="running", status="Up 5 minutes", cpu_percent=1.5)
        after = ContainerSnapshot(id="abc", state="running", status="Up 6 minutes", cpu_percent=9.0)

        assert detector.observe("docker.container.abc", "docker.events", before, after) is False

    def test_semantic_snapshot_change_detected(self, hub):
        detector = ChangeDetector(hub, window=0)
        before = ContainerSnapshot(id="abc", state="running")
        after = ContainerSnapshot(id="abc", state="exited")

        assert detector.observe("docker.container.abc", "docker.events", before, after) is True

    def test_generic_snapshot_drops_volatile_data_keys(self, hub):
        detector = ChangeDetector(hub, window=0)
        before = GenericSnapshot(data={"load": "low", "uptime_seconds": 100})
        after = GenericSnapshot(data={"load": "low", "uptime_seconds": 160})

        assert detector.observe("system.info", "system.stats", before, after) is False


class TestDebounce:
    @pytest.mark.asyncio
    async def test_rapid_changes_coalesce_into_final_payload(self, hub):
        sub = hub.subscribe(["docker.events"])
        detector = ChangeDetector(hub, window=0.05)

        previous = {"state": "created"}
        for state in ["restarting", "running", "paused", "exited"]:
            current = {"state": state}
            detector.observe("docker.container.abc", "docker.events", previous, current)
            previous = current

        assert _drain(sub) == []
        await asyncio.sleep(0.1)

        events = _drain(sub)
        assert len(events) == 1
        assert events[0].payload == {"state": "exited"}
        assert detector.stats()["coalesced"] == 3

    @pytest.mark.asyncio
    async def test_revert_inside_window_emits_nothing(self, hub):
        sub = hub.subscribe(["ups.status"])
        detector = ChangeDetector(hub, window=0)
        detector.observe("ups.status", "ups.status", None, {"status": "ONLINE"})
        _drain(sub)

        detector.window = 0.05
        detector.observe("ups.status", "ups.status", {"status": "ONLINE"}, {"status": "ONBATT"})
        detector.observe("ups.status", "ups.status", {"status": "ONBATT"}, {"status": "ONLINE"})
        await asyncio.sleep(0.1)

        assert _drain(sub) == []
        assert detector.stats()["suppressed"] == 1

    @pytest.mark.asyncio
    async def test_keys_debounced_independently(self, hub):
        sub = hub.subscribe(["docker.events"])
        detector = ChangeDetector(hub, window=0.05)

        detector.observe("docker.container.a", "docker.events", None, {"state": "running"})
        detector.observe("docker.container.b", "docker.events", None, {"state": "running"})
        await asyncio.sleep(0.1)

        assert {e.key for e in _drain(sub)} == {"docker.container.a", "docker.container.b"}

    @pytest.mark.asyncio
    async def test_flush_all_publishes_pending(self, hub):
        sub = hub.subscribe(["*"])
        detector = ChangeDetector(hub, window=10)
        detector.observe("k.one", "k.events", None, {"v": 1})

        detector.flush_all()

        assert len(_drain(sub)) == 1
        assert detector.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_close_discards_pending(self, hub):
        sub = hub.subscribe(["*"])
        detector = ChangeDetector(hub, window=0.02)
        detector.observe("k.one", "k.events", None, {"v": 1})

        detector.close()
        await asyncio.sleep(0.05)

        assert _drain(sub) == []
