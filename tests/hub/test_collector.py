"""Tests for the collector: singleflight, isolation, folding and backoff."""

import asyncio
import time

import pytest
from fakes import FakeProbe

from uma.hub.collector import Collector
from uma.hub.config import CollectorConfig, TTLPolicy
from uma.hub.errors import ProbeError, UnknownResource

# ============================================================================
# Registration
# ============================================================================


class TestRegistration:
    def test_defaults_from_kind_and_namespace(self, collector):
        reg = collector.register("docker.container.abc", FakeProbe(kind="container"))

        assert reg.topic == "docker.events"
        assert reg.ttl == TTLPolicy(30, 120)
        assert reg.interval == 60
        assert reg.timeout == 1.0

    def test_overrides(self, collector):
        reg = collector.register(
            "sensors.coretemp", FakeProbe(), interval=5, timeout=2, soft_ttl=10, hard_ttl=40, topic="temperature.alert"
        )

        assert reg.ttl == TTLPolicy(10, 40)
        assert reg.topic == "temperature.alert"

    def test_duplicate_rejected(self, collector):
        collector.register("ups.status", FakeProbe())
        with pytest.raises(ValueError):
            collector.register("ups.status", FakeProbe())

    def test_unknown_namespace_topic(self, collector):
        assert collector.register("gpu.0", FakeProbe()).topic == "gpu.events"

    def test_unregister(self, collector):
        collector.register("ups.status", FakeProbe())
        assert collector.unregister("ups.status") is True
        assert "ups.status" not in collector
        assert collector.unregister("ups.status") is False


# ============================================================================
# run_once / singleflight
# ============================================================================


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_writes_cache(self, collector, cache):
        collector.register("ups.status", FakeProbe({"status": "ONLINE"}))

        entry = await collector.run_once("ups.status")

        assert entry.payload == {"status": "ONLINE"}
        assert cache.get("ups.status") == entry

    @pytest.mark.asyncio
    async def test_unknown_key(self, collector):
        with pytest.raises(UnknownResource):
            await collector.run_once("nope.nothing")

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_probe_invocation(self, collector):
        probe = FakeProbe({"state": "running"}, delay=0.05)
        collector.register("docker.container.abc", probe)

        entries = await asyncio.gather(*(collector.run_once("docker.container.abc") for _ in range(10)))

        assert probe.calls == 1
        assert {e.sequence for e in entries} == {1}
        assert collector.attached == 9

    @pytest.mark.asyncio
    async def test_cancelling_one_waiter_keeps_fetch_for_others(self, collector):
        probe = FakeProbe({"state": "running"}, delay=0.05)
        collector.register("docker.container.abc", probe)

        first = asyncio.create_task(collector.run_once("docker.container.abc"))
        second = asyncio.create_task(collector.run_once("docker.container.abc"))
        await probe.started.wait()
        first.cancel()

        entry = await second
        assert entry.payload == {"state": "running"}
        assert probe.cancelled == 0

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_payload(self, collector, cache):
        collector.register("vm.win10", FakeProbe({"state": "running"}, ProbeError("vm.win10", "virsh failed")))

        await collector.run_once("vm.win10")
        entry = await collector.run_once("vm.win10")

        assert entry.payload == {"state": "running"}
        assert entry.stale is True
        assert "virsh failed" in entry.last_error
        assert entry.sequence == 2

    @pytest.mark.asyncio
    async def test_change_published_on_success(self, collector, event_hub):
        sub = event_hub.subscribe(["docker.events"])
        collector.register("docker.container.abc", FakeProbe({"state": "running"}, {"state": "exited"}))

        await collector.run_once("docker.container.abc")
        await collector.run_once("docker.container.abc")

        events = [sub.get_nowait(), sub.get_nowait()]
        assert [e.payload["state"] for e in events] == ["running", "exited"]
        assert sub.get_nowait() is None


# ============================================================================
# collect_all
# ============================================================================


class TestCollectAll:
    @pytest.mark.asyncio
    async def test_hung_probe_does_not_delay_others(self, cache, detector):
        collector = Collector(cache, detector, config=CollectorConfig(default_timeout=0.2))
        collector.register("docker.container.a", FakeProbe({"state": "running"}, delay=0.1))
        collector.register("vm.win10", FakeProbe({"state": "running"}, delay=0.1))
        collector.register("ups.status", FakeProbe(hang=True))

        start = time.monotonic()
        entries = await collector.collect_all()
        elapsed = time.monotonic() - start

        assert elapsed < 0.4
        assert entries["docker.container.a"].stale is False
        assert entries["vm.win10"].stale is False
        assert entries["ups.status"].stale is True
        assert "timed out" in entries["ups.status"].last_error
        await collector.stop()

    @pytest.mark.asyncio
    async def test_error_never_aborts_batch(self, collector):
        collector.register("a.one", FakeProbe(RuntimeError("boom")))
        collector.register("b.two", FakeProbe({"ok": True}))

        entries = await collector.collect_all()

        assert entries["a.one"].last_error
        assert entries["b.two"].payload == {"ok": True}

    @pytest.mark.asyncio
    async def test_attaches_to_inflight_refresh(self, collector):
        probe = FakeProbe({"v": 1}, delay=0.05)
        collector.register("ups.status", probe)

        pending = asyncio.create_task(collector.run_once("ups.status"))
        await probe.started.wait()
        entries = await collector.collect_all()

        assert probe.calls == 1
        assert entries["ups.status"] == await pending

    @pytest.mark.asyncio
    async def test_run_once_attaches_to_batch(self, collector):
        probe = FakeProbe({"v": 1}, delay=0.05)
        collector.register("ups.status", probe)

        batch = asyncio.create_task(collector.collect_all())
        await probe.started.wait()
        entry = await collector.run_once("ups.status")

        assert probe.calls == 1
        assert (await batch)["ups.status"] == entry


# ============================================================================
# Polling lifecycle and backoff
# ============================================================================


class TestPolling:
    @pytest.mark.asyncio
    async def test_start_polls_and_stop_cancels_inflight(self, cache, detector):
        collector = Collector(cache, detector, config=CollectorConfig(default_interval=0.01, default_timeout=5))
        fast = FakeProbe({"v": 1})
        hung = FakeProbe(hang=True)
        collector.register("a.fast", fast)
        collector.register("b.hung", hung)

        collector.start()
        await asyncio.sleep(0.05)
        await collector.stop()

        assert fast.calls >= 2
        assert hung.cancelled == 1
        assert collector.stats()["inflight"] == 0
        assert collector.stats()["polling"] == 0

    @pytest.mark.asyncio
    async def test_register_after_start_begins_polling(self, cache, detector):
        collector = Collector(cache, detector, config=CollectorConfig(default_interval=10))
        collector.start()
        probe = FakeProbe({"v": 1})
        collector.register("ups.status", probe)

        await asyncio.wait_for(probe.started.wait(), 1)
        await collector.stop()
        assert probe.calls == 1

    @pytest.mark.asyncio
    async def test_close_closes_probes(self, collector):
        probe = FakeProbe()
        collector.register("ups.status", probe)

        await collector.close()

        assert probe.closed is True

    @pytest.mark.asyncio
    async def test_backoff_after_repeated_errors(self, cache, detector):
        collector = Collector(
            cache, detector, config=CollectorConfig(error_backoff_threshold=2, max_backoff_interval=100)
        )
        collector.register("ups.status", FakeProbe(ProbeError("ups.status", "no ups")), interval=10)

        intervals = []
        for _ in range(4):
            await collector.run_once("ups.status")
            intervals.append(collector.adaptive.interval_for("ups.status", 10))

        assert intervals == [10, 20, 40, 80]

    @pytest.mark.asyncio
    async def test_backoff_resets_on_success(self, cache, detector):
        collector = Collector(cache, detector, config=CollectorConfig(error_backoff_threshold=1))
        err = ProbeError("ups.status", "no ups")
        collector.register("ups.status", FakeProbe(err, err, {"status": "ONLINE"}), interval=10)

        await collector.run_once("ups.status")
        await collector.run_once("ups.status")
        assert collector.adaptive.interval_for("ups.status", 10) == 40
        await collector.run_once("ups.status")
        assert collector.adaptive.interval_for("ups.status", 10) == 10
