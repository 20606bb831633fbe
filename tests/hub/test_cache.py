"""Tests for the sharded TTL cache: expiry, sequencing and read-through."""

import asyncio

import pytest

from uma.hub.cache import TTLCache
from uma.hub.errors import CacheMiss, ProbeError, ProbeTimeout
from uma.hub.payloads import Envelope, UPSSnapshot

# ============================================================================
# Set / get
# ============================================================================


class TestSetAndGet:
    def test_get_missing_returns_none(self, cache):
        assert cache.get("docker.container.abc") is None

    def test_successful_set_is_fresh(self, cache, clock):
        entry = cache.set("docker.container.abc", {"state": "running"}, None, 30, 120)

        assert entry.stale is False
        assert entry.last_error is None
        assert entry.sequence == 1
        assert entry.soft_expires_at == clock.now + 30
        assert entry.hard_expires_at == clock.now + 120
        assert cache.get("docker.container.abc").payload == {"state": "running"}

    def test_entry_goes_stale_after_soft_ttl(self, cache, clock):
        cache.set("ups.status", {"status": "ONLINE"}, None, 30, 120)
        clock.advance(30)
        assert cache.get("ups.status").stale is False
        clock.advance(0.5)
        assert cache.get("ups.status").stale is True

    def test_sequence_increases_on_every_write(self, cache):
        seqs = [
            cache.set("k", {"v": 1}, None, 1, 2).sequence,
            cache.set("k", None, ProbeError("k", "boom"), 1, 2).sequence,
            cache.set("k", {"v": 2}, None, 1, 2).sequence,
        ]
        assert seqs == [1, 2, 3]

    def test_error_keeps_previous_payload_and_deadlines(self, cache, clock):
        good = cache.set("k", {"v": 1}, None, 30, 120)
        clock.advance(10)
        failed = cache.set("k", None, ProbeTimeout("k", 5), 30, 120)

        assert failed.payload == {"v": 1}
        assert failed.fetched_at == good.fetched_at
        assert failed.hard_expires_at == good.hard_expires_at
        assert failed.stale is True
        assert "timed out" in failed.last_error
        assert failed.error_type == "ProbeTimeout"

    def test_error_without_previous_value_expires_immediately(self, cache, clock):
        entry = cache.set("k", None, ProbeError("k", "down"), 30, 120)

        assert entry.has_value is False
        assert entry.soft_expires_at == clock.now
        assert entry.hard_expires_at == clock.now

    def test_success_after_error_clears_error(self, cache):
        cache.set("k", {"v": 1}, None, 30, 120)
        cache.set("k", None, ProbeError("k", "down"), 30, 120)
        entry = cache.set("k", {"v": 2}, None, 30, 120)

        assert entry.stale is False
        assert entry.last_error is None

    def test_soft_ttl_above_hard_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.set("k", {}, None, 60, 30)

    def test_soft_never_after_hard(self, cache):
        for soft, hard in [(1, 1), (1, 5), (30, 120)]:
            entry = cache.set(f"k{soft}{hard}", {}, None, soft, hard)
            assert entry.soft_expires_at <= entry.hard_expires_at

    def test_to_dict_carries_envelope(self, cache):
        snapshot = UPSSnapshot(status="ONLINE", battery_charge=100.0)
        entry = cache.set("ups.status", snapshot, None, 30, 120)

        wire = entry.to_dict()

        assert wire["key"] == "ups.status"
        assert wire["kind"] == "ups"
        assert Envelope.model_validate(wire).unwrap() == snapshot


class TestSharding:
    def test_keys_spread_across_shards(self):
        cache = TTLCache(shards=8)
        for i in range(64):
            cache.set(f"docker.container.{i}", {"i": i}, None, 1, 2)

        sizes = cache.stats()["shard_sizes"]
        assert sum(sizes) == 64
        assert sum(1 for s in sizes if s) > 1

    def test_keys_sorted_and_len(self, cache):
        cache.set("b", {}, None, 1, 1)
        cache.set("a", {}, None, 1, 1)
        assert cache.keys() == ["a", "b"]
        assert len(cache) == 2
        assert "a" in cache

    def test_zero_shards_rejected(self):
        with pytest.raises(ValueError):
            TTLCache(shards=0)


class TestRestoreAndDelete:
    def test_restore_is_immediately_stale(self, cache, clock):
        from datetime import UTC, datetime

        entry = cache.restore("k", {"v": 1}, datetime.now(tz=UTC), sequence=7, hard_remaining=50)

        assert entry.stale is True
        assert entry.sequence == 7
        assert entry.hard_expires_at == clock.now + 50

    def test_restore_never_overwrites(self, cache):
        from datetime import UTC, datetime

        cache.set("k", {"v": "live"}, None, 1, 2)
        assert cache.restore("k", {"v": "old"}, datetime.now(tz=UTC), 1, 50) is None
        assert cache.get("k").payload == {"v": "live"}

    def test_restore_expired_skipped(self, cache):
        from datetime import UTC, datetime

        assert cache.restore("k", {}, datetime.now(tz=UTC), 1, hard_remaining=0) is None
        assert cache.get("k") is None

    def test_delete(self, cache):
        cache.set("k", {}, None, 1, 1)
        assert cache.delete("k") is True
        assert cache.delete("k") is False


# ============================================================================
# Invalidation
# ============================================================================


class TestInvalidate:
    def test_invalidate_prefix_expires_matching_entries(self, cache, clock):
        cache.set("docker.container.abc", {"state": "running"}, None, 30, 120)
        cache.set("docker.container.def", {"state": "exited"}, None, 30, 120)
        cache.set("ups.status", {"status": "ONLINE"}, None, 30, 120)

        keys = cache.invalidate("docker.")

        assert keys == ["docker.container.abc", "docker.container.def"]
        entry = cache.get("docker.container.abc")
        assert entry.stale is True
        assert entry.payload == {"state": "running"}
        assert entry.sequence == 1
        assert clock.now > entry.hard_expires_at
        assert cache.get("ups.status").stale is False

    def test_invalidate_without_match(self, cache):
        cache.set("ups.status", {"status": "ONLINE"}, None, 30, 120)

        assert cache.invalidate("vm.") == []
        assert cache.stats()["invalidations"] == 0

    def test_empty_prefix_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.invalidate("")

    def test_stats_count_invalidations(self, cache):
        cache.set("docker.container.abc", {}, None, 30, 120)
        cache.set("docker.container.def", {}, None, 30, 120)

        cache.invalidate("docker.container.")
        cache.invalidate("docker.container.abc")

        assert cache.stats()["invalidations"] == 3

    @pytest.mark.asyncio
    async def test_read_after_invalidate_waits_for_refresh(self, cache):
        cache.set("k", {"v": 1}, None, 30, 120)
        cache.invalidate("k")

        async def refresh():
            return cache.set("k", {"v": 2}, None, 30, 120)

        entry = await cache.get_or_refresh("k", refresh)

        assert entry.payload == {"v": 2}
        assert entry.sequence == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_after_invalidate_raises_cache_miss(self, cache):
        cache.set("k", {"v": "old"}, None, 30, 120)
        cache.invalidate("k")

        async def refresh():
            return cache.set("k", None, ProbeError("k", "down"), 30, 120)

        with pytest.raises(CacheMiss) as exc_info:
            await cache.get_or_refresh("k", refresh)

        assert exc_info.value.entry.payload == {"v": "old"}


# ============================================================================
# get_or_refresh
# ============================================================================


class TestGetOrRefresh:
    @pytest.mark.asyncio
    async def test_fresh_value_returned_without_refresh(self, cache):
        cache.set("k", {"v": 1}, None, 30, 120)
        calls = 0

        async def refresh():
            nonlocal calls
            calls += 1
            return cache.set("k", {"v": 2}, None, 30, 120)

        entry = await cache.get_or_refresh("k", refresh)

        assert entry.payload == {"v": 1}
        assert calls == 0

    @pytest.mark.asyncio
    async def test_stale_value_returned_and_refreshed_in_background(self, cache, clock):
        cache.set("k", {"v": 1}, None, 30, 120)
        clock.advance(60)
        refreshed = asyncio.Event()

        async def refresh():
            entry = cache.set("k", {"v": 2}, None, 30, 120)
            refreshed.set()
            return entry

        entry = await cache.get_or_refresh("k", refresh)

        assert entry.payload == {"v": 1}
        assert entry.stale is True
        await asyncio.wait_for(refreshed.wait(), 1)
        assert cache.get("k").payload == {"v": 2}

    @pytest.mark.asyncio
    async def test_past_hard_ttl_blocks_on_refresh(self, cache, clock):
        cache.set("k", {"v": 1}, None, 30, 120)
        clock.advance(121)

        async def refresh():
            return cache.set("k", {"v": 2}, None, 30, 120)

        entry = await cache.get_or_refresh("k", refresh)

        assert entry.payload == {"v": 2}
        assert entry.stale is False

    @pytest.mark.asyncio
    async def test_absent_and_failed_refresh_raises_cache_miss(self, cache):
        async def refresh():
            return cache.set("k", None, ProbeError("k", "unreachable"), 30, 120)

        with pytest.raises(CacheMiss) as exc_info:
            await cache.get_or_refresh("k", refresh)

        assert "unreachable" in exc_info.value.last_error
        assert exc_info.value.entry.sequence == 1

    @pytest.mark.asyncio
    async def test_past_hard_ttl_failed_refresh_never_serves_old_data(self, cache, clock):
        cache.set("k", {"v": "old"}, None, 30, 120)
        clock.advance(200)

        async def refresh():
            return cache.set("k", None, ProbeTimeout("k", 5), 30, 120)

        with pytest.raises(CacheMiss) as exc_info:
            await cache.get_or_refresh("k", refresh)

        assert exc_info.value.entry.payload == {"v": "old"}
        assert "timed out" in exc_info.value.last_error

    @pytest.mark.asyncio
    async def test_refresh_timeout_raises_cache_miss(self, cache):
        async def refresh():
            await asyncio.sleep(10)

        with pytest.raises(CacheMiss) as exc_info:
            await cache.get_or_refresh("k", refresh, timeout=0.05)

        assert "did not complete" in exc_info.value.last_error

    @pytest.mark.asyncio
    async def test_stats_track_hits_and_misses(self, cache, clock):
        async def refresh():
            return cache.set("k", {"v": 1}, None, 30, 120)

        await cache.get_or_refresh("k", refresh)
        await cache.get_or_refresh("k", refresh)

        stats = cache.stats()
        assert stats["misses"] == 1
        assert stats["hits"] == 1
        assert stats["hit_rate"] == 50.0

    @pytest.mark.asyncio
    async def test_close_cancels_background_refresh(self, cache, clock):
        cache.set("k", {"v": 1}, None, 30, 120)
        clock.advance(60)
        started = asyncio.Event()

        async def refresh():
            started.set()
            await asyncio.sleep(10)

        await cache.get_or_refresh("k", refresh)
        await asyncio.wait_for(started.wait(), 1)
        await cache.close()

        assert not cache._background
