"""KV adapter: Redis-compatible semantics and graceful degradation."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fixly_state.core.config import Settings
from fixly_state.core.kv import KVClient, MemoryBackend, RedisBackend, glob_escape
from fixly_state.services.rate_limiter import RateLimiter


async def test_set_get_delete_roundtrip(kv):
    assert await kv.set_with_ttl("k", "v", 60) is True
    assert await kv.get("k") == "v"
    assert await kv.exists("k") is True
    assert await kv.delete("k") is True
    assert await kv.delete("k") is False
    assert await kv.get("k") is None


async def test_values_expire_with_ttl(kv, clock):
    await kv.set_with_ttl("k", "v", 10)
    assert await kv.ttl("k") == 10
    clock.advance(9)
    assert await kv.get("k") == "v"
    clock.advance(1)
    assert await kv.get("k") is None
    assert await kv.ttl("k") == -1


async def test_ttl_is_minus_one_without_expiry(kv):
    assert await kv.ttl("missing") == -1
    await kv.increment("counter")
    assert await kv.ttl("counter") == -1


async def test_increment_keeps_existing_ttl(kv, clock):
    assert await kv.increment("c") == 1
    assert await kv.expire("c", 30) is True
    clock.advance(10)
    assert await kv.increment("c") == 2
    assert await kv.ttl("c") == 20


async def test_expire_missing_key_fails(kv):
    assert await kv.expire("nope", 10) is False


async def test_non_positive_ttl_rejected(kv):
    with pytest.raises(ValueError):
        await kv.set_with_ttl("k", "v", 0)


async def test_keys_matching_uses_glob(kv):
    await kv.set_with_ttl("cache:v1:a", "1", 60)
    await kv.set_with_ttl("cache:v2:b", "1", 60)
    await kv.set_with_ttl("otp:x:signup", "1", 60)
    assert sorted(await kv.keys_matching("cache:*")) == ["cache:v1:a", "cache:v2:b"]


async def test_sets(kv):
    assert await kv.set_add("s", "a", "b") == 2
    assert await kv.set_add("s", "b", "c") == 1
    assert await kv.set_members("s") == {"a", "b", "c"}
    assert await kv.set_members("missing") == set()


async def test_sorted_set_ranges_and_removal(kv):
    for score, member in [(3, "c"), (1, "a"), (2, "b"), (4, "d")]:
        assert await kv.sorted_set_add("z", score, member)
    assert await kv.sorted_set_range_by_score("z") == ["a", "b", "c", "d"]
    assert await kv.sorted_set_range_by_score("z", 2, 3) == ["b", "c"]
    assert await kv.sorted_set_remove_by_score("z", float("-inf"), 1) == 1
    # keep the newest two
    assert await kv.sorted_set_remove_by_rank("z", 0, -3) == 1
    assert await kv.sorted_set_range_by_score("z") == ["c", "d"]
    assert await kv.sorted_set_card("z") == 2


async def test_json_helpers(kv, backend):
    assert await kv.set_json("j", {"a": [1, 2]}, 60)
    assert await kv.get_json("j") == {"a": [1, 2]}
    await backend.set("broken", "{not json", 60)
    assert await kv.get_json("broken") is None


async def test_key_prefix_is_applied_and_stripped(backend, clock):
    kv = KVClient(backend, Settings(_env_file=None, key_prefix="fixly"), clock=clock)
    await kv.set_with_ttl("otp:a:signup", "x", 60)
    assert await backend.get("fixly:otp:a:signup") == "x"
    assert await kv.keys_matching("otp:*") == ["otp:a:signup"]


async def test_wrong_type_is_a_miss_not_an_outage(kv):
    await kv.set_add("s", "a")
    assert await kv.get("s") is None
    # store still considered healthy
    assert await kv.set_with_ttl("k", "v", 60) is True


class TestDegradation:
    async def test_unreachable_store_returns_defaults(self, down_kv, down_backend):
        assert await down_kv.get("k") is None
        assert await down_kv.set_with_ttl("k", "v", 60) is False
        assert await down_kv.delete("k") is False
        assert await down_kv.exists("k") is False
        assert await down_kv.increment("k") is None
        assert await down_kv.expire("k", 10) is False
        assert await down_kv.ttl("k") == -1
        assert await down_kv.keys_matching("*") == []
        assert await down_kv.set_members("s") == set()
        assert await down_kv.sorted_set_add("z", 1, "m") is False
        assert await down_kv.sorted_set_range_by_score("z") == []

    async def test_health_probe_is_cached_per_interval(self, down_kv, down_backend, clock, settings):
        for _ in range(5):
            await down_kv.get("k")
        assert down_backend.ping.await_count == 1

        clock.advance(settings.health_check_interval)
        await down_kv.get("k")
        assert down_backend.ping.await_count == 2

    async def test_recovers_after_interval(self, down_kv, down_backend, clock, settings):
        assert await down_kv.is_healthy() is False
        down_backend.ping = AsyncMock(return_value=True)
        clock.advance(settings.health_check_interval)
        assert await down_kv.set_with_ttl("k", "v", 60) is True
        assert await down_kv.get("k") == "v"

    async def test_operation_failure_marks_store_down(self, kv, backend):
        backend.get = AsyncMock(side_effect=RedisConnectionError("reset by peer"))
        backend.set = AsyncMock(return_value=True)
        assert await kv.get("k") is None
        # short-circuits until the next probe
        assert await kv.set_with_ttl("k", "v", 60) is False
        backend.set.assert_not_awaited()

    async def test_slow_store_times_out(self, backend, clock):
        kv = KVClient(backend, Settings(_env_file=None, kv_timeout=0.1), clock=clock)

        async def slow_get(key):
            await asyncio.sleep(1)
            return "late"

        backend.get = slow_get
        assert await kv.get("k") is None
        assert await kv.is_healthy() is False


class TestRedisBackend:
    @pytest.fixture
    def redis_backend(self):
        backend = RedisBackend("redis://localhost:6379/0")
        backend.redis = AsyncMock()
        return backend

    async def test_set_uses_expiry(self, redis_backend):
        redis_backend.redis.set.return_value = True
        assert await redis_backend.set("k", "v", 30) is True
        redis_backend.redis.set.assert_awaited_once_with("k", "v", ex=30)

    async def test_sorted_set_add_maps_member_to_score(self, redis_backend):
        redis_backend.redis.zadd.return_value = 1
        assert await redis_backend.zadd("z", 12.5, "m") == 1
        redis_backend.redis.zadd.assert_awaited_once_with("z", {"m": 12.5})

    async def test_incr_and_ttl_are_ints(self, redis_backend):
        redis_backend.redis.incr.return_value = 4
        redis_backend.redis.ttl.return_value = -2
        assert await redis_backend.incr("c") == 4
        assert await redis_backend.ttl("c") == -2

    async def test_shutdown_closes_client(self, redis_backend):
        client = redis_backend.redis
        await redis_backend.shutdown()
        client.aclose.assert_awaited_once()
        assert redis_backend.redis is None

    async def test_connection_errors_surface_as_misses(self, redis_backend, settings, clock):
        redis_backend.redis.ping.return_value = True
        redis_backend.redis.get.side_effect = RedisConnectionError("down")
        kv = KVClient(redis_backend, settings, clock=clock)
        assert await kv.get("k") is None


class TestScans:
    @staticmethod
    def slow_keys(delay, result):
        async def keys(pattern):
            await asyncio.sleep(delay)
            return result
        return keys

    async def test_slow_scan_leaves_store_healthy(self, backend, clock):
        settings = Settings(_env_file=None, kv_timeout=0.1, kv_scan_timeout=0.1)
        kv = KVClient(backend, settings, clock=clock)
        backend.keys = self.slow_keys(0.3, ["cache:v1:a"])

        assert await kv.keys_matching("cache:*") == []
        assert await kv.is_healthy() is True
        result = await RateLimiter(kv, settings, clock=clock).allow("k", 1, 60)
        assert result.allowed and result.fallback is False

    async def test_scans_use_their_own_timeout(self, backend, clock):
        settings = Settings(_env_file=None, kv_timeout=0.1, kv_scan_timeout=2.0)
        kv = KVClient(backend, settings, clock=clock)
        backend.keys = self.slow_keys(0.3, ["cache:v1:a"])
        assert await kv.keys_matching("cache:*") == ["cache:v1:a"]


@pytest.mark.parametrize("text,matches,rejects", [
    ("user:*", "user:*", "user:7"),
    ("a?c", "a?c", "abc"),
    ("[x]", "[x]", "x"),
])
async def test_glob_escape_matches_only_itself(kv, text, matches, rejects):
    await kv.set_with_ttl(matches, "1", 60)
    await kv.set_with_ttl(rejects, "1", 60)
    assert await kv.keys_matching(glob_escape(text)) == [matches]
