"""Key-value store adapter with Redis (production) or in-memory (development) backend.

Every coordination primitive talks to the store through ``KVClient``. The
client never raises transport errors: reads degrade to a miss and writes
report failure, so callers only ever see typed results.
"""

import asyncio
import fnmatch
import json
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from fixly_state.core.config import Settings
from fixly_state.core.exceptions import StoreUnavailable
from fixly_state.core.logging import get_logger, log_store_failure

logger = get_logger(__name__)

# Failures that say something about the store being reachable, as opposed to
# command errors such as WRONGTYPE.
TRANSPORT_ERRORS = (
    RedisConnectionError,
    RedisTimeoutError,
    asyncio.TimeoutError,
    OSError,
    StoreUnavailable,
)

_GLOB_SPECIAL = {"*": "[*]", "?": "[?]", "[": "[[]", "\\": "[\\\\]"}


def glob_escape(text: str) -> str:
    """Quote glob metacharacters so ``text`` only matches itself.

    Bracket classes are understood by both Redis SCAN MATCH and ``fnmatch``.
    """
    return "".join(_GLOB_SPECIAL.get(char, char) for char in text)


class KVBackend(ABC):
    """Raw async store operations. Implementations may raise."""

    name: str = "abstract"

    async def startup(self) -> None:
        """Open connections."""

    async def shutdown(self) -> None:
        """Close connections."""

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def incr(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool: ...

    @abstractmethod
    async def ttl(self, key: str) -> int: ...

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]: ...

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]: ...

    @abstractmethod
    async def zadd(self, key: str, score: float, member: str) -> int: ...

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]: ...

    @abstractmethod
    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int: ...

    @abstractmethod
    async def zremrangebyrank(self, key: str, start: int, stop: int) -> int: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...


class RedisBackend(KVBackend):
    """Backend over ``redis.asyncio``; any Redis-protocol server works."""

    name = "redis"

    def __init__(self, url: str, timeout: float = 2.0):
        self.url = url
        self.timeout = timeout
        self.redis: Optional[redis.Redis] = None

    def _client(self) -> redis.Redis:
        if self.redis is None:
            # from_url does not connect; the first command does.
            self.redis = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
            )
        return self.redis

    async def startup(self) -> None:
        self._client()

    async def shutdown(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None

    async def ping(self) -> bool:
        return bool(await self._client().ping())

    async def get(self, key: str) -> Optional[str]:
        return await self._client().get(key)

    async def set(self, key: str, value: str, ttl: int) -> bool:
        return bool(await self._client().set(key, value, ex=ttl))

    async def delete(self, *keys: str) -> int:
        return int(await self._client().delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._client().exists(key))

    async def incr(self, key: str) -> int:
        return int(await self._client().incr(key))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._client().expire(key, ttl))

    async def ttl(self, key: str) -> int:
        return int(await self._client().ttl(key))

    async def keys(self, pattern: str) -> List[str]:
        return [key async for key in self._client().scan_iter(match=pattern, count=500)]

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._client().sadd(key, *members))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._client().smembers(key))

    async def zadd(self, key: str, score: float, member: str) -> int:
        return int(await self._client().zadd(key, {member: score}))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        return list(await self._client().zrangebyscore(key, min_score, max_score))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return int(await self._client().zremrangebyscore(key, min_score, max_score))

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        return int(await self._client().zremrangebyrank(key, start, stop))

    async def zcard(self, key: str) -> int:
        return int(await self._client().zcard(key))


class MemoryBackend(KVBackend):
    """Process-local store with TTL semantics matching Redis.

    Only suitable for development and tests: state is invisible to other
    processes, so it cannot coordinate stateless handler instances.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and self.clock() >= expires_at:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _typed(self, key: str, kind: type, create: bool = False):
        if not self._alive(key):
            if not create:
                return None
            self._data[key] = kind()
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"WRONGTYPE operation against key holding {type(value).__name__}")
        return value

    def _drop_if_empty(self, key: str) -> None:
        if key in self._data and not self._data[key]:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._typed(key, str)

    async def set(self, key: str, value: str, ttl: int) -> bool:
        self._data[key] = str(value)
        self._expires[key] = self.clock() + ttl
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                self._expires.pop(key, None)
                deleted += 1
        return deleted

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def incr(self, key: str) -> int:
        current = self._typed(key, str)
        try:
            count = int(current or 0) + 1
        except ValueError:
            raise ValueError("value is not an integer or out of range")
        self._data[key] = str(count)
        return count

    async def expire(self, key: str, ttl: int) -> bool:
        if not self._alive(key):
            return False
        self._expires[key] = self.clock() + ttl
        return True

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        expires_at = self._expires.get(key)
        if expires_at is None:
            return -1
        return max(0, math.ceil(expires_at - self.clock()))

    async def keys(self, pattern: str) -> List[str]:
        return [key for key in list(self._data) if self._alive(key) and fnmatch.fnmatchcase(key, pattern)]

    async def sadd(self, key: str, *members: str) -> int:
        members_set = self._typed(key, set, create=True)
        added = len(set(members) - members_set)
        members_set.update(members)
        return added

    async def smembers(self, key: str) -> Set[str]:
        return set(self._typed(key, set) or ())

    async def zadd(self, key: str, score: float, member: str) -> int:
        zset = self._typed(key, dict, create=True)
        added = 0 if member in zset else 1
        zset[member] = float(score)
        return added

    def _ordered(self, key: str) -> List[tuple]:
        zset = self._typed(key, dict) or {}
        return sorted(zset.items(), key=lambda item: (item[1], item[0]))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        return [member for member, score in self._ordered(key) if min_score <= score <= max_score]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        zset = self._typed(key, dict)
        if not zset:
            return 0
        doomed = [member for member, score in zset.items() if min_score <= score <= max_score]
        for member in doomed:
            del zset[member]
        self._drop_if_empty(key)
        return len(doomed)

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> int:
        ordered = self._ordered(key)
        size = len(ordered)
        if start < 0:
            start = max(0, size + start)
        if stop < 0:
            stop = size + stop
        stop = min(stop, size - 1)
        if start > stop:
            return 0
        zset = self._data[key]
        for member, _ in ordered[start:stop + 1]:
            del zset[member]
        self._drop_if_empty(key)
        return stop - start + 1

    async def zcard(self, key: str) -> int:
        return len(self._typed(key, dict) or {})


def create_backend(settings: Settings) -> KVBackend:
    """Pick the backend for the configured environment."""
    if settings.use_redis:
        return RedisBackend(settings.redis_url, timeout=settings.kv_timeout)
    logger.info("Using in-memory store (single-process only)",
                redis_enabled=settings.redis_enabled)
    return MemoryBackend()


class KVClient:
    """Failure-tolerant facade over a ``KVBackend``.

    Each call runs under ``kv_timeout``. Transport failures and timeouts are
    logged with the operation and key and turned into the call's miss/failure
    default. Store health is cached and re-probed at most once per
    ``health_check_interval``; while the store is known to be down, calls
    return the default without a round-trip.
    """

    def __init__(self, backend: KVBackend, settings: Settings,
                 clock: Callable[[], float] = time.monotonic):
        self.backend = backend
        self.settings = settings
        self.timeout = settings.kv_timeout
        self.scan_timeout = settings.kv_scan_timeout
        self.health_check_interval = settings.health_check_interval
        self.key_prefix = settings.key_prefix
        self._clock = clock
        self._healthy: Optional[bool] = None
        self._checked_at = 0.0

    @property
    def backend_name(self) -> str:
        return self.backend.name

    async def startup(self):
        """Initialize the backend and probe it once."""
        try:
            await self.backend.startup()
        except Exception as e:
            log_store_failure(logger, "startup", None, e)
        healthy = await self.is_healthy(force=True)
        logger.info("Key-value store initialized", backend=self.backend_name, healthy=healthy)

    async def shutdown(self):
        """Close backend connections."""
        try:
            await self.backend.shutdown()
            logger.info("Key-value store connections closed", backend=self.backend_name)
        except Exception as e:
            log_store_failure(logger, "shutdown", None, e)

    # =========================================================================
    # HEALTH
    # =========================================================================

    async def ping(self) -> bool:
        """Round-trip to the store, bypassing the cached health flag."""
        try:
            return bool(await asyncio.wait_for(self.backend.ping(), timeout=self.timeout))
        except Exception as e:
            log_store_failure(logger, "ping", None, e)
            return False

    async def is_healthy(self, force: bool = False) -> bool:
        """Cached health flag, re-probed once the check interval has passed."""
        now = self._clock()
        if (not force and self._healthy is not None
                and now - self._checked_at < self.health_check_interval):
            return self._healthy

        healthy = await self.ping()
        if healthy != self._healthy:
            if healthy:
                logger.info("Key-value store reachable", backend=self.backend_name)
            else:
                logger.warning("Key-value store unreachable, degrading",
                               backend=self.backend_name,
                               recheck_seconds=self.health_check_interval)
        self._healthy = healthy
        self._checked_at = now
        return healthy

    def _mark_unhealthy(self) -> None:
        self._healthy = False
        self._checked_at = self._clock()

    # =========================================================================
    # CORE
    # =========================================================================

    def _k(self, key: str) -> str:
        return f"{self.key_prefix}:{key}" if self.key_prefix else key

    def _strip(self, key: str) -> str:
        if self.key_prefix and key.startswith(self.key_prefix + ":"):
            return key[len(self.key_prefix) + 1:]
        return key

    async def _call(self, operation: str, key: Optional[str],
                    call: Callable[[], Any], default: Any,
                    timeout: Optional[float] = None, scan: bool = False) -> Any:
        if not await self.is_healthy():
            return default
        try:
            return await asyncio.wait_for(call(), timeout=timeout or self.timeout)
        except asyncio.TimeoutError as e:
            # A slow keyspace walk says nothing about per-key latency.
            if not scan:
                self._mark_unhealthy()
            log_store_failure(logger, operation, key, e)
            return default
        except TRANSPORT_ERRORS as e:
            self._mark_unhealthy()
            log_store_failure(logger, operation, key, e)
            return default
        except Exception as e:
            log_store_failure(logger, operation, key, e)
            return default

    async def get(self, key: str) -> Optional[str]:
        """Get raw string value, ``None`` on miss or failure."""
        return await self._call("get", key, lambda: self.backend.get(self._k(key)), None)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set value with a mandatory positive TTL."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        return await self._call("set", key,
                                lambda: self.backend.set(self._k(key), value, int(ttl_seconds)),
                                False)

    async def delete(self, key: str) -> bool:
        """Delete a key; True only if this call removed it."""
        deleted = await self._call("delete", key, lambda: self.backend.delete(self._k(key)), 0)
        return deleted > 0

    async def delete_many(self, keys: Iterable[str]) -> int:
        """Delete several keys, returning how many existed."""
        keys = list(keys)
        if not keys:
            return 0
        return await self._call("delete_many", keys[0],
                                lambda: self.backend.delete(*[self._k(k) for k in keys]), 0)

    async def exists(self, key: str) -> bool:
        return await self._call("exists", key, lambda: self.backend.exists(self._k(key)), False)

    async def increment(self, key: str) -> Optional[int]:
        """Atomically increment; ``None`` when the store could not be reached."""
        return await self._call("increment", key, lambda: self.backend.incr(self._k(key)), None)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return await self._call("expire", key,
                                lambda: self.backend.expire(self._k(key), int(ttl_seconds)), False)

    async def ttl(self, key: str) -> int:
        """Seconds remaining; -1 when the key is absent or has no TTL."""
        remaining = await self._call("ttl", key, lambda: self.backend.ttl(self._k(key)), -1)
        return remaining if remaining >= 0 else -1

    async def keys_matching(self, pattern: str) -> List[str]:
        """Keys matching a glob pattern.

        Walks the whole keyspace. Reserved for administrative and
        invalidation paths, never for per-request work. Runs under
        ``kv_scan_timeout``; a scan that times out returns ``[]`` without
        marking the store down.
        """
        found = await self._call("keys_matching", pattern,
                                 lambda: self.backend.keys(self._k(pattern)), [],
                                 timeout=self.scan_timeout, scan=True)
        return [self._strip(k) for k in found]

    # =========================================================================
    # SETS
    # =========================================================================

    async def set_add(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._call("set_add", key, lambda: self.backend.sadd(self._k(key), *members), 0)

    async def set_members(self, key: str) -> Set[str]:
        return await self._call("set_members", key, lambda: self.backend.smembers(self._k(key)), set())

    # =========================================================================
    # SORTED SETS
    # =========================================================================

    async def sorted_set_add(self, key: str, score: float, member: str) -> bool:
        added = await self._call("sorted_set_add", key,
                                 lambda: self.backend.zadd(self._k(key), score, member), None)
        return added is not None

    async def sorted_set_range_by_score(self, key: str, min_score: float = float("-inf"),
                                        max_score: float = float("inf")) -> List[str]:
        return await self._call("sorted_set_range_by_score", key,
                                lambda: self.backend.zrangebyscore(self._k(key), min_score, max_score),
                                [])

    async def sorted_set_remove_by_score(self, key: str, min_score: float, max_score: float) -> int:
        return await self._call("sorted_set_remove_by_score", key,
                                lambda: self.backend.zremrangebyscore(self._k(key), min_score, max_score),
                                0)

    async def sorted_set_remove_by_rank(self, key: str, start: int, stop: int) -> int:
        return await self._call("sorted_set_remove_by_rank", key,
                                lambda: self.backend.zremrangebyrank(self._k(key), start, stop),
                                0)

    async def sorted_set_card(self, key: str) -> int:
        return await self._call("sorted_set_card", key, lambda: self.backend.zcard(self._k(key)), 0)

    # =========================================================================
    # JSON HELPERS
    # =========================================================================

    async def get_json(self, key: str) -> Optional[Any]:
        """Get and decode a JSON value; undecodable values count as a miss."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Discarding undecodable value", store_key=key, error=str(e))
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        serialized = json.dumps(value, default=str)
        return await self.set_with_ttl(key, serialized, ttl_seconds)
