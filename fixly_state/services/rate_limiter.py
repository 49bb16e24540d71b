"""Fixed-window rate limiter over the key-value store.

Counter keys: ``rate_limit:{namespace}:{action}:{subject}``.

Each call increments the window counter atomically; the TTL is set when the
counter is created, so the window resets by expiry. Windows are fixed, not
sliding: a burst straddling a reset can pass up to twice the quota.
"""

import time
from typing import Callable, Optional, Union

from fixly_state.constants import (
    RATE_LIMIT_NAMESPACE,
    RateLimitAction,
    get_rate_limit_rule,
)
from fixly_state.core.config import Settings
from fixly_state.core.exceptions import InvalidKeyComponent
from fixly_state.core.kv import KVClient, glob_escape
from fixly_state.core.logging import get_logger
from fixly_state.models.rate_limit import RateLimitResult

logger = get_logger(__name__)


def build_key(action: Union[RateLimitAction, str], subject: str, namespace: str = "default") -> str:
    """Compose a counter key from namespace, action and subject.

    The subject goes last so values containing ':' (IPv6 addresses) stay
    unambiguous.
    """
    action_name = action.value if isinstance(action, RateLimitAction) else str(action)
    for label, part in (("namespace", namespace), ("action", action_name)):
        if not part or ":" in part:
            raise InvalidKeyComponent(f"Invalid rate limit {label}: {part!r}")
    if not subject:
        raise InvalidKeyComponent("Rate limit subject must not be empty")
    return f"{RATE_LIMIT_NAMESPACE}:{namespace}:{action_name}:{subject}"


class RateLimiter:
    """Distributed fixed-window limiter.

    Fails open: when the store is unreachable the action is allowed and the
    result carries ``fallback=True``. Callers guarding high-value actions can
    pass ``fail_closed=True`` to deny instead.
    """

    def __init__(self, kv: KVClient, settings: Settings,
                 clock: Callable[[], float] = time.time):
        self.kv = kv
        self.settings = settings
        self.enabled = settings.rate_limit_enabled
        self._clock = clock

    def _full_key(self, key: str) -> str:
        prefix = f"{RATE_LIMIT_NAMESPACE}:"
        return key if key.startswith(prefix) else prefix + key

    async def allow(self, key: str, max_requests: int, window_seconds: int,
                    *, fail_closed: bool = False) -> RateLimitResult:
        """Count one request against ``key`` and decide.

        Args:
            key: Counter key; ``rate_limit:`` is prepended when missing.
            max_requests: Requests allowed per window.
            window_seconds: Fixed window length.
            fail_closed: Deny instead of allow when the store is unreachable.

        Returns:
            RateLimitResult for this request.
        """
        if max_requests < 1 or window_seconds < 1:
            raise ValueError("max_requests and window_seconds must be positive")

        now = int(self._clock())
        if not self.enabled:
            return RateLimitResult(allowed=True, limit=max_requests, remaining=max_requests,
                                   reset_at=now + window_seconds)

        full_key = self._full_key(key)
        count = await self.kv.increment(full_key)
        if count is None:
            return self._degraded(full_key, max_requests, window_seconds, now, fail_closed)

        if count == 1:
            await self.kv.expire(full_key, window_seconds)
            ttl = window_seconds
        else:
            ttl = await self.kv.ttl(full_key)
            if ttl < 0:
                # A counter without TTL would never reset; re-arm the window.
                await self.kv.expire(full_key, window_seconds)
                ttl = window_seconds

        reset_at = now + ttl
        if count > max_requests:
            retry_after = max(1, ttl)
            logger.info("Rate limit exceeded", rate_limit_key=full_key, count=count,
                        limit=max_requests, retry_after=retry_after)
            return RateLimitResult(allowed=False, limit=max_requests, remaining=0,
                                   reset_at=reset_at, retry_after_seconds=retry_after)

        return RateLimitResult(allowed=True, limit=max_requests,
                               remaining=max_requests - count, reset_at=reset_at)

    def _degraded(self, full_key: str, max_requests: int, window_seconds: int,
                  now: int, fail_closed: bool) -> RateLimitResult:
        if fail_closed:
            logger.warning("Rate limiter store unavailable, denying (fail-closed)",
                           rate_limit_key=full_key)
            return RateLimitResult(allowed=False, limit=max_requests, remaining=0,
                                   reset_at=now + window_seconds,
                                   retry_after_seconds=window_seconds, fallback=True)
        logger.warning("Rate limiter store unavailable, allowing (fail-open)",
                       rate_limit_key=full_key)
        return RateLimitResult(allowed=True, limit=max_requests, remaining=max_requests,
                               reset_at=now + window_seconds, fallback=True)

    async def allow_action(self, action: RateLimitAction, subject: str,
                           namespace: str = "default",
                           fail_closed: Optional[bool] = None) -> RateLimitResult:
        """``allow`` with the default quota for ``action``."""
        action = RateLimitAction(action)
        rule = get_rate_limit_rule(action)
        return await self.allow(
            build_key(action, subject, namespace),
            rule.max_requests,
            rule.window_seconds,
            fail_closed=rule.fail_closed if fail_closed is None else fail_closed,
        )

    async def status(self, key: str, max_requests: int) -> RateLimitResult:
        """Current window usage without counting a request."""
        full_key = self._full_key(key)
        now = int(self._clock())
        raw = await self.kv.get(full_key)
        try:
            used = int(raw) if raw is not None else 0
        except ValueError:
            used = 0
        ttl = await self.kv.ttl(full_key) if used else -1
        return RateLimitResult(
            allowed=used < max_requests,
            limit=max_requests,
            remaining=max(0, max_requests - used),
            reset_at=now + ttl if ttl > 0 else now,
            retry_after_seconds=max(1, ttl) if used >= max_requests and ttl > 0 else 0,
        )

    async def reset(self, key: str) -> bool:
        """Administrative reset of one counter."""
        full_key = self._full_key(key)
        deleted = await self.kv.delete(full_key)
        logger.info("Rate limit reset", rate_limit_key=full_key, deleted=deleted)
        return deleted

    async def reset_subject(self, subject: str) -> int:
        """Administrative reset of every counter for a subject.

        Scans the keyspace; not for request paths.
        """
        if not subject:
            raise InvalidKeyComponent("Rate limit subject must not be empty")
        pattern = f"{RATE_LIMIT_NAMESPACE}:*:*:{glob_escape(subject)}"
        # '*' also spans ':', so require the subject to be the whole tail.
        keys = [key for key in await self.kv.keys_matching(pattern)
                if key.split(":", 3)[3:] == [subject]]
        deleted = await self.kv.delete_many(keys)
        logger.info("Rate limits reset for subject", deleted=deleted)
        return deleted
